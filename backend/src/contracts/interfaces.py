from __future__ import annotations

import uuid
from datetime import datetime
from typing import Protocol

from backend.src.contracts.models import (
    BatchResult,
    DeviceToken,
    PriceAggregate,
    PricePoint,
    ProductInfo,
    PushMessage,
    TrackedProduct,
    TrackingSubscription,
)


class IPriceFetcher(Protocol):
    async def fetch(self, product_code: str) -> ProductInfo: ...


class IPriceHistoryStore(Protocol):
    async def append(self, point: PricePoint) -> None: ...

    async def append_many(self, points: list[PricePoint]) -> None: ...

    async def aggregate_latest_and_min(self) -> dict[uuid.UUID, PriceAggregate]: ...

    async def query_range(
        self, product_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[PricePoint]: ...


class ITrackingIndex(Protocol):
    async def list_tracked_products(self) -> list[TrackedProduct]: ...

    async def find_subscriptions_for_products(
        self, product_ids: list[uuid.UUID]
    ) -> list[TrackingSubscription]: ...

    async def device_token_for(self, user_id: uuid.UUID) -> DeviceToken | None: ...

    async def device_tokens_for(
        self, user_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, DeviceToken]: ...


class IPushSender(Protocol):
    async def send_batch(self, messages: list[PushMessage]) -> BatchResult: ...
