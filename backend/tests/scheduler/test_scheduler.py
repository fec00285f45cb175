from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from backend.src.cache.price_cache import PriceCache
from backend.src.config import Settings
from backend.src.contracts.models import (
    BatchResult,
    DeviceToken,
    PricePoint,
    ProductInfo,
    PushMessage,
    PushResult,
    TrackedProduct,
    TrackingSubscription,
)
from backend.src.fetcher.fetcher import FetchError
from backend.src.history.repository import PriceHistoryWriteError
from backend.src.notifier.dispatcher import NotificationDispatcher
from backend.src.scheduler.scheduler import PricePoller

NOW = datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc)


# ── Fakes ─────────────────────────────────────────────────────────────────────


class FakeTracking:
    def __init__(self) -> None:
        self.products: list[TrackedProduct] = []
        self.subscriptions: list[TrackingSubscription] = []
        self.devices: dict[uuid.UUID, DeviceToken] = {}

    def track(self, code: str, user_id: uuid.UUID, target_price: int) -> uuid.UUID:
        existing = next((p for p in self.products if p.product_code == code), None)
        if existing is None:
            existing = TrackedProduct(product_id=uuid.uuid4(), product_code=code)
            self.products.append(existing)
        self.subscriptions.append(
            TrackingSubscription(
                user_id=user_id, product_id=existing.product_id, target_price=target_price
            )
        )
        return existing.product_id

    async def list_tracked_products(self) -> list[TrackedProduct]:
        return list(self.products)

    async def find_subscriptions_for_products(
        self, product_ids: list[uuid.UUID]
    ) -> list[TrackingSubscription]:
        return [s for s in self.subscriptions if s.product_id in product_ids]

    async def device_token_for(self, user_id: uuid.UUID) -> DeviceToken | None:
        return self.devices.get(user_id)

    async def device_tokens_for(self, user_ids: list[uuid.UUID]) -> dict[uuid.UUID, DeviceToken]:
        return {u: self.devices[u] for u in user_ids if u in self.devices}


class FakeFetcher:
    def __init__(self) -> None:
        self.prices: dict[str, int] = {}
        self.sold_out: set[str] = set()
        self.failing: set[str] = set()
        self.hanging: set[str] = set()
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.delay = 0.0

    async def fetch(self, product_code: str) -> ProductInfo:
        self.calls.append(product_code)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if product_code in self.hanging:
                await asyncio.sleep(5)
            if product_code in self.failing:
                raise FetchError(f"upstream error for {product_code}")
            return ProductInfo(
                product_code=product_code,
                product_name=f"Product {product_code}",
                image_url=f"https://cdn.11st.co.kr/{product_code}.jpg",
                price=self.prices[product_code],
                is_sold_out=product_code in self.sold_out,
                shop="11번가",
            )
        finally:
            self.in_flight -= 1


class FakeHistory:
    def __init__(self) -> None:
        self.points: list[PricePoint] = []
        self.fail_writes = False

    async def append(self, point: PricePoint) -> None:
        await self.append_many([point])

    async def append_many(self, points: list[PricePoint]) -> None:
        if self.fail_writes:
            raise PriceHistoryWriteError("database unavailable")
        self.points.extend(points)

    async def aggregate_latest_and_min(self):
        return {}

    async def query_range(self, product_id, start, end):
        return [p for p in self.points if p.product_id == product_id]


class FakeSender:
    def __init__(self) -> None:
        self.batches: list[list[PushMessage]] = []

    async def send_batch(self, messages: list[PushMessage]) -> BatchResult:
        self.batches.append(messages)
        return BatchResult(results=[PushResult(token=m.token, success=True) for m in messages])

    @property
    def sent(self) -> list[PushMessage]:
        return [m for batch in self.batches for m in batch]


class Harness:
    def __init__(self, fetch_concurrency: int = 10, fetch_timeout_seconds: float = 1.0) -> None:
        self.tracking = FakeTracking()
        self.fetcher = FakeFetcher()
        self.history = FakeHistory()
        self.cache = PriceCache()
        self.sender = FakeSender()
        self.poller = PricePoller(
            settings=Settings(
                fetch_concurrency=fetch_concurrency,
                fetch_timeout_seconds=fetch_timeout_seconds,
            ),
            tracking=self.tracking,
            fetcher=self.fetcher,
            history=self.history,
            cache=self.cache,
            dispatcher=NotificationDispatcher(self.tracking, self.sender, timeout_seconds=5),
            clock=lambda: NOW,
        )


# ── Cycle behaviour ───────────────────────────────────────────────────────────


class TestPriceDrop:
    @pytest.mark.asyncio
    async def test_drop_below_target_records_updates_and_notifies(self) -> None:
        h = Harness()
        u1, u2 = uuid.uuid4(), uuid.uuid4()
        p1 = h.tracking.track("1000001", u1, target_price=45000)
        h.tracking.track("1000001", u2, target_price=40000)
        h.tracking.devices = {u1: DeviceToken(token="u1-token"), u2: DeviceToken(token="u2-token")}
        h.cache.upsert(p1, 50000, False)
        h.fetcher.prices["1000001"] = 45000

        report = await h.poller.run_cycle()

        assert report is not None
        assert report.changed_product_ids == [p1]
        assert h.history.points == [
            PricePoint(product_id=p1, time=NOW, price=45000, is_sold_out=False)
        ]
        state = h.cache.get(p1)
        assert state is not None
        assert state.current_price == 45000
        assert state.lowest_price_ever == 45000
        assert [(m.user_id, m.token) for m in h.sender.sent] == [(u1, "u1-token")]
        assert report.notifications_sent == 1

    @pytest.mark.asyncio
    async def test_unchanged_price_records_and_notifies_nothing(self) -> None:
        h = Harness()
        user = uuid.uuid4()
        product_id = h.tracking.track("1000001", user, target_price=100000)
        h.tracking.devices = {user: DeviceToken(token="tok")}
        h.cache.upsert(product_id, 45000, False)
        h.fetcher.prices["1000001"] = 45000

        report = await h.poller.run_cycle()

        assert report is not None
        assert report.changed_product_ids == []
        assert h.history.points == []
        assert h.sender.batches == []

    @pytest.mark.asyncio
    async def test_first_observation_is_a_change(self) -> None:
        h = Harness()
        user = uuid.uuid4()
        product_id = h.tracking.track("1000001", user, target_price=1000)
        h.fetcher.prices["1000001"] = 30000

        report = await h.poller.run_cycle()

        assert report is not None
        assert report.changed_product_ids == [product_id]
        assert len(h.history.points) == 1
        assert h.sender.batches == []

    @pytest.mark.asyncio
    async def test_sold_out_flip_is_recorded(self) -> None:
        h = Harness()
        product_id = h.tracking.track("1000001", uuid.uuid4(), target_price=1000)
        h.cache.upsert(product_id, 30000, False)
        h.fetcher.prices["1000001"] = 30000
        h.fetcher.sold_out.add("1000001")

        await h.poller.run_cycle()

        state = h.cache.get(product_id)
        assert state is not None
        assert state.is_sold_out is True
        assert h.history.points[0].is_sold_out is True

    @pytest.mark.asyncio
    async def test_subscriber_without_device_is_not_an_error(self) -> None:
        h = Harness()
        product_id = h.tracking.track("1000001", uuid.uuid4(), target_price=50000)
        h.cache.upsert(product_id, 50000, False)
        h.fetcher.prices["1000001"] = 45000

        report = await h.poller.run_cycle()

        assert report is not None
        assert report.changed_product_ids == [product_id]
        assert report.notifications_sent == 0
        assert report.notifications_failed == 0
        assert h.sender.batches == []

    @pytest.mark.asyncio
    async def test_nothing_tracked(self) -> None:
        h = Harness()

        report = await h.poller.run_cycle()

        assert report is not None
        assert report.tracked_count == 0
        assert h.fetcher.calls == []


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_hanging_fetch_is_cut_off_at_timeout(self) -> None:
        h = Harness(fetch_timeout_seconds=0.2)
        user = uuid.uuid4()
        h.tracking.devices = {user: DeviceToken(token="tok")}
        slow = h.tracking.track("1000001", user, target_price=50000)
        fast = h.tracking.track("1000002", user, target_price=50000)
        h.cache.upsert(slow, 60000, False)
        h.cache.upsert(fast, 60000, False)
        h.fetcher.prices.update({"1000001": 45000, "1000002": 45000})
        h.fetcher.hanging.add("1000001")

        loop = asyncio.get_running_loop()
        started = loop.time()
        report = await h.poller.run_cycle()
        elapsed = loop.time() - started

        assert report is not None
        assert report.failed_product_ids == [slow]
        assert report.changed_product_ids == [fast]
        assert [m.product_id for m in h.sender.sent] == [fast]
        slow_state = h.cache.get(slow)
        assert slow_state is not None
        assert slow_state.current_price == 60000
        assert elapsed < 2.0

    @pytest.mark.asyncio
    async def test_fetch_failure_skips_only_that_product(self) -> None:
        h = Harness()
        user = uuid.uuid4()
        h.tracking.devices = {user: DeviceToken(token="tok")}
        broken = h.tracking.track("1000001", user, target_price=50000)
        healthy = h.tracking.track("1000002", user, target_price=50000)
        h.cache.upsert(broken, 60000, False)
        h.cache.upsert(healthy, 60000, False)
        h.fetcher.failing.add("1000001")
        h.fetcher.prices["1000002"] = 45000

        report = await h.poller.run_cycle()

        assert report is not None
        assert report.failed_product_ids == [broken]
        assert report.changed_product_ids == [healthy]
        broken_state = h.cache.get(broken)
        assert broken_state is not None
        assert broken_state.current_price == 60000
        assert [m.product_id for m in h.sender.sent] == [healthy]

    @pytest.mark.asyncio
    async def test_history_write_failure_leaves_cache_and_skips_notify(self) -> None:
        h = Harness()
        user = uuid.uuid4()
        h.tracking.devices = {user: DeviceToken(token="tok")}
        product_id = h.tracking.track("1000001", user, target_price=50000)
        h.cache.upsert(product_id, 60000, False)
        h.fetcher.prices["1000001"] = 45000
        h.history.fail_writes = True

        report = await h.poller.run_cycle()

        assert report is not None
        assert report.history_write_failed is True
        state = h.cache.get(product_id)
        assert state is not None
        assert state.current_price == 60000
        assert h.sender.batches == []

        # Next cycle detects the same change again once the store recovers
        h.history.fail_writes = False
        report = await h.poller.run_cycle()

        assert report is not None
        assert report.changed_product_ids == [product_id]
        assert len(h.sender.sent) == 1

    @pytest.mark.asyncio
    async def test_tracking_index_failure_propagates(self) -> None:
        h = Harness()

        async def broken() -> list[TrackedProduct]:
            raise RuntimeError("database unavailable")

        h.tracking.list_tracked_products = broken  # type: ignore[method-assign]

        with pytest.raises(RuntimeError):
            await h.poller.run_cycle()
        assert h.poller.is_running_cycle is False


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_fetches_are_bounded(self) -> None:
        h = Harness(fetch_concurrency=3)
        user = uuid.uuid4()
        for i in range(10):
            code = f"20000{i:02d}"
            h.tracking.track(code, user, target_price=1)
            h.fetcher.prices[code] = 1000
        h.fetcher.delay = 0.01

        report = await h.poller.run_cycle()

        assert report is not None
        assert report.fetched_count == 10
        assert h.fetcher.max_in_flight == 3

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_dropped(self) -> None:
        h = Harness()
        h.tracking.track("1000001", uuid.uuid4(), target_price=1)
        h.fetcher.prices["1000001"] = 1000
        h.fetcher.delay = 0.05

        first = asyncio.create_task(h.poller.run_cycle())
        await asyncio.sleep(0.01)
        assert h.poller.is_running_cycle is True

        second = await h.poller.run_cycle()
        first_report = await first

        assert second is None
        assert first_report is not None
        assert h.fetcher.calls == ["1000001"]
