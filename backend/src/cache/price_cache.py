from __future__ import annotations

import uuid

import structlog

from backend.src.contracts.interfaces import IPriceHistoryStore
from backend.src.contracts.models import ProductPriceState

logger = structlog.get_logger(__name__)


class PriceCache:
    """In-memory view of the latest price, sold-out flag and lowest price per product.

    Entries are immutable and replaced whole on every update, so readers on the
    event loop always observe a complete entry, either before or after an upsert.
    """

    def __init__(self, entries: dict[uuid.UUID, ProductPriceState] | None = None) -> None:
        self._entries: dict[uuid.UUID, ProductPriceState] = dict(entries or {})

    @classmethod
    async def from_history(cls, store: IPriceHistoryStore) -> PriceCache:
        """Build the cache from the history store's latest-and-minimum aggregate.

        Errors from the store propagate: polling must not start without a baseline.
        """
        aggregates = await store.aggregate_latest_and_min()
        entries = {
            product_id: ProductPriceState(
                product_id=product_id,
                current_price=agg.latest_price,
                is_sold_out=agg.latest_is_sold_out,
                lowest_price_ever=agg.min_price,
            )
            for product_id, agg in aggregates.items()
        }
        logger.info("price_cache_bootstrapped", product_count=len(entries))
        return cls(entries)

    def get(self, product_id: uuid.UUID) -> ProductPriceState | None:
        return self._entries.get(product_id)

    def upsert(self, product_id: uuid.UUID, price: int, is_sold_out: bool) -> ProductPriceState:
        previous = self._entries.get(product_id)
        lowest = price if previous is None else min(previous.lowest_price_ever, price)
        state = ProductPriceState(
            product_id=product_id,
            current_price=price,
            is_sold_out=is_sold_out,
            lowest_price_ever=lowest,
        )
        self._entries[product_id] = state
        return state

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
