from __future__ import annotations

import structlog

from backend.src.cache.price_cache import PriceCache
from backend.src.contracts.models import FetchedProduct, ProductPriceState

logger = structlog.get_logger(__name__)


class PriceChangeDetector:
    """Compare freshly fetched products against the price cache.

    A product counts as changed when:
    - the cache has no entry for it yet
    - its sold-out flag flipped
    - its price differs from the cached price (exact integer comparison)
    """

    @staticmethod
    def has_changed(fetched: FetchedProduct, prior: ProductPriceState | None) -> bool:
        if prior is None:
            return True
        return fetched.is_sold_out != prior.is_sold_out or fetched.price != prior.current_price

    def detect(self, fetched: list[FetchedProduct], cache: PriceCache) -> list[FetchedProduct]:
        changes: list[FetchedProduct] = []

        for product in fetched:
            prior = cache.get(product.product_id)
            if not self.has_changed(product, prior):
                continue

            logger.info(
                "price_change_detected",
                product_id=str(product.product_id),
                old_price=prior.current_price if prior is not None else None,
                new_price=product.price,
                old_sold_out=prior.is_sold_out if prior is not None else None,
                new_sold_out=product.is_sold_out,
            )
            changes.append(product)

        logger.info(
            "detect_complete",
            fetched_count=len(fetched),
            changes_count=len(changes),
        )

        return changes
