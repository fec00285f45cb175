from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from backend.src.cache.price_cache import PriceCache
from backend.src.contracts.interfaces import IPriceFetcher, IPriceHistoryStore
from backend.src.contracts.models import (
    NO_CACHE,
    PriceData,
    PricePoint,
    Product,
    ProductDetailsRead,
    ProductInfo,
    RecommendedProductRead,
    TrackingProductRead,
)
from backend.src.fetcher.fetcher import build_share_url, parse_product_code
from backend.src.products.repository import ProductRepository
from backend.src.tracking.repository import TrackingRepository

logger = structlog.get_logger(__name__)

THIRTY_DAYS = 30
NINETY_DAYS = 90


class ProductNotFoundError(LookupError):
    pass


class ProductAlreadyTrackedError(ValueError):
    pass


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _to_price_data(point: PricePoint) -> PriceData:
    return PriceData(
        time=int(point.time.timestamp() * 1000),
        price=point.price,
        is_sold_out=point.is_sold_out,
    )


class ProductService:
    """Read and tracking operations behind the product endpoints.

    Current and lowest prices always come from the injected price cache.
    """

    def __init__(
        self,
        products: ProductRepository,
        tracking: TrackingRepository,
        history: IPriceHistoryStore,
        cache: PriceCache,
        fetcher: IPriceFetcher,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._products = products
        self._tracking = tracking
        self._history = history
        self._cache = cache
        self._fetcher = fetcher
        self._clock = clock
        self._first_add_lock = asyncio.Lock()

    async def verify_url(self, product_url: str) -> ProductInfo:
        return await self._fetcher.fetch(parse_product_code(product_url))

    async def add_product(self, user_id: uuid.UUID, product_code: str, target_price: int) -> None:
        # Serialises first adds within this process; the repository covers other writers.
        async with self._first_add_lock:
            product = await self._products.get_by_code(product_code)
            product_id = product.id if product is not None else await self._first_add(product_code)

        if await self._tracking.get(user_id, product_id) is not None:
            raise ProductAlreadyTrackedError(f"Product {product_code} is already tracked")

        await self._tracking.create(user_id, product_id, target_price)
        logger.info(
            "tracking_added",
            user_id=str(user_id),
            product_id=str(product_id),
            target_price=target_price,
        )

    async def _first_add(self, product_code: str) -> uuid.UUID:
        info = await self._fetcher.fetch(product_code)
        product, created = await self._products.get_or_create(
            info, shop_url=build_share_url(product_code), observed_at=self._clock()
        )
        if created:
            self._cache.upsert(product.id, info.price, info.is_sold_out)
            logger.info("product_created", product_id=str(product.id), product_code=product_code)
        return product.id

    async def get_price_data(self, product_id: uuid.UUID, days: int) -> list[PriceData]:
        end = self._clock()
        start = end - timedelta(days=days)
        points = await self._history.query_range(product_id, start, end)
        return [_to_price_data(p) for p in points]

    def _current_price(self, product_id: uuid.UUID) -> int:
        state = self._cache.get(product_id)
        return state.current_price if state is not None else NO_CACHE

    async def get_tracking_list(self, user_id: uuid.UUID) -> list[TrackingProductRead]:
        trackings = await self._tracking.list_for_user(user_id)
        price_data = [await self.get_price_data(t.product_id, THIRTY_DAYS) for t in trackings]
        return [
            TrackingProductRead(
                product_name=t.product.product_name,
                product_code=t.product.product_code,
                shop=t.product.shop,
                image_url=t.product.image_url,
                target_price=t.target_price,
                price=self._current_price(t.product_id),
                price_data=data,
            )
            for t, data in zip(trackings, price_data)
        ]

    async def get_recommend_list(self) -> list[RecommendedProductRead]:
        ranking = await self._tracking.ranking()
        price_data = [await self.get_price_data(p.id, THIRTY_DAYS) for p in ranking]
        return [
            RecommendedProductRead(
                product_name=p.product_name,
                product_code=p.product_code,
                shop=p.shop,
                image_url=p.image_url,
                price=self._current_price(p.id),
                rank=index + 1,
                price_data=data,
            )
            for index, (p, data) in enumerate(zip(ranking, price_data))
        ]

    async def get_product_details(
        self, user_id: uuid.UUID, product_code: str
    ) -> ProductDetailsRead:
        product = await self._get_product(product_code)
        tracking = await self._tracking.get(user_id, product.id)

        ranking = await self._tracking.ranking()
        rank = next((i + 1 for i, p in enumerate(ranking) if p.id == product.id), -1)

        state = self._cache.get(product.id)
        return ProductDetailsRead(
            product_name=product.product_name,
            shop=product.shop,
            image_url=product.image_url,
            rank=rank,
            shop_url=product.shop_url,
            target_price=tracking.target_price if tracking is not None else -1,
            lowest_price=state.lowest_price_ever if state is not None else NO_CACHE,
            price=state.current_price if state is not None else NO_CACHE,
            price_data=await self.get_price_data(product.id, NINETY_DAYS),
        )

    async def update_target_price(
        self, user_id: uuid.UUID, product_code: str, target_price: int
    ) -> None:
        product = await self._get_product(product_code)
        if not await self._tracking.update_target_price(user_id, product.id, target_price):
            raise ProductNotFoundError(f"Product {product_code} is not tracked")

    async def remove_tracking(self, user_id: uuid.UUID, product_code: str) -> None:
        product = await self._get_product(product_code)
        if not await self._tracking.delete(user_id, product.id):
            raise ProductNotFoundError(f"Product {product_code} is not tracked")
        logger.info("tracking_removed", user_id=str(user_id), product_id=str(product.id))

    async def _get_product(self, product_code: str) -> Product:
        product = await self._products.get_by_code(product_code)
        if product is None:
            raise ProductNotFoundError(f"Product {product_code} not found")
        return product
