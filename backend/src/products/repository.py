from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.contracts.models import Product, ProductInfo, ProductPriceRow

logger = structlog.get_logger(__name__)


class ProductRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_by_code(self, product_code: str) -> Product | None:
        stmt = select(Product).where(Product.product_code == product_code)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_or_create(
        self, info: ProductInfo, shop_url: str, observed_at: datetime
    ) -> tuple[Product, bool]:
        """Insert the product together with its first price point.

        Returns ``(product, created)``. When another writer inserted the same
        product code first, the existing row is returned and nothing is written.
        """
        product = Product(
            id=uuid.uuid4(),
            product_code=info.product_code,
            product_name=info.product_name,
            shop=info.shop,
            shop_url=shop_url,
            image_url=info.image_url,
        )
        async with self._session_factory() as session:
            try:
                session.add(product)
                await session.flush()
                session.add(
                    ProductPriceRow(
                        product_id=product.id,
                        time=observed_at,
                        price=info.price,
                        is_sold_out=info.is_sold_out,
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self.get_by_code(info.product_code)
                if existing is None:
                    raise
                logger.info("product_already_created", product_code=info.product_code)
                return existing, False
        return product, True
