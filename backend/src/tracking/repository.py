from __future__ import annotations

import uuid

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from backend.src.contracts.models import (
    DeviceRegistration,
    DeviceToken,
    Product,
    TrackedProduct,
    TrackingProduct,
    TrackingSubscription,
)


class TrackingRepository:
    """Who tracks which product at what target price, and how to reach them."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_tracked_products(self) -> list[TrackedProduct]:
        stmt = (
            select(Product.id, Product.product_code)
            .where(Product.id.in_(select(TrackingProduct.product_id)))
            .order_by(Product.product_code)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                TrackedProduct(product_id=row.id, product_code=row.product_code)
                for row in result.all()
            ]

    async def find_subscriptions_for_products(
        self, product_ids: list[uuid.UUID]
    ) -> list[TrackingSubscription]:
        if not product_ids:
            return []
        stmt = select(TrackingProduct).where(TrackingProduct.product_id.in_(product_ids))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [row.to_schema() for row in result.scalars().all()]

    async def device_token_for(self, user_id: uuid.UUID) -> DeviceToken | None:
        tokens = await self.device_tokens_for([user_id])
        return tokens.get(user_id)

    async def device_tokens_for(
        self, user_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, DeviceToken]:
        if not user_ids:
            return {}
        stmt = select(DeviceRegistration).where(DeviceRegistration.user_id.in_(user_ids))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return {row.user_id: row.to_schema() for row in result.scalars().all()}

    async def get(self, user_id: uuid.UUID, product_id: uuid.UUID) -> TrackingProduct | None:
        stmt = select(TrackingProduct).where(
            TrackingProduct.user_id == user_id,
            TrackingProduct.product_id == product_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_for_user(self, user_id: uuid.UUID) -> list[TrackingProduct]:
        stmt = (
            select(TrackingProduct)
            .options(selectinload(TrackingProduct.product))
            .where(TrackingProduct.user_id == user_id)
            .order_by(TrackingProduct.created_at)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def create(
        self, user_id: uuid.UUID, product_id: uuid.UUID, target_price: int
    ) -> TrackingProduct:
        tracking = TrackingProduct(
            id=uuid.uuid4(),
            user_id=user_id,
            product_id=product_id,
            target_price=target_price,
        )
        async with self._session_factory() as session:
            session.add(tracking)
            await session.commit()
        return tracking

    async def update_target_price(
        self, user_id: uuid.UUID, product_id: uuid.UUID, target_price: int
    ) -> bool:
        async with self._session_factory() as session:
            stmt = select(TrackingProduct).where(
                TrackingProduct.user_id == user_id,
                TrackingProduct.product_id == product_id,
            )
            tracking = (await session.execute(stmt)).scalar_one_or_none()
            if tracking is None:
                return False
            tracking.target_price = target_price
            await session.commit()
        return True

    async def delete(self, user_id: uuid.UUID, product_id: uuid.UUID) -> bool:
        stmt = delete(TrackingProduct).where(
            TrackingProduct.user_id == user_id,
            TrackingProduct.product_id == product_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount > 0

    async def ranking(self) -> list[Product]:
        """Tracked products ordered by number of subscribers, most tracked first."""
        tracker_count = func.count(TrackingProduct.id).label("tracker_count")
        stmt = (
            select(Product, tracker_count)
            .join(TrackingProduct, TrackingProduct.product_id == Product.id)
            .group_by(Product.id)
            .order_by(tracker_count.desc(), Product.created_at.asc(), Product.product_code)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [row[0] for row in result.all()]
