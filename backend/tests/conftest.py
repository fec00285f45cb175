from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from backend.src.contracts.models import (
    Base,
    DeviceRegistration,
    Platform,
    Product,
    TrackingProduct,
    User,
)

TEST_DATABASE_URL = "sqlite+aiosqlite://"


class Seeder:
    """Inserts rows directly, bypassing the repositories under test."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def user(self, email: str | None = None) -> User:
        user = User(id=uuid.uuid4(), email=email or f"{uuid.uuid4().hex[:8]}@example.com")
        await self._add(user)
        return user

    async def product(
        self,
        product_code: str = "1000001",
        product_name: str = "Galaxy Buds",
        image_url: str = "https://cdn.11st.co.kr/buds.jpg",
    ) -> Product:
        product = Product(
            id=uuid.uuid4(),
            product_code=product_code,
            product_name=product_name,
            shop="11번가",
            shop_url=f"http://www.11st.co.kr/products/{product_code}/share",
            image_url=image_url,
        )
        await self._add(product)
        return product

    async def tracking(
        self, user: User, product: Product, target_price: int = 50000
    ) -> TrackingProduct:
        tracking = TrackingProduct(
            id=uuid.uuid4(),
            user_id=user.id,
            product_id=product.id,
            target_price=target_price,
        )
        await self._add(tracking)
        return tracking

    async def device(
        self, user: User, token: str = "fcm-token", platform: Platform = Platform.ANDROID
    ) -> DeviceRegistration:
        device = DeviceRegistration(
            id=uuid.uuid4(),
            user_id=user.id,
            device_token=token,
            platform=platform,
        )
        await self._add(device)
        return device

    async def _add(self, row: object) -> None:
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)
