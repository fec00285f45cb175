from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.contracts.models import PriceAggregate, PricePoint, ProductPriceRow

logger = structlog.get_logger(__name__)


class PriceHistoryWriteError(RuntimeError):
    """Raised when price points could not be persisted."""


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PriceHistoryRepository:
    """Append-only time series of product prices."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, point: PricePoint) -> None:
        await self.append_many([point])

    async def append_many(self, points: list[PricePoint]) -> None:
        """Persist all points in one transaction, or none of them."""
        if not points:
            return

        rows = [
            ProductPriceRow(
                product_id=p.product_id,
                time=_as_utc(p.time),
                price=p.price,
                is_sold_out=p.is_sold_out,
            )
            for p in points
        ]
        try:
            async with self._session_factory() as session:
                session.add_all(rows)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PriceHistoryWriteError(
                f"Failed to append {len(points)} price points"
            ) from exc

        logger.debug("price_points_appended", count=len(points))

    async def aggregate_latest_and_min(self) -> dict[uuid.UUID, PriceAggregate]:
        """Latest point and minimum price for every product, in a single query."""
        ranked = select(
            ProductPriceRow.product_id,
            ProductPriceRow.price,
            ProductPriceRow.is_sold_out,
            func.row_number()
            .over(
                partition_by=ProductPriceRow.product_id,
                order_by=(ProductPriceRow.time.desc(), ProductPriceRow.id.desc()),
            )
            .label("position"),
            func.min(ProductPriceRow.price)
            .over(partition_by=ProductPriceRow.product_id)
            .label("min_price"),
        ).subquery()

        stmt = select(
            ranked.c.product_id,
            ranked.c.price,
            ranked.c.is_sold_out,
            ranked.c.min_price,
        ).where(ranked.c.position == 1)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        return {
            row.product_id: PriceAggregate(
                latest_price=row.price,
                latest_is_sold_out=row.is_sold_out,
                min_price=row.min_price,
            )
            for row in rows
        }

    async def query_range(
        self, product_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[PricePoint]:
        stmt = (
            select(ProductPriceRow)
            .where(
                ProductPriceRow.product_id == product_id,
                ProductPriceRow.time >= _as_utc(start),
                ProductPriceRow.time <= _as_utc(end),
            )
            .order_by(ProductPriceRow.time.asc(), ProductPriceRow.id.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        return [
            PricePoint(
                product_id=row.product_id,
                time=_as_utc(row.time),
                price=row.price,
                is_sold_out=row.is_sold_out,
            )
            for row in rows
        ]
