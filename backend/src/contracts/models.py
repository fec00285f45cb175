from __future__ import annotations

import enum
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Price reported by read paths for a product the cache has not seen yet.
NO_CACHE = -1


# ── Enums ──────────────────────────────────────────────────────────────────────


class Platform(str, enum.Enum):
    ANDROID = "android"
    IOS = "ios"
    WEB = "web"


# ── Engine schemas ────────────────────────────────────────────────────────────


class ProductPriceState(BaseModel):
    """Latest known state of one tracked product, as held by the price cache."""

    model_config = ConfigDict(frozen=True)

    product_id: uuid.UUID
    current_price: int
    is_sold_out: bool
    lowest_price_ever: int


class PricePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: uuid.UUID
    time: datetime
    price: int
    is_sold_out: bool


class PriceAggregate(BaseModel):
    """Latest point and running minimum of one product's price history."""

    model_config = ConfigDict(frozen=True)

    latest_price: int
    latest_is_sold_out: bool
    min_price: int


class TrackedProduct(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: uuid.UUID
    product_code: str


class TrackingSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: uuid.UUID
    product_id: uuid.UUID
    target_price: int


class DeviceToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    platform: Platform = Platform.ANDROID


class ProductInfo(BaseModel):
    """Product data as returned by the 11st open API."""

    product_code: str
    product_name: str
    image_url: str
    price: int = Field(ge=0)
    is_sold_out: bool = False
    shop: str


class FetchedProduct(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: uuid.UUID
    product_code: str
    product_name: str
    image_url: str
    price: int
    is_sold_out: bool


class PushMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: uuid.UUID
    product_id: uuid.UUID
    token: str
    platform: Platform
    title: str
    body: str
    image_url: str


class PushResult(BaseModel):
    token: str
    success: bool
    error: str | None = None


class BatchResult(BaseModel):
    results: list[PushResult] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @classmethod
    def all_failed(cls, messages: list[PushMessage], error: str) -> BatchResult:
        return cls(
            results=[PushResult(token=m.token, success=False, error=error) for m in messages]
        )


class CycleReport(BaseModel):
    tracked_count: int = 0
    fetched_count: int = 0
    failed_product_ids: list[uuid.UUID] = Field(default_factory=list)
    changed_product_ids: list[uuid.UUID] = Field(default_factory=list)
    history_write_failed: bool = False
    notifications_sent: int = 0
    notifications_failed: int = 0


# ── API schemas ───────────────────────────────────────────────────────────────


class PriceData(BaseModel):
    time: int = Field(description="Epoch milliseconds")
    price: int
    is_sold_out: bool


class ProductUrlRequest(BaseModel):
    product_url: str


class ProductAddRequest(BaseModel):
    product_code: str
    target_price: int = Field(ge=0)


class TargetPriceUpdate(BaseModel):
    target_price: int = Field(ge=0)


class TrackingProductRead(BaseModel):
    product_name: str
    product_code: str
    shop: str
    image_url: str
    target_price: int
    price: int
    price_data: list[PriceData]


class RecommendedProductRead(BaseModel):
    product_name: str
    product_code: str
    shop: str
    image_url: str
    price: int
    rank: int
    price_data: list[PriceData]


class ProductDetailsRead(BaseModel):
    product_name: str
    shop: str
    image_url: str
    rank: int
    shop_url: str
    target_price: int
    lowest_price: int
    price: int
    price_data: list[PriceData]


class DeviceRegistrationCreate(BaseModel):
    device_token: str
    platform: Platform = Platform.ANDROID


class DeviceRegistrationRead(BaseModel):
    user_id: uuid.UUID
    device_token: str
    platform: Platform


# ── SQLAlchemy ORM ─────────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    device: Mapped["DeviceRegistration | None"] = relationship(
        back_populates="user", cascade="all, delete-orphan", uselist=False
    )


class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    product_name: Mapped[str] = mapped_column(String(500), nullable=False)
    shop: Mapped[str] = mapped_column(String(100), nullable=False)
    shop_url: Mapped[str] = mapped_column(Text, nullable=False)
    image_url: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    trackings: Mapped[list["TrackingProduct"]] = relationship(back_populates="product")


class TrackingProduct(Base):
    __tablename__ = "tracking_products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    target_price: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    product: Mapped["Product"] = relationship(back_populates="trackings")

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_tracking_products_user_product"),
        Index("ix_tracking_products_product_id", "product_id"),
    )

    def to_schema(self) -> TrackingSubscription:
        return TrackingSubscription(
            user_id=self.user_id,
            product_id=self.product_id,
            target_price=self.target_price,
        )


class DeviceRegistration(Base):
    __tablename__ = "device_registrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    device_token: Mapped[str] = mapped_column(String(500), nullable=False)
    platform: Mapped[Platform] = mapped_column(
        Enum(Platform, name="platform_enum", values_callable=lambda e: [p.value for p in e]),
        nullable=False,
        default=Platform.ANDROID,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="device")

    def to_schema(self) -> DeviceToken:
        return DeviceToken(token=self.device_token, platform=self.platform)


class ProductPriceRow(Base):
    __tablename__ = "product_prices"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    is_sold_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_product_prices_product_id_time", "product_id", "time"),
    )
