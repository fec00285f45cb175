"""Initial schema - users, products, tracking_products, device_registrations, product_prices.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(320), unique=True, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # Products
    op.create_table(
        "products",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("product_code", sa.String(50), unique=True, nullable=False),
        sa.Column("product_name", sa.String(500), nullable=False),
        sa.Column("shop", sa.String(100), nullable=False),
        sa.Column("shop_url", sa.Text(), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # Tracking subscriptions
    op.create_table(
        "tracking_products",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "product_id",
            sa.Uuid(),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("target_price", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("user_id", "product_id", name="uq_tracking_products_user_product"),
    )
    op.create_index(
        "ix_tracking_products_product_id",
        "tracking_products",
        ["product_id"],
    )

    # Device registrations, one current token per user
    op.create_table(
        "device_registrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("device_token", sa.String(500), nullable=False),
        sa.Column(
            "platform",
            sa.Enum("android", "ios", "web", name="platform_enum"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # Price history
    op.create_table(
        "product_prices",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("is_sold_out", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.create_index(
        "ix_product_prices_product_id_time",
        "product_prices",
        ["product_id", "time"],
    )


def downgrade() -> None:
    op.drop_table("product_prices")
    op.drop_table("device_registrations")
    op.drop_table("tracking_products")
    op.drop_table("products")
    op.drop_table("users")
    sa.Enum(name="platform_enum").drop(op.get_bind())  # type: ignore[arg-type]
