"""Initial schema - users, filters, user_filters, subscriptions, server_cache.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_JSON = sa.JSON().with_variant(JSONB(), "postgresql")


def _last_modified() -> sa.Column:
    return sa.Column(
        "last_modified",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_code", sa.String(255), unique=True, nullable=False),
        sa.Column("nickname", sa.String(60), nullable=True),
        sa.Column("last_notified_expiration", sa.DateTime(timezone=True), nullable=True),
        _last_modified(),
    )

    # Filters, shared between users with identical criteria
    op.create_table(
        "filters",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("canonical_key", sa.String(64), unique=True, nullable=False),
        sa.Column("gear_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("min_rarity", sa.SmallInteger(), nullable=False, server_default="0"),
        sa.Column("gear_types", _JSON, nullable=False),
        sa.Column("gear_brands", _JSON, nullable=False),
        sa.Column("gear_abilities", _JSON, nullable=False),
    )
    op.create_index("ix_filters_min_rarity", "filters", ["min_rarity"])

    op.create_table(
        "user_filters",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "filter_id",
            sa.Integer(),
            sa.ForeignKey("filters.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _last_modified(),
        sa.UniqueConstraint("user_id", "filter_id", name="uq_user_filter"),
    )

    # Push subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("endpoint", sa.String(400), nullable=False),
        sa.Column("expiration_time", sa.String(255), nullable=True),
        sa.Column("auth_key", sa.String(255), nullable=False),
        sa.Column("p256dh_key", sa.String(255), nullable=False),
        _last_modified(),
        sa.UniqueConstraint("user_id", "endpoint", name="uq_subscription_user_endpoint"),
    )
    op.create_index("ix_subscriptions_endpoint", "subscriptions", ["endpoint"])

    # Committed inventory snapshot
    op.create_table(
        "server_cache",
        sa.Column("cache_key", sa.String(255), primary_key=True),
        sa.Column("cache_data", _JSON, nullable=False),
        _last_modified(),
    )


def downgrade() -> None:
    op.drop_table("server_cache")
    op.drop_index("ix_subscriptions_endpoint", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("user_filters")
    op.drop_index("ix_filters_min_rarity", table_name="filters")
    op.drop_table("filters")
    op.drop_table("users")
