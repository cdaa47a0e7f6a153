from __future__ import annotations

import enum
import hashlib
import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

SNAPSHOT_VERSION = 1


# ── Enums ──────────────────────────────────────────────────────────────────────


class GearType(str, enum.Enum):
    HAT = "Hat"
    CLOTHING = "Clothing"
    SHOES = "Shoes"


class DeliveryOutcome(str, enum.Enum):
    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class CycleStatus(str, enum.Enum):
    OK = "ok"
    TOO_EARLY = "too_early"
    UNAUTHORIZED = "unauthorized"
    INTERNAL_ERROR = "internal_error"


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Pydantic schemas ──────────────────────────────────────────────────────────


class Item(BaseModel):
    """One piece of gear currently listed in the shop. Identity is ``id``."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: GearType
    brand: str
    abilities: tuple[str, ...] = ()
    rarity: int = Field(default=0, ge=0)
    expiration: datetime
    image_url: str = ""
    price: int | None = None

    @field_validator("expiration")
    @classmethod
    def _expiration_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class Snapshot(BaseModel):
    """The shop inventory at one point in time, sorted by expiration (ascending)."""

    items: list[Item] = Field(default_factory=list)
    raw: dict[str, Any] | None = None
    version: int = SNAPSHOT_VERSION

    @field_validator("items")
    @classmethod
    def _sort_by_expiration(cls, items: list[Item]) -> list[Item]:
        return sorted(items, key=lambda item: item.expiration)

    @classmethod
    def empty(cls) -> Snapshot:
        return cls()

    @property
    def earliest_expiration(self) -> datetime | None:
        return self.items[0].expiration if self.items else None

    def is_current(self, now: datetime) -> bool:
        earliest = self.earliest_expiration
        return earliest is not None and as_utc(now) < earliest


class FilterSchema(BaseModel):
    """A user-owned predicate over item attributes.

    An empty ``types``/``brands``/``abilities`` set is a wildcard for that
    dimension, and an empty ``name`` places no constraint on the item name.
    """

    model_config = ConfigDict(frozen=True)

    name: str = ""
    min_rarity: int = Field(default=0, ge=0)
    types: frozenset[GearType] = frozenset()
    brands: frozenset[str] = frozenset()
    abilities: frozenset[str] = frozenset()

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()

    @field_validator("brands", "abilities")
    @classmethod
    def _strip_values(cls, values: frozenset[str]) -> frozenset[str]:
        # Blank entries would never match anything.
        return frozenset(value.strip() for value in values if value.strip())

    def canonical_key(self) -> str:
        """Stable key over every field, used for filter lookup and uniqueness."""
        material = json.dumps(
            {
                "name": self.name,
                "min_rarity": self.min_rarity,
                "types": sorted(t.value for t in self.types),
                "brands": sorted(self.brands),
                "abilities": sorted(self.abilities),
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()


class FilterOwner(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    user_code: str


class SubscriptionKeys(BaseModel):
    auth: str
    p256dh: str


class SubscriptionSchema(BaseModel):
    """A browser PushSubscription as serialised by ``PushSubscription.toJSON()``."""

    model_config = ConfigDict(populate_by_name=True)

    endpoint: str = Field(min_length=1, max_length=400)
    expiration_time: str | None = Field(default=None, alias="expirationTime")
    keys: SubscriptionKeys

    @field_validator("expiration_time", mode="before")
    @classmethod
    def _expiration_to_text(cls, value: Any) -> str | None:
        return None if value is None else str(value)

    def to_subscription_info(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "keys": {"auth": self.keys.auth, "p256dh": self.keys.p256dh},
        }


class NotificationPayload(BaseModel):
    # Field aliases are the keys read by the service worker.
    model_config = ConfigDict(populate_by_name=True)

    title: str
    body: str
    image: str = ""
    icon_url: str = Field(default="", alias="iconURL")
    login_url: str = Field(alias="loginURL")
    site_url: str = Field(alias="siteURL")
    shop_url: str = Field(alias="shopURL")
    gear_id: str = Field(alias="gearID")
    user_code: str = Field(alias="userCode")
    tag: str
    expiration: datetime

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class UserRead(BaseModel):
    user_code: str
    nickname: str | None
    last_notified_expiration: datetime | None


class FilterRead(BaseModel):
    id: int
    filter: FilterSchema


# ── SQLAlchemy ORM ─────────────────────────────────────────────────────────────

_JSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    nickname: Mapped[str | None] = mapped_column(String(60), nullable=True)
    last_notified_expiration: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    subscriptions: Mapped[list["Subscription"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    filter_links: Mapped[list["UserFilter"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    def to_read(self) -> UserRead:
        return UserRead(
            user_code=self.user_code,
            nickname=self.nickname,
            last_notified_expiration=(
                as_utc(self.last_notified_expiration)
                if self.last_notified_expiration is not None
                else None
            ),
        )


class Filter(Base):
    __tablename__ = "filters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    canonical_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gear_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    min_rarity: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    gear_types: Mapped[list] = mapped_column(_JSON, nullable=False, default=list)
    gear_brands: Mapped[list] = mapped_column(_JSON, nullable=False, default=list)
    gear_abilities: Mapped[list] = mapped_column(_JSON, nullable=False, default=list)

    user_links: Mapped[list["UserFilter"]] = relationship(back_populates="filter")

    __table_args__ = (
        Index("ix_filters_min_rarity", "min_rarity"),
    )

    def to_schema(self) -> FilterSchema:
        return FilterSchema(
            name=self.gear_name,
            min_rarity=self.min_rarity,
            types=frozenset(GearType(t) for t in self.gear_types),
            brands=frozenset(self.gear_brands),
            abilities=frozenset(self.gear_abilities),
        )


class UserFilter(Base):
    __tablename__ = "user_filters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    filter_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("filters.id", ondelete="CASCADE"), nullable=False
    )
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="filter_links")
    filter: Mapped["Filter"] = relationship(back_populates="user_links")

    __table_args__ = (
        UniqueConstraint("user_id", "filter_id", name="uq_user_filter"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    endpoint: Mapped[str] = mapped_column(String(400), nullable=False)
    expiration_time: Mapped[str | None] = mapped_column(String(255), nullable=True)
    auth_key: Mapped[str] = mapped_column(String(255), nullable=False)
    p256dh_key: Mapped[str] = mapped_column(String(255), nullable=False)
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="subscriptions")

    __table_args__ = (
        UniqueConstraint("user_id", "endpoint", name="uq_subscription_user_endpoint"),
        Index("ix_subscriptions_endpoint", "endpoint"),
    )

    def to_schema(self) -> SubscriptionSchema:
        return SubscriptionSchema(
            endpoint=self.endpoint,
            expiration_time=self.expiration_time,
            keys=SubscriptionKeys(auth=self.auth_key, p256dh=self.p256dh_key),
        )


class ServerCache(Base):
    __tablename__ = "server_cache"

    cache_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    cache_data: Mapped[dict] = mapped_column(_JSON, nullable=False)
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
