"""Relational model for materialised listings, their history and the outbox."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

TOPIC_UPSERTED = "listing.upserted"
TOPIC_DELETED = "listing.deleted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_unix(timestamp: int) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def to_unix(value: datetime) -> int:
    """Return unix seconds for *value*; naive datetimes are read as UTC."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


class Listing(Base):
    """Latest accepted state of one addressable listing."""

    __tablename__ = "listings"
    __table_args__ = (UniqueConstraint("kind", "pubkey", "d_tag", name="uq_listings_address"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(64), nullable=False, unique=True)
    kind = Column(Integer, nullable=False)
    pubkey = Column(String(64), nullable=False, index=True)
    d_tag = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    content = Column(Text, nullable=False, default="")
    title = Column(Text)
    summary = Column(Text)
    amount = Column(Numeric(20, 8))
    currency = Column(String(10))
    frequency = Column(String(100))
    street = Column(String(255))
    city = Column(String(100))
    country = Column(String(100))
    resin_type = Column(String(100))
    attribution = Column(String(200))
    geohash = Column(String(32))
    latitude = Column(Float)
    longitude = Column(Float)
    attributes = Column(JSON, nullable=False, default=dict)
    raw_tags = Column(JSON, nullable=False, default=list)

    images = relationship(
        "ListingImage",
        back_populates="listing",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ListingImage.position",
        lazy="selectin",
    )
    history = relationship(
        "EventHistory",
        back_populates="listing",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="EventHistory.id",
    )

    @property
    def address(self) -> str:
        return f"{self.kind}:{self.pubkey}:{self.d_tag}"

    def to_dict(self) -> Dict[str, Any]:
        """Plain JSON-safe representation used by the outbox and RPC results."""

        return {
            "id": self.id,
            "event_id": self.event_id,
            "kind": self.kind,
            "pubkey": self.pubkey,
            "d": self.d_tag,
            "address": self.address,
            "created_at": to_unix(self.created_at),
            "content": self.content,
            "title": self.title,
            "summary": self.summary,
            "price": {
                "amount": None if self.amount is None else format(self.amount.normalize(), "f"),
                "currency": self.currency,
                "frequency": self.frequency,
            },
            "street": self.street,
            "city": self.city,
            "country": self.country,
            "resin_type": self.resin_type,
            "attribution": self.attribution,
            "geohash": self.geohash,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "images": [image.to_dict() for image in self.images],
            "attributes": dict(self.attributes or {}),
        }


class ListingImage(Base):
    """Ownership row binding an image value to a listing at a position."""

    __tablename__ = "listing_images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    listing_id = Column(String(36), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    url = Column(Text, nullable=False)
    hash = Column(String(64))
    dimensions = Column(String(32))
    blur_digest = Column(String(64))

    listing = relationship("Listing", back_populates="images")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "hash": self.hash,
            "dimensions": self.dimensions,
            "blur_digest": self.blur_digest,
        }


class EventHistory(Base):
    """Append-only log of every event id accepted for a listing."""

    __tablename__ = "event_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, index=True)
    listing_id = Column(String(36), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True)
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    listing = relationship("Listing", back_populates="history")


class OutboxEntry(Base):
    """Committed domain event waiting for downstream indexers."""

    __tablename__ = "outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic = Column(String(32), nullable=False)
    listing_id = Column(String(36), nullable=False)
    event_id = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "listing_id": self.listing_id,
            "event_id": self.event_id,
            "payload": self.payload,
            "created_at": to_unix(self.created_at),
        }


__all__ = [
    "Base",
    "EventHistory",
    "Listing",
    "ListingImage",
    "OutboxEntry",
    "TOPIC_DELETED",
    "TOPIC_UPSERTED",
    "from_unix",
    "to_unix",
    "utcnow",
]
