"""Decoding of listing events into structured records."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import pygeohash as pgh

from .errors import ValidationError
from .events import Event

AttributeValue = Union[str, List[str]]

_HEX64 = re.compile(r"^[0-9a-f]{64}$")
_DIMENSIONS = re.compile(r"^\d+x\d+$")

# Tags mapped onto a plain string column, keyed by tag name.
TEXT_FIELDS = {
    "title": "title",
    "summary": "summary",
    "street": "street",
    "city": "city",
    "country": "country",
    "resin-type": "resin_type",
    "attribution": "attribution",
}


def content_hash_from_url(url: str) -> Optional[str]:
    """Return the sha256 named by a content-addressed URL, if it is one."""

    path = urlparse(url).path
    segment = path.rsplit("/", 1)[-1].split(".", 1)[0].lower()
    return segment if _HEX64.match(segment) else None


@dataclass(frozen=True)
class ImageAsset:
    """Image reference carried by value on a listing."""

    url: str
    hash: Optional[str] = None
    dimensions: Optional[str] = None
    blur_digest: Optional[str] = None

    @classmethod
    def from_tag(cls, values: Sequence[str]) -> "ImageAsset":
        url = values[0]
        dimensions = values[1] if len(values) > 1 and _DIMENSIONS.match(values[1]) else None
        return cls(url=url, hash=content_hash_from_url(url), dimensions=dimensions)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)


@dataclass
class DecodedListing:
    event_id: str
    kind: int
    pubkey: str
    d_tag: str
    created_at: int
    content: str
    title: Optional[str] = None
    summary: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    frequency: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    resin_type: Optional[str] = None
    attribution: Optional[str] = None
    geohash: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    images: List[ImageAsset] = field(default_factory=list)
    attributes: Dict[str, AttributeValue] = field(default_factory=dict)
    raw_tags: List[List[str]] = field(default_factory=list)

    @property
    def address(self) -> str:
        return f"{self.kind}:{self.pubkey}:{self.d_tag}"


def parse_amount(raw: str) -> Optional[Decimal]:
    try:
        amount = Decimal(raw.strip())
    except (InvalidOperation, AttributeError):
        return None
    if not amount.is_finite():
        return None
    return amount


def parse_geohash(code: Optional[str]) -> Tuple[Optional[float], Optional[float]]:
    """Return the cell centre of *code*, or ``(None, None)`` when it is not a geohash."""

    if not code:
        return None, None
    try:
        latitude, longitude = pgh.decode(code)
    except (KeyError, ValueError):
        return None, None
    return float(latitude), float(longitude)


def _address_key(event: Event) -> str:
    d_tags = [tag for tag in event.tags if tag and tag[0] == "d"]
    if len(d_tags) != 1:
        raise ValidationError(f"event {event.id} must carry exactly one d tag, found {len(d_tags)}")
    value = d_tags[0][1] if len(d_tags[0]) > 1 else ""
    if not value:
        raise ValidationError(f"event {event.id} has an empty d tag")
    return value


def decode_listing(event: Event) -> DecodedListing:
    """Decode *event* into a :class:`DecodedListing`.

    Tags are walked once in order, so when a tag name repeats the later
    occurrence wins for scalar fields and for the attribute map.
    """

    listing = DecodedListing(
        event_id=event.id,
        kind=event.kind,
        pubkey=event.pubkey,
        d_tag=_address_key(event),
        created_at=event.created_at,
        content=event.content,
        raw_tags=[list(tag) for tag in event.tags],
    )

    for tag in event.tags:
        if not tag or not tag[0]:
            continue
        name, values = tag[0], tag[1:]
        if name == "d":
            continue
        if name == "image":
            if values and values[0]:
                listing.images.append(ImageAsset.from_tag(values))
        elif name == "price":
            listing.amount = parse_amount(values[0]) if values else None
            listing.currency = values[1] if len(values) > 1 else None
            listing.frequency = values[2] if len(values) > 2 else None
        elif name == "g":
            listing.geohash = values[0] if values else None
            listing.latitude, listing.longitude = parse_geohash(listing.geohash)
        elif name in TEXT_FIELDS:
            setattr(listing, TEXT_FIELDS[name], values[0] if values else None)
        else:
            listing.attributes[name] = values[0] if len(values) == 1 else list(values)
    return listing


__all__ = [
    "DecodedListing",
    "ImageAsset",
    "content_hash_from_url",
    "decode_listing",
    "parse_amount",
    "parse_geohash",
]
