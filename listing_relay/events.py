"""Event model, canonical serialisation and subscription filters."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from . import crypto_utils
from .errors import ValidationError


KIND_DELETION = 5
KIND_SEAL = 13
KIND_PRIVATE_DIRECT_MESSAGE = 14
KIND_GIFT_WRAP = 1059
KIND_RPC_REQUEST = 24194
KIND_RPC_RESPONSE = 24195
KIND_CLASSIFIED_LISTING = 30402
KIND_DRAFT_LISTING = 30403

LISTING_KINDS = (KIND_CLASSIFIED_LISTING, KIND_DRAFT_LISTING)


def now() -> int:
    return int(time.time())


def serialize_event(pubkey: str, created_at: int, kind: int, tags: Sequence[Sequence[str]], content: str) -> bytes:
    """Return the canonical byte form hashed into an event id."""

    payload = [0, pubkey, created_at, kind, [list(tag) for tag in tags], content]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_event_id(pubkey: str, created_at: int, kind: int, tags: Sequence[Sequence[str]], content: str) -> str:
    return crypto_utils.hash_bytes(serialize_event(pubkey, created_at, kind, tags, content)).hex()


@dataclass(frozen=True)
class Event:
    """A protocol event.  Unsigned events carry empty ``id``/``sig``."""

    kind: int
    content: str = ""
    tags: List[List[str]] = field(default_factory=list)
    created_at: int = field(default_factory=now)
    pubkey: str = ""
    id: str = ""
    sig: str = ""

    def compute_id(self) -> str:
        return compute_event_id(self.pubkey, self.created_at, self.kind, self.tags, self.content)

    def with_id(self) -> "Event":
        """Return a copy whose ``id`` is computed from the current fields."""

        return replace(self, id=self.compute_id())

    def tag_values(self, name: str) -> List[str]:
        """Return the first value of every tag called *name*, in order."""

        return [tag[1] for tag in self.tags if len(tag) > 1 and tag[0] == name]

    def tag_value(self, name: str) -> Optional[str]:
        values = self.tag_values(name)
        return values[0] if values else None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "content": self.content,
            "tags": [list(tag) for tag in self.tags],
            "created_at": self.created_at,
            "pubkey": self.pubkey,
            "id": self.id,
        }
        if self.sig:
            payload["sig"] = self.sig
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: object) -> "Event":
        """Build an event from its wire mapping, validating field types."""

        if not isinstance(data, dict):
            raise ValidationError("event must be a JSON object")
        kind = data.get("kind")
        created_at = data.get("created_at")
        if not isinstance(kind, int) or isinstance(kind, bool):
            raise ValidationError("event kind must be an integer")
        if not isinstance(created_at, int) or isinstance(created_at, bool):
            raise ValidationError("event created_at must be an integer")
        content = data.get("content", "")
        if not isinstance(content, str):
            raise ValidationError("event content must be a string")
        tags = data.get("tags", [])
        if not isinstance(tags, list) or not all(
            isinstance(tag, list) and all(isinstance(item, str) for item in tag) for tag in tags
        ):
            raise ValidationError("event tags must be a list of string lists")
        pubkey = data.get("pubkey", "")
        event_id = data.get("id", "")
        sig = data.get("sig", "")
        if not all(isinstance(value, str) for value in (pubkey, event_id, sig)):
            raise ValidationError("event pubkey, id and sig must be strings")
        return cls(
            kind=kind,
            content=content,
            tags=[list(tag) for tag in tags],
            created_at=created_at,
            pubkey=pubkey,
            id=event_id,
            sig=sig,
        )

    @classmethod
    def from_json(cls, raw: str) -> "Event":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ValidationError("event is not valid JSON") from exc
        return cls.from_dict(data)


def verify_event(event: Event) -> bool:
    """Return ``True`` when the event id and signature match its content."""

    if not event.id or not event.sig or event.compute_id() != event.id:
        return False
    try:
        return crypto_utils.schnorr_verify(
            bytes.fromhex(event.id), bytes.fromhex(event.pubkey), bytes.fromhex(event.sig)
        )
    except ValueError:
        return False


@dataclass(frozen=True)
class Filter:
    """Subscription filter; every populated field must match."""

    ids: Optional[List[str]] = None
    kinds: Optional[List[int]] = None
    authors: Optional[List[str]] = None
    tags: Dict[str, List[str]] = field(default_factory=dict)
    since: Optional[int] = None
    until: Optional[int] = None
    limit: Optional[int] = None

    def matches(self, event: Event) -> bool:
        if self.ids is not None and event.id not in self.ids:
            return False
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        for name, values in self.tags.items():
            if not set(event.tag_values(name)) & set(values):
                return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for key in ("ids", "kinds", "authors", "since", "until", "limit"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        for name, values in self.tags.items():
            payload[f"#{name}"] = list(values)
        return payload


__all__ = [
    "Event",
    "Filter",
    "KIND_DELETION",
    "KIND_DRAFT_LISTING",
    "KIND_CLASSIFIED_LISTING",
    "KIND_GIFT_WRAP",
    "KIND_PRIVATE_DIRECT_MESSAGE",
    "KIND_RPC_REQUEST",
    "KIND_RPC_RESPONSE",
    "KIND_SEAL",
    "LISTING_KINDS",
    "compute_event_id",
    "serialize_event",
    "verify_event",
]
