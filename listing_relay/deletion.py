"""Tombstone handling: retract listings named by authorised deletion events."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .admission import AdmissionPolicy
from .errors import AuthorizationError
from .events import Event, Filter, KIND_DELETION, LISTING_KINDS
from .ports import Signer, Subscription, Transport
from .storage import ListingRepository

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AddressRef:
    kind: int
    pubkey: str
    d_tag: str

    @classmethod
    def parse(cls, value: str) -> Optional["AddressRef"]:
        """Parse ``kind:pubkey:d``; the ``d`` part may itself contain colons."""

        parts = value.split(":", 2)
        if len(parts) != 3 or not parts[1] or not parts[2]:
            return None
        try:
            kind = int(parts[0])
        except ValueError:
            return None
        return cls(kind, parts[1].lower(), parts[2])

    def __str__(self) -> str:
        return f"{self.kind}:{self.pubkey}:{self.d_tag}"


def address_of(event: Event) -> str:
    d_tag = event.tag_value("d") or ""
    return f"{event.kind}:{event.pubkey}:{d_tag}"


def build_tombstone(target: Event, reason: str = "") -> Event:
    """Return an unsigned deletion event retracting *target*."""

    tags = [["e", target.id]]
    if target.tag_value("d") is not None:
        tags.append(["a", address_of(target)])
    return Event(kind=KIND_DELETION, content=reason, tags=tags)


class DeletionHandler:
    """Apply tombstones from trusted authors to their own listings."""

    def __init__(
        self,
        transport: Transport,
        repository: ListingRepository,
        policy: AdmissionPolicy,
        kinds: Iterable[int] = LISTING_KINDS,
    ) -> None:
        self.transport = transport
        self.repository = repository
        self.policy = policy
        self.kinds: Tuple[int, ...] = tuple(kinds)
        self._subscription: Optional[Subscription] = None

    def start(self) -> Subscription:
        if self._subscription is not None and not self._subscription.closed:
            return self._subscription
        self._subscription = self.transport.subscribe(
            Filter(kinds=[KIND_DELETION], authors=list(self.policy.keys)),
            self.handle,
            close_on_eose=False,
        )
        LOGGER.info("Listening for tombstones from %d trusted authors", len(self.policy))
        return self._subscription

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    async def handle(self, event: Event) -> List[str]:
        """Apply one tombstone; returns the ids of the listings it removed."""

        try:
            return await self._process(event)
        except AuthorizationError:
            return []
        except Exception:
            LOGGER.exception("Failed to apply tombstone %s", event.id)
            return []

    async def _process(self, event: Event) -> List[str]:
        if event.kind != KIND_DELETION:
            return []
        self.policy.authorize(event.pubkey)
        author = event.pubkey.lower()
        removed: List[str] = []

        for value in event.tag_values("a"):
            ref = AddressRef.parse(value)
            if ref is None:
                LOGGER.warning("Tombstone %s has malformed address %r", event.id, value)
                continue
            if ref.kind not in self.kinds:
                continue
            if ref.pubkey != author or not self.policy.is_trusted(ref.pubkey):
                continue
            listing_id = await asyncio.to_thread(
                self.repository.delete_by_address, ref.kind, ref.pubkey, ref.d_tag, event.id
            )
            if listing_id is not None:
                LOGGER.info("Deleted listing %s (%s) on tombstone %s", listing_id, ref, event.id)
                removed.append(listing_id)

        for target_id in event.tag_values("e"):
            listing_id = await asyncio.to_thread(
                self.repository.delete_by_event_id, target_id, author, event.id, self.kinds
            )
            if listing_id is not None:
                LOGGER.info("Deleted listing %s for event %s on tombstone %s", listing_id, target_id, event.id)
                removed.append(listing_id)

        if not removed:
            LOGGER.debug("Tombstone %s matched no listing", event.id)
        return removed


async def retract_own_listings(
    transport: Transport,
    signer: Signer,
    kinds: Iterable[int] = LISTING_KINDS,
    reason: str = "",
) -> List[str]:
    """Publish a tombstone for every listing the signer still has on the relays."""

    own = await transport.fetch_once(Filter(kinds=list(kinds), authors=[signer.identity()]))
    published: List[str] = []
    for target in own:
        tombstone = signer.sign(build_tombstone(target, reason))
        await transport.publish(tombstone)
        LOGGER.info("Published tombstone %s for %s", tombstone.id, address_of(target))
        published.append(tombstone.id)
    return published


__all__ = ["AddressRef", "DeletionHandler", "address_of", "build_tombstone", "retract_own_listings"]
