"""Materialise listing events from relay subscriptions into local state."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional, Tuple

from .admission import AdmissionPolicy
from .errors import AuthorizationError, ConstraintError, ValidationError
from .events import Event, Filter, LISTING_KINDS
from .listing import decode_listing
from .ports import Subscription, Transport
from .storage import AcceptOutcome, ListingRepository, ReplacePolicy

LOGGER = logging.getLogger(__name__)


class EventIngestor:
    """Turn each delivered listing event into at most one persisted record.

    Every delivered event is handled on its own; a failure while decoding or
    persisting one event is logged and never ends the subscription.
    """

    def __init__(
        self,
        transport: Transport,
        repository: ListingRepository,
        policy: AdmissionPolicy,
        kinds: Iterable[int] = LISTING_KINDS,
        replace_policy: ReplacePolicy = ReplacePolicy.FIRST_SEEN,
    ) -> None:
        self.transport = transport
        self.repository = repository
        self.policy = policy
        self.kinds: Tuple[int, ...] = tuple(kinds)
        self.replace_policy = replace_policy
        self._subscription: Optional[Subscription] = None

    @property
    def running(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    def start(self) -> Subscription:
        if self.running:
            return self._subscription
        self._subscription = self.transport.subscribe(
            Filter(kinds=list(self.kinds)), self.handle, close_on_eose=False
        )
        LOGGER.info("Listening for listing kinds %s", ", ".join(str(k) for k in self.kinds))
        return self._subscription

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    async def handle(self, event: Event) -> Optional[AcceptOutcome]:
        """Process one delivered event; returns the outcome, or ``None`` when dropped."""

        try:
            return await self._process(event)
        except AuthorizationError:
            return None
        except Exception:
            LOGGER.exception("Failed to ingest event %s", event.id)
            return None

    async def _process(self, event: Event) -> Optional[AcceptOutcome]:
        self.policy.authorize(event.pubkey)
        if event.kind not in self.kinds:
            return None
        if await asyncio.to_thread(self.repository.has_event, event.id):
            LOGGER.debug("Event %s already processed", event.id)
            return AcceptOutcome.DUPLICATE

        try:
            decoded = decode_listing(event)
        except ValidationError as exc:
            LOGGER.warning("Dropping malformed listing event %s: %s", event.id, exc)
            return None

        try:
            outcome = await asyncio.to_thread(self.repository.accept, decoded, self.replace_policy)
        except ConstraintError:
            LOGGER.debug("Address %s already claimed, event %s is a duplicate", decoded.address, event.id)
            return AcceptOutcome.DUPLICATE

        if outcome in (AcceptOutcome.ACCEPTED, AcceptOutcome.REPLACED):
            LOGGER.info("Listing %s %s from event %s", decoded.address, outcome.value, event.id)
        else:
            LOGGER.debug("Listing event %s for %s is %s", event.id, decoded.address, outcome.value)
        return outcome


__all__ = ["EventIngestor"]
