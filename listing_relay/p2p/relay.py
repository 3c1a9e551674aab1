"""In-process relay transport.

``MemoryRelay`` behaves like a small pool of relays living in the same
event loop: every endpoint keeps its own event store, every endpoint that
accepts an event hands its own copy to each matching subscription, and
every delivery runs as an independent task.  It backs the test-suite and
lets the service be embedded without a network.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set

from ..errors import TransportError
from ..events import Event, Filter, verify_event
from ..ports import EventHandler

LOGGER = logging.getLogger(__name__)

DEFAULT_URLS = ("memory://relay-1",)


def _as_filters(filters: Filter | Iterable[Filter]) -> List[Filter]:
    if isinstance(filters, Filter):
        return [filters]
    return list(filters)


def is_ephemeral(kind: int) -> bool:
    """Ephemeral kinds are forwarded to live subscribers but never stored."""

    return 20000 <= kind < 30000


class RelaySubscription:
    """Live subscription on a :class:`MemoryRelay`."""

    def __init__(self, relay: "MemoryRelay", sub_id: str, filters: List[Filter], handler: EventHandler):
        self.id = sub_id
        self.filters = filters
        self.handler = handler
        self.delivered = 0
        self._relay = relay
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, event: Event) -> bool:
        return any(f.matches(event) for f in self.filters)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._relay._unsubscribe(self)


class MemoryRelay:
    """Multi-endpoint in-memory implementation of the transport port."""

    def __init__(self, urls: Sequence[str] = DEFAULT_URLS, *, verify: bool = True):
        if not urls:
            raise ValueError("at least one relay url is required")
        self.urls = tuple(urls)
        self.verify = verify
        self.published: List[Event] = []
        self.connected = False
        self._stores: Dict[str, Dict[str, Event]] = {url: {} for url in self.urls}
        self._seen: Dict[str, Set[str]] = {url: set() for url in self.urls}
        self._subscriptions: Dict[str, RelaySubscription] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        self.connected = True
        for url in self.urls:
            LOGGER.info("Connected to %s", url)

    async def close(self) -> None:
        for sub in list(self._subscriptions.values()):
            sub.close()
        self.connected = False

    @property
    def open_subscriptions(self) -> List[RelaySubscription]:
        return list(self._subscriptions.values())

    def subscribe(
        self,
        filters: Filter | Iterable[Filter],
        handler: EventHandler,
        *,
        close_on_eose: bool = False,
    ) -> RelaySubscription:
        """Open a subscription; stored matches replay first, then live events follow."""

        if not self.connected:
            raise TransportError("relay pool is not connected")
        sub = RelaySubscription(self, f"sub-{next(self._ids)}", _as_filters(filters), handler)
        self._subscriptions[sub.id] = sub

        for url in self.urls:
            stored = sorted(self._stores[url].values(), key=lambda e: e.created_at)
            for event in stored:
                if sub.matches(event):
                    self._dispatch(sub, event, url)

        if close_on_eose:
            sub.close()
        return sub

    def _unsubscribe(self, sub: RelaySubscription) -> None:
        self._subscriptions.pop(sub.id, None)

    async def publish(self, event: Event) -> Set[str]:
        """Publish a signed event; returns the endpoints that accepted it."""

        if not self.connected:
            raise TransportError("relay pool is not connected")
        if self.verify and not verify_event(event):
            raise TransportError(f"event {event.id or '<unsigned>'} failed signature verification")
        self.published.append(event)
        accepted: Set[str] = set()
        for url in self.urls:
            self._accept(event, url)
            accepted.add(url)
        return accepted

    def deliver(self, event: Event, url: Optional[str] = None) -> None:
        """Inject *event* as if it arrived from the network on *url* (default: all)."""

        for target in [url] if url else self.urls:
            if target not in self._stores:
                raise TransportError(f"unknown relay {target}")
            self._accept(event, target)

    async def fetch_once(self, filters: Filter | Iterable[Filter]) -> List[Event]:
        """Return a de-duplicated snapshot of stored events matching *filters*."""

        if not self.connected:
            raise TransportError("relay pool is not connected")
        wanted = _as_filters(filters)
        found: Dict[str, Event] = {}
        for store in self._stores.values():
            for event in store.values():
                if any(f.matches(event) for f in wanted):
                    found.setdefault(event.id, event)
        events = sorted(found.values(), key=lambda e: e.created_at, reverse=True)
        limits = [f.limit for f in wanted if f.limit is not None]
        if limits:
            events = events[: max(limits)]
        return events

    async def drain(self) -> None:
        """Wait until every in-flight handler task, including ones they spawn, is done."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _accept(self, event: Event, url: str) -> None:
        seen = self._seen[url]
        if event.id in seen:
            return
        seen.add(event.id)
        if not is_ephemeral(event.kind):
            self._stores[url][event.id] = event
        for sub in list(self._subscriptions.values()):
            if sub.matches(event):
                self._dispatch(sub, event, url)

    def _dispatch(self, sub: RelaySubscription, event: Event, url: str) -> None:
        sub.delivered += 1
        task = asyncio.get_running_loop().create_task(self._run(sub, event, url))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, sub: RelaySubscription, event: Event, url: str) -> None:
        try:
            await sub.handler(event)
        except Exception:
            LOGGER.exception("Handler for %s failed on event %s from %s", sub.id, event.id, url)


__all__ = ["DEFAULT_URLS", "MemoryRelay", "RelaySubscription", "is_ephemeral"]
