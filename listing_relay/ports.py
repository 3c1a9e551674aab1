"""Ports (interfaces) for the collaborators the core consumes.

The signer and the relay transport live outside the core; these
protocols pin down the minimal surface the ingestor, deletion handler,
RPC layer and gift-wrap messaging rely on.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Iterable, List, Protocol, Set

from .events import Event, Filter


EventHandler = Callable[[Event], Awaitable[None]]


class Signer(Protocol):
    """Key material able to sign events and encrypt for peers."""

    def identity(self) -> str:
        ...

    def sign(self, event: Event) -> Event:
        ...

    def encrypt(self, peer: str, plaintext: str) -> str:
        ...

    def decrypt(self, peer: str, payload: str) -> str:
        ...


class Subscription(Protocol):
    """Handle for an open subscription."""

    id: str

    @property
    def closed(self) -> bool:
        ...

    def close(self) -> None:
        ...


class Transport(Protocol):
    """Broadcast pub/sub network delivering signature-verified events."""

    async def connect(self) -> None:
        ...

    def subscribe(
        self,
        filters: Filter | Iterable[Filter],
        handler: EventHandler,
        *,
        close_on_eose: bool = False,
    ) -> Subscription:
        ...

    async def publish(self, event: Event) -> Set[str]:
        ...

    async def fetch_once(self, filters: Filter | Iterable[Filter]) -> List[Event]:
        ...
