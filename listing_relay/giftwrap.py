"""Three-layer direct messages: rumor, seal and gift wrap.

The rumor is the unsigned plaintext message.  The seal carries the
encrypted rumor and is signed by the real sender.  The gift wrap carries
the encrypted seal, is signed by a throwaway key and is backdated by a
random amount, so relays only ever see the recipient and a key that is
never used again.  The true sender is the seal's author.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from .errors import DecryptionError, MissingSignerError, ValidationError
from .events import (
    Event,
    Filter,
    KIND_GIFT_WRAP,
    KIND_PRIVATE_DIRECT_MESSAGE,
    KIND_SEAL,
    verify_event,
)
from .ports import Signer, Subscription, Transport
from .signer import KeySigner

LOGGER = logging.getLogger(__name__)

MAX_WRAP_JITTER_S = 600


@dataclass(frozen=True)
class DirectMessage:
    wrap_id: str
    sender: str
    content: str
    created_at: int
    kind: int = KIND_PRIVATE_DIRECT_MESSAGE
    tags: List[List[str]] = field(default_factory=list)
    rumor_id: str = ""


def create_rumor(
    sender: str,
    recipient: str,
    content: str,
    tags: Optional[Sequence[Sequence[str]]] = None,
    kind: int = KIND_PRIVATE_DIRECT_MESSAGE,
) -> Event:
    """Return the unsigned message event, with its id computed."""

    all_tags = [["p", recipient]] + [list(tag) for tag in tags or ()]
    return Event(kind=kind, content=content, tags=all_tags, pubkey=sender).with_id()


def seal(signer: Signer, rumor: Event, recipient: str) -> Event:
    """Encrypt *rumor* for *recipient* and sign it as the real sender."""

    return signer.sign(Event(kind=KIND_SEAL, content=signer.encrypt(recipient, rumor.to_json())))


def gift_wrap(sealed: Event, recipient: str, *, jitter: Optional[int] = None) -> Event:
    """Wrap *sealed* for *recipient* under a fresh disposable key."""

    if jitter is None:
        jitter = secrets.randbelow(MAX_WRAP_JITTER_S + 1)
    if not 0 <= jitter <= MAX_WRAP_JITTER_S:
        raise ValueError("jitter must be between 0 and 600 seconds")
    disposable = KeySigner.generate()
    return disposable.sign(
        Event(
            kind=KIND_GIFT_WRAP,
            content=disposable.encrypt(recipient, sealed.to_json()),
            tags=[["p", recipient]],
            created_at=sealed.created_at - jitter,
        )
    )


def wrap_message(signer: Signer, rumor: Event, recipient: str) -> Event:
    return gift_wrap(seal(signer, rumor, recipient), recipient)


async def send_direct_message(
    transport: Transport,
    signer: Signer,
    recipient: str,
    content: str,
    tags: Optional[Sequence[Sequence[str]]] = None,
) -> str:
    """Send *content* to *recipient* and keep a copy for the sender.

    Returns the id of the wrap addressed to the recipient.
    """

    me = signer.identity()
    rumor = create_rumor(me, recipient, content, tags)
    to_recipient = wrap_message(signer, rumor, recipient)
    to_self = wrap_message(signer, rumor, me)
    await asyncio.gather(transport.publish(to_recipient), transport.publish(to_self))
    LOGGER.debug("Sent direct message %s as wraps %s and %s", rumor.id, to_recipient.id, to_self.id)
    return to_recipient.id


def unwrap(event: Event, signer: Optional[Signer]) -> DirectMessage:
    """Open a gift wrap addressed to *signer*.

    Raises ``DecryptionError`` when either layer does not decrypt and
    ``ValidationError`` when a layer is structurally wrong.
    """

    if signer is None:
        raise MissingSignerError("a signer is required to unwrap direct messages")
    if event.kind != KIND_GIFT_WRAP:
        raise ValidationError(f"event {event.id} is not a gift wrap")

    # wraps, self copies included, are always encrypted by their disposable key
    sealed = Event.from_json(signer.decrypt(event.pubkey, event.content))
    if sealed.kind != KIND_SEAL:
        raise ValidationError(f"gift wrap {event.id} does not contain a seal")
    if not verify_event(sealed):
        raise ValidationError(f"seal inside gift wrap {event.id} has an invalid signature")

    rumor = Event.from_json(signer.decrypt(sealed.pubkey, sealed.content))
    if rumor.pubkey != sealed.pubkey:
        raise ValidationError(f"rumor author does not match seal author in gift wrap {event.id}")

    return DirectMessage(
        wrap_id=event.id,
        sender=sealed.pubkey,
        content=rumor.content,
        created_at=rumor.created_at,
        kind=rumor.kind,
        tags=rumor.tags,
        rumor_id=rumor.id,
    )


def subscribe_direct_messages(
    transport: Transport,
    signer: Signer,
    handler: Callable[[DirectMessage], Awaitable[None]],
    *,
    since: Optional[int] = None,
) -> Subscription:
    """Feed every unwrappable message addressed to *signer* to *handler*.

    Wraps that fail to open are logged and skipped.
    """

    async def on_wrap(event: Event) -> None:
        try:
            message = unwrap(event, signer)
        except (DecryptionError, ValidationError, ValueError) as exc:
            LOGGER.warning("Skipping gift wrap %s: %s", event.id, exc)
            return
        await handler(message)

    # wraps are backdated, so widen the window by the maximum jitter
    start = None if since is None else since - MAX_WRAP_JITTER_S
    return transport.subscribe(
        Filter(kinds=[KIND_GIFT_WRAP], tags={"p": [signer.identity()]}, since=start),
        on_wrap,
    )


__all__ = [
    "DirectMessage",
    "MAX_WRAP_JITTER_S",
    "create_rumor",
    "gift_wrap",
    "seal",
    "send_direct_message",
    "subscribe_direct_messages",
    "unwrap",
    "wrap_message",
]
