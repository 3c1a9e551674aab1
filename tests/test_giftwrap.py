import base64
from dataclasses import replace

import pytest

from listing_relay.errors import DecryptionError, MissingSignerError, ValidationError
from listing_relay.events import Event, KIND_GIFT_WRAP, KIND_PRIVATE_DIRECT_MESSAGE, KIND_SEAL, verify_event
from listing_relay.giftwrap import (
    MAX_WRAP_JITTER_S,
    create_rumor,
    gift_wrap,
    seal,
    send_direct_message,
    subscribe_direct_messages,
    unwrap,
)
from tests.conftest import run


def _send(relay, sender, recipient, content, tags=None):
    async def scenario():
        await relay.connect()
        return await send_direct_message(relay, sender, recipient.identity(), content, tags)

    return run(scenario())


def _open_seal(wrap, recipient):
    return Event.from_json(recipient.decrypt(wrap.pubkey, wrap.content))


def test_round_trip_recovers_true_sender(relay, alice, bob):
    wrap_id = _send(relay, alice, bob, "hello", tags=[["subject", "lot-42"]])
    wrap = next(event for event in relay.published if event.id == wrap_id)

    message = unwrap(wrap, bob)
    assert message.sender == alice.identity()
    assert message.content == "hello"
    assert message.wrap_id == wrap_id
    assert message.kind == KIND_PRIVATE_DIRECT_MESSAGE
    assert message.tags == [["p", bob.identity()], ["subject", "lot-42"]]


def test_subscriber_receives_messages(relay, alice, bob):
    received = []

    async def on_message(message):
        received.append((message.sender, message.content))

    async def scenario():
        await relay.connect()
        subscribe_direct_messages(relay, bob, on_message)
        await send_direct_message(relay, alice, bob.identity(), "hi bob")
        await relay.drain()

    run(scenario())
    assert set(received) == {(alice.identity(), "hi bob")}


def test_wrap_layer_does_not_reveal_sender(relay, alice, bob, mallory):
    _send(relay, alice, bob, "hello")
    wraps = relay.published
    assert len(wraps) == 2
    for wrap in wraps:
        assert wrap.kind == KIND_GIFT_WRAP
        assert verify_event(wrap)
        assert wrap.pubkey not in (alice.identity(), bob.identity())
        assert alice.identity() not in wrap.content
        assert wrap.tags in ([["p", bob.identity()]], [["p", alice.identity()]])
    assert wraps[0].pubkey != wraps[1].pubkey

    to_bob = next(wrap for wrap in wraps if wrap.tags == [["p", bob.identity()]])
    with pytest.raises(DecryptionError):
        unwrap(to_bob, mallory)


def test_self_copy_opens_to_the_same_rumor(relay, alice, bob):
    wrap_id = _send(relay, alice, bob, "hello")
    to_bob = next(event for event in relay.published if event.id == wrap_id)
    to_self = next(event for event in relay.published if event.id != wrap_id)

    assert to_bob.tags == [["p", bob.identity()]]
    assert to_self.tags == [["p", alice.identity()]]
    assert to_self.pubkey not in (alice.identity(), to_bob.pubkey)

    for_bob = unwrap(to_bob, bob)
    for_alice = unwrap(to_self, alice)
    assert for_bob.rumor_id == for_alice.rumor_id
    assert (for_bob.sender, for_bob.content) == (for_alice.sender, for_alice.content)
    with pytest.raises(DecryptionError):
        unwrap(to_self, bob)


def test_wrap_timestamp_is_jittered_before_the_seal(alice, bob):
    rumor = create_rumor(alice.identity(), bob.identity(), "hello")
    sealed = seal(alice, rumor, bob.identity())
    assert sealed.kind == KIND_SEAL and sealed.tags == []

    for _ in range(10):
        wrap = gift_wrap(sealed, bob.identity())
        assert sealed.created_at - MAX_WRAP_JITTER_S <= wrap.created_at <= sealed.created_at
        assert _open_seal(wrap, bob) == sealed

    assert gift_wrap(sealed, bob.identity(), jitter=600).created_at == sealed.created_at - 600
    with pytest.raises(ValueError):
        gift_wrap(sealed, bob.identity(), jitter=601)


def test_rumor_is_unsigned_with_computed_id(alice, bob):
    rumor = create_rumor(alice.identity(), bob.identity(), "hello")
    assert rumor.sig == ""
    assert rumor.id == rumor.compute_id()
    assert "sig" not in rumor.to_dict()


def test_missing_signer_is_a_hard_error(alice, bob):
    wrap = gift_wrap(seal(alice, create_rumor(alice.identity(), bob.identity(), "x"), bob.identity()), bob.identity())
    with pytest.raises(MissingSignerError):
        unwrap(wrap, None)


def test_corrupted_ciphertext_propagates(alice, bob):
    wrap = gift_wrap(seal(alice, create_rumor(alice.identity(), bob.identity(), "x"), bob.identity()), bob.identity())
    raw = bytearray(base64.b64decode(wrap.content))
    raw[-1] ^= 0xFF
    with pytest.raises(DecryptionError):
        unwrap(replace(wrap, content=base64.b64encode(bytes(raw)).decode()), bob)


def test_forged_seal_signature_is_rejected(alice, bob):
    sealed = seal(alice, create_rumor(alice.identity(), bob.identity(), "x"), bob.identity())
    forged = replace(sealed, sig="00" * 64)
    with pytest.raises(ValidationError):
        unwrap(gift_wrap(forged, bob.identity()), bob)


def test_rumor_author_must_match_seal_author(alice, bob, mallory):
    rumor = create_rumor(mallory.identity(), bob.identity(), "I am mallory")
    with pytest.raises(ValidationError):
        unwrap(gift_wrap(seal(alice, rumor, bob.identity()), bob.identity()), bob)


def test_wrapped_event_must_be_a_seal(alice, bob):
    not_a_seal = alice.sign(Event(kind=1, content="plain"))
    with pytest.raises(ValidationError):
        unwrap(gift_wrap(not_a_seal, bob.identity()), bob)
    with pytest.raises(ValidationError):
        unwrap(not_a_seal, bob)
