from dataclasses import replace

import pytest

from listing_relay.errors import TransportError
from listing_relay.events import Event, Filter
from listing_relay.p2p.relay import MemoryRelay
from tests.conftest import make_listing, run


def test_publish_requires_connection_and_valid_signature(alice):
    relay = MemoryRelay()

    async def scenario():
        with pytest.raises(TransportError):
            await relay.publish(make_listing(alice))
        await relay.connect()
        with pytest.raises(TransportError):
            await relay.publish(replace(make_listing(alice), content="tampered"))
        return await relay.publish(make_listing(alice))

    assert run(scenario()) == {"memory://relay-1"}


def test_each_endpoint_delivers_its_own_copy(relay, alice):
    received = []

    async def handler(event):
        received.append(event.id)

    async def scenario():
        await relay.connect()
        relay.subscribe(Filter(kinds=[30402]), handler)
        await relay.publish(make_listing(alice))
        relay.deliver(make_listing(alice), relay.urls[0])
        await relay.drain()

    run(scenario())
    assert len(received) == 3
    assert len(set(received)) == 1


def test_close_on_eose_replays_then_closes(relay, alice):
    received = []

    async def handler(event):
        received.append(event.tag_value("d"))

    async def scenario():
        await relay.connect()
        await relay.publish(make_listing(alice, "old", created_at=1))
        subscription = relay.subscribe(Filter(kinds=[30402]), handler, close_on_eose=True)
        await relay.publish(make_listing(alice, "new", created_at=2))
        await relay.drain()
        return subscription

    subscription = run(scenario())
    assert subscription.closed
    assert received == ["old"] * len(relay.urls)


def test_handler_failure_does_not_stop_delivery(relay, alice):
    received = []

    async def handler(event):
        if event.tag_value("d") == "bad":
            raise RuntimeError("boom")
        received.append(event.tag_value("d"))

    async def scenario():
        await relay.connect()
        relay.subscribe(Filter(kinds=[30402]), handler)
        await relay.publish(make_listing(alice, "bad"))
        await relay.publish(make_listing(alice, "good"))
        await relay.drain()

    run(scenario())
    assert received == ["good"] * len(relay.urls)


def test_fetch_once_deduplicates_and_limits(relay, alice, bob):
    async def scenario():
        await relay.connect()
        for index in range(3):
            await relay.publish(make_listing(alice, f"lot-{index}", created_at=100 + index))
        await relay.publish(make_listing(bob, "other"))
        return await relay.fetch_once(Filter(kinds=[30402], authors=[alice.identity()], limit=2))

    events = run(scenario())
    assert [event.tag_value("d") for event in events] == ["lot-2", "lot-1"]


def test_ephemeral_events_are_not_stored(relay, alice):
    async def scenario():
        await relay.connect()
        await relay.publish(alice.sign(Event(kind=24194, content="x")))
        return await relay.fetch_once(Filter(kinds=[24194]))

    assert run(scenario()) == []
