from listing_relay.deletion import AddressRef, DeletionHandler, build_tombstone, retract_own_listings
from listing_relay.events import Event, KIND_DELETION
from listing_relay.ingestor import EventIngestor
from tests.conftest import make_listing, run


def _ingest(relay, repository, policy, *events):
    async def scenario():
        await relay.connect()
        ingestor = EventIngestor(relay, repository, policy)
        for event in events:
            await ingestor.handle(event)

    run(scenario())


def _apply(relay, repository, policy, tombstone):
    async def scenario():
        await relay.connect()
        return await DeletionHandler(relay, repository, policy).handle(tombstone)

    return run(scenario())


def test_address_ref_parsing():
    ref = AddressRef.parse(f"30402:{'AB' * 32}:lot:with:colons")
    assert ref == AddressRef(30402, "ab" * 32, "lot:with:colons")
    assert str(ref) == f"30402:{'ab' * 32}:lot:with:colons"
    assert AddressRef.parse("30402:only") is None
    assert AddressRef.parse("kind:pk:d") is None
    assert AddressRef.parse("30402::d") is None


def test_build_tombstone_names_event_and_address(alice):
    target = make_listing(alice, "lot-42")
    tombstone = build_tombstone(target, reason="sold")
    assert tombstone.kind == KIND_DELETION
    assert tombstone.content == "sold"
    assert tombstone.tags == [["e", target.id], ["a", f"30402:{alice.identity()}:lot-42"]]


def test_authorised_tombstone_removes_listing_and_history(relay, repository, policy, alice):
    listing = make_listing(alice, "lot-42")
    _ingest(relay, repository, policy, listing)
    listing_id = repository.list_listings()[0]["id"]

    # only the address tag: resolution must not depend on any event id
    tombstone = alice.sign(Event(kind=KIND_DELETION, tags=[["a", f"30402:{alice.identity()}:lot-42"]]))
    assert _apply(relay, repository, policy, tombstone) == [listing_id]

    assert repository.list_listings() == []
    assert repository.history_count(listing_id) == 0
    topics = [(entry["topic"], entry["listing_id"]) for entry in repository.fetch_outbox()]
    assert topics == [("listing.upserted", listing_id), ("listing.deleted", listing_id)]
    assert repository.fetch_outbox()[-1]["payload"]["tombstone_id"] == tombstone.id


def test_colon_bearing_address_key(relay, repository, policy, alice):
    _ingest(relay, repository, policy, make_listing(alice, "lot:42:b"))
    tombstone = alice.sign(Event(kind=KIND_DELETION, tags=[["a", f"30402:{alice.identity()}:lot:42:b"]]))
    assert len(_apply(relay, repository, policy, tombstone)) == 1
    assert repository.list_listings() == []


def test_event_reference_retracts_matching_listing(relay, repository, policy, alice):
    listing = make_listing(alice, "lot-9")
    _ingest(relay, repository, policy, listing)
    tombstone = alice.sign(Event(kind=KIND_DELETION, tags=[["e", listing.id]]))
    assert len(_apply(relay, repository, policy, tombstone)) == 1
    assert repository.list_listings() == []


def test_untrusted_author_has_no_effect(relay, repository, policy, alice, mallory):
    _ingest(relay, repository, policy, make_listing(alice, "lot-42"))
    tombstone = mallory.sign(
        Event(kind=KIND_DELETION, tags=[["a", f"30402:{alice.identity()}:lot-42"], ["e", "00" * 32]])
    )
    assert _apply(relay, repository, policy, tombstone) == []
    assert len(repository.list_listings()) == 1


def test_trusted_author_cannot_delete_another_publishers_listing(relay, repository, policy, alice, bob):
    listing = make_listing(alice, "lot-42")
    _ingest(relay, repository, policy, listing)
    tombstone = bob.sign(
        Event(kind=KIND_DELETION, tags=[["a", f"30402:{alice.identity()}:lot-42"], ["e", listing.id]])
    )
    assert _apply(relay, repository, policy, tombstone) == []
    assert len(repository.list_listings()) == 1


def test_unmanaged_kind_and_unknown_address_are_no_ops(relay, repository, policy, alice):
    _ingest(relay, repository, policy, make_listing(alice, "lot-42"))
    tombstone = alice.sign(
        Event(
            kind=KIND_DELETION,
            tags=[
                ["a", f"30023:{alice.identity()}:lot-42"],
                ["a", f"30402:{alice.identity()}:missing"],
                ["a", "garbage"],
            ],
        )
    )
    assert _apply(relay, repository, policy, tombstone) == []
    assert len(repository.list_listings()) == 1


def test_subscription_applies_published_tombstones(relay, repository, policy, alice):
    listing = make_listing(alice, "lot-42")

    async def scenario():
        await relay.connect()
        EventIngestor(relay, repository, policy).start()
        DeletionHandler(relay, repository, policy).start()
        await relay.publish(listing)
        await relay.drain()
        await relay.publish(alice.sign(build_tombstone(listing)))
        await relay.drain()

    run(scenario())
    assert repository.list_listings() == []
    assert [entry["topic"] for entry in repository.fetch_outbox()] == ["listing.upserted", "listing.deleted"]


def test_retract_own_listings_publishes_one_tombstone_each(relay, alice, bob):
    async def scenario():
        await relay.connect()
        for d_tag in ("a", "b"):
            await relay.publish(make_listing(alice, d_tag))
        await relay.publish(make_listing(bob, "c"))
        return await retract_own_listings(relay, alice)

    published = run(scenario())
    assert len(published) == 2
    tombstones = [event for event in relay.published if event.kind == KIND_DELETION]
    assert [event.id for event in tombstones] == published
    addresses = sorted(tag[1] for event in tombstones for tag in event.tags if tag[0] == "a")
    assert addresses == [f"30402:{alice.identity()}:a", f"30402:{alice.identity()}:b"]
    assert all(event.pubkey == alice.identity() for event in tombstones)
