import asyncio

import pytest

from listing_relay.admission import AdmissionPolicy
from listing_relay.events import Event, KIND_CLASSIFIED_LISTING
from listing_relay.p2p.relay import MemoryRelay
from listing_relay.signer import KeySigner
from listing_relay.storage import ListingRepository

RELAY_URLS = ("memory://relay-a", "memory://relay-b", "memory://relay-c")


def run(coro):
    """Drive *coro* to completion on a fresh event loop."""
    return asyncio.run(coro)


def make_listing(signer, d_tag="lot-42", extra_tags=None, created_at=1_700_000_000, content="", kind=KIND_CLASSIFIED_LISTING):
    """Sign a listing event for *signer* with a ``d`` tag plus *extra_tags*."""
    tags = [["d", d_tag]] + [list(tag) for tag in extra_tags or []]
    return signer.sign(Event(kind=kind, content=content, tags=tags, created_at=created_at))


@pytest.fixture
def alice():
    return KeySigner.generate()


@pytest.fixture
def bob():
    return KeySigner.generate()


@pytest.fixture
def mallory():
    return KeySigner.generate()


@pytest.fixture
def repository(tmp_path):
    return ListingRepository.from_url(f"sqlite:///{tmp_path / 'listings.db'}")


@pytest.fixture
def relay():
    return MemoryRelay(RELAY_URLS)


@pytest.fixture
def policy(alice, bob):
    # alice runs the service, bob is a configured operator
    return AdmissionPolicy.build([bob.identity()], alice.identity())
