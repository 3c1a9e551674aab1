"""Persistence for listings: engine setup, repository and outbox access."""

from __future__ import annotations

import logging
from contextlib import closing
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import create_engine, delete, event, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .errors import ConstraintError
from .listing import DecodedListing
from .models import (
    Base,
    EventHistory,
    Listing,
    ListingImage,
    OutboxEntry,
    TOPIC_DELETED,
    TOPIC_UPSERTED,
    from_unix,
    to_unix,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///listing_relay.db"
# re-reads allowed when concurrent writers keep replacing the same address
REPLACE_ATTEMPTS = 8


class ReplacePolicy(str, Enum):
    """Conflict rule for two events that name the same address."""

    FIRST_SEEN = "first_seen"
    NEWEST = "newest"


class AcceptOutcome(str, Enum):
    ACCEPTED = "accepted"
    REPLACED = "replaced"
    DUPLICATE = "duplicate"
    STALE = "stale"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str = DEFAULT_DATABASE_URL) -> Engine:
    """Create an engine for *url*; SQLite connections enforce foreign keys."""

    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create missing tables."""

    Base.metadata.create_all(engine)
    LOGGER.info("Database schema ready on %s", engine.url.render_as_string(hide_password=True))


def is_newer(candidate_created_at: int, candidate_id: str, current_created_at: int, current_id: str) -> bool:
    """Return ``True`` if the candidate event supersedes the current one.

    Greater ``created_at`` wins; on a tie the lexicographically lower id wins.
    """

    if candidate_created_at != current_created_at:
        return candidate_created_at > current_created_at
    return candidate_id < current_id


def _apply_fields(listing: Listing, decoded: DecodedListing) -> None:
    listing.event_id = decoded.event_id
    listing.created_at = from_unix(decoded.created_at)
    listing.content = decoded.content
    listing.title = decoded.title
    listing.summary = decoded.summary
    listing.amount = decoded.amount
    listing.currency = decoded.currency
    listing.frequency = decoded.frequency
    listing.street = decoded.street
    listing.city = decoded.city
    listing.country = decoded.country
    listing.resin_type = decoded.resin_type
    listing.attribution = decoded.attribution
    listing.geohash = decoded.geohash
    listing.latitude = decoded.latitude
    listing.longitude = decoded.longitude
    listing.attributes = dict(decoded.attributes)
    listing.raw_tags = [list(tag) for tag in decoded.raw_tags]
    listing.images = [
        ListingImage(
            position=position,
            url=image.url,
            hash=image.hash,
            dimensions=image.dimensions,
            blur_digest=image.blur_digest,
        )
        for position, image in enumerate(decoded.images)
    ]


def _claim(session: Session, listing: Listing, event_id: str) -> bool:
    """Point *listing* at *event_id* unless another writer replaced it since it was read.

    The conditional UPDATE takes the row's write lock, so whoever claims the
    row first holds it until commit and later claimants match zero rows.
    """

    result = session.execute(
        update(Listing)
        .where(Listing.id == listing.id, Listing.event_id == listing.event_id)
        .values(event_id=event_id)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


class ListingRepository:
    """Repository for listing state, history and the outbox.

    Every public method runs in its own session and transaction, so one
    call maps to one all-or-nothing unit of work.  Methods are blocking;
    async callers dispatch them with ``asyncio.to_thread``.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, url: str = DEFAULT_DATABASE_URL) -> "ListingRepository":
        engine = create_db_engine(url)
        init_db(engine)
        return cls(create_session_factory(engine))

    def has_event(self, event_id: str) -> bool:
        """Return ``True`` if *event_id* was already accepted for some listing."""

        def handler(session: Session) -> bool:
            found = session.execute(
                select(EventHistory.id).where(EventHistory.event_id == event_id).limit(1)
            ).first()
            if found is not None:
                return True
            return session.execute(
                select(Listing.id).where(Listing.event_id == event_id).limit(1)
            ).first() is not None

        return self._execute(handler)

    def accept(
        self,
        decoded: DecodedListing,
        policy: ReplacePolicy = ReplacePolicy.FIRST_SEEN,
    ) -> AcceptOutcome:
        """Insert or replace the listing for *decoded* in one transaction.

        A replacement that loses the row to a concurrent writer re-reads the
        listing and decides again against what that writer committed.

        Raises :class:`ConstraintError` when a uniqueness constraint rejects
        the commit, which means a concurrent writer claimed the address or
        the event id first.
        """

        def handler(session: Session) -> AcceptOutcome:
            for _ in range(REPLACE_ATTEMPTS):
                listing = session.execute(
                    select(Listing).where(
                        Listing.kind == decoded.kind,
                        Listing.pubkey == decoded.pubkey,
                        Listing.d_tag == decoded.d_tag,
                    )
                ).scalar_one_or_none()

                if listing is None:
                    listing = Listing(kind=decoded.kind, pubkey=decoded.pubkey, d_tag=decoded.d_tag)
                    _apply_fields(listing, decoded)
                    session.add(listing)
                    outcome = AcceptOutcome.ACCEPTED
                    break
                if listing.event_id == decoded.event_id or policy is ReplacePolicy.FIRST_SEEN:
                    return AcceptOutcome.DUPLICATE
                if not is_newer(decoded.created_at, decoded.event_id, to_unix(listing.created_at), listing.event_id):
                    return AcceptOutcome.STALE
                if _claim(session, listing, decoded.event_id):
                    _apply_fields(listing, decoded)
                    outcome = AcceptOutcome.REPLACED
                    break
                LOGGER.debug("Listing %s changed under event %s; re-reading", decoded.address, decoded.event_id)
                session.expunge_all()
            else:
                raise ConstraintError(f"address {decoded.address} kept changing during replacement")

            session.flush()
            session.add(EventHistory(event_id=decoded.event_id, listing_id=listing.id))
            session.add(
                OutboxEntry(
                    topic=TOPIC_UPSERTED,
                    listing_id=listing.id,
                    event_id=decoded.event_id,
                    payload=listing.to_dict(),
                )
            )
            return outcome

        try:
            return self._execute(handler)
        except IntegrityError as exc:
            raise ConstraintError(f"address {decoded.address} or event {decoded.event_id} already stored") from exc

    def delete_by_address(self, kind: int, pubkey: str, d_tag: str, tombstone_id: str) -> Optional[str]:
        """Delete the listing at ``kind:pubkey:d_tag``; returns its id when one matched."""

        def handler(session: Session) -> Optional[str]:
            listing = session.execute(
                select(Listing).where(Listing.kind == kind, Listing.pubkey == pubkey, Listing.d_tag == d_tag)
            ).scalar_one_or_none()
            return self._delete(session, listing, tombstone_id)

        return self._execute(handler)

    def delete_by_event_id(
        self,
        event_id: str,
        pubkey: str,
        tombstone_id: str,
        kinds: Optional[Iterable[int]] = None,
    ) -> Optional[str]:
        """Delete the listing currently materialised from *event_id* if *pubkey* published it."""

        def handler(session: Session) -> Optional[str]:
            query = select(Listing).where(Listing.event_id == event_id, Listing.pubkey == pubkey)
            if kinds is not None:
                query = query.where(Listing.kind.in_(list(kinds)))
            listing = session.execute(query).scalar_one_or_none()
            return self._delete(session, listing, tombstone_id)

        return self._execute(handler)

    @staticmethod
    def _delete(session: Session, listing: Optional[Listing], tombstone_id: str) -> Optional[str]:
        if listing is None:
            return None
        listing_id, event_id, address = listing.id, listing.event_id, listing.address
        # history and image rows go with it through ON DELETE CASCADE
        result = session.execute(
            delete(Listing).where(Listing.id == listing_id).execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None
        session.add(
            OutboxEntry(
                topic=TOPIC_DELETED,
                listing_id=listing_id,
                event_id=event_id,
                payload={"address": address, "tombstone_id": tombstone_id},
            )
        )
        return listing_id

    def get_listing(self, pubkey: str, d_tag: str, kind: Optional[int] = None) -> Optional[Dict[str, Any]]:
        def handler(session: Session) -> Optional[Dict[str, Any]]:
            query = select(Listing).where(Listing.pubkey == pubkey, Listing.d_tag == d_tag)
            if kind is not None:
                query = query.where(Listing.kind == kind)
            listing = session.execute(query.order_by(Listing.created_at.desc()).limit(1)).scalar_one_or_none()
            return listing.to_dict() if listing else None

        return self._execute(handler)

    def list_listings(self, pubkey: Optional[str] = None, kinds: Optional[Iterable[int]] = None) -> List[Dict[str, Any]]:
        def handler(session: Session) -> List[Dict[str, Any]]:
            query = select(Listing)
            if pubkey is not None:
                query = query.where(Listing.pubkey == pubkey)
            if kinds is not None:
                query = query.where(Listing.kind.in_(list(kinds)))
            rows = session.execute(query.order_by(Listing.created_at.desc())).scalars().all()
            return [row.to_dict() for row in rows]

        return self._execute(handler)

    def get_history(self, pubkey: str, d_tag: str) -> List[str]:
        """Return accepted event ids for one listing, oldest first."""

        def handler(session: Session) -> List[str]:
            rows = session.execute(
                select(EventHistory.event_id)
                .join(Listing, EventHistory.listing_id == Listing.id)
                .where(Listing.pubkey == pubkey, Listing.d_tag == d_tag)
                .order_by(EventHistory.id)
            ).scalars()
            return list(rows)

        return self._execute(handler)

    def history_count(self, listing_id: Optional[str] = None) -> int:
        def handler(session: Session) -> int:
            query = select(EventHistory.id)
            if listing_id is not None:
                query = query.where(EventHistory.listing_id == listing_id)
            return len(session.execute(query).all())

        return self._execute(handler)

    def fetch_outbox(self, after: int = 0, limit: int = 100) -> List[Dict[str, Any]]:
        def handler(session: Session) -> List[Dict[str, Any]]:
            rows = session.execute(
                select(OutboxEntry).where(OutboxEntry.id > after).order_by(OutboxEntry.id).limit(limit)
            ).scalars()
            return [row.to_dict() for row in rows]

        return self._execute(handler)

    def ack_outbox(self, up_to: int) -> int:
        """Drop outbox entries with ids up to and including *up_to*."""

        def handler(session: Session) -> int:
            result = session.execute(delete(OutboxEntry).where(OutboxEntry.id <= up_to))
            return result.rowcount or 0

        return self._execute(handler)

    def _execute(self, handler):
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


__all__ = [
    "AcceptOutcome",
    "DEFAULT_DATABASE_URL",
    "ListingRepository",
    "ReplacePolicy",
    "create_db_engine",
    "create_session_factory",
    "init_db",
    "is_newer",
]
