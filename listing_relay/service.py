"""Wiring of the ingestor, deletion handler, RPC server and messaging."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .admission import AdmissionPolicy
from .config import Settings
from .deletion import DeletionHandler, retract_own_listings
from .errors import ValidationError
from .events import Event, LISTING_KINDS
from .giftwrap import send_direct_message
from .ingestor import EventIngestor
from .ports import Signer, Transport
from .rpc import RpcClient, RpcServer
from .storage import ListingRepository, ReplacePolicy

LOGGER = logging.getLogger(__name__)


def _require_d(params: Dict[str, Any]) -> str:
    d_tag = params.get("d")
    if not isinstance(d_tag, str) or not d_tag:
        raise ValidationError("parameter 'd' must be a non-empty string")
    return d_tag


class ListingService:
    """Run the listing pipelines and the RPC endpoint for one identity."""

    def __init__(
        self,
        transport: Transport,
        signer: Signer,
        repository: ListingRepository,
        policy: AdmissionPolicy,
        *,
        kinds: Iterable[int] = LISTING_KINDS,
        replace_policy: ReplacePolicy = ReplacePolicy.FIRST_SEEN,
    ) -> None:
        self.transport = transport
        self.signer = signer
        self.repository = repository
        self.policy = policy
        self.kinds = tuple(kinds)
        self.ingestor = EventIngestor(transport, repository, policy, self.kinds, replace_policy)
        self.deletions = DeletionHandler(transport, repository, policy, self.kinds)
        self.rpc = RpcServer(transport, signer)
        self.client = RpcClient(transport, signer)
        self.rpc.register("get_listings", self._get_listings)
        self.rpc.register("get_listing", self._get_listing)
        self.rpc.register("get_history", self._get_history)

    @classmethod
    def from_settings(cls, settings: Settings, transport: Transport) -> "ListingService":
        """Build a service for *settings* on *transport*, a transport the caller built for ``settings.relays``."""

        if settings.signer is None:
            raise ValueError("settings carry no signer")
        return cls(
            transport,
            settings.signer,
            ListingRepository.from_url(settings.database_url),
            settings.admission_policy(),
            replace_policy=settings.replace_policy,
        )

    async def start(self) -> None:
        await self.transport.connect()
        self.rpc.start()
        self.ingestor.start()
        self.deletions.start()
        LOGGER.info("Listing service started as %s", self.signer.identity())

    async def stop(self) -> None:
        for component in (self.ingestor, self.deletions, self.rpc):
            try:
                component.stop()
            except Exception:
                LOGGER.exception("Failed to stop %s", type(component).__name__)
        LOGGER.info("Listing service stopped")

    async def publish(self, event: Event) -> Event:
        """Sign *event* as this service's identity and publish it."""

        signed = self.signer.sign(event)
        await self.transport.publish(signed)
        return signed

    async def call(self, target: str, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.client.request(target, method, params)

    async def send_message(self, recipient: str, content: str, tags: Optional[Sequence[Sequence[str]]] = None) -> str:
        return await send_direct_message(self.transport, self.signer, recipient, content, tags)

    async def retract_all(self, reason: str = "") -> List[str]:
        return await retract_own_listings(self.transport, self.signer, self.kinds, reason)

    async def _get_listings(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.repository.list_listings, params["pubkey"], self.kinds)

    async def _get_listing(self, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.repository.get_listing, params["pubkey"], _require_d(params))

    async def _get_history(self, params: Dict[str, Any]) -> List[str]:
        return await asyncio.to_thread(self.repository.get_history, params["pubkey"], _require_d(params))


__all__ = ["ListingService"]
