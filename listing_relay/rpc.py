"""Encrypted request/response calls over the broadcast transport.

A request is a signed event addressed to the target with a ``p`` tag; its
content is the encrypted JSON ``{"method", "params"}``.  The responder
answers with an event referencing the request id in an ``e`` tag and
carrying the encrypted ``{"result_type", "result"}`` envelope.  Requests
that fail on the responder side get no answer, so callers only ever see
a timeout.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .errors import DecryptionError, RequestTimeout, UnknownMethodError, ValidationError
from .events import Event, Filter, KIND_RPC_REQUEST, KIND_RPC_RESPONSE
from .ports import Signer, Subscription, Transport

LOGGER = logging.getLogger(__name__)

REQUEST_TIMEOUT_S = 30.0
# request ids remembered by a server to drop copies delivered by other relays
SEEN_REQUESTS_MAX = 4096

MethodHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


def _load_object(plaintext: str) -> Dict[str, Any]:
    try:
        data = json.loads(plaintext)
    except ValueError as exc:
        raise ValidationError("payload is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ValidationError("payload must be a JSON object")
    return data


class RpcClient:
    """Caller side: one publish, one temporary subscription per call."""

    def __init__(self, transport: Transport, signer: Signer, timeout: float = REQUEST_TIMEOUT_S) -> None:
        self.transport = transport
        self.signer = signer
        self.timeout = timeout
        self._in_flight = 0

    @property
    def pending(self) -> int:
        return self._in_flight

    def build_request(self, target: str, method: str, params: Optional[Dict[str, Any]] = None) -> Event:
        body = json.dumps({"method": method, "params": params or {}}, separators=(",", ":"))
        return self.signer.sign(
            Event(kind=KIND_RPC_REQUEST, content=self.signer.encrypt(target, body), tags=[["p", target]])
        )

    def parse_response(self, event: Event, target: str) -> Any:
        envelope = _load_object(self.signer.decrypt(target, event.content))
        if "result" not in envelope:
            raise ValidationError("response envelope has no result")
        return envelope["result"]

    async def request(
        self,
        target: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """Call *method* on *target* and return its result.

        Raises :class:`RequestTimeout` when no valid response arrives in time.
        """

        timeout = self.timeout if timeout is None else timeout
        request = self.build_request(target, method, params)
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        async def on_response(event: Event) -> None:
            if future.done():
                return
            try:
                result = self.parse_response(event, target)
            except (DecryptionError, ValidationError) as exc:
                LOGGER.warning("Ignoring malformed response %s to request %s: %s", event.id, request.id, exc)
                return
            if not future.done():
                future.set_result(result)

        subscription = self.transport.subscribe(
            Filter(kinds=[KIND_RPC_RESPONSE], authors=[target], tags={"e": [request.id]}),
            on_response,
        )
        self._in_flight += 1
        try:
            await self.transport.publish(request)
            LOGGER.debug("Sent %s request %s to %s", method, request.id, target)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeout(f"no response to {method} from {target} within {timeout}s") from exc
        finally:
            subscription.close()
            self._in_flight -= 1


class RpcServer:
    """Responder side: a closed table of methods behind one standing subscription."""

    def __init__(self, transport: Transport, signer: Signer) -> None:
        self.transport = transport
        self.signer = signer
        self._handlers: Dict[str, MethodHandler] = {}
        self._subscription: Optional[Subscription] = None
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    @property
    def methods(self):
        return sorted(self._handlers)

    def register(self, method: str, handler: MethodHandler) -> None:
        if not method:
            raise ValueError("method name must not be empty")
        self._handlers[method] = handler

    def start(self) -> Subscription:
        if self._subscription is not None and not self._subscription.closed:
            return self._subscription
        self._subscription = self.transport.subscribe(
            Filter(kinds=[KIND_RPC_REQUEST], tags={"p": [self.signer.identity()]}),
            self.handle,
        )
        LOGGER.info("Serving RPC methods: %s", ", ".join(self.methods) or "<none>")
        return self._subscription

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    async def dispatch(self, method: str, params: Dict[str, Any], caller: str) -> Any:
        """Run the handler for *method* with the caller's key injected as ``pubkey``."""

        handler = self._handlers.get(method)
        if handler is None:
            raise UnknownMethodError(method)
        params = dict(params)
        params["pubkey"] = caller
        result = handler(params)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _first_sighting(self, request_id: str) -> bool:
        if request_id in self._seen:
            return False
        self._seen[request_id] = None
        if len(self._seen) > SEEN_REQUESTS_MAX:
            self._seen.popitem(last=False)
        return True

    def parse_request(self, event: Event) -> tuple[str, Dict[str, Any]]:
        request = _load_object(self.signer.decrypt(event.pubkey, event.content))
        method = request.get("method")
        params = request.get("params") or {}
        if not isinstance(method, str) or not method:
            raise ValidationError("request has no method")
        if not isinstance(params, dict):
            raise ValidationError("request params must be an object")
        return method, params

    async def handle(self, event: Event) -> Optional[Event]:
        """Answer one request; returns the published response or ``None``."""

        if not self._first_sighting(event.id):
            LOGGER.debug("Request %s already answered", event.id)
            return None
        try:
            return await self._process(event)
        except Exception:
            LOGGER.exception("Failed to answer RPC request %s", event.id)
            return None

    async def _process(self, event: Event) -> Optional[Event]:
        caller = event.pubkey
        try:
            method, params = self.parse_request(event)
        except (DecryptionError, ValidationError) as exc:
            LOGGER.warning("Dropping unreadable RPC request %s from %s: %s", event.id, caller, exc)
            return None

        try:
            result = await self.dispatch(method, params, caller)
        except UnknownMethodError:
            LOGGER.warning("Unknown RPC method %r requested by %s", method, caller)
            return None
        except Exception:
            LOGGER.exception("RPC handler %s failed for request %s", method, event.id)
            return None

        body = json.dumps({"result_type": method, "result": result}, separators=(",", ":"))
        response = self.signer.sign(
            Event(
                kind=KIND_RPC_RESPONSE,
                content=self.signer.encrypt(caller, body),
                tags=[["e", event.id], ["p", caller]],
            )
        )
        await self.transport.publish(response)
        LOGGER.debug("Answered %s request %s from %s", method, event.id, caller)
        return response


__all__ = ["MethodHandler", "REQUEST_TIMEOUT_S", "RpcClient", "RpcServer"]
