"""
OBS WebSocket (protocol v5) transport.

Connects to ws://localhost:4455 by default.

Handshake:
    server Hello (op 0) -> client Identify (op 1) -> server Identified (op 2)

Afterwards requests (op 6) are matched to responses (op 7) by requestId,
and events (op 5) are passed to the event handler.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import uuid
from typing import Any

import websockets
import websockets.exceptions

from .transport import (
    EngineProtocolError,
    EngineRequestError,
    EngineTransport,
    EventHandler,
    TransportClosedError,
    TransportFactory,
)

logger = logging.getLogger(__name__)

DEFAULT_OBS_URL = "ws://localhost:4455"
SUBPROTOCOL = "obswebsocket.json"
RPC_VERSION = 1

OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_EVENT = 5
OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7

# EventSubscription bit flags
SUBSCRIBE_GENERAL = 1 << 0
SUBSCRIBE_SCENES = 1 << 2
SUBSCRIBE_INPUTS = 1 << 3
SUBSCRIBE_OUTPUTS = 1 << 6
SUBSCRIBE_SCENE_ITEMS = 1 << 7
EVENT_SUBSCRIPTIONS = (
    SUBSCRIBE_GENERAL
    | SUBSCRIBE_SCENES
    | SUBSCRIBE_INPUTS
    | SUBSCRIBE_OUTPUTS
    | SUBSCRIBE_SCENE_ITEMS
)


def build_authentication(password: str, salt: str, challenge: str) -> str:
    """Compute the v5 authentication string.

    base64(sha256(base64(sha256(password + salt)) + challenge))
    """
    secret = base64.b64encode(hashlib.sha256((password + salt).encode()).digest()).decode()
    return base64.b64encode(hashlib.sha256((secret + challenge).encode()).digest()).decode()


def build_identify(hello: dict[str, Any], password: str) -> dict[str, Any]:
    """Build the Identify message answering a Hello payload."""
    identify: dict[str, Any] = {
        "rpcVersion": RPC_VERSION,
        "eventSubscriptions": EVENT_SUBSCRIPTIONS,
    }
    auth = hello.get("authentication")
    if auth:
        if not password:
            raise EngineProtocolError("Engine requires a password but none is configured")
        identify["authentication"] = build_authentication(
            password, auth["salt"], auth["challenge"]
        )
    return {"op": OP_IDENTIFY, "d": identify}


class ObsWebSocketTransport(EngineTransport):
    """A single OBS WebSocket connection."""

    def __init__(
        self,
        url: str = DEFAULT_OBS_URL,
        password: str = "",
        on_event: EventHandler | None = None,
        ping_interval: float = 20.0,
    ) -> None:
        self._url = url
        self._password = password
        self._on_event = on_event
        self._ping_interval = ping_interval
        self._ws = None
        self._receiver: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._closed = asyncio.Event()

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    async def connect(self) -> None:
        logger.info(f"Connecting to OBS: {self._url}")
        try:
            self._ws = await websockets.connect(
                self._url,
                subprotocols=[SUBPROTOCOL],
                ping_interval=self._ping_interval,
                ping_timeout=10,
                close_timeout=5,
            )
            hello = self._decode(await self._ws.recv())
            if hello.get("op") != OP_HELLO:
                raise EngineProtocolError(f"Expected Hello, got op {hello.get('op')}")
            await self._ws.send(json.dumps(build_identify(hello.get("d", {}), self._password)))
            identified = self._decode(await self._ws.recv())
            if identified.get("op") != OP_IDENTIFIED:
                raise EngineProtocolError(f"Expected Identified, got op {identified.get('op')}")
        except websockets.exceptions.ConnectionClosed as e:
            await self.close()
            raise TransportClosedError(f"OBS closed the connection during handshake: {e}") from e
        except BaseException:
            await self.close()
            raise

        self._receiver = asyncio.create_task(self._receive_loop(), name="obs-receive")
        logger.info(f"Identified with OBS (rpcVersion {RPC_VERSION})")

    async def request(self, request_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._ws is None or self.is_closed:
            raise TransportClosedError("OBS connection is closed")

        request_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload: dict[str, Any] = {"requestType": request_type, "requestId": request_id}
        if data:
            payload["requestData"] = data

        try:
            await self._ws.send(json.dumps({"op": OP_REQUEST, "d": payload}))
            return await future
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportClosedError(f"OBS connection closed: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def close(self) -> None:
        receiver, self._receiver = self._receiver, None
        if receiver is not None and receiver is not asyncio.current_task():
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"OBS receiver ended with error: {e!r}")
        if self._ws is not None:
            await self._ws.close()
        self._mark_closed()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                try:
                    self.handle_message(message)
                except EngineProtocolError as e:
                    logger.warning(f"Ignoring OBS message: {e}")
                except Exception as e:
                    logger.error(f"Error handling OBS message: {e!r}")
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"OBS connection closed: {e}")
        finally:
            self._mark_closed()

    def handle_message(self, raw: str | bytes) -> None:
        """Dispatch one server message to a pending request or the event handler.

        Raises:
            EngineProtocolError: if the message is not valid JSON or is badly shaped
        """
        message = self._decode(raw)
        op = message.get("op")
        data = message.get("d") or {}
        if not isinstance(data, dict):
            raise EngineProtocolError(f"Message payload for op {op} is not an object")

        if op == OP_REQUEST_RESPONSE:
            request_id = data.get("requestId")
            if not isinstance(request_id, str):
                raise EngineProtocolError("Request response without a string requestId")
            future = self._pending.get(request_id)
            if future is None or future.done():
                return
            status = data.get("requestStatus")
            if not isinstance(status, dict):
                future.set_exception(EngineProtocolError("Response requestStatus is not an object"))
                return
            if status.get("result"):
                response = data.get("responseData") or {}
                if isinstance(response, dict):
                    future.set_result(response)
                else:
                    future.set_exception(EngineProtocolError("responseData is not an object"))
                return
            try:
                code = int(status.get("code", 0))
            except (TypeError, ValueError):
                future.set_exception(
                    EngineProtocolError(f"Invalid requestStatus code: {status.get('code')!r}")
                )
                return
            future.set_exception(EngineRequestError(code, str(status.get("comment", ""))))
        elif op == OP_EVENT:
            if self._on_event is None:
                return
            try:
                self._on_event(data.get("eventType", ""), data.get("eventData") or {})
            except Exception as e:
                logger.error(f"Event handler error: {e}")

    def _mark_closed(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportClosedError("OBS connection closed"))
        self._pending.clear()

    @staticmethod
    def _decode(raw: str | bytes) -> dict[str, Any]:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            raise EngineProtocolError(f"Invalid JSON from OBS: {e}") from e
        if not isinstance(message, dict):
            raise EngineProtocolError("OBS message is not an object")
        return message


def obs_transport_factory(url: str = DEFAULT_OBS_URL, password: str = "") -> TransportFactory:
    """Return a factory building a fresh OBS transport per connection attempt."""

    def factory(on_event: EventHandler) -> EngineTransport:
        return ObsWebSocketTransport(url, password, on_event)

    return factory
