"""
ControlPlaneClient - the single logical connection to the streaming engine.

Exposes idempotent action primitives (scene switch, record/stream control,
input mute, source visibility) and an infinite status stream.

State machine:

    DISCONNECTED -> CONNECTING -> CONNECTED
                        |             |
                        v             v
                    RECONNECTING <----+      (transport failure)
                        |
                        +--> CONNECTING      (after full-jitter backoff)

    any state -> DISCONNECTED                (explicit stop)

While not CONNECTED every primitive fails fast with
ControlPlaneUnreachableError; nothing is queued. Each successful connect
bumps the connection generation and re-fetches a full status snapshot,
which is emitted as a resync update before any delta from that generation.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, TypeVar

from .errors import ActionFailedError, ActionTimeoutError, ControlPlaneUnreachableError
from .models import ControlPlaneStatus
from .transport import (
    EngineProtocolError,
    EngineRequestError,
    EngineTransport,
    TransportClosedError,
    TransportFactory,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Engine status codes meaning "output already in the requested state"
OUTPUT_RUNNING = 500
OUTPUT_NOT_RUNNING = 501
OUTPUT_PAUSED = 502
OUTPUT_NOT_PAUSED = 503

RECORD_PAUSED_STATE = "OBS_WEBSOCKET_OUTPUT_PAUSED"


class ConnectionState(str, Enum):
    """Control-plane connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.RECONNECTING: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}
    ),
}


class ExponentialBackoff:
    """Exponential backoff with full jitter.

    The n-th delay is drawn uniformly from [0, min(cap, base * 2**n)].
    """

    def __init__(self, base: float = 1.0, cap: float = 30.0, rng: random.Random | None = None):
        self._base = base
        self._cap = cap
        self._rng = rng or random.Random()
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    def ceiling(self) -> float:
        """Upper bound of the next delay."""
        return min(self._cap, self._base * 2 ** min(self._attempt, 32))

    def next_delay(self) -> float:
        delay = self._rng.uniform(0, self.ceiling())
        self._attempt += 1
        return delay

    def reset(self) -> None:
        self._attempt = 0


@dataclass(frozen=True)
class StatusUpdate:
    """One value on the status stream."""

    status: ControlPlaneStatus
    generation: int
    resync: bool = False


@dataclass
class ControlPlaneStats:
    """Statistics for the control-plane client."""

    connections: int = 0
    disconnections: int = 0
    failed_attempts: int = 0
    actions_succeeded: int = 0
    actions_failed: int = 0
    actions_unreachable: int = 0
    status_updates: int = 0
    malformed_events: int = 0
    updates_dropped: int = 0


# ---------------------------------------------------------------------------
# Engine payload -> status
# ---------------------------------------------------------------------------


def _require_bool(data: dict[str, Any], key: str) -> bool:
    value = data[key]
    if not isinstance(value, bool):
        raise TypeError(f"{key} must be a boolean, got {type(value).__name__}")
    return value


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str) or not value:
        raise TypeError(f"{key} must be a non-empty string")
    return value


def _apply_stream_state(status: ControlPlaneStatus, data: dict) -> ControlPlaneStatus:
    return status.model_copy(update={"streaming": _require_bool(data, "outputActive")})


def _apply_record_state(status: ControlPlaneStatus, data: dict) -> ControlPlaneStatus:
    active = _require_bool(data, "outputActive")
    state = data.get("outputState", "")
    if not isinstance(state, str):
        raise TypeError("outputState must be a string")
    return status.model_copy(
        update={"recording": active, "recording_paused": active and state == RECORD_PAUSED_STATE}
    )


def _apply_scene_change(status: ControlPlaneStatus, data: dict) -> ControlPlaneStatus:
    return status.model_copy(update={"current_scene": _require_str(data, "sceneName")})


STATUS_EVENT_HANDLERS: dict[str, Callable[[ControlPlaneStatus, dict], ControlPlaneStatus]] = {
    "StreamStateChanged": _apply_stream_state,
    "RecordStateChanged": _apply_record_state,
    "CurrentProgramSceneChanged": _apply_scene_change,
}


async def fetch_status(transport: EngineTransport) -> ControlPlaneStatus:
    """Fetch a full status snapshot from the engine.

    Raises:
        KeyError, TypeError: if a response is malformed
    """
    stream = await transport.request("GetStreamStatus")
    record = await transport.request("GetRecordStatus")
    scene = await transport.request("GetCurrentProgramScene")
    scene_name = scene.get("currentProgramSceneName", scene.get("sceneName"))
    if scene_name is not None and not isinstance(scene_name, str):
        raise TypeError("currentProgramSceneName must be a string")
    return ControlPlaneStatus(
        streaming=_require_bool(stream, "outputActive"),
        recording=_require_bool(record, "outputActive"),
        recording_paused=(
            _require_bool(record, "outputPaused") if "outputPaused" in record else False
        ),
        current_scene=scene_name or None,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ControlPlaneClient:
    """
    Maintains one connection to the engine with automatic reconnection.

    Action invocations are serialized per connection and bound to the
    connection generation they started on: an action whose connection is
    replaced mid-flight fails with ControlPlaneUnreachableError instead of
    reporting success against a connection that no longer exists.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        action_timeout: float = 5.0,
        connect_timeout: float = 10.0,
        backoff: ExponentialBackoff | None = None,
        subscriber_queue_size: int = 100,
    ):
        """
        Initialize client.

        Args:
            transport_factory: Builds a fresh transport for each connection attempt
            action_timeout: Upper bound (seconds) on any single action
            connect_timeout: Upper bound on connect + snapshot fetch
            backoff: Reconnect delay policy (default base 1s, cap 30s)
            subscriber_queue_size: Per-subscriber status buffer
        """
        self._transport_factory = transport_factory
        self._action_timeout = action_timeout
        self._connect_timeout = connect_timeout
        self._backoff = backoff or ExponentialBackoff()
        self._subscriber_queue_size = subscriber_queue_size

        self._state = ConnectionState.DISCONNECTED
        self._state_listeners: list[Callable[[ConnectionState], Any]] = []
        self._connected = asyncio.Event()
        self._stop_requested = asyncio.Event()
        self._task: asyncio.Task | None = None

        self._transport: EngineTransport | None = None
        self._generation = 0
        self._status: ControlPlaneStatus | None = None
        self._action_lock = asyncio.Lock()
        self._subscribers: set[asyncio.Queue[StatusUpdate]] = set()
        self._stats = ControlPlaneStats()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def generation(self) -> int:
        """Number of successful connections so far."""
        return self._generation

    @property
    def status(self) -> ControlPlaneStatus | None:
        """Last known status (stale while not connected)."""
        return self._status

    @property
    def action_timeout(self) -> float:
        return self._action_timeout

    def add_state_listener(self, listener: Callable[[ConnectionState], Any]) -> None:
        self._state_listeners.append(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the connection loop in the background."""
        if self._task is not None and not self._task.done():
            return
        self._stop_requested.clear()
        self._task = asyncio.create_task(self._run(), name="control-plane-connection")

    async def stop(self) -> None:
        """Stop reconnecting and close the connection."""
        self._stop_requested.set()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._transition(ConnectionState.DISCONNECTED)

    async def wait_until_connected(self, timeout: float | None = None) -> bool:
        """Wait for the CONNECTED state. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except TimeoutError:
            return False
        return True

    async def _run(self) -> None:
        """Connect, serve, and reconnect until stopped."""
        try:
            while not self._stop_requested.is_set():
                self._transition(ConnectionState.CONNECTING)
                generation = self._generation + 1
                transport = self._transport_factory(partial(self._handle_event, generation))
                try:
                    snapshot = await asyncio.wait_for(
                        self._open(transport), self._connect_timeout
                    )
                except asyncio.CancelledError:
                    await self._close_transport(transport)
                    raise
                except Exception as e:
                    self._stats.failed_attempts += 1
                    logger.warning(f"Connection attempt failed: {e!r}")
                    await self._close_transport(transport)
                    await self._wait_before_retry()
                    continue

                self._transport = transport
                self._generation = generation
                self._status = snapshot
                self._backoff.reset()
                self._stats.connections += 1
                self._transition(ConnectionState.CONNECTED)
                self._publish(StatusUpdate(snapshot, generation, resync=True))

                try:
                    await self._wait_closed_or_stopped(transport)
                finally:
                    self._transport = None

                if self._stop_requested.is_set():
                    await self._close_transport(transport)
                    break

                self._stats.disconnections += 1
                logger.warning(f"Connection lost (generation {generation})")
                await self._close_transport(transport)
                await self._wait_before_retry()
        finally:
            transport, self._transport = self._transport, None
            if transport is not None:
                await self._close_transport(transport)
            self._transition(ConnectionState.DISCONNECTED)

    async def _close_transport(self, transport: EngineTransport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.warning(f"Error closing engine connection: {e!r}")

    async def _open(self, transport: EngineTransport) -> ControlPlaneStatus:
        await transport.connect()
        return await fetch_status(transport)

    async def _wait_closed_or_stopped(self, transport: EngineTransport) -> None:
        closed = asyncio.create_task(transport.wait_closed())
        stopped = asyncio.create_task(self._stop_requested.wait())
        try:
            await asyncio.wait({closed, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (closed, stopped):
                task.cancel()

    async def _wait_before_retry(self) -> None:
        self._transition(ConnectionState.RECONNECTING)
        delay = self._backoff.next_delay()
        logger.info(f"Reconnecting in {delay:.2f}s (attempt {self._backoff.attempt})")
        try:
            await asyncio.wait_for(self._stop_requested.wait(), delay)
        except TimeoutError:
            pass

    def _transition(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if new_state == old_state:
            return
        if new_state not in TRANSITIONS[old_state]:
            raise RuntimeError(f"Invalid transition {old_state.value} -> {new_state.value}")

        self._state = new_state
        if new_state == ConnectionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        logger.info(f"Control plane {old_state.value} -> {new_state.value}")

        for listener in self._state_listeners:
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"State listener error: {e}")

    # ------------------------------------------------------------------
    # Status stream
    # ------------------------------------------------------------------

    async def status_changes(self) -> AsyncIterator[StatusUpdate]:
        """Yield status updates forever.

        If connected, the first value is the current snapshot. After every
        reconnect the next value is a fresh snapshot flagged ``resync``;
        updates still buffered from the previous connection are discarded.
        """
        queue: asyncio.Queue[StatusUpdate] = asyncio.Queue(maxsize=self._subscriber_queue_size)
        if self.is_connected and self._status is not None:
            queue.put_nowait(StatusUpdate(self._status, self._generation, resync=True))
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    def _publish(self, update: StatusUpdate) -> None:
        self._stats.status_updates += 1
        for queue in list(self._subscribers):
            if update.resync:
                while not queue.empty():
                    queue.get_nowait()
            try:
                queue.put_nowait(update)
            except asyncio.QueueFull:
                queue.get_nowait()
                queue.put_nowait(update)
                self._stats.updates_dropped += 1

    def _handle_event(self, generation: int, event_type: str, data: dict[str, Any]) -> None:
        """Apply an engine event to the status, keeping the last good value on bad input."""
        handler = STATUS_EVENT_HANDLERS.get(event_type)
        if handler is None:
            return
        if generation != self._generation or not self.is_connected or self._status is None:
            logger.debug(f"Ignoring {event_type} from stale or pending connection")
            return

        try:
            updated = handler(self._status, data)
        except (KeyError, TypeError, ValueError) as e:
            self._stats.malformed_events += 1
            logger.warning(f"Malformed {event_type} payload ignored: {e!r}")
            return

        self._status = updated
        self._publish(StatusUpdate(updated, generation))

    # ------------------------------------------------------------------
    # Action execution
    # ------------------------------------------------------------------

    async def _perform(
        self, description: str, operation: Callable[[EngineTransport], Awaitable[T]]
    ) -> T:
        if not self.is_connected:
            self._stats.actions_unreachable += 1
            raise ControlPlaneUnreachableError(
                f"Control plane is {self._state.value}; cannot {description}"
            )

        try:
            result = await asyncio.wait_for(
                self._perform_locked(description, operation), self._action_timeout
            )
        except TimeoutError as exc:
            self._stats.actions_failed += 1
            logger.warning(f"{description} timed out after {self._action_timeout}s")
            raise ActionTimeoutError() from exc
        except ControlPlaneUnreachableError:
            self._stats.actions_unreachable += 1
            raise
        except ActionFailedError as e:
            self._stats.actions_failed += 1
            logger.warning(f"{description} failed: {e.reason}")
            raise

        self._stats.actions_succeeded += 1
        return result

    async def _perform_locked(
        self, description: str, operation: Callable[[EngineTransport], Awaitable[T]]
    ) -> T:
        async with self._action_lock:
            transport, generation = self._transport, self._generation
            if transport is None or not self.is_connected:
                raise ControlPlaneUnreachableError(f"Connection lost before {description}")

            try:
                result = await operation(transport)
            except TransportClosedError as exc:
                raise ControlPlaneUnreachableError(f"Connection lost during {description}") from exc
            except EngineRequestError as exc:
                raise ActionFailedError(exc.comment or str(exc)) from exc
            except (KeyError, TypeError, EngineProtocolError) as exc:
                raise ActionFailedError(f"Malformed engine response: {exc!r}") from exc

            if generation != self._generation or not self.is_connected:
                raise ControlPlaneUnreachableError(
                    f"Connection was replaced while {description} was in flight"
                )
            return result

    async def _request(
        self,
        description: str,
        request_type: str,
        data: dict[str, Any] | None = None,
        *,
        already_done: frozenset[int] = frozenset(),
    ) -> dict[str, Any]:
        async def operation(transport: EngineTransport) -> dict[str, Any]:
            try:
                return await transport.request(request_type, data)
            except EngineRequestError as exc:
                if exc.code in already_done:
                    logger.info(f"{description}: already in requested state")
                    return {}
                raise

        return await self._perform(description, operation)

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def switch_scene(self, name: str) -> None:
        await self._request(
            f"switch scene to {name}", "SetCurrentProgramScene", {"sceneName": name}
        )

    async def set_recording(self, on: bool) -> None:
        if on:
            await self._request(
                "start recording", "StartRecord", already_done=frozenset({OUTPUT_RUNNING})
            )
        else:
            await self._request(
                "stop recording", "StopRecord", already_done=frozenset({OUTPUT_NOT_RUNNING})
            )

    async def toggle_recording(self) -> None:
        await self._request("toggle recording", "ToggleRecord")

    async def set_recording_paused(self, paused: bool) -> None:
        if paused:
            await self._request(
                "pause recording", "PauseRecord", already_done=frozenset({OUTPUT_PAUSED})
            )
        else:
            await self._request(
                "resume recording", "ResumeRecord", already_done=frozenset({OUTPUT_NOT_PAUSED})
            )

    async def set_streaming(self, on: bool) -> None:
        if on:
            await self._request(
                "start streaming", "StartStream", already_done=frozenset({OUTPUT_RUNNING})
            )
        else:
            await self._request(
                "stop streaming", "StopStream", already_done=frozenset({OUTPUT_NOT_RUNNING})
            )

    async def toggle_streaming(self) -> None:
        await self._request("toggle streaming", "ToggleStream")

    async def set_input_mute(self, name: str, muted: bool) -> None:
        await self._request(
            f"set mute of {name} to {muted}",
            "SetInputMute",
            {"inputName": name, "inputMuted": muted},
        )

    async def toggle_input_mute(self, name: str) -> None:
        await self._request(f"toggle mute of {name}", "ToggleInputMute", {"inputName": name})

    async def set_source_visibility(
        self, source: str, visible: bool, scene: str | None = None
    ) -> None:
        """Show or hide a source in ``scene`` (default: the program scene).

        The scene and item id are resolved first; only the final request
        mutates engine state.
        """

        async def operation(transport: EngineTransport) -> None:
            scene_name = scene
            if scene_name is None:
                current = await transport.request("GetCurrentProgramScene")
                scene_name = current.get("currentProgramSceneName", current.get("sceneName"))
                if not isinstance(scene_name, str):
                    raise TypeError("currentProgramSceneName must be a string")
            item = await transport.request(
                "GetSceneItemId", {"sceneName": scene_name, "sourceName": source}
            )
            await transport.request(
                "SetSceneItemEnabled",
                {
                    "sceneName": scene_name,
                    "sceneItemId": item["sceneItemId"],
                    "sceneItemEnabled": visible,
                },
            )

        await self._perform(f"set visibility of {source} to {visible}", operation)

    async def list_scenes(self) -> list[str]:
        response = await self._request("list scenes", "GetSceneList")
        return [scene["sceneName"] for scene in response.get("scenes", [])]

    async def list_inputs(self) -> list[str]:
        response = await self._request("list inputs", "GetInputList")
        return [item["inputName"] for item in response.get("inputs", [])]

    def get_stats(self) -> dict:
        """Return control-plane client statistics."""
        return {
            "state": self._state.value,
            "generation": self._generation,
            "connections": self._stats.connections,
            "disconnections": self._stats.disconnections,
            "failed_attempts": self._stats.failed_attempts,
            "actions_succeeded": self._stats.actions_succeeded,
            "actions_failed": self._stats.actions_failed,
            "actions_unreachable": self._stats.actions_unreachable,
            "status_updates": self._stats.status_updates,
            "malformed_events": self._stats.malformed_events,
            "updates_dropped": self._stats.updates_dropped,
            "subscribers": len(self._subscribers),
        }
