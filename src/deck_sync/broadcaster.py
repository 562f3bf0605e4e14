"""
StatusBroadcaster - control-plane status stream to session fan-out.

Consumes ControlPlaneClient.status_changes(), suppresses values equal to the
last broadcast one, and buffers the latest value so a newly registered
session gets a snapshot immediately.

A value from a newer connection generation, or one flagged resync, is
always broadcast (as resync) even if it equals the previous value: sessions
must learn that the post-reconnect state has been confirmed.
"""

import asyncio
import logging
from dataclasses import dataclass

from .control_plane import ConnectionState, ControlPlaneClient, StatusUpdate
from .models import ControlPlaneStatus, SessionEvent
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class BroadcasterStats:
    """Statistics for the status broadcaster."""

    updates_received: int = 0
    updates_broadcast: int = 0
    updates_suppressed: int = 0
    stale_updates: int = 0
    state_changes: int = 0


class StatusBroadcaster:
    """Pushes control-plane status and connection state to all sessions."""

    def __init__(self, control_plane: ControlPlaneClient, registry: SessionRegistry):
        self._control_plane = control_plane
        self._registry = registry
        self._last_status: ControlPlaneStatus | None = None
        self._last_generation = 0
        self._task: asyncio.Task | None = None
        self._stats = BroadcasterStats()

        control_plane.add_state_listener(self._on_state_change)
        registry.snapshot_source = self.snapshot_events

    @property
    def last_status(self) -> ControlPlaneStatus | None:
        """Latest broadcast status (buffered for new sessions)."""
        return self._last_status

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._consume(), name="status-broadcaster")
        logger.info("StatusBroadcaster started")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("StatusBroadcaster stopped")

    async def _consume(self) -> None:
        async for update in self._control_plane.status_changes():
            try:
                self.handle_update(update)
            except Exception as e:
                logger.error(f"Status broadcast error: {e}")

    def handle_update(self, update: StatusUpdate) -> bool:
        """Broadcast ``update`` unless it is stale or redundant.

        Returns:
            True if the update was pushed to the registry
        """
        self._stats.updates_received += 1
        if update.generation < self._last_generation:
            self._stats.stale_updates += 1
            logger.debug(f"Dropping status from old generation {update.generation}")
            return False

        resync = update.resync or update.generation > self._last_generation
        if not resync and update.status == self._last_status:
            self._stats.updates_suppressed += 1
            return False

        self._last_generation = update.generation
        self._last_status = update.status
        self._registry.broadcast(SessionEvent.status_update(update.status, resync=resync))
        self._stats.updates_broadcast += 1
        return True

    def _on_state_change(self, state: ConnectionState) -> None:
        self._stats.state_changes += 1
        self._registry.broadcast(SessionEvent.connection_state(state.value))

    def snapshot_events(self) -> list[SessionEvent]:
        """Events a new session receives on registration."""
        events = [SessionEvent.connection_state(self._control_plane.state.value)]
        if self._last_status is not None:
            events.append(SessionEvent.status_update(self._last_status, resync=True))
        return events

    def get_stats(self) -> dict:
        """Get broadcaster statistics."""
        return {
            "is_running": self.is_running,
            "generation": self._last_generation,
            "updates_received": self._stats.updates_received,
            "updates_broadcast": self._stats.updates_broadcast,
            "updates_suppressed": self._stats.updates_suppressed,
            "stale_updates": self._stats.stale_updates,
            "state_changes": self._stats.state_changes,
        }
