"""
SessionRegistry - connected presentation clients and event fan-out.

Each session owns a bounded queue and a sender task, so a slow or dead
client never blocks delivery to the others.

Backpressure:
- Queue full: the oldest pending event is dropped.
- A resync status event purges pending status events first; they describe
  a connection that no longer exists.
- A session whose sends fail ``failure_threshold`` times in a row is
  evicted and its connection closed. The client must reconnect.
"""

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .models import EventType, SessionEvent

logger = logging.getLogger(__name__)

SnapshotSource = Callable[[], list[SessionEvent]]


@dataclass
class Session:
    """One presentation client's connection and delivery state."""

    session_id: str
    connection: Any
    queue: deque[SessionEvent] = field(default_factory=deque)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    last_status: dict | None = None
    failures: int = 0
    delivered: int = 0
    dropped: int = 0
    suppressed: int = 0
    task: asyncio.Task | None = None


@dataclass
class RegistryStats:
    """Statistics for the session registry."""

    sessions_registered: int = 0
    sessions_unregistered: int = 0
    sessions_evicted: int = 0
    events_broadcast: int = 0
    events_delivered: int = 0
    events_dropped: int = 0
    events_suppressed: int = 0
    send_failures: int = 0


class SessionRegistry:
    """
    Tracks sessions and delivers targeted or broadcast events.

    A connection is anything with async ``send_text(str)`` and ``close()``,
    such as a FastAPI WebSocket.
    """

    def __init__(
        self,
        queue_size: int = 100,
        failure_threshold: int = 3,
        send_timeout: float = 5.0,
    ):
        """
        Initialize registry.

        Args:
            queue_size: Pending events per session before dropping the oldest
            failure_threshold: Consecutive send failures before eviction
            send_timeout: Upper bound (seconds) on a single send
        """
        self._queue_size = queue_size
        self._failure_threshold = failure_threshold
        self._send_timeout = send_timeout
        self._sessions: dict[str, Session] = {}
        self._stats = RegistryStats()
        self.snapshot_source: SnapshotSource | None = None

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def register(self, connection: Any) -> str:
        """Register a connection and deliver the current snapshot to it."""
        session = Session(session_id=uuid.uuid4().hex, connection=connection)
        self._sessions[session.session_id] = session
        session.task = asyncio.create_task(
            self._sender(session), name=f"session-{session.session_id[:8]}"
        )
        self._stats.sessions_registered += 1
        logger.info(f"Session {session.session_id} registered (total: {self.session_count})")
        self.send_snapshot(session.session_id)
        return session.session_id

    async def unregister(self, session_id: str) -> None:
        """Forget a session. The caller owns its connection."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        await self._stop_sender(session)
        self._stats.sessions_unregistered += 1
        logger.info(f"Session {session_id} unregistered (total: {self.session_count})")

    def broadcast(self, event: SessionEvent) -> None:
        """Queue an event for every session."""
        self._stats.events_broadcast += 1
        for session in list(self._sessions.values()):
            self._enqueue(session, event)

    def send(self, session_id: str, event: SessionEvent) -> bool:
        """Queue an event for one session. Returns False if it is gone."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        self._enqueue(session, event)
        return True

    def send_snapshot(self, session_id: str) -> bool:
        """Queue the buffered connection state and latest status for a session."""
        if self.snapshot_source is None:
            return session_id in self._sessions
        delivered = True
        for event in self.snapshot_source():
            delivered = self.send(session_id, event) and delivered
        return delivered

    async def close_all(self) -> None:
        """Unregister every session and close its connection."""
        for session_id in list(self._sessions):
            session = self._sessions.pop(session_id)
            await self._stop_sender(session)
            await self._close_connection(session)
        logger.info("All sessions closed")

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _enqueue(self, session: Session, event: SessionEvent) -> None:
        if event.type == EventType.STATUS_UPDATE and event.resync:
            kept = deque(e for e in session.queue if e.type != EventType.STATUS_UPDATE)
            purged = len(session.queue) - len(kept)
            if purged:
                session.queue = kept
                session.dropped += purged
                self._stats.events_dropped += purged

        if len(session.queue) >= self._queue_size:
            session.queue.popleft()
            session.dropped += 1
            self._stats.events_dropped += 1
            logger.warning(f"Session {session.session_id} queue full, dropped oldest event")

        session.queue.append(event)
        session.wakeup.set()

    async def _sender(self, session: Session) -> None:
        while True:
            await session.wakeup.wait()
            session.wakeup.clear()
            while session.queue:
                event = session.queue.popleft()
                is_status = event.type == EventType.STATUS_UPDATE
                if is_status and not event.resync and event.data == session.last_status:
                    session.suppressed += 1
                    self._stats.events_suppressed += 1
                    continue

                if await self._deliver(session, event):
                    if is_status:
                        session.last_status = event.data
                elif session.failures >= self._failure_threshold:
                    await self._evict(session)
                    return

    async def _deliver(self, session: Session, event: SessionEvent) -> bool:
        try:
            await asyncio.wait_for(
                session.connection.send_text(event.model_dump_json()), self._send_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            session.failures += 1
            self._stats.send_failures += 1
            logger.warning(
                f"Send to session {session.session_id} failed "
                f"({session.failures}/{self._failure_threshold}): {e!r}"
            )
            return False

        session.failures = 0
        session.delivered += 1
        self._stats.events_delivered += 1
        return True

    async def _evict(self, session: Session) -> None:
        if self._sessions.pop(session.session_id, None) is None:
            return
        self._stats.sessions_evicted += 1
        logger.warning(f"Session {session.session_id} evicted after repeated send failures")
        await self._close_connection(session)

    async def _stop_sender(self, session: Session) -> None:
        task, session.task = session.task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _close_connection(self, session: Session) -> None:
        try:
            await session.connection.close()
        except Exception as e:
            logger.debug(f"Closing session {session.session_id} connection: {e!r}")

    def get_stats(self) -> dict:
        """Get registry statistics."""
        return {
            "session_count": self.session_count,
            "sessions_registered": self._stats.sessions_registered,
            "sessions_unregistered": self._stats.sessions_unregistered,
            "sessions_evicted": self._stats.sessions_evicted,
            "events_broadcast": self._stats.events_broadcast,
            "events_delivered": self._stats.events_delivered,
            "events_dropped": self._stats.events_dropped,
            "events_suppressed": self._stats.events_suppressed,
            "send_failures": self._stats.send_failures,
            "pending": sum(len(s.queue) for s in self._sessions.values()),
        }
