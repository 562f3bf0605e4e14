"""
DeckService - wires the dispatch-and-sync components together.

    ConfigurationStore --changes--> SessionRegistry
    ActionDispatcher --> ControlPlaneClient --status--> StatusBroadcaster --> SessionRegistry
"""

import logging

from .broadcaster import StatusBroadcaster
from .config_store import ConfigurationStore
from .control_plane import ControlPlaneClient, ExponentialBackoff
from .dispatcher import ActionDispatcher
from .models import Grid
from .obs import obs_transport_factory
from .sessions import SessionRegistry
from .settings import ServiceConfig
from .storage import ConfigurationStorage
from .transport import TransportFactory

logger = logging.getLogger(__name__)


class DeckService:
    """Owns every component and their start/stop order."""

    def __init__(self, config: ServiceConfig, transport_factory: TransportFactory | None = None):
        """
        Initialize service.

        Args:
            config: Service settings
            transport_factory: Engine transport factory (defaults to OBS WebSocket)
        """
        self.config = config
        self.storage = ConfigurationStorage(config.storage_path)
        self.store = ConfigurationStore(
            self.storage,
            default_grid=Grid(rows=config.default_grid_rows, cols=config.default_grid_cols),
        )
        self.control_plane = ControlPlaneClient(
            transport_factory or obs_transport_factory(config.obs_url, config.obs_password),
            action_timeout=config.action_timeout_seconds,
            connect_timeout=config.connect_timeout_seconds,
            backoff=ExponentialBackoff(config.reconnect_base_seconds, config.reconnect_max_seconds),
        )
        self.registry = SessionRegistry(
            queue_size=config.session_queue_size,
            failure_threshold=config.session_failure_threshold,
            send_timeout=config.action_timeout_seconds,
        )
        self.broadcaster = StatusBroadcaster(self.control_plane, self.registry)
        self.dispatcher = ActionDispatcher(self.store, self.control_plane)
        self.store.add_listener(self.registry.broadcast)
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        await self.storage.initialize()
        await self.store.load()
        await self.broadcaster.start()
        await self.control_plane.start()
        self._started = True
        logger.info(f"Deck service started (engine: {self.config.obs_url})")

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.control_plane.stop()
        await self.broadcaster.stop()
        await self.registry.close_all()
        await self.storage.close()
        logger.info("Deck service stopped")

    async def get_stats(self) -> dict:
        return {
            "control_plane": self.control_plane.get_stats(),
            "broadcaster": self.broadcaster.get_stats(),
            "sessions": self.registry.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
            "storage": await self.storage.get_stats(),
        }
