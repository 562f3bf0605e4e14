"""
ConfigurationStore - owns named grid configurations and the current pointer.

Concurrency:
- Writes are serialized per configuration with an asyncio.Lock.
- Create/delete/set_current are serialized by a store-wide lock.
- Reads take no lock. Configurations are immutable pydantic models that are
  swapped in whole after a successful write, so a reader never observes a
  partial mutation.

Persistence is write-through: a mutation is committed to storage before
the in-memory copy is replaced. If storage fails, the store is unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from .errors import DeckValidationError, NotFoundError
from .models import (
    Button,
    Configuration,
    ConfigurationDraft,
    ConfigurationSummary,
    ConfigurationUpdate,
    Grid,
    SessionEvent,
)
from .storage import CURRENT_CONFIGURATION_KEY, ConfigurationStorage

logger = logging.getLogger(__name__)

ChangeListener = Callable[[SessionEvent], Any]


def _coerce(model: type[BaseModel], value: Any) -> Any:
    """Validate a dict (or model) into ``model``, raising DeckValidationError."""
    if isinstance(value, model):
        return value
    if isinstance(value, BaseModel):
        value = value.model_dump()
    try:
        return model.model_validate(value)
    except ValidationError as exc:
        raise DeckValidationError(_describe(exc)) from exc


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'value'}: {err['msg']}"
        for err in exc.errors()
    )


class ConfigurationStore:
    """
    In-memory store of configurations backed by ConfigurationStorage.

    The current configuration is process-wide state: read through
    ``current()`` / ``current_id``, changed only through ``set_current``.
    """

    def __init__(
        self,
        storage: ConfigurationStorage | None = None,
        *,
        default_grid: Grid | None = None,
    ):
        self._storage = storage
        self._default_grid = default_grid or Grid(rows=3, cols=5)
        self._configurations: dict[str, Configuration] = {}
        self._current_id: str | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._store_lock = asyncio.Lock()
        self._listeners: list[ChangeListener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Load all configurations and seed a default one on first run."""
        if self._storage is not None:
            for configuration in await self._storage.load_configurations():
                self._configurations[configuration.id] = configuration
            self._current_id = await self._storage.get_setting(CURRENT_CONFIGURATION_KEY)

        if not self._configurations:
            seeded = await self.create(
                ConfigurationDraft(name="Default", grid=self._default_grid, is_default=True)
            )
            logger.info(f"Seeded default configuration {seeded.id}")

        if self._current_id not in self._configurations:
            fallback = next(
                (c for c in self._configurations.values() if c.is_default),
                next(iter(self._configurations.values())),
            )
            await self.set_current(fallback.id)

        logger.info(
            f"Loaded {len(self._configurations)} configurations "
            f"(current: {self._current_id})"
        )

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback receiving configuration change events."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, configuration_id: str) -> Configuration:
        try:
            return self._configurations[configuration_id]
        except KeyError:
            raise NotFoundError(f"Configuration {configuration_id} not found") from None

    def list(self) -> list[ConfigurationSummary]:
        return [
            configuration.summary(is_current=configuration.id == self._current_id)
            for configuration in self._configurations.values()
        ]

    @property
    def current_id(self) -> str | None:
        return self._current_id

    def current(self) -> Configuration:
        """Return the current configuration."""
        if self._current_id is None:
            raise NotFoundError("No current configuration")
        return self.get(self._current_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(self, draft: ConfigurationDraft | dict) -> Configuration:
        draft = _coerce(ConfigurationDraft, draft)
        async with self._store_lock:
            buttons: list[Button] = []
            for button in draft.buttons:
                if not button.id:
                    button = button.model_copy(
                        update={"id": self._new_button_id(button, buttons)}
                    )
                buttons.append(button)

            configuration = self._build(
                {
                    "id": uuid.uuid4().hex,
                    "name": draft.name,
                    "description": draft.description,
                    "grid": draft.grid,
                    "buttons": buttons,
                    "is_default": draft.is_default,
                }
            )
            await self._persist(configuration)
            self._configurations[configuration.id] = configuration

        logger.info(f"Created configuration {configuration.id} ({configuration.name})")
        self._notify(SessionEvent.configuration_changed(configuration))
        return configuration

    async def update(
        self, configuration_id: str, changes: ConfigurationUpdate | dict
    ) -> Configuration:
        """Rename, re-describe or resize a configuration."""
        changes = _coerce(ConfigurationUpdate, changes)
        async with self._lock_for(configuration_id):
            existing = self.get(configuration_id)
            updated = self._build(
                {
                    **existing.model_dump(),
                    **changes.model_dump(exclude_none=True),
                    "updated_at": datetime.now(UTC),
                }
            )
            await self._commit(updated)
        return updated

    async def delete(self, configuration_id: str) -> None:
        async with self._store_lock:
            self.get(configuration_id)
            if configuration_id == self._current_id:
                raise DeckValidationError("The current configuration cannot be deleted")
            async with self._lock_for(configuration_id):
                if self._storage is not None:
                    await self._storage.delete_configuration(configuration_id)
                del self._configurations[configuration_id]
            self._locks.pop(configuration_id, None)
        logger.info(f"Deleted configuration {configuration_id}")

    async def upsert_button(
        self, configuration_id: str, button: Button | dict, *, must_exist: bool = False
    ) -> Configuration:
        """Add a button, or replace/move the button with the same id.

        A button whose target cell is held by a different button is rejected
        and the configuration is left unchanged. With ``must_exist`` the id
        must already be present, otherwise NotFoundError is raised.
        """
        button = _coerce(Button, button)
        async with self._lock_for(configuration_id):
            existing = self.get(configuration_id)
            if must_exist and (not button.id or existing.button_by_id(button.id) is None):
                raise NotFoundError(f"Button {button.id} not found in {configuration_id}")
            if not existing.grid.contains(button.position):
                raise DeckValidationError(
                    f"Position ({button.row}, {button.col}) is outside the "
                    f"{existing.grid.rows}x{existing.grid.cols} grid"
                )

            others = [b for b in existing.buttons if not button.id or b.id != button.id]
            occupant = next((b for b in others if b.position == button.position), None)
            if occupant is not None:
                raise DeckValidationError(
                    f"Position ({button.row}, {button.col}) is already occupied by {occupant.id}"
                )

            if not button.id:
                button = button.model_copy(update={"id": self._new_button_id(button, others)})

            updated = self._build(
                {
                    **existing.model_dump(),
                    "buttons": [*others, button],
                    "updated_at": datetime.now(UTC),
                }
            )
            await self._commit(updated)
        logger.info(f"Saved button {button.id} at ({button.row}, {button.col}) in {configuration_id}")
        return updated

    async def delete_button(self, configuration_id: str, button_id: str) -> Configuration:
        async with self._lock_for(configuration_id):
            existing = self.get(configuration_id)
            if existing.button_by_id(button_id) is None:
                raise NotFoundError(f"Button {button_id} not found in {configuration_id}")
            updated = self._build(
                {
                    **existing.model_dump(),
                    "buttons": [b for b in existing.buttons if b.id != button_id],
                    "updated_at": datetime.now(UTC),
                }
            )
            await self._commit(updated)
        logger.info(f"Deleted button {button_id} from {configuration_id}")
        return updated

    async def set_current(self, configuration_id: str) -> None:
        """Point the process-wide current configuration at ``configuration_id``.

        In-flight presses already resolved against the previous configuration
        are unaffected.
        """
        async with self._store_lock:
            configuration = self.get(configuration_id)
            if self._storage is not None:
                await self._storage.set_setting(CURRENT_CONFIGURATION_KEY, configuration_id)
            self._current_id = configuration_id
        logger.info(f"Current configuration is now {configuration_id} ({configuration.name})")
        self._notify(SessionEvent.configuration_changed(configuration, current=True))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, configuration_id: str) -> asyncio.Lock:
        lock = self._locks.get(configuration_id)
        if lock is None:
            lock = self._locks[configuration_id] = asyncio.Lock()
        return lock

    def _build(self, data: dict) -> Configuration:
        try:
            return Configuration.model_validate(data)
        except ValidationError as exc:
            raise DeckValidationError(_describe(exc)) from exc

    async def _persist(self, configuration: Configuration) -> None:
        if self._storage is not None:
            await self._storage.save_configuration(configuration)

    async def _commit(self, configuration: Configuration) -> None:
        await self._persist(configuration)
        self._configurations[configuration.id] = configuration
        self._notify(
            SessionEvent.configuration_changed(
                configuration, current=configuration.id == self._current_id
            )
        )

    @staticmethod
    def _new_button_id(button: Button, siblings: list[Button]) -> str:
        candidate = button.position.button_id()
        taken = {b.id for b in siblings}
        while candidate in taken:
            candidate = f"{button.position.button_id()}-{uuid.uuid4().hex[:6]}"
        return candidate

    def _notify(self, event: SessionEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Configuration listener error: {e}")
