"""
ActionDispatcher - grid position to control-plane action.

press(position) resolves the current configuration exactly once, so a
concurrent switch of the current configuration cannot change which action
an in-flight press executes.
"""

import logging
from collections.abc import Awaitable, Callable

from .config_store import ConfigurationStore
from .control_plane import ControlPlaneClient
from .errors import ActionFailedError, ControlPlaneUnreachableError, DeckValidationError
from .models import (
    Action,
    ActionKind,
    ActionOutcome,
    ActionResult,
    GridPosition,
    InputMuteParams,
    InputParams,
    SceneParams,
    SourceVisibilityParams,
)

logger = logging.getLogger(__name__)


class ActionDispatcher:
    """Executes button actions and reports a typed result."""

    def __init__(self, store: ConfigurationStore, control_plane: ControlPlaneClient):
        self._store = store
        self._control_plane = control_plane
        self._handlers: dict[ActionKind, Callable[[Action], Awaitable[None]]] = {
            ActionKind.SWITCH_SCENE: self._switch_scene,
            ActionKind.START_STREAM: lambda _: control_plane.set_streaming(True),
            ActionKind.STOP_STREAM: lambda _: control_plane.set_streaming(False),
            ActionKind.TOGGLE_STREAM: lambda _: control_plane.toggle_streaming(),
            ActionKind.START_RECORD: lambda _: control_plane.set_recording(True),
            ActionKind.STOP_RECORD: lambda _: control_plane.set_recording(False),
            ActionKind.TOGGLE_RECORD: lambda _: control_plane.toggle_recording(),
            ActionKind.PAUSE_RECORD: lambda _: control_plane.set_recording_paused(True),
            ActionKind.RESUME_RECORD: lambda _: control_plane.set_recording_paused(False),
            ActionKind.TOGGLE_MUTE: self._toggle_mute,
            ActionKind.SET_INPUT_MUTE: self._set_input_mute,
            ActionKind.SET_SOURCE_VISIBILITY: self._set_source_visibility,
        }
        self._presses = 0
        self._outcomes = {outcome: 0 for outcome in ActionOutcome}

    async def press(self, position: GridPosition) -> ActionResult:
        """Execute the action bound to ``position`` in the current configuration.

        Raises:
            DeckValidationError: if the position is outside the current grid
        """
        configuration = self._store.current()
        if not configuration.grid.contains(position):
            raise DeckValidationError(
                f"Position ({position.row}, {position.col}) is outside the "
                f"{configuration.grid.rows}x{configuration.grid.cols} grid"
            )

        self._presses += 1
        button = configuration.button_at(position)
        if button is None:
            logger.debug(f"Press on empty cell ({position.row}, {position.col})")
            self._outcomes[ActionOutcome.SUCCESS] += 1
            return ActionResult.empty_cell(position)

        result = await self.execute(button.action, position=position, button_id=button.id)
        level = logging.INFO if result.ok else logging.WARNING
        logger.log(
            level,
            f"Press {button.id} ({button.action.type.value}) -> {result.outcome.value}"
            + (f": {result.reason}" if result.reason else ""),
        )
        return result

    async def execute(
        self,
        action: Action,
        *,
        position: GridPosition = GridPosition(0, 0),
        button_id: str | None = None,
    ) -> ActionResult:
        """Run ``action`` against the control plane. Never raises for engine failures."""
        outcome, reason = ActionOutcome.SUCCESS, None
        try:
            await self._handlers[action.type](action)
        except ControlPlaneUnreachableError as e:
            outcome, reason = ActionOutcome.CONTROL_PLANE_UNREACHABLE, str(e)
        except ActionFailedError as e:
            outcome, reason = ActionOutcome.ACTION_FAILED, e.reason

        self._outcomes[outcome] += 1
        return ActionResult(
            outcome=outcome,
            row=position.row,
            col=position.col,
            button_id=button_id,
            action=action.type,
            reason=reason,
        )

    async def _switch_scene(self, action: Action) -> None:
        params: SceneParams = action.parsed_params()
        await self._control_plane.switch_scene(params.scene_name)

    async def _toggle_mute(self, action: Action) -> None:
        params: InputParams = action.parsed_params()
        await self._control_plane.toggle_input_mute(params.input_name)

    async def _set_input_mute(self, action: Action) -> None:
        params: InputMuteParams = action.parsed_params()
        await self._control_plane.set_input_mute(params.input_name, params.muted)

    async def _set_source_visibility(self, action: Action) -> None:
        params: SourceVisibilityParams = action.parsed_params()
        await self._control_plane.set_source_visibility(
            params.source_name, params.visible, params.scene_name
        )

    def get_stats(self) -> dict:
        """Get dispatcher statistics."""
        return {
            "presses": self._presses,
            **{f"outcome_{outcome.value}": count for outcome, count in self._outcomes.items()},
        }
