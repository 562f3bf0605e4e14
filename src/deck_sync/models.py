"""
Pydantic models for grid configurations, actions and control-plane status.

Wire shapes follow the deck client's JSON:
    {"grid": {"rows": 2, "cols": 3},
     "buttons": [{"id": "btn-0-0", "row": 0, "col": 0, "text": "Intro",
                  "color": "#1e88e5", "action": {"type": "switch_scene",
                                                 "params": {"scene_name": "Intro"}}}]}
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, NamedTuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

MAX_GRID_DIMENSION = 16

_POSITION_RE = re.compile(r"^(?:btn-)?(\d+)-(\d+)$")

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ActionKind(StrEnum):
    """Operations a button can trigger against the control plane."""

    SWITCH_SCENE = "switch_scene"
    START_STREAM = "start_stream"
    STOP_STREAM = "stop_stream"
    TOGGLE_STREAM = "toggle_stream"
    START_RECORD = "start_record"
    STOP_RECORD = "stop_record"
    TOGGLE_RECORD = "toggle_record"
    PAUSE_RECORD = "pause_record"
    RESUME_RECORD = "resume_record"
    TOGGLE_MUTE = "toggle_mute"
    SET_INPUT_MUTE = "set_input_mute"
    SET_SOURCE_VISIBILITY = "set_source_visibility"


class ActionOutcome(StrEnum):
    """Result category of a button press."""

    SUCCESS = "success"
    ACTION_FAILED = "action_failed"
    CONTROL_PLANE_UNREACHABLE = "control_plane_unreachable"


class EventType(StrEnum):
    """Push event types delivered to sessions."""

    STATUS_UPDATE = "status_update"
    CONNECTION_STATE = "connection_state"
    CONFIGURATION_CHANGED = "configuration_changed"
    CURRENT_CONFIGURATION_CHANGED = "current_configuration_changed"
    PONG = "pong"
    PRESS_RESULT = "press_result"


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


class GridPosition(NamedTuple):
    """A (row, col) cell in a configuration grid."""

    row: int
    col: int

    @classmethod
    def parse(cls, text: str) -> GridPosition:
        """Parse ``btn-R-C`` (or ``R-C``) into a position.

        Raises:
            ValueError: if the text is not a position
        """
        match = _POSITION_RE.match(text.strip())
        if match is None:
            raise ValueError(f"Not a grid position: {text!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    def button_id(self) -> str:
        return f"btn-{self.row}-{self.col}"


# ---------------------------------------------------------------------------
# Action parameter schemas
# ---------------------------------------------------------------------------


class NoParams(BaseModel):
    """Kinds that take no parameters."""


class SceneParams(BaseModel):
    scene_name: str = Field(min_length=1, description="Scene to make the program scene")


class InputParams(BaseModel):
    input_name: str = Field(min_length=1, description="Audio input name")


class InputMuteParams(InputParams):
    muted: bool = Field(description="Desired mute state")


class SourceVisibilityParams(BaseModel):
    source_name: str = Field(min_length=1, description="Source (scene item) name")
    visible: bool = Field(description="Desired visibility")
    scene_name: str | None = Field(
        default=None,
        description="Scene containing the source (defaults to the program scene)",
    )


PARAM_SCHEMAS: dict[ActionKind, type[BaseModel]] = {
    ActionKind.SWITCH_SCENE: SceneParams,
    ActionKind.START_STREAM: NoParams,
    ActionKind.STOP_STREAM: NoParams,
    ActionKind.TOGGLE_STREAM: NoParams,
    ActionKind.START_RECORD: NoParams,
    ActionKind.STOP_RECORD: NoParams,
    ActionKind.TOGGLE_RECORD: NoParams,
    ActionKind.PAUSE_RECORD: NoParams,
    ActionKind.RESUME_RECORD: NoParams,
    ActionKind.TOGGLE_MUTE: InputParams,
    ActionKind.SET_INPUT_MUTE: InputMuteParams,
    ActionKind.SET_SOURCE_VISIBILITY: SourceVisibilityParams,
}


class Action(BaseModel):
    """A typed, parameterized operation triggered by a button.

    ``params`` is validated against the kind's schema on construction and
    normalized (unrelated keys dropped), so a persisted Action is always
    executable.
    """

    model_config = ConfigDict(frozen=True)

    type: ActionKind
    params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _validate_params(cls, raw: Any) -> Any:
        if not isinstance(raw, dict):
            return raw
        try:
            kind = ActionKind(raw.get("type"))
        except ValueError:
            # Let field validation report the bad kind
            return raw
        params = raw.get("params") or {}
        if not isinstance(params, dict):
            raise ValueError("params must be an object")
        try:
            validated = PARAM_SCHEMAS[kind].model_validate(params)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            )
            raise ValueError(f"Invalid params for {kind.value}: {problems}") from exc
        return {**raw, "params": validated.model_dump(exclude_none=True)}

    def parsed_params(self) -> Any:
        """Return the params as an instance of the kind's schema."""
        return PARAM_SCHEMAS[self.type].model_validate(self.params)


# ---------------------------------------------------------------------------
# Buttons and configurations
# ---------------------------------------------------------------------------


class Button(BaseModel):
    """A positioned, actionable grid button.

    The id is assigned from the position at creation time and stays stable
    if the button moves; position is authoritative.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default="", description="Opaque handle, stable across edits")
    row: int = Field(ge=0)
    col: int = Field(ge=0)
    text: str = ""
    color: str = "#2d2d2d"
    icon: str | None = None
    action: Action

    @property
    def position(self) -> GridPosition:
        return GridPosition(self.row, self.col)


class Grid(BaseModel):
    model_config = ConfigDict(frozen=True)

    rows: int = Field(ge=1, le=MAX_GRID_DIMENSION)
    cols: int = Field(ge=1, le=MAX_GRID_DIMENSION)

    def contains(self, position: GridPosition) -> bool:
        return 0 <= position.row < self.rows and 0 <= position.col < self.cols


class Configuration(BaseModel):
    """A named grid layout of buttons.

    Invariants (checked on construction):
    - every button lies within the grid
    - at most one button per (row, col)
    - button ids are unique and non-empty
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = Field(min_length=1)
    description: str = ""
    grid: Grid
    buttons: tuple[Button, ...] = ()
    is_default: bool = False
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("buttons")
    @classmethod
    def _order_by_position(cls, buttons: tuple[Button, ...]) -> tuple[Button, ...]:
        return tuple(sorted(buttons, key=lambda b: (b.row, b.col)))

    @model_validator(mode="after")
    def _check_layout(self) -> Configuration:
        seen_positions: dict[GridPosition, str] = {}
        seen_ids: set[str] = set()
        for button in self.buttons:
            if not button.id:
                raise ValueError(f"Button at {button.position.button_id()} has no id")
            if button.id in seen_ids:
                raise ValueError(f"Duplicate button id {button.id}")
            seen_ids.add(button.id)
            if not self.grid.contains(button.position):
                raise ValueError(
                    f"Button {button.id} at ({button.row}, {button.col}) is outside "
                    f"the {self.grid.rows}x{self.grid.cols} grid"
                )
            occupant = seen_positions.get(button.position)
            if occupant is not None:
                raise ValueError(
                    f"Buttons {occupant} and {button.id} both occupy "
                    f"({button.row}, {button.col})"
                )
            seen_positions[button.position] = button.id
        return self

    def button_at(self, position: GridPosition) -> Button | None:
        for button in self.buttons:
            if button.position == position:
                return button
        return None

    def button_by_id(self, button_id: str) -> Button | None:
        for button in self.buttons:
            if button.id == button_id:
                return button
        return None

    def summary(self, *, is_current: bool = False) -> ConfigurationSummary:
        return ConfigurationSummary(
            id=self.id,
            name=self.name,
            description=self.description,
            grid=self.grid,
            button_count=len(self.buttons),
            is_default=self.is_default,
            is_current=is_current,
        )


class ConfigurationSummary(BaseModel):
    id: str
    name: str
    description: str
    grid: Grid
    button_count: int
    is_default: bool
    is_current: bool


class ConfigurationDraft(BaseModel):
    """Input for creating a configuration."""

    name: str = Field(min_length=1)
    description: str = ""
    grid: Grid = Field(default_factory=lambda: Grid(rows=3, cols=5))
    buttons: list[Button] = Field(default_factory=list)
    is_default: bool = False


class ConfigurationUpdate(BaseModel):
    """Partial update of a configuration's metadata or grid size."""

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    grid: Grid | None = None


# ---------------------------------------------------------------------------
# Control-plane status and results
# ---------------------------------------------------------------------------


class ControlPlaneStatus(BaseModel):
    """Authoritative engine status, produced only by the control-plane client."""

    model_config = ConfigDict(frozen=True)

    streaming: bool = False
    recording: bool = False
    recording_paused: bool = False
    current_scene: str | None = None


class ActionResult(BaseModel):
    """Typed outcome of a button press."""

    outcome: ActionOutcome
    row: int
    col: int
    button_id: str | None = None
    action: ActionKind | None = None
    reason: str | None = None
    noop: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == ActionOutcome.SUCCESS

    @classmethod
    def empty_cell(cls, position: GridPosition) -> ActionResult:
        return cls(outcome=ActionOutcome.SUCCESS, row=position.row, col=position.col, noop=True)


# ---------------------------------------------------------------------------
# Push events
# ---------------------------------------------------------------------------


class SessionEvent(BaseModel):
    """Envelope for everything pushed to presentation clients."""

    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    resync: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def status_update(cls, status: ControlPlaneStatus, *, resync: bool = False) -> SessionEvent:
        return cls(type=EventType.STATUS_UPDATE, data=status.model_dump(), resync=resync)

    @classmethod
    def connection_state(cls, state: str) -> SessionEvent:
        return cls(type=EventType.CONNECTION_STATE, data={"state": state})

    @classmethod
    def configuration_changed(
        cls, configuration: Configuration, *, current: bool = False
    ) -> SessionEvent:
        event_type = (
            EventType.CURRENT_CONFIGURATION_CHANGED if current else EventType.CONFIGURATION_CHANGED
        )
        return cls(type=event_type, data=configuration.model_dump(mode="json"))
