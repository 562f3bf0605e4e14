"""
Error taxonomy for deck-sync.

- DeckValidationError: bad input shape or grid bounds, never retried
- NotFoundError: unknown configuration or button id
- ActionFailedError: the engine rejected an action (caller may retry)
- ActionTimeoutError: bounded wait exceeded, a kind of ActionFailedError
- ControlPlaneUnreachableError: no live engine connection
"""

from __future__ import annotations


class DeckSyncError(Exception):
    """Base class for all deck-sync errors."""


class DeckValidationError(DeckSyncError):
    """Input failed validation (grid bounds, collisions, parameter schema)."""


class NotFoundError(DeckSyncError):
    """Requested configuration or button does not exist."""


class ActionFailedError(DeckSyncError):
    """The control plane rejected or could not complete an action."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ActionTimeoutError(ActionFailedError):
    """An action did not complete within the configured timeout."""

    def __init__(self, reason: str = "timeout"):
        super().__init__(reason)


class ControlPlaneUnreachableError(DeckSyncError):
    """No live connection to the control plane."""
