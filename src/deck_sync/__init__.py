"""
deck-sync - button-to-action dispatch and live status sync for a streaming engine.

Components:
- ConfigurationStore: named button grids and the current configuration
- ActionDispatcher: grid position -> engine action
- ControlPlaneClient: single engine connection with reconnect and resync
- StatusBroadcaster / SessionRegistry: status fan-out to presentation clients
"""

__version__ = "1.0.0"
