"""Engine transport abstraction used by the control-plane client."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

EventHandler = Callable[[str, dict[str, Any]], None]


class TransportClosedError(ConnectionError):
    """The engine connection is closed; in-flight requests cannot complete."""


class EngineProtocolError(ConnectionError):
    """The engine sent something the transport cannot interpret."""


class EngineRequestError(Exception):
    """The engine answered a request with a failure status."""

    def __init__(self, code: int, comment: str = ""):
        message = f"Engine request failed ({code})"
        super().__init__(f"{message}: {comment}" if comment else message)
        self.code = code
        self.comment = comment


class EngineTransport(ABC):
    """
    One physical connection to the streaming engine.

    A transport is single-use: it is connected once, serves requests until
    it closes, and is then discarded. The control-plane client builds a new
    one for every connection attempt through a TransportFactory.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and complete any handshake."""

    @abstractmethod
    async def request(self, request_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a request and wait for its response data.

        Raises:
            TransportClosedError: if the connection closed before a response
            EngineRequestError: if the engine rejected the request
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""

    @abstractmethod
    async def wait_closed(self) -> None:
        """Return once the connection has closed for any reason."""


TransportFactory = Callable[[EventHandler], EngineTransport]
