"""In-memory streaming engine speaking the EngineTransport interface."""

import asyncio
import json
from typing import Any

from deck_sync.control_plane import ControlPlaneClient, ExponentialBackoff
from deck_sync.transport import EngineRequestError, EngineTransport, TransportClosedError

STARTED = "OBS_WEBSOCKET_OUTPUT_STARTED"
STOPPED = "OBS_WEBSOCKET_OUTPUT_STOPPED"
PAUSED = "OBS_WEBSOCKET_OUTPUT_PAUSED"
RESUMED = "OBS_WEBSOCKET_OUTPUT_RESUMED"


class FakeEngine:
    """Engine state plus knobs for failure injection."""

    def __init__(self):
        self.streaming = False
        self.recording = False
        self.recording_paused = False
        self.scene = "Intro"
        self.scenes = ["Intro", "Main", "BRB"]
        self.inputs = {"Mic": False, "Desktop Audio": False}
        self.scene_items = {("Main", "Webcam"): [7, True], ("Intro", "Logo"): [3, True]}

        self.refuse_connections = False
        self.request_delay = 0.0
        self.fail_requests: dict[str, tuple[int, str]] = {}
        self.malformed_responses: dict[str, dict] = {}
        self.close_error: Exception | None = None

        self.transports: list["FakeTransport"] = []
        self.requests: list[tuple[str, dict]] = []
        self.connect_attempts = 0

    @property
    def active(self) -> "FakeTransport | None":
        for transport in reversed(self.transports):
            if transport.connected and not transport.closed.is_set():
                return transport
        return None

    def factory(self, on_event) -> "FakeTransport":
        transport = FakeTransport(self, on_event)
        self.transports.append(transport)
        return transport

    def emit(self, event_type: str, data: dict) -> None:
        transport = self.active
        if transport is not None:
            transport.on_event(event_type, data)

    def drop(self) -> None:
        """Simulate a network failure on the live connection."""
        transport = self.active
        if transport is not None:
            transport.closed.set()

    def mutating_requests(self) -> list[str]:
        return [name for name, _ in self.requests if not name.startswith("Get")]

    # --- request handling ---

    def handle(self, request_type: str, data: dict) -> dict[str, Any]:
        if request_type in self.fail_requests:
            code, comment = self.fail_requests[request_type]
            raise EngineRequestError(code, comment)
        if request_type in self.malformed_responses:
            return self.malformed_responses[request_type]
        handler = getattr(self, f"_{request_type}", None)
        if handler is None:
            raise EngineRequestError(204, f"Unknown request type {request_type}")
        return handler(data) or {}

    def _GetStreamStatus(self, data):
        return {"outputActive": self.streaming, "outputReconnecting": False}

    def _GetRecordStatus(self, data):
        return {"outputActive": self.recording, "outputPaused": self.recording_paused}

    def _GetCurrentProgramScene(self, data):
        return {"currentProgramSceneName": self.scene, "sceneName": self.scene}

    def _SetCurrentProgramScene(self, data):
        if data["sceneName"] not in self.scenes:
            raise EngineRequestError(600, f"No source was found by the name of `{data['sceneName']}`.")
        self.scene = data["sceneName"]
        self.emit("CurrentProgramSceneChanged", {"sceneName": self.scene})

    def _set_stream(self, on: bool):
        self.streaming = on
        self.emit("StreamStateChanged", {"outputActive": on, "outputState": STARTED if on else STOPPED})

    def _StartStream(self, data):
        if self.streaming:
            raise EngineRequestError(500, "Stream already active")
        self._set_stream(True)

    def _StopStream(self, data):
        if not self.streaming:
            raise EngineRequestError(501, "Stream not active")
        self._set_stream(False)

    def _ToggleStream(self, data):
        self._set_stream(not self.streaming)
        return {"outputActive": self.streaming}

    def _set_record(self, on: bool):
        self.recording = on
        self.recording_paused = False
        self.emit("RecordStateChanged", {"outputActive": on, "outputState": STARTED if on else STOPPED})

    def _StartRecord(self, data):
        if self.recording:
            raise EngineRequestError(500, "Record already active")
        self._set_record(True)

    def _StopRecord(self, data):
        if not self.recording:
            raise EngineRequestError(501, "Record not active")
        self._set_record(False)

    def _ToggleRecord(self, data):
        self._set_record(not self.recording)
        return {"outputActive": self.recording}

    def _PauseRecord(self, data):
        if not self.recording:
            raise EngineRequestError(501, "Record not active")
        if self.recording_paused:
            raise EngineRequestError(502, "Record already paused")
        self.recording_paused = True
        self.emit("RecordStateChanged", {"outputActive": True, "outputState": PAUSED})

    def _ResumeRecord(self, data):
        if not self.recording:
            raise EngineRequestError(501, "Record not active")
        if not self.recording_paused:
            raise EngineRequestError(503, "Record not paused")
        self.recording_paused = False
        self.emit("RecordStateChanged", {"outputActive": True, "outputState": RESUMED})

    def _require_input(self, name):
        if name not in self.inputs:
            raise EngineRequestError(600, f"No source was found by the name of `{name}`.")

    def _SetInputMute(self, data):
        self._require_input(data["inputName"])
        self.inputs[data["inputName"]] = data["inputMuted"]

    def _ToggleInputMute(self, data):
        self._require_input(data["inputName"])
        self.inputs[data["inputName"]] = not self.inputs[data["inputName"]]
        return {"inputMuted": self.inputs[data["inputName"]]}

    def _GetSceneItemId(self, data):
        item = self.scene_items.get((data["sceneName"], data["sourceName"]))
        if item is None:
            raise EngineRequestError(600, f"No scene items were found in scene `{data['sceneName']}`")
        return {"sceneItemId": item[0]}

    def _SetSceneItemEnabled(self, data):
        for item in self.scene_items.values():
            if item[0] == data["sceneItemId"]:
                item[1] = data["sceneItemEnabled"]
                return
        raise EngineRequestError(600, "No scene item found")

    def _GetSceneList(self, data):
        return {
            "currentProgramSceneName": self.scene,
            "scenes": [{"sceneName": name, "sceneIndex": i} for i, name in enumerate(self.scenes)],
        }

    def _GetInputList(self, data):
        return {"inputs": [{"inputName": name, "inputKind": "wasapi_input_capture"} for name in self.inputs]}


class FakeTransport(EngineTransport):
    def __init__(self, engine: FakeEngine, on_event):
        self.engine = engine
        self.on_event = on_event
        self.connected = False
        self.closed = asyncio.Event()

    async def connect(self) -> None:
        self.engine.connect_attempts += 1
        if self.engine.refuse_connections:
            raise ConnectionRefusedError("engine offline")
        self.connected = True

    async def request(self, request_type: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.connected or self.closed.is_set():
            raise TransportClosedError("closed")
        self.engine.requests.append((request_type, data or {}))
        if self.engine.request_delay and not request_type.startswith("Get"):
            await asyncio.sleep(self.engine.request_delay)
        if self.closed.is_set():
            raise TransportClosedError("closed")
        return self.engine.handle(request_type, data or {})

    async def close(self) -> None:
        self.closed.set()
        if self.engine.close_error is not None:
            raise self.engine.close_error

    async def wait_closed(self) -> None:
        await self.closed.wait()


def make_client(engine: FakeEngine, **kwargs) -> ControlPlaneClient:
    kwargs.setdefault("action_timeout", 0.5)
    kwargs.setdefault("connect_timeout", 1.0)
    kwargs.setdefault("backoff", ExponentialBackoff(0.01, 0.05))
    return ControlPlaneClient(engine.factory, **kwargs)


async def connected_client(engine: FakeEngine, **kwargs) -> ControlPlaneClient:
    client = make_client(engine, **kwargs)
    await client.start()
    assert await client.wait_until_connected(2.0)
    return client


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeConnection:
    """Stands in for a WebSocket on the session side."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.sent: list[str] = []
        self.fail = fail
        self.delay = delay
        self.closed = False

    async def send_text(self, text: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("client gone")
        self.sent.append(text)

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    def events(self) -> list[dict]:
        return [json.loads(text) for text in self.sent]
