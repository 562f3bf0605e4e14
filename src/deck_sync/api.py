"""
FastAPI application for deck-sync.

Endpoints:
- /health - Health check
- /stats - Component statistics
- /ws - Push channel (status, connection state, configuration changes, press results)
- /api/status - Latest engine status and connection state
- /api/scenes, /api/inputs - Engine queries for editors
- /api/configurations - Configuration CRUD and the current pointer
- /api/press/{row}/{col}, /api/buttons/{position}/press - Button presses
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .errors import (
    ActionFailedError,
    ControlPlaneUnreachableError,
    DeckValidationError,
    NotFoundError,
)
from .models import (
    ActionResult,
    Button,
    Configuration,
    ConfigurationDraft,
    ConfigurationUpdate,
    EventType,
    GridPosition,
    SessionEvent,
)
from .service import DeckService

logger = logging.getLogger(__name__)


class CurrentSelection(BaseModel):
    id: str


def create_app(service: DeckService, manage_lifecycle: bool = True) -> FastAPI:
    """
    Create FastAPI application.

    Args:
        service: Wired deck service
        manage_lifecycle: Start/stop the service from the app lifespan

    Returns:
        FastAPI application instance
    """
    start_time = datetime.now(UTC)
    store = service.store
    control_plane = service.control_plane
    registry = service.registry
    dispatcher = service.dispatcher

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        if manage_lifecycle:
            await service.start()
        yield
        if manage_lifecycle:
            await service.stop()

    app = FastAPI(
        title="Deck Sync",
        description="Button-to-action dispatch and live status sync for a streaming engine",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(DeckValidationError)
    async def validation_error_handler(request, exc: DeckValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    # --- Service ---

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "deck-sync",
            "version": __version__,
            "uptime_seconds": (datetime.now(UTC) - start_time).total_seconds(),
            "control_plane": control_plane.state.value,
            "sessions": registry.session_count,
        }

    @app.get("/stats")
    async def stats():
        """Get service statistics."""
        return await service.get_stats()

    # --- Engine ---

    @app.get("/api/status")
    async def get_status():
        """Latest known engine status (stale unless connected)."""
        status = control_plane.status
        return {
            "connection_state": control_plane.state.value,
            "connected": control_plane.is_connected,
            "generation": control_plane.generation,
            "status": status.model_dump() if status else None,
        }

    async def query_engine(query):
        try:
            return await query()
        except ControlPlaneUnreachableError as e:
            raise HTTPException(503, str(e)) from e
        except ActionFailedError as e:
            raise HTTPException(502, e.reason) from e

    @app.get("/api/scenes")
    async def get_scenes():
        scenes = await query_engine(control_plane.list_scenes)
        return {"scenes": scenes, "count": len(scenes)}

    @app.get("/api/inputs")
    async def get_inputs():
        inputs = await query_engine(control_plane.list_inputs)
        return {"inputs": inputs, "count": len(inputs)}

    # --- Configurations ---

    @app.get("/api/configurations")
    async def list_configurations():
        configurations = store.list()
        return {
            "configurations": [c.model_dump(mode="json") for c in configurations],
            "count": len(configurations),
            "current_id": store.current_id,
        }

    @app.post("/api/configurations", status_code=201, response_model=Configuration)
    async def create_configuration(draft: ConfigurationDraft):
        return await store.create(draft)

    @app.get("/api/configurations/current", response_model=Configuration)
    async def get_current_configuration():
        return store.current()

    @app.put("/api/configurations/current", response_model=Configuration)
    async def set_current_configuration(selection: CurrentSelection):
        await store.set_current(selection.id)
        return store.current()

    @app.get("/api/configurations/{configuration_id}", response_model=Configuration)
    async def get_configuration(configuration_id: str):
        return store.get(configuration_id)

    @app.patch("/api/configurations/{configuration_id}", response_model=Configuration)
    async def update_configuration(configuration_id: str, changes: ConfigurationUpdate):
        return await store.update(configuration_id, changes)

    @app.delete("/api/configurations/{configuration_id}")
    async def delete_configuration(configuration_id: str):
        await store.delete(configuration_id)
        return {"deleted": configuration_id}

    @app.post(
        "/api/configurations/{configuration_id}/buttons",
        status_code=201,
        response_model=Configuration,
    )
    async def create_button(configuration_id: str, button: Button):
        return await store.upsert_button(configuration_id, button)

    @app.put(
        "/api/configurations/{configuration_id}/buttons/{button_id}",
        response_model=Configuration,
    )
    async def update_button(configuration_id: str, button_id: str, button: Button):
        return await store.upsert_button(
            configuration_id, button.model_copy(update={"id": button_id}), must_exist=True
        )

    @app.delete(
        "/api/configurations/{configuration_id}/buttons/{button_id}",
        response_model=Configuration,
    )
    async def delete_button(configuration_id: str, button_id: str):
        return await store.delete_button(configuration_id, button_id)

    # --- Presses ---

    @app.post("/api/press/{row}/{col}", response_model=ActionResult)
    async def press(row: int, col: int):
        """Press the button at (row, col) of the current configuration."""
        return await dispatcher.press(GridPosition(row, col))

    @app.post("/api/buttons/{position}/press", response_model=ActionResult)
    async def press_by_position(position: str):
        """Press by textual position, e.g. btn-0-2."""
        try:
            parsed = GridPosition.parse(position)
        except ValueError as e:
            raise HTTPException(422, str(e)) from e
        return await dispatcher.press(parsed)

    # --- Push channel ---

    @app.websocket("/ws")
    async def websocket_session(websocket: WebSocket):
        """
        Push channel for one presentation client.

        Client messages:
            {"action": "ping", "ts": ...}
            {"action": "press", "request_id": ..., "row": r, "col": c}
        """
        await websocket.accept()
        session_id = await registry.register(websocket)
        press_tasks: set[asyncio.Task] = set()
        idle_timeout = service.config.session_idle_timeout_seconds

        async def run_press(request_id, position: GridPosition) -> None:
            data: dict = {"request_id": request_id}
            try:
                result = await dispatcher.press(position)
                data.update(result.model_dump(mode="json"))
            except (DeckValidationError, NotFoundError) as e:
                data.update({"row": position.row, "col": position.col, "error": str(e)})
            registry.send(session_id, SessionEvent(type=EventType.PRESS_RESULT, data=data))

        try:
            while True:
                try:
                    message = await asyncio.wait_for(websocket.receive_text(), idle_timeout)
                except TimeoutError:
                    logger.info(f"Session {session_id} idle for {idle_timeout}s, closing")
                    await websocket.close(code=1001)
                    break

                try:
                    data = json.loads(message)
                    action = data["action"]
                except (json.JSONDecodeError, KeyError, TypeError):
                    logger.warning(f"Session {session_id} sent an unreadable message")
                    continue

                if action == "ping":
                    registry.send(
                        session_id,
                        SessionEvent(type=EventType.PONG, data={"ts": data.get("ts")}),
                    )
                elif action == "press":
                    try:
                        position = GridPosition(int(data["row"]), int(data["col"]))
                    except (KeyError, TypeError, ValueError):
                        logger.warning(f"Session {session_id} sent a press without row/col")
                        continue
                    task = asyncio.create_task(run_press(data.get("request_id"), position))
                    press_tasks.add(task)
                    task.add_done_callback(press_tasks.discard)
                else:
                    logger.warning(f"Session {session_id} sent unknown action {action!r}")
        except WebSocketDisconnect:
            logger.info(f"Session {session_id} disconnected")
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            for task in list(press_tasks):
                task.cancel()
            await registry.unregister(session_id)

    return app
