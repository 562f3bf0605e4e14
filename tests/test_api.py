"""Tests for FastAPI application."""

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from deck_sync.api import create_app
from deck_sync.service import DeckService
from deck_sync.settings import ServiceConfig


def wait_until(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


def scene_button(row, col, scene="Main"):
    return {
        "row": row,
        "col": col,
        "text": scene,
        "action": {"type": "switch_scene", "params": {"scene_name": scene}},
    }


def receive_until(ws, event_type: str, limit: int = 20) -> dict:
    for _ in range(limit):
        event = ws.receive_json()
        if event["type"] == event_type:
            return event
    raise AssertionError(f"no {event_type} event received")


class TestAPI:
    """Test API endpoints."""

    @pytest.fixture
    def config(self, temp_db):
        return ServiceConfig(
            storage_path=temp_db,
            action_timeout_seconds=0.5,
            connect_timeout_seconds=1.0,
            reconnect_base_seconds=0.01,
            reconnect_max_seconds=0.05,
            default_grid_rows=2,
            default_grid_cols=3,
        )

    @pytest.fixture
    def client(self, config, engine):
        """Create test client with a connected engine."""
        service = DeckService(config, transport_factory=engine.factory)
        with TestClient(create_app(service)) as client:
            wait_until(lambda: client.get("/api/status").json()["connected"])
            wait_until(lambda: client.get("/stats").json()["broadcaster"]["updates_broadcast"] >= 1)
            yield client

    def current_id(self, client) -> str:
        return client.get("/api/configurations/current").json()["id"]

    def test_health_endpoint(self, client):
        """Health endpoint should return service info."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "deck-sync"
        assert data["control_plane"] == "connected"

    def test_status_endpoint(self, client):
        data = client.get("/api/status").json()
        assert data["connection_state"] == "connected"
        assert data["generation"] == 1
        assert data["status"]["current_scene"] == "Intro"

    def test_scenes_and_inputs(self, client):
        assert client.get("/api/scenes").json()["scenes"] == ["Intro", "Main", "BRB"]
        assert client.get("/api/inputs").json()["count"] == 2

    def test_default_configuration_seeded(self, client):
        data = client.get("/api/configurations").json()
        assert data["count"] == 1
        assert data["configurations"][0]["is_current"]
        assert data["configurations"][0]["grid"] == {"rows": 2, "cols": 3}

    def test_press_switches_scene(self, client, engine):
        config_id = self.current_id(client)
        response = client.post(f"/api/configurations/{config_id}/buttons", json=scene_button(0, 1))
        assert response.status_code == 201

        response = client.post("/api/press/0/1")
        assert response.status_code == 200
        result = response.json()
        assert result["outcome"] == "success"
        assert result["button_id"] == "btn-0-1"
        assert engine.scene == "Main"

    def test_press_by_position(self, client, engine):
        config_id = self.current_id(client)
        client.post(f"/api/configurations/{config_id}/buttons", json=scene_button(1, 2, "BRB"))

        assert client.post("/api/buttons/btn-1-2/press").json()["outcome"] == "success"
        assert engine.scene == "BRB"
        assert client.post("/api/buttons/nonsense/press").status_code == 422

    def test_press_empty_and_out_of_bounds(self, client):
        result = client.post("/api/press/1/1").json()
        assert result["outcome"] == "success"
        assert result["noop"] is True
        assert client.post("/api/press/5/0").status_code == 422

    def test_press_failure_is_typed_result(self, client):
        config_id = self.current_id(client)
        client.post(f"/api/configurations/{config_id}/buttons", json=scene_button(0, 0, "Ghost"))

        response = client.post("/api/press/0/0")
        assert response.status_code == 200
        assert response.json()["outcome"] == "action_failed"

    def test_button_validation(self, client):
        config_id = self.current_id(client)
        bad_params = {"row": 0, "col": 0, "action": {"type": "switch_scene", "params": {}}}
        assert client.post(f"/api/configurations/{config_id}/buttons", json=bad_params).status_code == 422

        client.post(f"/api/configurations/{config_id}/buttons", json=scene_button(0, 0))
        collision = client.post(f"/api/configurations/{config_id}/buttons", json=scene_button(0, 0, "BRB"))
        assert collision.status_code == 422

        outside = client.post(f"/api/configurations/{config_id}/buttons", json=scene_button(4, 4))
        assert outside.status_code == 422

    def test_button_update_and_delete(self, client):
        config_id = self.current_id(client)
        client.post(f"/api/configurations/{config_id}/buttons", json=scene_button(0, 0))

        moved = client.put(
            f"/api/configurations/{config_id}/buttons/btn-0-0", json=scene_button(1, 1, "BRB")
        ).json()
        assert moved["buttons"] == [
            {
                "id": "btn-0-0",
                "row": 1,
                "col": 1,
                "text": "BRB",
                "color": "#2d2d2d",
                "icon": None,
                "action": {"type": "switch_scene", "params": {"scene_name": "BRB"}},
            }
        ]

        assert client.put(
            f"/api/configurations/{config_id}/buttons/missing", json=scene_button(0, 0)
        ).status_code == 404
        assert client.delete(f"/api/configurations/{config_id}/buttons/btn-0-0").json()["buttons"] == []
        assert client.delete(f"/api/configurations/{config_id}/buttons/btn-0-0").status_code == 404

    def test_configuration_lifecycle(self, client):
        created = client.post("/api/configurations", json={"name": "Show", "grid": {"rows": 1, "cols": 2}})
        assert created.status_code == 201
        show_id = created.json()["id"]

        renamed = client.patch(f"/api/configurations/{show_id}", json={"name": "Stage"})
        assert renamed.json()["name"] == "Stage"

        original = self.current_id(client)
        assert client.put("/api/configurations/current", json={"id": show_id}).json()["id"] == show_id
        assert client.delete(f"/api/configurations/{show_id}").status_code == 422

        client.put("/api/configurations/current", json={"id": original})
        assert client.delete(f"/api/configurations/{show_id}").status_code == 200
        assert client.get(f"/api/configurations/{show_id}").status_code == 404

    def test_unknown_configuration(self, client):
        assert client.get("/api/configurations/missing").status_code == 404
        assert client.put("/api/configurations/current", json={"id": "missing"}).status_code == 404

    def test_stats_endpoint(self, client):
        data = client.get("/stats").json()
        assert set(data) == {"control_plane", "broadcaster", "sessions", "dispatcher", "storage"}
        assert data["storage"]["configurations"] == 1


class TestWebSocket:
    """Test the /ws push channel."""

    @pytest.fixture
    def make_client(self, temp_db, engine):
        def factory(**overrides):
            config = ServiceConfig(
                storage_path=temp_db,
                action_timeout_seconds=0.5,
                connect_timeout_seconds=1.0,
                reconnect_base_seconds=0.01,
                reconnect_max_seconds=0.05,
                **overrides,
            )
            service = DeckService(config, transport_factory=engine.factory)
            return TestClient(create_app(service))

        return factory

    def wait_ready(self, client):
        wait_until(lambda: client.get("/api/status").json()["connected"])
        wait_until(lambda: client.get("/stats").json()["broadcaster"]["updates_broadcast"] >= 1)

    def test_snapshot_on_connect(self, make_client):
        with make_client() as client:
            self.wait_ready(client)
            with client.websocket_connect("/ws") as ws:
                state = ws.receive_json()
                snapshot = ws.receive_json()
                assert state["type"] == "connection_state"
                assert state["data"] == {"state": "connected"}
                assert snapshot["type"] == "status_update"
                assert snapshot["resync"] is True
                assert snapshot["data"]["current_scene"] == "Intro"

    def test_ping_pong(self, make_client):
        with make_client() as client:
            self.wait_ready(client)
            with client.websocket_connect("/ws") as ws:
                ws.send_json({"action": "ping", "ts": 42})
                assert receive_until(ws, "pong")["data"] == {"ts": 42}

    def test_press_result_correlated(self, make_client, engine):
        with make_client() as client:
            self.wait_ready(client)
            config_id = client.get("/api/configurations/current").json()["id"]
            client.post(f"/api/configurations/{config_id}/buttons", json=scene_button(0, 0))

            with client.websocket_connect("/ws") as ws:
                ws.send_json({"action": "press", "request_id": "r-1", "row": 0, "col": 0})
                result = receive_until(ws, "press_result")
                assert result["data"]["request_id"] == "r-1"
                assert result["data"]["outcome"] == "success"
                assert engine.scene == "Main"

    def test_status_pushed_to_every_session(self, make_client):
        with make_client() as client:
            self.wait_ready(client)
            config_id = client.get("/api/configurations/current").json()["id"]
            client.post(f"/api/configurations/{config_id}/buttons", json=scene_button(0, 0, "BRB"))

            with client.websocket_connect("/ws") as first, client.websocket_connect("/ws") as second:
                client.post("/api/press/0/0")
                for ws in (first, second):
                    for _ in range(20):
                        event = receive_until(ws, "status_update")
                        if event["data"]["current_scene"] == "BRB":
                            break
                    else:
                        raise AssertionError("scene change not pushed")

    def test_configuration_change_pushed(self, make_client):
        with make_client() as client:
            self.wait_ready(client)
            with client.websocket_connect("/ws") as ws:
                created = client.post("/api/configurations", json={"name": "Show"}).json()
                event = receive_until(ws, "configuration_changed")
                assert event["data"]["id"] == created["id"]

                client.put("/api/configurations/current", json={"id": created["id"]})
                event = receive_until(ws, "current_configuration_changed")
                assert event["data"]["name"] == "Show"

    def test_idle_session_closed(self, make_client):
        with make_client(session_idle_timeout_seconds=0.2) as client:
            self.wait_ready(client)
            with client.websocket_connect("/ws") as ws:
                with pytest.raises(WebSocketDisconnect):
                    for _ in range(20):
                        ws.receive_json()
            wait_until(lambda: client.get("/health").json()["sessions"] == 0)
