"""Tests for the REST and WebSocket surface."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import main
from conftest import READY_URL, FakeCapability
from preview.lifecycle import SessionRegistry, get_session_registry

FILES = {"files": {"src/App.jsx": "export default function App() { return null }"}}
HTTPS = {"x-forwarded-proto": "https"}


@pytest.fixture
def registry(monkeypatch) -> SessionRegistry:
    async def factory(session_id: str) -> FakeCapability:
        return FakeCapability()

    registry = SessionRegistry(capability_factory=factory, require_secure_context=True)
    monkeypatch.setattr(main, "session_registry", registry)
    main.app.dependency_overrides[get_session_registry] = lambda: registry
    yield registry
    main.app.dependency_overrides.clear()


@pytest.fixture
def client(registry: SessionRegistry):
    with TestClient(main.app) as client:
        yield client


def _poll(client: TestClient, session_id: str, status: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        state = client.get(f"/api/preview/sessions/{session_id}").json()
        if state["status"] == status or time.monotonic() > deadline:
            return state
        time.sleep(0.02)


# ---------------------------------------------------------------------------
# Root endpoints
# ---------------------------------------------------------------------------


class TestRoot:
    def test_root(self, client: TestClient) -> None:
        data = client.get("/").json()
        assert data["name"] == "Preview Sandbox API"
        assert data["endpoints"]["preview"] == "/api/preview"

    def test_health_counts_sessions(self, client: TestClient) -> None:
        client.post("/api/preview/sessions", json={"session_id": "abc"})

        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["active_sessions"] == 1


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_create_with_id(self, client: TestClient) -> None:
        response = client.post("/api/preview/sessions", json={"session_id": "abc"})

        assert response.status_code == 200
        assert response.json() == {
            "session_id": "abc",
            "status": "idle",
            "ws_url": "/api/preview/ws/abc",
        }

    def test_create_without_body(self, client: TestClient) -> None:
        data = client.post("/api/preview/sessions").json()
        assert data["session_id"].startswith("preview-")

    def test_unknown_session(self, client: TestClient) -> None:
        assert client.get("/api/preview/sessions/missing").status_code == 404
        assert client.post("/api/preview/sessions/missing/restart").status_code == 404
        assert client.delete("/api/preview/sessions/missing").status_code == 404

    def test_delete(self, client: TestClient, registry: SessionRegistry) -> None:
        client.post("/api/preview/sessions", json={"session_id": "abc"})

        response = client.delete("/api/preview/sessions/abc")

        assert response.json() == {"status": "deleted", "session_id": "abc"}
        assert registry.get("abc") is None


# ---------------------------------------------------------------------------
# Provisioning over HTTP
# ---------------------------------------------------------------------------


class TestProvisioning:
    def test_insecure_origin_is_rejected(self, client: TestClient) -> None:
        client.post("/api/preview/sessions", json={"session_id": "abc"})

        state = client.post("/api/preview/sessions/abc/files", json=FILES).json()

        assert state["status"] == "failed"
        assert state["failure_kind"] == "environment_unsupported"
        assert "HTTPS" in state["error"]

    def test_files_provision_to_ready(self, client: TestClient) -> None:
        client.post("/api/preview/sessions", json={"session_id": "abc"})

        response = client.post("/api/preview/sessions/abc/files", json=FILES, headers=HTTPS)
        assert response.status_code == 200

        state = _poll(client, "abc", "ready")
        assert state["status"] == "ready"
        assert state["url"] == READY_URL
        assert "Server ready!" in state["log"]

    def test_empty_files_stay_idle(self, client: TestClient) -> None:
        client.post("/api/preview/sessions", json={"session_id": "abc"})

        state = client.post("/api/preview/sessions/abc/files", json={"files": {}}, headers=HTTPS).json()

        assert state["status"] == "idle"

    def test_restart_starts_new_run(self, client: TestClient) -> None:
        client.post("/api/preview/sessions", json={"session_id": "abc"})
        client.post("/api/preview/sessions/abc/files", json=FILES, headers=HTTPS)
        first = _poll(client, "abc", "ready")

        client.post("/api/preview/sessions/abc/restart")
        second = _poll(client, "abc", "ready")

        assert second["status"] == "ready"
        assert second["run_id"] != first["run_id"]


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


class TestWebSocket:
    def test_unknown_session_is_rejected(self, client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/preview/ws/missing") as ws:
                ws.receive_json()

        assert exc_info.value.code == 4404

    def test_initial_state_and_ping(self, client: TestClient) -> None:
        client.post("/api/preview/sessions", json={"session_id": "abc"})

        with client.websocket_connect("/api/preview/ws/abc") as ws:
            first = ws.receive_json()
            assert first["type"] == "state_update"
            assert first["payload"]["status"] == "idle"

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

            ws.send_json({"type": "state_request"})
            assert ws.receive_json()["type"] == "state_update"

    def test_streams_status_updates(self, client: TestClient) -> None:
        client.post("/api/preview/sessions", json={"session_id": "abc"})

        with client.websocket_connect("/api/preview/ws/abc") as ws:
            ws.receive_json()
            client.post("/api/preview/sessions/abc/files", json=FILES, headers=HTTPS)

            statuses = []
            while "ready" not in statuses:
                message = ws.receive_json()
                assert message["type"] == "status_update"
                if message["payload"]["type"] == "state":
                    statuses.append(message["payload"]["state"]["status"])

        assert statuses == ["setting_up", "installing", "starting_server", "awaiting_ready", "ready"]
