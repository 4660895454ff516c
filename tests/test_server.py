"""
Tests for the HTTP and WebSocket surface.
"""

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from jose import jwt
import pytest
from starlette.websockets import WebSocketDisconnect

from server.app import app, metrics
from src.assist.auth import AUTH_CLOSE_CODE
from src.assist.logstore import InMemoryConversationStore
from src.assist.pricing import PricingTable
from src.assist.session import SessionServices

from conftest import FakeReasoner, FakeStreamFactory


def _token(secret="test_jwt_secret"):
    return jwt.encode(
        {"sub": "operator-1", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        secret,
        algorithm="HS256",
    )


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        app.state.services = SessionServices(
            reasoner=FakeReasoner(),
            log_writer=InMemoryConversationStore(),
            pricing=PricingTable(),
            stream_factory=FakeStreamFactory(),
        )
        yield test_client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert "active_sessions" in body


def test_metrics(client):
    body = client.get("/metrics").json()

    assert "uptime_seconds" in body
    assert "stream_restarts" in body
    assert "rejected_connections" in body


@pytest.mark.parametrize(
    "path",
    [
        "/speech-recognition",
        "/speech-recognition?token=garbage",
        f"/speech-recognition?token={_token(secret='wrong')}",
    ],
)
def test_websocket_rejects_bad_credentials(client, path):
    rejected = metrics.rejected_connections

    with client.websocket_connect(path) as ws:
        error = ws.receive_json()
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_text()

    assert error["event"] == "error"
    assert error["data"]["code"] in ("AUTH_REQUIRED", "AUTH_INVALID")
    assert error["data"]["type"] == "AUTH_ERROR"
    assert exc.value.code == AUTH_CLOSE_CODE
    assert metrics.rejected_connections == rejected + 1


def test_websocket_session_lifecycle(client):
    with client.websocket_connect(f"/speech-recognition?token={_token()}") as ws:
        ws.send_json({"event": "start-recognition", "data": {"mode": "vendor", "leadRef": "v-1"}})
        started = ws.receive_json()
        assert started == {
            "event": "recognition-started",
            "data": {"mode": "vendor", "leadRef": "v-1", "captureMode": "client"},
        }

        ws.send_json({"event": "end-recognition"})
        assert ws.receive_json()["event"] == "recognition-ended"


def test_websocket_bearer_header(client):
    headers = {"Authorization": f"Bearer {_token()}"}
    with client.websocket_connect("/speech-recognition", headers=headers) as ws:
        ws.send_json({"event": "request-response"})
        error = ws.receive_json()

    assert error["data"]["code"] == "NOT_STARTED"
