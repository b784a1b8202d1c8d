"""Tests for FastAPI WebSocket /stream endpoint.

Tests verify:
- Error message when no telemetry store exists
- Streaming of forwarded samples with the seven telemetry fields
"""

import pytest
from fastapi.testclient import TestClient

from api import main as api_module
from fakes.fake_serial import FakeGimbalSerial


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    """Reset global singletons and route serial opens to a fake drive."""
    fake = FakeGimbalSerial(registers={"R1[41]": 65})
    monkeypatch.setattr(api_module, "_port_factory", lambda port, baud, timeout_s: fake)
    api_module._controller = None
    api_module._store = None
    yield fake
    if api_module._controller:
        try:
            api_module._controller.disconnect()
        except Exception:
            pass
    api_module._controller = None
    api_module._store = None


@pytest.fixture
def client():
    return TestClient(api_module.app)


def test_stream_without_store(client) -> None:
    with client.websocket_connect("/stream") as ws:
        message = ws.receive_json()

    assert "error" in message


def test_stream_sends_samples(client) -> None:
    assert client.post("/connect", params={"port": "/dev/fake"}).status_code == 200
    assert client.post("/live/start", params={"period_ms": 20}).status_code == 200

    with client.websocket_connect("/stream") as ws:
        message = ws.receive_json()

    assert set(message.keys()) == {
        "system_mode", "pos_tr", "pos_el", "vel_tr", "vel_el", "cur_tr", "cur_el",
    }
    assert message["pos_el"] == 65.0

    client.post("/live/stop")
