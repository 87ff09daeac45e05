"""HTTP surface tests against the FastAPI app."""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeRelay
from syncstream import main


@pytest.fixture(scope="module")
def client():
    # one client for the module: the machine's queue stays on a single event loop
    main.machine.transport_factory = FakeRelay().factory
    with TestClient(main.app) as test_client:
        yield test_client


@pytest.fixture(autouse=True)
def idle(client):
    client.post("/cancel")
    yield
    client.post("/cancel")


def test_healthcheck(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "state": "idle"}


def test_session_view_when_idle(client):
    body = client.get("/session").json()
    assert body["state"] == "idle"
    assert body["role"] is None
    assert body["code"] == ""
    assert body["error"] is None
    assert body["streaming"] is False
    assert body["ai"]["state"] == "idle"


def test_receiver_flow(client):
    body = client.post("/receiver/start").json()
    assert body["state"] == "receiver_entering_code"
    assert body["role"] == "receiver"

    body = client.post("/receiver/code", json={"code": "12"}).json()
    assert body["state"] == "receiver_entering_code"

    body = client.post("/receiver/code", json={"code": "4821"}).json()
    assert body["state"] == "receiver_connecting"
    assert body["code"] == "4821"

    body = client.post("/cancel").json()
    assert body["state"] == "idle"
    assert body["code"] == ""


def test_code_submission_requires_code_field(client):
    client.post("/receiver/start")
    assert client.post("/receiver/code", json={}).status_code == 422


def test_ai_endpoints_are_noops_without_a_stream(client):
    assert client.post("/ai/open").json()["ai"]["state"] == "idle"
    assert client.post("/ai/ask", json={"question": "What is this?"}).json()["ai"]["state"] == "idle"
    view = client.get("/ai").json()
    assert view["state"] == "idle"
    assert view["snapshot"] is None


def test_ui_socket_forwards_state_events(client):
    with client.websocket_connect("/ws/ui") as ws:
        client.post("/receiver/start")
        event = ws.receive_json()
    assert event["type"] == "state"
    assert event["state"] == "receiver_entering_code"
    assert event["data"]["role"] == "receiver"


def test_session_view_reports_notice(client):
    assert client.get("/session").json()["notice"] is None
