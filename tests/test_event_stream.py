import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect


def register(app_module, email: str) -> TestClient:
    client = TestClient(app_module.app)
    client.post("/register", data={"email": email, "password": "password"})
    return client


def test_stream_requires_login(app_module):
    client = TestClient(app_module.app)

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws/events") as ws:
            ws.receive_json()
    assert excinfo.value.code == 1008


def test_stream_pushes_snapshots(app_module):
    client = register(app_module, "alice@example.com")
    calendar_id = client.get("/api/calendars").json()["selected"]
    client.post(
        "/api/events",
        json={
            "title": "Later",
            "start": "2030-01-03T09:00:00",
            "end": "2030-01-03T10:00:00",
            "calendar_id": calendar_id,
        },
    )

    with client.websocket_connect("/ws/events") as ws:
        ws.send_json({"calendar_ids": [calendar_id]})
        first = ws.receive_json()
        assert [e["title"] for e in first["events"]] == ["Later"]

        client.post(
            "/api/events",
            json={
                "title": "Earlier",
                "start": "2030-01-02T09:00:00",
                "end": "2030-01-02T10:00:00",
                "calendar_id": calendar_id,
            },
        )
        second = ws.receive_json()
        assert [e["title"] for e in second["events"]] == ["Earlier", "Later"]

        # Deselecting everything yields an empty snapshot
        ws.send_json({"calendar_ids": []})
        assert ws.receive_json() == {"events": []}


def test_stream_ignores_foreign_calendars(app_module):
    alice = register(app_module, "alice@example.com")
    bob = register(app_module, "bob@example.com")
    alice_cal = alice.get("/api/calendars").json()["selected"]
    alice.post(
        "/api/events",
        json={
            "title": "Secret",
            "start": "2030-01-02T09:00:00",
            "end": "2030-01-02T10:00:00",
            "calendar_id": alice_cal,
        },
    )

    with bob.websocket_connect("/ws/events") as ws:
        ws.send_json({"calendar_ids": [alice_cal]})
        assert ws.receive_json() == {"events": []}
        ws.send_json({"calendar_ids": "all"})
        assert ws.receive_json() == {"error": "calendar_ids must be a list"}
