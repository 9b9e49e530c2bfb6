"""
Tests — FastAPI endpoints

Tier 3: Full request path through the app wiring, backed by the in-memory
SQLite database configured in conftest. One app lifespan per module; each
test uses fresh user ids so state never leaks between tests.
"""

from __future__ import annotations

import time
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from conftest import FakeBlobStorage, FakeGeocoder
from guardian.services import main
from guardian.services.main import app
from guardian.services.websocket_manager import ConnectionManager


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def offline_services(monkeypatch):
    monkeypatch.setattr(main, "blob_storage", FakeBlobStorage())
    monkeypatch.setattr(main, "reverse_geocoder", FakeGeocoder("5th Avenue, New York"))


def _users():
    suffix = uuid4().hex[:8]
    owner, w1, w2 = f"owner-{suffix}", f"w1-{suffix}", f"w2-{suffix}"
    main.store.upsert_profile(owner, full_name="Olivia Owner")
    main.store.upsert_profile(w1, full_name="Wendy Watcher")
    main.store.upsert_profile(w2, display_name="walt")
    return owner, w1, w2


def _push(client, user_id, lat=40.7128, lon=-74.0060):
    resp = client.put(f"/api/v1/users/{user_id}/position", json={"latitude": lat, "longitude": lon, "accuracy_m": 5})
    assert resp.status_code == 200
    return resp.json()


def _start(client, owner, watchers, **extra):
    body = {"owner_id": owner, "destination_name": "Downtown Mall", "watcher_ids": watchers}
    body.update(extra)
    return client.post("/api/v1/sessions", json=body)


class TestHealth:
    def test_health(self, client) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestTrips:
    def test_full_trip(self, client) -> None:
        owner, w1, w2 = _users()
        _push(client, owner)

        resp = _start(client, owner, [w1, w2], destination_location={"latitude": 40.73, "longitude": -73.98})
        assert resp.status_code == 201
        session = resp.json()
        assert session["status"] == "active"

        active = client.get("/api/v1/sessions/active", params={"owner_id": owner}).json()
        assert active["id"] == session["id"]

        status_view = client.get("/api/v1/sessions/active/status", params={"owner_id": owner}).json()
        assert [w["full_name"] for w in status_view["watchers"]] == ["Wendy Watcher", "walt"]
        assert status_view["clock"]["elapsed"] == "0h 0m"
        assert status_view["distance_to_destination_m"] > 0

        watching = client.get(f"/api/v1/watching/{w1}").json()
        assert [v["session"]["id"] for v in watching] == [session["id"]]

        done = client.post(f"/api/v1/sessions/{session['id']}/check-in", json={"owner_id": owner})
        assert done.status_code == 200
        assert done.json()["status"] == "completed"

        again = client.post(f"/api/v1/sessions/{session['id']}/check-in", json={"owner_id": owner})
        assert again.status_code == 409
        assert again.json()["error"] == "no_active_session"
        assert again.json()["action"] == "refresh"

        assert client.get("/api/v1/sessions/active", params={"owner_id": owner}).json() is None

    def test_start_requires_watchers(self, client) -> None:
        owner, _, _ = _users()
        _push(client, owner)

        resp = _start(client, owner, [])

        assert resp.status_code == 422
        assert resp.json()["error"] == "no_watchers_selected"

    def test_second_start_conflicts(self, client) -> None:
        owner, w1, _ = _users()
        _push(client, owner)
        assert _start(client, owner, [w1]).status_code == 201

        resp = _start(client, owner, [w1])

        assert resp.status_code == 409
        assert resp.json()["error"] == "session_already_active"

    def test_location_denied(self, client) -> None:
        owner, w1, _ = _users()
        client.post(f"/api/v1/users/{owner}/position/error", json={"message": "User denied Geolocation"})

        resp = _start(client, owner, [w1])

        assert resp.status_code == 424
        assert resp.json()["error"] == "location_unavailable"
        assert resp.json()["action"] == "enable_permission"

    def test_end_early(self, client) -> None:
        owner, w1, _ = _users()
        _push(client, owner)
        session = _start(client, owner, [w1]).json()

        resp = client.post(f"/api/v1/sessions/{session['id']}/end", json={"owner_id": owner})

        assert resp.json()["status"] == "cancelled"
        assert resp.json()["completed_at"] is not None

    def test_emergency_creates_alert(self, client) -> None:
        owner, w1, _ = _users()
        _push(client, owner)
        session = _start(client, owner, [w1]).json()

        resp = client.post(f"/api/v1/sessions/{session['id']}/emergency", json={"owner_id": owner})

        assert resp.status_code == 200
        alert = resp.json()
        assert alert["alert_type"] == "panic"
        assert alert["session_id"] == session["id"]

        alerts = client.get("/api/v1/alerts", params={"user_id": owner}).json()
        assert [a["id"] for a in alerts] == [alert["id"]]

        resent = client.post(f"/api/v1/sessions/{session['id']}/emergency/resend", json={"owner_id": owner})
        assert resent.status_code == 200
        assert resent.json()["id"] != alert["id"]

    def test_detach(self, client) -> None:
        owner, w1, _ = _users()
        _push(client, owner)
        session = _start(client, owner, [w1]).json()

        first = client.post(f"/api/v1/sessions/{session['id']}/detach").json()
        second = client.post(f"/api/v1/sessions/{session['id']}/detach").json()

        assert first["detached"] is True
        assert second["detached"] is False

    def test_resolve_watchers(self, client) -> None:
        _, w1, w2 = _users()

        resp = client.post("/api/v1/watchers/resolve", json={"ids": [w2, "ghost", w1]})

        assert [w["id"] for w in resp.json()] == [w2, w1]


class TestAlerts:
    def test_record_and_send(self, client) -> None:
        owner, _, _ = _users()
        _push(client, owner)

        started = client.post(f"/api/v1/users/{owner}/alerts/panic/recording")
        assert started.status_code == 201
        chunk = client.post(
            f"/api/v1/users/{owner}/alerts/panic/recording/chunks",
            files={"file": ("chunk.webm", b"RIFFaudio", "audio/webm")},
        )
        assert chunk.json()["bytes"] == 9

        sent = client.post(f"/api/v1/users/{owner}/alerts/panic/recording/stop", json={"audience": "contacts"})

        assert sent.status_code == 200
        alert = sent.json()
        assert alert["alert_type"] == "panic"
        assert alert["location_name"] == "5th Avenue, New York"
        assert alert["description"].endswith("(sent to contacts)")
        assert alert["audio_url"].startswith("http://blobs.test/")

    def test_cooldown_returns_429(self, client) -> None:
        owner, _, _ = _users()
        _push(client, owner)
        client.post(f"/api/v1/users/{owner}/alerts/panic/recording")
        client.post(f"/api/v1/users/{owner}/alerts/panic/recording/stop", json={"low_data_mode": True})
        client.post(f"/api/v1/users/{owner}/alerts/amber/recording")

        resp = client.post(f"/api/v1/users/{owner}/alerts/amber/recording/stop", json={})

        assert resp.status_code == 429
        assert resp.json()["error"] == "cooldown"
        assert int(resp.headers["Retry-After"]) >= 1
        assert len(client.get("/api/v1/alerts", params={"user_id": owner}).json()) == 1

    def test_stop_without_recording(self, client) -> None:
        owner, _, _ = _users()

        resp = client.post(f"/api/v1/users/{owner}/alerts/amber/recording/stop", json={})

        assert resp.status_code == 422
        assert resp.json()["error"] == "not_recording"

    def test_microphone_error_during_recording(self, client) -> None:
        owner, _, _ = _users()
        _push(client, owner)
        client.post(f"/api/v1/users/{owner}/alerts/panic/recording")

        reported = client.post(
            f"/api/v1/users/{owner}/alerts/panic/recording/error", json={"message": "Microphone denied"},
        )
        assert reported.status_code == 200
        assert reported.json()["while_recording"] is True

        resp = client.post(f"/api/v1/users/{owner}/alerts/panic/recording/stop", json={})

        assert resp.status_code == 424
        assert resp.json()["error"] == "microphone_unavailable"
        assert resp.json()["message"] == "Microphone denied"
        assert client.get("/api/v1/alerts", params={"user_id": owner}).json() == []

        client.post(f"/api/v1/users/{owner}/alerts/panic/recording")
        sent = client.post(f"/api/v1/users/{owner}/alerts/panic/recording/stop", json={"low_data_mode": True})
        assert sent.status_code == 200

    def test_microphone_error_before_start(self, client) -> None:
        owner, _, _ = _users()

        client.post(f"/api/v1/users/{owner}/alerts/amber/recording/error", json={})
        resp = client.post(f"/api/v1/users/{owner}/alerts/amber/recording")

        assert resp.status_code == 424
        assert resp.json()["action"] == "enable_permission"

    def test_grouped_feed_and_resolve(self, client) -> None:
        owner, w1, _ = _users()
        _push(client, owner)
        session = _start(client, owner, [w1]).json()
        alert = client.post(f"/api/v1/sessions/{session['id']}/emergency", json={"owner_id": owner}).json()

        grouped = client.get("/api/v1/alerts", params={"user_id": owner, "grouped": True}).json()
        assert [a["id"] for a in grouped["critical"]] == [alert["id"]]
        assert grouped["crime"] == []

        resolved = client.post(f"/api/v1/alerts/{alert['id']}/resolve", params={"false_alarm": True}).json()
        assert resolved["status"] == "false_alarm"

        assert client.post("/api/v1/alerts/missing/resolve").status_code == 404

    def test_outfit_upload(self, client) -> None:
        resp = client.post(
            "/api/v1/uploads/outfit",
            files={"file": ("outfit.jpg", b"\xff\xd8\xff", "image/jpeg")},
        )

        assert resp.status_code == 201
        assert resp.json()["url"].startswith("http://blobs.test/incident-media/outfit-")


class TestWebSocket:
    def test_watcher_receives_emergency(self, client) -> None:
        owner, w1, _ = _users()
        _push(client, owner)
        session = _start(client, owner, [w1]).json()

        with client.websocket_connect(f"/ws/users/{w1}") as ws:
            deadline = time.monotonic() + 2
            while not main.ws_manager.is_connected(w1) and time.monotonic() < deadline:
                time.sleep(0.01)

            client.post(f"/api/v1/sessions/{session['id']}/emergency", json={"owner_id": owner})

            types = []
            for _ in range(5):
                message = ws.receive_json()
                types.append(message["type"])
                if message["type"] == "EMERGENCY":
                    break

        assert "EMERGENCY" in types
        assert message["session_id"] == session["id"]

    def test_position_over_socket(self, client) -> None:
        owner, _, _ = _users()

        with client.websocket_connect(f"/ws/users/{owner}") as ws:
            ws.send_json({"type": "POSITION", "latitude": 48.8566, "longitude": 2.3522})
            deadline = time.monotonic() + 2
            while main.location_provider.latest(owner) is None and time.monotonic() < deadline:
                time.sleep(0.01)

        assert main.location_provider.latest(owner).point.latitude == 48.8566

    def test_malformed_frames_are_skipped(self, client) -> None:
        owner, _, _ = _users()

        with client.websocket_connect(f"/ws/users/{owner}") as ws:
            ws.send_text("not json")
            ws.send_json(["POSITION", 1, 2])
            ws.send_json({"type": "POSITION", "latitude": 51.5074, "longitude": -0.1278})
            deadline = time.monotonic() + 2
            while main.location_provider.latest(owner) is None and time.monotonic() < deadline:
                time.sleep(0.01)
            assert main.ws_manager.is_connected(owner)

        assert main.location_provider.latest(owner).point.latitude == 51.5074

        deadline = time.monotonic() + 2
        while main.ws_manager.is_connected(owner) and time.monotonic() < deadline:
            time.sleep(0.01)
        assert not main.ws_manager.is_connected(owner)

    def test_old_socket_closing_keeps_newer_connection(self) -> None:
        hub = ConnectionManager()
        old, new = object(), object()
        hub.user_connections["u1"] = new

        hub.disconnect("u1", old)
        assert hub.user_connections["u1"] is new

        hub.disconnect("u1", new)
        assert not hub.is_connected("u1")
