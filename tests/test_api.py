"""
Tests for the HTTP routes and middleware.
"""

import json

import pytest

from config.settings import settings
from tests.conftest import API_KEY

JID = "573001112233@s.whatsapp.net"

class TestAuthMiddleware:
    """API key and health root."""

    def test_root_needs_no_key(self, client):
        response = client.get("/", headers={"x-api-key": ""})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "service": "baileys-microservice"}

    def test_wrong_key_is_unauthorized(self, client):
        response = client.get("/sessions/s1/status", headers={"x-api-key": "nope"})

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_missing_server_key_is_misconfiguration(self, client, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", None)

        response = client.get("/sessions/s1/status")

        assert response.status_code == 500
        assert response.json() == {"error": "Server misconfigured: missing API_KEY env"}

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["sessions"] == 0

class TestSessionRoutes:
    """Session creation, status and QR."""

    def test_create_session(self, client, manager, socket_factory):
        response = client.post("/sessions", json={"sessionId": "client-123"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "sessionId": "client-123"}
        assert "client-123" in manager.sessions
        assert socket_factory.latest("client-123").connected is True

    def test_create_session_requires_id(self, client):
        response = client.post("/sessions", json={})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing sessionId"}

    def test_create_session_without_body(self, client):
        response = client.post("/sessions")

        assert response.status_code == 400
        assert response.json() == {"error": "Missing sessionId"}

    def test_create_session_rejects_path_like_id(self, client):
        response = client.post("/sessions", json={"sessionId": "../etc"})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid sessionId"}

    def test_create_session_rejects_numeric_id(self, client, socket_factory):
        response = client.post("/sessions", json={"sessionId": 42})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid sessionId"}
        assert socket_factory.sockets == []

    def test_create_session_start_failure(self, client, socket_factory):
        socket_factory.fail_with = RuntimeError("cannot reach WhatsApp")

        response = client.post("/sessions", json={"sessionId": "s1"})

        assert response.status_code == 500
        assert response.json() == {"error": "cannot reach WhatsApp"}

    def test_status(self, client, socket_factory):
        assert client.get("/sessions/s1/status").json() == {"connected": False, "me": None}

        client.post("/sessions", json={"sessionId": "s1"})
        socket_factory.latest("s1").me = JID

        assert client.get("/sessions/s1/status").json() == {"connected": True, "me": {"id": JID}}

    def test_qr_not_ready(self, client):
        response = client.get("/sessions/s1/qr.png")

        assert response.status_code == 404
        assert response.text == "QR not ready"

    def test_qr_png(self, client, manager):
        manager.last_qr["s1"] = "2@pairing,data"

        response = client.get("/sessions/s1/qr.png")

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content.startswith(b"\x89PNG")

    def test_delete_session_with_logout(self, client, manager):
        client.post("/sessions", json={"sessionId": "s1"})
        manager.last_qr["s1"] = "qr"

        response = client.delete("/sessions/s1", params={"logout": "1"})

        assert response.json() == {"ok": True, "sessionId": "s1"}
        assert "s1" not in manager.sessions
        assert not manager.auth_dir("s1").exists()

class TestChatAndMessageRoutes:
    """Listing and sending."""

    def test_chats_without_session(self, client):
        assert client.get("/sessions/s1/chats").json() == {"ok": True, "chats": []}

    def test_chats_with_limit(self, client, manager):
        client.post("/sessions", json={"sessionId": "s1"})
        for n in range(3):
            manager.stores["s1"].upsert_chat({"id": f"{n}@s.whatsapp.net", "name": f"Chat {n}"})

        body = client.get("/sessions/s1/chats", params={"limit": "2"}).json()

        assert body["ok"] is True
        assert [c["name"] for c in body["chats"]] == ["Chat 0", "Chat 1"]

    def test_chats_ignores_bad_limit(self, client, manager):
        client.post("/sessions", json={"sessionId": "s1"})
        manager.stores["s1"].upsert_chat({"id": JID})

        body = client.get("/sessions/s1/chats", params={"limit": "lots", "force": "1"}).json()

        assert len(body["chats"]) == 1

    def test_messages_require_jid(self, client):
        response = client.get("/sessions/s1/messages")

        assert response.status_code == 400
        assert response.json() == {"error": "Missing jid"}

    def test_messages_from_store(self, client, manager):
        client.post("/sessions", json={"sessionId": "s1"})
        store = manager.stores["s1"]
        for n in range(3):
            store.add_message({"id": f"M{n}", "chat_jid": JID, "text": f"text {n}", "timestamp": n})

        body = client.get("/sessions/s1/messages", params={"jid": JID, "limit": "2"}).json()

        assert body["ok"] is True
        assert [m["id"] for m in body["messages"]] == ["M1", "M2"]

    def test_messages_jid_is_url_decoded(self, client, manager):
        client.post("/sessions", json={"sessionId": "s1"})
        manager.stores["s1"].add_message({"id": "M0", "chat_jid": JID})

        body = client.get("/sessions/s1/messages?jid=573001112233%2540s.whatsapp.net").json()

        assert [m["id"] for m in body["messages"]] == ["M0"]

    def test_send_requires_fields(self, client):
        response = client.post("/sessions/s1/send", json={"to": JID})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing 'to' or 'text'"}

    def test_send_rejects_non_string_text(self, client, socket_factory):
        client.post("/sessions", json={"sessionId": "s1"})
        sock = socket_factory.latest("s1")
        sock.me = "me@s.whatsapp.net"

        response = client.post("/sessions/s1/send", json={"to": JID, "text": 5})

        assert response.status_code == 400
        assert response.json() == {"error": "'to' and 'text' must be strings"}
        assert sock.sent == []

    def test_send_requires_ready_session(self, client):
        client.post("/sessions", json={"sessionId": "s1"})

        response = client.post("/sessions/s1/send", json={"to": JID, "text": "Hola"})

        assert response.status_code == 400
        assert response.json() == {"error": "Session not ready"}

    def test_send(self, client, socket_factory):
        client.post("/sessions", json={"sessionId": "s1"})
        sock = socket_factory.latest("s1")
        sock.me = "me@s.whatsapp.net"

        response = client.post("/sessions/s1/send", json={"to": JID, "text": "Hola"})

        assert response.json() == {"ok": True, "id": "MSG1"}
        assert sock.sent == [(JID, "Hola")]

class FakeRequest:
    """Minimal request double for driving the stream generator directly."""

    def __init__(self):
        self.gone = False

    async def is_disconnected(self):
        return self.gone

def parse(frame):
    event_line, data_line = frame.strip().split("\n")
    return event_line[len("event: "):], json.loads(data_line[len("data: "):])

class TestStreamRoute:
    """GET /sessions/{id}/stream."""

    @pytest.mark.asyncio
    async def test_stream_starts_session_and_relays_events(self, app_module, manager, broadcaster, socket_factory):
        response = await app_module.session_stream("s1", FakeRequest())

        assert response.media_type == "text/event-stream"
        assert response.headers["cache-control"] == "no-cache, no-transform"
        assert response.headers["x-accel-buffering"] == "no"

        frames = response.body_iterator
        assert parse(await frames.__anext__())[0] == "ready"
        assert "s1" in manager.sessions
        assert broadcaster.subscriber_count("s1") == 1

        await socket_factory.latest("s1").emit("connection.update", {"qr": "2@qr"})
        event, data = parse(await frames.__anext__())
        assert event == "qr.update"
        assert data["sessionId"] == "s1"

        await frames.aclose()
        assert broadcaster.subscriber_count("s1") == 0

    @pytest.mark.asyncio
    async def test_stream_reports_start_error_and_stays_open(self, app_module, socket_factory, broadcaster):
        socket_factory.fail_with = RuntimeError("no network")

        response = await app_module.session_stream("s1", FakeRequest())
        frames = response.body_iterator

        assert parse(await frames.__anext__()) == ("error", {"error": "no network"})
        assert parse(await frames.__anext__())[0] == "ready"
        assert broadcaster.subscriber_count("s1") == 1

        await frames.aclose()

    def test_stream_requires_key(self, client):
        response = client.get("/sessions/s1/stream", headers={"x-api-key": API_KEY + "x"})

        assert response.status_code == 401
