"""
Shared fixtures: an in-process fake of the WhatsApp socket so the gateway can
be exercised without a phone or a network connection.
"""

from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from api.whatsapp_socket import WhatsAppSocket
from config.settings import settings
from services.event_broadcaster import EventBroadcaster
from services.session_manager import SessionManager

API_KEY = "test-key"

class FakeSocket(WhatsAppSocket):
    """Socket double that records calls and lets tests emit events."""

    def __init__(self, session_id, auth_dir, on_event):
        super().__init__(session_id, auth_dir, on_event)
        self.me: Optional[str] = None
        self.connected = False
        self.closed = False
        self.sent: List[tuple] = []
        self.history: Dict[str, List[Dict[str, Any]]] = {}
        self.history_error: Optional[Exception] = None
        self.creds_saved = 0
        self.defer_close = False

    @property
    def user(self) -> Optional[str]:
        return self.me

    async def connect(self):
        self.connected = True

    async def close(self):
        self.closed = True
        if not self.defer_close:
            await self.deliver_close()

    async def deliver_close(self, status_code: int = 428):
        """Report the close, as the library does once the connection is gone."""
        await self.on_event("connection.update", {
            "connection": "close",
            "last_disconnect": {"error": {"output": {"statusCode": status_code}}},
        })

    async def send_text(self, jid, text):
        self.sent.append((jid, text))
        return f"MSG{len(self.sent)}"

    async def load_messages(self, jid, limit):
        if self.history_error:
            raise self.history_error
        return self.history.get(jid, [])[:limit]

    async def save_creds(self):
        self.creds_saved += 1

    async def emit(self, event, payload):
        await self.on_event(event, payload)

class FakeSocketFactory:
    """Socket factory that keeps every socket it built."""

    def __init__(self):
        self.sockets: List[FakeSocket] = []
        self.fail_with: Optional[Exception] = None
        self.defer_close = False

    async def __call__(self, session_id, auth_dir, on_event):
        if self.fail_with:
            raise self.fail_with
        sock = FakeSocket(session_id, auth_dir, on_event)
        sock.defer_close = self.defer_close
        self.sockets.append(sock)
        return sock

    def latest(self, session_id: str) -> FakeSocket:
        return [s for s in self.sockets if s.session_id == session_id][-1]

@pytest.fixture
def socket_factory():
    return FakeSocketFactory()

@pytest.fixture
def broadcaster():
    return EventBroadcaster()

@pytest.fixture
def manager(tmp_path, socket_factory, broadcaster):
    return SessionManager(
        socket_factory=socket_factory,
        broadcaster=broadcaster,
        auth_root=str(tmp_path / "auth"),
        reconnect_delay=0.01,
    )

@pytest.fixture
def app_module(monkeypatch, tmp_path, manager, broadcaster):
    """The main module wired to the fake socket factory."""
    import main

    monkeypatch.setattr(settings, "API_KEY", API_KEY)
    monkeypatch.setattr(settings, "AUTH_ROOT", str(tmp_path / "auth"))
    monkeypatch.setattr(main, "broadcaster", broadcaster)
    monkeypatch.setattr(main, "session_manager", manager)
    return main

@pytest.fixture
def client(app_module):
    with TestClient(app_module.app, headers={"x-api-key": API_KEY}) as test_client:
        yield test_client
