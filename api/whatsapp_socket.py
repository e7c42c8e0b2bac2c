"""
WhatsApp Socket - adapter over the WhatsApp Web protocol client

The gateway never speaks the WhatsApp wire protocol itself. This module wraps
the protocol library behind a small socket interface and normalises the
library's events into the names the session manager understands:

    connection.update  {"connection": "open" | "close" | None, "qr": str | None, "last_disconnect": ...}
    creds.update       {}
    messages.upsert    {"messages": [...], "type": "notify" | "append"}
    chats.upsert       {"chats": [...]}
    chats.update       {"chats": [...]}
"""

import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from utils.logger import setup_logger

logger = setup_logger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]

class DisconnectReason:
    """Close codes reported by WhatsApp Web when a connection ends."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411

def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)

def extract_disconnect_code(last_disconnect: Any) -> Optional[int]:
    """
    Pull the status code out of a disconnect report.

    Looks at error.output.statusCode, then error.status, then error.code and
    returns the first integer found.
    """
    error = _field(last_disconnect, "error")
    if error is None:
        return None

    candidates = (
        _field(_field(error, "output"), "statusCode"),
        _field(error, "status"),
        _field(error, "code"),
    )
    for value in candidates:
        if isinstance(value, bool) or value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None

class WhatsAppSocket:
    """
    Interface of one live protocol connection.

    Implementations call ``on_event(name, payload)`` for every normalised
    event, in the order the protocol library emits them.
    """

    def __init__(self, session_id: str, auth_dir: Path, on_event: EventHandler):
        self.session_id = session_id
        self.auth_dir = auth_dir
        self.on_event = on_event

    @property
    def user(self) -> Optional[str]:
        """Own JID once paired, otherwise None."""
        return None

    async def connect(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def send_text(self, jid: str, text: str) -> Optional[str]:
        raise NotImplementedError

    async def load_messages(self, jid: str, limit: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def save_creds(self) -> None:
        raise NotImplementedError

SocketFactory = Callable[[str, Path, EventHandler], Awaitable[WhatsAppSocket]]

class PyaileysSocket(WhatsAppSocket):
    """
    Socket backed by pyaileys, an asyncio port of the Baileys client.

    Credentials live in a Baileys-style multi-file auth folder so a paired
    session survives restarts of the gateway.
    """

    def __init__(self, session_id: str, auth_dir: Path, on_event: EventHandler, client: Any, auth_state: Any):
        super().__init__(session_id, auth_dir, on_event)
        self.client = client
        self.auth_state = auth_state
        self._forwarded: Set[Tuple[str, str]] = set()

    @classmethod
    async def create(cls, session_id: str, auth_dir: Path, on_event: EventHandler) -> "PyaileysSocket":
        """Load auth state from ``auth_dir`` and bind library events."""
        # Import lazily; the generated protocol modules are large.
        from pyaileys import WhatsAppClient

        client, auth_state = await WhatsAppClient.from_auth_folder(str(auth_dir))
        sock = cls(session_id, auth_dir, on_event, client, auth_state)
        sock._bind()
        return sock

    def _bind(self):
        self.client.on("connection.update", self._on_connection_update)
        self.client.on("creds.update", self._on_creds_update)
        self.client.on("message.decrypted", self._on_message_decrypted)
        self.client.on("history.sync", self._on_history_sync)

    @property
    def user(self) -> Optional[str]:
        me = self.client.socket.auth.creds.me
        return me.id if me and me.id else None

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        await self.client.disconnect()

    async def save_creds(self) -> None:
        await self.auth_state.save_creds()

    async def send_text(self, jid: str, text: str) -> Optional[str]:
        message_id = await self.client.send_text(jid, text)
        # Sent messages are not echoed back by the server; feed them to the store ourselves
        await self.on_event("messages.upsert", {
            "type": "append",
            "messages": [{
                "id": message_id,
                "chat_jid": jid,
                "sender_jid": self.user,
                "from_me": True,
                "timestamp": int(time.time()),
                "text": text,
            }],
        })
        return message_id

    async def load_messages(self, jid: str, limit: int) -> List[Dict[str, Any]]:
        """
        Return what the library store holds for a chat and ask the phone for more.

        Older pages arrive later through history.sync and reach the session
        store from there.
        """
        messages = [self._message_dict(m) for m in self._library_messages(jid)]
        messages = messages[-limit:] if limit > 0 else []
        try:
            request_id = await self.client.request_chat_history(jid, count=limit)
            logger.info(f"[{self.session_id}] Requested {limit} messages of history ({request_id})")
        except Exception as e:
            if not messages:
                raise
            logger.warning(f"[{self.session_id}] History request failed: {e}")
        return messages

    def _library_chats(self) -> List[Any]:
        chats = getattr(self.client.store, "chats", None) or {}
        return list(chats.values()) if isinstance(chats, dict) else list(chats)

    def _library_messages(self, jid: str) -> List[Any]:
        by_chat = getattr(self.client.store, "messages", None) or {}
        messages = by_chat.get(jid) if isinstance(by_chat, dict) else None
        if isinstance(messages, dict):
            messages = list(messages.values())
        return sorted(messages or [], key=lambda m: _field(m, "timestamp_s") or 0)

    def _message_dict(self, message: Any) -> Dict[str, Any]:
        sender = _field(message, "sender_jid")
        from_me = _field(_field(_field(message, "raw"), "key"), "fromMe")
        if not isinstance(from_me, bool):
            from_me = bool(sender and sender == self.user)
        return {
            "id": _field(message, "id"),
            "chat_jid": _field(message, "chat_jid"),
            "sender_jid": sender,
            "from_me": from_me,
            "timestamp": _field(message, "timestamp_s") or 0,
            "text": _field(message, "text"),
        }

    async def _on_connection_update(self, update: Any):
        await self.on_event("connection.update", {
            "connection": _field(update, "connection"),
            "qr": _field(update, "qr"),
            "last_disconnect": _field(update, "lastDisconnect") or _field(update, "last_disconnect"),
        })

    async def _on_creds_update(self, _creds: Any):
        await self.on_event("creds.update", {})

    async def _on_message_decrypted(self, payload: Dict[str, Any]):
        sender = payload.get("sender_jid")
        await self.on_event("messages.upsert", {
            "type": "notify",
            "messages": [{
                "id": payload.get("id"),
                "chat_jid": payload.get("chat_jid"),
                "sender_jid": sender,
                "from_me": bool(sender and sender == self.user),
                "timestamp": payload.get("timestamp_s") or 0,
                "text": payload.get("text"),
            }],
        })

    async def _on_history_sync(self, payload: Dict[str, Any]):
        # The payload only carries counts; the conversations are already in client.store
        chats = []
        messages = []
        for chat in self._library_chats():
            jid = _field(chat, "jid")
            if not jid:
                continue
            chats.append({"id": jid, "name": _field(chat, "name")})
            for message in self._library_messages(jid):
                key = (jid, _field(message, "id"))
                if key[1] and key not in self._forwarded:
                    self._forwarded.add(key)
                    messages.append(self._message_dict(message))

        logger.info(
            f"[{self.session_id}] History sync type={payload.get('syncType')} "
            f"progress={payload.get('progress')} chats={len(chats)} new_messages={len(messages)}"
        )
        await self.on_event("chats.upsert", {"chats": chats})
        if messages:
            await self.on_event("messages.upsert", {"type": "append", "messages": messages})

async def create_pyaileys_socket(session_id: str, auth_dir: Path, on_event: EventHandler) -> WhatsAppSocket:
    """Default socket factory used by the running service."""
    return await PyaileysSocket.create(session_id, auth_dir, on_event)
