"""
Session Manager

Owns every live WhatsApp session of the gateway:
- sessions: session id -> protocol socket
- stores: session id -> in-memory chat/message store
- last_qr: session id -> most recent pairing QR string

Socket events are processed here in emission order, turned into the
lightweight notifications the browser UI listens for, and fanned out to
SSE subscribers (and the optional webhook).
"""

import asyncio
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from api.whatsapp_socket import DisconnectReason, SocketFactory, WhatsAppSocket, extract_disconnect_code
from config.settings import settings
from services.event_broadcaster import EventBroadcaster, now_ms
from services.session_store import SessionStore
from services.webhook_client import WebhookClient
from utils.error_handler import QRNotReadyError, SessionNotReadyError, WhatsAppError
from utils.logger import log_session_event, log_whatsapp_message, setup_logger
from utils.qr import render_qr_png

logger = setup_logger(__name__)

class SessionManager:
    """Creates, tracks and tears down WhatsApp sessions."""

    def __init__(
        self,
        socket_factory: SocketFactory,
        broadcaster: EventBroadcaster,
        webhook: Optional[WebhookClient] = None,
        auth_root: Optional[str] = None,
        reconnect_delay: Optional[float] = None,
    ):
        self.socket_factory = socket_factory
        self.broadcaster = broadcaster
        self.webhook = webhook
        self.auth_root = Path(auth_root or settings.AUTH_ROOT)
        self.reconnect_delay = reconnect_delay if reconnect_delay is not None else settings.RECONNECT_DELAY_SECONDS

        self.sessions: Dict[str, WhatsAppSocket] = {}
        self.stores: Dict[str, SessionStore] = {}
        self.last_qr: Dict[str, str] = {}

        self._locks: Dict[str, asyncio.Lock] = {}
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}
        self._closing: Set[str] = set()

    def auth_dir(self, session_id: str) -> Path:
        return self.auth_root / session_id

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> WhatsAppSocket:
        """Return the live socket for a session, starting it if needed."""
        sock = self.sessions.get(session_id)
        if sock:
            return sock

        async with self._lock_for(session_id):
            sock = self.sessions.get(session_id)
            if sock:
                return sock
            return await self.start_session(session_id)

    async def start_session(self, session_id: str) -> WhatsAppSocket:
        """
        Create a socket for a session and connect it.

        A session without stored credentials will emit a pairing QR through
        connection.update shortly after connecting.
        """
        self._cancel_reconnect(session_id)
        self._closing.discard(session_id)

        auth_dir = self.auth_dir(session_id)
        auth_dir.mkdir(parents=True, exist_ok=True)

        self.stores[session_id] = SessionStore(session_id)
        sock: Optional[WhatsAppSocket] = None

        async def on_event(event: str, payload: Dict[str, Any]):
            await self.handle_event(session_id, event, payload, source=sock)

        try:
            sock = await self.socket_factory(session_id, auth_dir, on_event)
            self.sessions[session_id] = sock
            await sock.connect()
        except Exception:
            self.sessions.pop(session_id, None)
            self.stores.pop(session_id, None)
            raise

        log_session_event(logger, session_id, "Session started", auth_dir=auth_dir)
        return sock

    async def close_session(self, session_id: str, logout: bool = False) -> bool:
        """
        Close a session and stop reconnecting it.

        Args:
            session_id: Session to close
            logout: Also delete the stored credentials, forcing a new QR pairing

        Returns:
            bool: True if a live socket was closed
        """
        self._closing.add(session_id)
        self._cancel_reconnect(session_id)

        sock = self.sessions.pop(session_id, None)
        self.stores.pop(session_id, None)
        if sock:
            await sock.close()

        if logout:
            await self._clear_auth(session_id)

        log_session_event(logger, session_id, "Session closed", logout=logout)
        return sock is not None

    async def shutdown(self):
        """Close every session (application shutdown)."""
        for session_id in list(self.sessions):
            try:
                await self.close_session(session_id)
            except Exception as e:
                logger.error(f"[{session_id}] Error closing session: {e}")
        for session_id in list(self._reconnect_tasks):
            self._cancel_reconnect(session_id)
        if self.webhook:
            await self.webhook.close()

    async def _clear_auth(self, session_id: str):
        await asyncio.to_thread(shutil.rmtree, self.auth_dir(session_id), True)
        self.last_qr.pop(session_id, None)

    def _cancel_reconnect(self, session_id: str):
        task = self._reconnect_tasks.pop(session_id, None)
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _schedule_reconnect(self, session_id: str):
        if session_id in self._reconnect_tasks:
            return
        self._reconnect_tasks[session_id] = asyncio.create_task(self._reconnect(session_id))

    async def _reconnect(self, session_id: str):
        await asyncio.sleep(self.reconnect_delay)
        if session_id in self._closing or session_id in self.sessions:
            self._reconnect_tasks.pop(session_id, None)
            return

        log_session_event(logger, session_id, "Reconnecting")
        try:
            await self.get_session(session_id)
        except Exception as e:
            logger.error(f"[{session_id}] Reconnect failed: {e}", exc_info=True)
        finally:
            if self._reconnect_tasks.get(session_id) is asyncio.current_task():
                del self._reconnect_tasks[session_id]

    # ------------------------------------------------------------------
    # Event processing
    # ------------------------------------------------------------------

    def _emit(self, session_id: str, event: str, payload: Dict[str, Any]):
        self.broadcaster.broadcast(session_id, event, payload)
        if self.webhook:
            self.webhook.dispatch(session_id, event, payload)

    async def handle_event(
        self,
        session_id: str,
        event: str,
        payload: Dict[str, Any],
        source: Optional[WhatsAppSocket] = None,
    ):
        """
        Process one normalised socket event.

        Events from a socket that is no longer the session's live socket (closed
        or replaced) are dropped.
        """
        if source is not None and self.sessions.get(session_id) is not source:
            logger.debug(f"[{session_id}] Dropping {event} from a stale socket")
            return

        if event == "connection.update":
            await self._on_connection_update(session_id, payload)

        elif event == "creds.update":
            sock = self.sessions.get(session_id)
            if sock:
                await sock.save_creds()
            self._emit(session_id, "creds.update", {"ts": now_ms()})

        elif event == "messages.upsert":
            messages = payload.get("messages") or []
            store = self.stores.get(session_id)
            if store:
                store.bind(event, payload)
            for message in messages:
                if isinstance(message, dict) and message.get("text") and not message.get("from_me"):
                    log_whatsapp_message(logger, "incoming", message.get("chat_jid") or "", "text", message["text"][:50])
            # Light notification only; the UI fetches the messages from /messages
            self._emit(session_id, "messages.upsert", {
                "sessionId": session_id,
                "payload": {"type": "notify", "count": len(messages)},
                "ts": now_ms(),
            })

        elif event in ("chats.upsert", "chats.update"):
            store = self.stores.get(session_id)
            if store:
                store.bind(event, payload)
            self._emit(session_id, "chats.update", {
                "sessionId": session_id,
                "payload": {"count": 1},
                "ts": now_ms(),
            })

        else:
            logger.debug(f"[{session_id}] Ignoring socket event {event}")

    async def _on_connection_update(self, session_id: str, update: Dict[str, Any]):
        qr = update.get("qr")
        connection = update.get("connection")

        if qr:
            self.last_qr[session_id] = qr
            self._emit(session_id, "qr.update", {"sessionId": session_id, "ts": now_ms()})

        if connection == "open":
            log_session_event(logger, session_id, "WA connected")
            self._emit(session_id, "ready", {"ts": now_ms()})

        if connection == "close":
            reason = extract_disconnect_code(update.get("last_disconnect"))
            logger.warning(f"[{session_id}] WA disconnected reason={reason}")

            if reason == DisconnectReason.LOGGED_OUT:
                # Credentials are void; the next start asks for a new QR
                await self._clear_auth(session_id)

            self.sessions.pop(session_id, None)
            self.stores.pop(session_id, None)

            if reason != DisconnectReason.LOGGED_OUT and session_id not in self._closing:
                self._schedule_reconnect(session_id)

    # ------------------------------------------------------------------
    # Queries and commands
    # ------------------------------------------------------------------

    def status(self, session_id: str) -> Dict[str, Any]:
        sock = self.sessions.get(session_id)
        user = sock.user if sock else None
        return {
            "connected": bool(user),
            "me": {"id": user} if user else None,
        }

    def qr_png(self, session_id: str, width: Optional[int] = None, margin: Optional[int] = None) -> bytes:
        qr = self.last_qr.get(session_id)
        if not qr:
            raise QRNotReadyError(session_id)
        return render_qr_png(
            qr,
            width=width or settings.QR_WIDTH,
            margin=settings.QR_MARGIN if margin is None else margin,
        )

    def list_chats(self, session_id: str, limit: int = 0, force: bool = False) -> List[Dict[str, Any]]:
        store = self.stores.get(session_id)
        if not store:
            return []

        chats = store.list_chats(limit)
        if force:
            self._emit(session_id, "chats.update", {"sessionId": session_id, "payload": {"count": len(chats)}})
        return chats

    async def list_messages(self, session_id: str, jid: str, limit: int = 50) -> List[Dict[str, Any]]:
        store = self.stores.get(session_id)
        sock = self.sessions.get(session_id)
        if not store or not sock:
            return []

        messages = store.load_messages(jid, limit)
        if messages:
            return messages

        # Nothing in memory yet: ask the server for a page of history
        try:
            return await sock.load_messages(jid, limit) or []
        except Exception as e:
            logger.warning(f"[{session_id}] Could not load history for {jid}: {e}")
            return []

    async def send_text(self, session_id: str, to: str, text: str) -> Optional[str]:
        sock = self.sessions.get(session_id)
        if not sock or not sock.user:
            raise SessionNotReadyError(session_id)

        try:
            message_id = await sock.send_text(to, text)
        except Exception as e:
            raise WhatsAppError(str(e) or "Send failed", {"to": to}) from e
        log_whatsapp_message(logger, "outgoing", to, "text", text[:50])
        return message_id
