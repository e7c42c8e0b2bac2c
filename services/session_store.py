"""
Session Store

In-memory index of the chats and messages seen on one WhatsApp session.
It is fed from the socket's normalised events and answers the listing
endpoints; nothing here is persisted.
"""

from collections import OrderedDict
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from utils.logger import setup_logger

logger = setup_logger(__name__)

MAX_MESSAGES_PER_CHAT = 1000

class Chat(BaseModel):
    """A conversation as exposed by GET /sessions/{id}/chats."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    unread_count: int = 0
    conversation_timestamp: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()

class StoredMessage(BaseModel):
    """A message as exposed by GET /sessions/{id}/messages."""

    model_config = ConfigDict(extra="allow")

    id: str
    chat_jid: str
    sender_jid: Optional[str] = None
    from_me: bool = False
    timestamp: int = 0
    text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()

class SessionStore:
    """Chats and messages for a single session, in arrival order."""

    def __init__(self, session_id: str, max_messages_per_chat: int = MAX_MESSAGES_PER_CHAT):
        self.session_id = session_id
        self.max_messages_per_chat = max_messages_per_chat
        self.chats: Dict[str, Chat] = {}
        self.messages: Dict[str, "OrderedDict[str, StoredMessage]"] = {}

    def bind(self, event: str, payload: Dict[str, Any]) -> int:
        """
        Ingest one socket event.

        Args:
            event: Normalised event name
            payload: Event payload

        Returns:
            int: Number of records stored
        """
        if event == "messages.upsert":
            return sum(1 for data in payload.get("messages") or [] if self.add_message(data))
        if event in ("chats.upsert", "chats.update"):
            return sum(1 for data in payload.get("chats") or [] if self.upsert_chat(data))
        return 0

    def upsert_chat(self, data: Dict[str, Any]) -> Optional[Chat]:
        """Insert a chat or merge fields into the existing one."""
        existing = self.chats.get(data.get("id")) if isinstance(data, dict) else None
        try:
            if existing:
                fields = {k: v for k, v in data.items() if v is not None}
                chat = Chat.model_validate({**existing.model_dump(), **fields})
            else:
                chat = Chat.model_validate(data)
        except ValidationError as e:
            logger.warning(f"[{self.session_id}] Skipping malformed chat: {e.errors()[0]['msg']}")
            return None

        self.chats[chat.id] = chat
        return chat

    def add_message(self, data: Dict[str, Any]) -> Optional[StoredMessage]:
        """Index a message by id; a repeated id replaces the earlier copy."""
        try:
            message = StoredMessage.model_validate(data)
        except ValidationError as e:
            logger.warning(f"[{self.session_id}] Skipping malformed message: {e.errors()[0]['msg']}")
            return None

        chat = self.chats.get(message.chat_jid)
        latest = max(message.timestamp, chat.conversation_timestamp or 0) if chat else message.timestamp
        self.upsert_chat({"id": message.chat_jid, "conversation_timestamp": latest or None})

        history = self.messages.setdefault(message.chat_jid, OrderedDict())
        history[message.id] = message
        while len(history) > self.max_messages_per_chat:
            history.popitem(last=False)
        return message

    def list_chats(self, limit: int = 0) -> List[Dict[str, Any]]:
        chats = [chat.to_dict() for chat in self.chats.values()]
        return chats[:limit] if limit > 0 else chats

    def load_messages(self, jid: str, limit: int) -> List[Dict[str, Any]]:
        history = self.messages.get(jid)
        if not history or limit <= 0:
            return []
        return [message.to_dict() for message in list(history.values())[-limit:]]

    def message_count(self, jid: Optional[str] = None) -> int:
        if jid is not None:
            return len(self.messages.get(jid, ()))
        return sum(len(history) for history in self.messages.values())
