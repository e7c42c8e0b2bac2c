"""
WhatsApp Session Gateway - Main Application Entry Point

HTTP + Server-Sent Events front-end over a WhatsApp Web protocol client.
Callers create sessions by id, pair them by scanning a QR code, list chats
and messages, send text messages, and follow live events from a browser.
"""

import json
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from api.whatsapp_socket import create_pyaileys_socket
from config.settings import settings, is_valid_session_id
from services.event_broadcaster import EventBroadcaster, format_sse, stream_events
from services.session_manager import SessionManager
from services.webhook_client import WebhookClient
from utils.error_handler import ConfigurationError, QRNotReadyError, UnauthorizedError, ValidationError, handle_error
from utils.logger import RequestLogger, setup_logger

# Initialize settings and logging
logger = setup_logger(__name__)

SERVICE_NAME = "baileys-microservice"

# Initialize FastAPI app
app = FastAPI(
    title="WhatsApp Session Gateway",
    description="REST + SSE front-end for WhatsApp Web sessions",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None
)

# Initialize services
broadcaster = EventBroadcaster()
webhook_client = WebhookClient()
session_manager = SessionManager(
    socket_factory=create_pyaileys_socket,
    broadcaster=broadcaster,
    webhook=webhook_client if webhook_client.enabled else None,
)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable proxy buffering
}

def session_id_from_path(path: str) -> Optional[str]:
    """Extract the session id from /sessions/{id}/... paths."""
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "sessions":
        return parts[1]
    return None

@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    """Require x-api-key on every route except the health root."""
    if request.url.path == "/" or request.method == "OPTIONS":
        return await call_next(request)
    if not settings.API_KEY:
        return handle_error(ConfigurationError("API_KEY"))
    key = request.headers.get("x-api-key")
    if not key or key != settings.API_KEY:
        return handle_error(UnauthorizedError())
    return await call_next(request)

@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())[:8]
    session_id = session_id_from_path(request.url.path)
    with RequestLogger(logger, request_id, request.method, request.url.path, session_id) as request_log:
        response = await call_next(request)
        request_log.status_code = response.status_code
        return response

# CORS middleware (added last so it wraps the key check and decorates its 401s)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_event():
    """Initialize services on app startup."""
    logger.info("Starting WhatsApp Session Gateway...")
    Path(settings.AUTH_ROOT).mkdir(parents=True, exist_ok=True)
    if not settings.API_KEY:
        logger.warning("API_KEY is not set - every route except / will answer 500")
    if webhook_client.enabled:
        logger.info(f"Forwarding session events to {webhook_client.url}")
    logger.info(f"Auth folders under {Path(settings.AUTH_ROOT).resolve()}")

@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on app shutdown."""
    logger.info("Shutting down WhatsApp Session Gateway...")
    await session_manager.shutdown()
    await webhook_client.close()

async def read_json(request: Request) -> Dict[str, Any]:
    """Read a JSON object body; an empty or invalid body reads as {}."""
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}

def parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default

def require_session_id(session_id: Optional[str]) -> str:
    if not session_id:
        raise ValidationError("Missing sessionId", field="sessionId")
    if not is_valid_session_id(session_id):
        raise ValidationError("Invalid sessionId", field="sessionId")
    return session_id

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"ok": True, "service": SERVICE_NAME}

@app.get("/health")
async def health_check():
    """Detailed health check."""
    return {
        "ok": True,
        "service": SERVICE_NAME,
        "sessions": len(session_manager.sessions),
        "subscribers": broadcaster.total_subscribers(),
        "webhook": "configured" if webhook_client.enabled else "not_configured",
    }

@app.post("/sessions")
async def create_session(request: Request):
    """
    Create or rehydrate a session.

    Body: {"sessionId": "client-123"}. A session without credentials starts
    the QR pairing flow.
    """
    try:
        payload = await read_json(request)
        session_id = require_session_id(payload.get("sessionId"))

        await session_manager.get_session(session_id)
        return {"ok": True, "sessionId": session_id}
    except Exception as e:
        return handle_error(e)

@app.get("/sessions/{session_id}/status")
async def session_status(session_id: str):
    """Whether the session is connected, and its own JID if so."""
    try:
        return session_manager.status(session_id)
    except Exception as e:
        return handle_error(e)

@app.get("/sessions/{session_id}/qr.png")
async def session_qr(session_id: str):
    """Latest pairing QR of the session as a PNG."""
    try:
        png = session_manager.qr_png(session_id)
        return Response(content=png, media_type="image/png")
    except QRNotReadyError as e:
        return PlainTextResponse(e.message, status_code=e.status_code)
    except Exception as e:
        return handle_error(e)

@app.get("/sessions/{session_id}/chats")
async def session_chats(session_id: str, limit: Optional[str] = None, force: Optional[str] = None):
    """
    List chats from the session store.

    ?limit=N trims the response only; ?force=1 also notifies SSE clients.
    """
    try:
        chats = session_manager.list_chats(
            session_id,
            limit=parse_int(limit, 0),
            force=str(force or "0") == "1",
        )
        return {"ok": True, "chats": chats}
    except Exception as e:
        return handle_error(e)

@app.get("/sessions/{session_id}/messages")
async def session_messages(session_id: str, jid: Optional[str] = None, limit: Optional[str] = None):
    """Messages of one chat, e.g. ?jid=573001234567@s.whatsapp.net&limit=50."""
    try:
        if not jid:
            raise ValidationError("Missing jid", field="jid")

        messages = await session_manager.list_messages(session_id, unquote(jid), parse_int(limit, 50))
        return {"ok": True, "messages": messages}
    except Exception as e:
        return handle_error(e)

@app.post("/sessions/{session_id}/send")
async def session_send(session_id: str, request: Request):
    """Send a text message. Body: {"to": "<jid>", "text": "Hello"}."""
    try:
        payload = await read_json(request)
        to = payload.get("to")
        text = payload.get("text")
        if not to or not text:
            raise ValidationError("Missing 'to' or 'text'")
        if not isinstance(to, str) or not isinstance(text, str):
            raise ValidationError("'to' and 'text' must be strings")

        message_id = await session_manager.send_text(session_id, to, text)
        return {"ok": True, "id": message_id}
    except Exception as e:
        return handle_error(e)

@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str, logout: Optional[str] = None):
    """Close a session; ?logout=1 also deletes its credentials."""
    try:
        require_session_id(session_id)
        await session_manager.close_session(session_id, logout=str(logout or "0") == "1")
        return {"ok": True, "sessionId": session_id}
    except Exception as e:
        return handle_error(e)

@app.get("/sessions/{session_id}/stream")
async def session_stream(session_id: str, request: Request):
    """
    Server-Sent Events for one session.

    Pushes ready, qr.update, chats.update, messages.upsert, creds.update and
    keepalive events until the client disconnects.
    """
    async def event_generator():
        # (Re)create the session so a fresh one starts pairing
        try:
            require_session_id(session_id)
            await session_manager.get_session(session_id)
        except Exception as e:
            logger.error(f"[{session_id}] Could not start session for stream: {e}")
            yield format_sse("error", {"error": str(e)})

        subscriber = broadcaster.subscribe(session_id)
        frames = stream_events(
            broadcaster,
            session_id,
            subscriber,
            settings.SSE_KEEPALIVE_SECONDS,
            request.is_disconnected,
        )
        try:
            async for frame in frames:
                yield frame
        finally:
            await frames.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return handle_error(exc)

if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=int(os.getenv("PORT", settings.PORT)),
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
