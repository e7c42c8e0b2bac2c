"""
Logging utility for the WhatsApp Session Gateway.

Provides centralized logging configuration and setup.
"""

import logging
import logging.config
import time
from typing import Optional

from config.settings import settings

def setup_logger(name: str) -> logging.Logger:
    """
    Set up a logger with the given name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        logging.Logger: Configured logger instance
    """
    # Configure logging if not already done
    if not hasattr(setup_logger, '_configured'):
        logging.config.dictConfig(settings.get_log_config())
        setup_logger._configured = True

    return logging.getLogger(name)

def mask_jid(jid: str) -> str:
    """Mask the phone part of a JID, keeping the server suffix."""
    user, sep, server = jid.partition("@")
    masked = user[:3] + "****" + user[-4:] if len(user) > 7 else user
    return f"{masked}{sep}{server}"

def log_request(logger: logging.Logger, request_id: str, method: str, path: str, session_id: Optional[str] = None):
    """
    Log incoming request.

    Args:
        logger: Logger instance
        request_id: Unique request ID
        method: HTTP method
        path: Request path
        session_id: Optional WhatsApp session ID
    """
    session_info = f" [Session: {session_id}]" if session_id else ""
    logger.info(f"[{request_id}] {method} {path}{session_info}")

def log_response(logger: logging.Logger, request_id: str, status_code: int, duration_ms: float):
    """
    Log response.

    Args:
        logger: Logger instance
        request_id: Unique request ID
        status_code: HTTP status code
        duration_ms: Request duration in milliseconds
    """
    logger.info(f"[{request_id}] Response: {status_code} ({duration_ms:.2f}ms)")

def log_whatsapp_message(logger: logging.Logger, direction: str, jid: str, message_type: str, content_preview: str):
    """
    Log WhatsApp message activity.

    Args:
        logger: Logger instance
        direction: 'incoming' or 'outgoing'
        jid: Chat JID
        message_type: Type of message
        content_preview: Preview of message content
    """
    logger.info(f"WhatsApp {direction} [{message_type}] {mask_jid(jid)}: {content_preview}")

def log_session_event(logger: logging.Logger, session_id: str, event: str, **fields):
    """Log a session lifecycle event with optional key=value fields."""
    extra = " ".join(f"{k}={v}" for k, v in fields.items())
    logger.info(f"[{session_id}] {event}" + (f" {extra}" if extra else ""))

class RequestLogger:
    """Context manager for request logging."""

    def __init__(self, logger: logging.Logger, request_id: str, method: str, path: str, session_id: Optional[str] = None):
        self.logger = logger
        self.request_id = request_id
        self.method = method
        self.path = path
        self.session_id = session_id
        self.start_time = None
        self.status_code = 200

    def __enter__(self):
        self.start_time = time.time()
        log_request(self.logger, self.request_id, self.method, self.path, self.session_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000
        status_code = 500 if exc_type else self.status_code
        log_response(self.logger, self.request_id, status_code, duration_ms)
