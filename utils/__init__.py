"""Utilities package for the WhatsApp Session Gateway."""

from .logger import setup_logger, log_request, log_response, log_whatsapp_message, log_session_event
from .retry import with_retry
from .error_handler import handle_error, GatewayError
from .qr import render_qr_png, qr_data_uri, data_uri_to_bytes

__all__ = [
    # Logging utilities
    "setup_logger",
    "log_request",
    "log_response",
    "log_whatsapp_message",
    "log_session_event",

    # Retry utilities
    "with_retry",

    # Error handling
    "handle_error",
    "GatewayError",

    # QR rendering
    "render_qr_png",
    "qr_data_uri",
    "data_uri_to_bytes",
]
