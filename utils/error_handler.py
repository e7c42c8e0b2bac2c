"""
Error handling utilities for the WhatsApp Session Gateway.

Provides centralized error handling and custom exceptions. Every failure
leaves the service as a JSON body of the form {"error": "<message>"}.
"""

from typing import Dict, Any, Optional
from fastapi import HTTPException
from fastapi.responses import JSONResponse

from utils.logger import setup_logger

logger = setup_logger(__name__)

class GatewayError(Exception):
    """Base exception for the gateway."""

    status_code = 500

    def __init__(self, message: str, error_code: str = "GATEWAY_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

class ValidationError(GatewayError):
    """Raised when input validation fails."""

    status_code = 400

    def __init__(self, message: str, field: str = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)
        self.field = field

class UnauthorizedError(GatewayError):
    """Raised when the x-api-key header is missing or wrong."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, "UNAUTHORIZED")

class ConfigurationError(GatewayError):
    """Raised when the server is missing required configuration."""

    status_code = 500

    def __init__(self, setting: str):
        super().__init__(f"Server misconfigured: missing {setting} env", "CONFIGURATION_ERROR", {"setting": setting})

class SessionNotReadyError(GatewayError):
    """Raised when a session has no authenticated socket yet."""

    status_code = 400

    def __init__(self, session_id: str):
        super().__init__("Session not ready", "SESSION_NOT_READY", {"session_id": session_id})

class QRNotReadyError(GatewayError):
    """Raised when no pairing QR has been received for a session."""

    status_code = 404

    def __init__(self, session_id: str):
        super().__init__("QR not ready", "QR_NOT_READY", {"session_id": session_id})

class WhatsAppError(GatewayError):
    """Raised when a WhatsApp protocol operation fails."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "WHATSAPP_ERROR", details)

class WebhookError(GatewayError):
    """Raised when the outbound webhook rejects an event."""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, "WEBHOOK_ERROR", {"status": status})
        self.status = status

def handle_error(error: Exception) -> JSONResponse:
    """
    Handle errors and return appropriate JSON response.

    Args:
        error: Exception that occurred

    Returns:
        JSONResponse: {"error": message} with the matching status code
    """
    if isinstance(error, GatewayError):
        if error.status_code >= 500:
            logger.error(f"Error occurred: {error}", exc_info=True)
        else:
            logger.warning(f"{error.error_code}: {error.message}")
        return JSONResponse(status_code=error.status_code, content={"error": error.message})

    if isinstance(error, HTTPException):
        return JSONResponse(status_code=error.status_code, content={"error": str(error.detail)})

    # Log the full error with traceback
    logger.error(f"Error occurred: {error}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": str(error) or error.__class__.__name__})
