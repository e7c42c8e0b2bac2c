"""API package for the WhatsApp Session Gateway."""

from .whatsapp_socket import (
    DisconnectReason,
    PyaileysSocket,
    SocketFactory,
    WhatsAppSocket,
    create_pyaileys_socket,
    extract_disconnect_code,
)

__all__ = [
    "DisconnectReason",
    "PyaileysSocket",
    "SocketFactory",
    "WhatsAppSocket",
    "create_pyaileys_socket",
    "extract_disconnect_code",
]
