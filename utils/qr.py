"""
QR code utilities

Renders the pairing string received from WhatsApp into a PNG that a browser
can scan from the linked-devices screen.
"""

import base64
import io

import qrcode
from PIL import Image

from utils.logger import setup_logger

logger = setup_logger(__name__)

PNG_DATA_URI_PREFIX = "data:image/png;base64,"

def render_qr_png(data: str, width: int = 256, margin: int = 1) -> bytes:
    """
    Render a QR string as a square PNG.

    Args:
        data: Raw QR payload
        width: Output width and height in pixels
        margin: Quiet-zone width in modules

    Returns:
        bytes: PNG image data
    """
    if not data:
        raise ValueError("QR data is empty")

    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=1,
        border=margin,
    )
    qr.add_data(data)
    qr.make(fit=True)

    image = qr.make_image(fill_color="black", back_color="white").get_image()
    # Nearest keeps module edges sharp for scanners
    image = image.convert("RGB").resize((width, width), Image.Resampling.NEAREST)

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()

def qr_data_uri(data: str, width: int = 256, margin: int = 1) -> str:
    """Render a QR string as a PNG data URI."""
    png = render_qr_png(data, width=width, margin=margin)
    return PNG_DATA_URI_PREFIX + base64.b64encode(png).decode("ascii")

def data_uri_to_bytes(data_uri: str) -> bytes:
    """Decode the base64 payload of a data URI."""
    header, sep, payload = data_uri.partition(",")
    if not sep:
        raise ValueError("Not a data URI")
    return base64.b64decode(payload)
