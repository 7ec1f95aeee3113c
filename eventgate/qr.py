from __future__ import annotations

"""QR encoding (PNG tickets) and decoding (scanner frames, tests)."""

import io
import logging
from typing import Optional

import cv2
import numpy as np
import qrcode
from PIL import Image

from .config import get_settings
from .tokens import ticket_url


logger = logging.getLogger(__name__)

# Extra white border added before decoding; tickets only carry a 2-module quiet zone.
_DECODE_PADDING = 32


def render_qr_png(token: str, base_url: Optional[str] = None, size: Optional[int] = None, margin: Optional[int] = None) -> bytes:
    """Render the ticket URL for ``token`` as a square black-on-white PNG.

    Medium error correction, ``margin`` modules of quiet zone, ``size`` pixels
    wide. Output depends only on the token and the configured base URL.
    """
    settings = get_settings()
    size = size or settings.qr_image_size
    margin = settings.qr_margin if margin is None else margin

    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=1, border=margin)
    qr.add_data(ticket_url(token, base_url))
    qr.make(fit=True)

    modules = qr.modules_count + 2 * margin
    qr.box_size = max(1, size // modules)
    img = qr.make_image(fill_color="black", back_color="white").get_image().convert("L")
    if img.size != (size, size):
        img = img.resize((size, size), Image.NEAREST)

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def decode_qr(image: np.ndarray) -> Optional[str]:
    """Decode a single QR payload from a grayscale or BGR image; None when nothing is found."""
    if image is None or image.size == 0:
        return None
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    padded = cv2.copyMakeBorder(
        image, _DECODE_PADDING, _DECODE_PADDING, _DECODE_PADDING, _DECODE_PADDING, cv2.BORDER_CONSTANT, value=255
    )
    try:
        data, _points, _straight = cv2.QRCodeDetector().detectAndDecode(padded)
    except cv2.error as exc:
        logger.debug("qr decode failed: %s", exc)
        return None
    return data or None


def decode_qr_png(content: bytes) -> Optional[str]:
    buffer = np.frombuffer(content, np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_GRAYSCALE)
    if image is None:
        return None
    return decode_qr(image)
