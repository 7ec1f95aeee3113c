from __future__ import annotations

import re
import uuid
from typing import Optional

from .config import get_settings
from .errors import ValidationError


MAX_TOKEN_LENGTH = 64
# Accepts the generated UUID form and any other URL-safe opaque id of bounded length.
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{1,%d}$" % MAX_TOKEN_LENGTH)


def generate_token() -> str:
    """New ticket token: a random (version 4) UUID, 122 bits from the OS CSPRNG."""
    return str(uuid.uuid4())


def is_valid_token(token: Optional[str]) -> bool:
    return isinstance(token, str) and bool(_TOKEN_RE.match(token))


def validate_token(token: Optional[str]) -> str:
    if token is None or (isinstance(token, str) and not token.strip()):
        raise ValidationError("QR token is required")
    if not isinstance(token, str):
        raise ValidationError("QR token must be a string")
    token = token.strip()
    if not is_valid_token(token):
        raise ValidationError("QR token is malformed")
    return token


def ticket_url(token: str, base_url: Optional[str] = None) -> str:
    """URL encoded in the QR image; its last path segment is the token."""
    base = (base_url or get_settings().base_url).rstrip("/")
    return f"{base}/qr/{token}"


def qr_image_url(token: str, base_url: Optional[str] = None) -> str:
    return f"{ticket_url(token, base_url)}/image"
