from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional


_PHONE_RE = re.compile(r"^(\+62|62|0)[0-9]{9,12}$")
_JS_PROTOCOL_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+=", re.IGNORECASE)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sanitize_input(value: str) -> str:
    value = value.strip()
    value = value.replace("<", "").replace(">", "")
    value = _JS_PROTOCOL_RE.sub("", value)
    return _EVENT_HANDLER_RE.sub("", value)


def is_valid_phone(phone: str) -> bool:
    return bool(_PHONE_RE.match(phone))


def normalize_phone(phone: str) -> str:
    # 0812... / 62812... / +62812... -> +62812...
    if phone.startswith("0"):
        return "+62" + phone[1:]
    if phone.startswith("62"):
        return "+" + phone
    return phone


def format_phone_number(phone: str) -> str:
    # +6281234567890 -> 0812-3456-7890
    if not phone.startswith("+62"):
        return phone
    local = "0" + phone[3:]
    if len(local) == 12:
        return f"{local[:4]}-{local[4:8]}-{local[8:]}"
    return local


def format_datetime(value: Optional[datetime]) -> str:
    if not value:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M")
