"""
Pairing sessions between a desktop POS screen and a phone used as a scanner.

A session id is only a routing key: it lets the phone inject barcodes into one
desktop cart and nothing else, so it needs to be unique, not unguessable.
"""

from __future__ import annotations

import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Optional
from urllib.parse import quote

import qrcode
import qrcode.image.svg

from .errors import InvalidSession
from .validation import is_valid_session_id

ConnectionState = Literal["disconnected", "connecting", "connected", "reconnecting"]
UiStatus = Literal["connected", "reconnecting", "disconnected"]

SESSION_CONTEXTS = ("sales", "inventory")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_SUFFIX_LEN = 9

_BADGES = {
    "connected": "Connected",
    "reconnecting": "Reconnecting...",
    "disconnected": "Waiting for connection",
}

_clock_lock = threading.Lock()
_last_millis = 0


def _monotonic_millis() -> int:
    global _last_millis
    with _clock_lock:
        now = int(time.time() * 1000)
        if now <= _last_millis:
            now = _last_millis + 1
        _last_millis = now
        return now


def new_session_id(context: str) -> str:
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(_SUFFIX_LEN))
    return f"{context}_{_monotonic_millis()}_{suffix}"


@dataclass
class ScannerSession:
    session_id: str
    context: str
    connection_state: ConnectionState = "disconnected"
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def create_session(context: str, created_by: Optional[str] = None) -> ScannerSession:
    ctx = str(context or "").strip().lower()
    if ctx not in SESSION_CONTEXTS:
        raise InvalidSession(f"unknown scanner context: {context}")
    return ScannerSession(session_id=new_session_id(ctx), context=ctx, created_by=created_by)


def validate_session_id(session_id) -> str:
    sid = str(session_id or "").strip()
    if not is_valid_session_id(sid):
        raise InvalidSession("invalid scanner session")
    return sid


def pairing_url(origin: str, session_id: str) -> str:
    return f"{(origin or '').rstrip('/')}/scan?session={quote(session_id, safe='')}"


def pairing_qr_svg(url: str) -> str:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
        image_factory=qrcode.image.svg.SvgPathImage,
    )
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image()
    return img.to_string(encoding="unicode")


def status_badge(status: str) -> str:
    return _BADGES.get(status, _BADGES["disconnected"])
