from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


BARCODE_MAX_LEN = 50
# Session ids become part of a LISTEN channel name ("scanner-<id>"); Postgres caps identifiers at 63 bytes.
SESSION_ID_MAX_LEN = 55

_BARCODE_DISALLOWED = re.compile(r"[^A-Za-z0-9_-]")
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,%d}$" % SESSION_ID_MAX_LEN)


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


def sanitize_barcode(raw) -> str:
    """
    Applied to every inbound token before it is stored or resolved.
    Keeps only [A-Za-z0-9_-] and truncates to 50 chars. Idempotent.
    """
    return _BARCODE_DISALLOWED.sub("", str(raw or ""))[:BARCODE_MAX_LEN]


def is_valid_session_id(value) -> bool:
    return bool(_SESSION_ID_RE.match(str(value or "")))


ScanContext = Annotated[Literal["sales", "inventory"], BeforeValidator(_to_lower_str)]

SessionId = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=1, max_length=SESSION_ID_MAX_LEN, pattern=r"^[A-Za-z0-9_-]+$"),
]

# Raw scans are sanitized later; this only bounds what the phone may send.
RawBarcode = Annotated[str, StringConstraints(max_length=256)]
