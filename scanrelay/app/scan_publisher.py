from __future__ import annotations

import threading
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import InvalidBarcode, PublishFailure, ScannerError
from .json_log import json_log
from .validation import sanitize_barcode

RECENT_HISTORY_SIZE = 10
HAPTIC_PULSE_MS = 100


@dataclass
class PublishResult:
    ok: bool
    barcode: str = ""
    record_id: Optional[str] = None
    error: Optional[ScannerError] = None


class ScanPublisher:
    """
    Phone-side publisher bound to one pairing session.

    No automatic retry on failure: the user simply scans again.
    """

    def __init__(self, store, session_id: str, feedback: Optional[Callable[[int], None]] = None):
        self.store = store
        self.session_id = session_id
        self._feedback = feedback
        self._recent: deque[str] = deque(maxlen=RECENT_HISTORY_SIZE)

    @property
    def recent(self) -> list[str]:
        return list(self._recent)

    def publish(self, raw_barcode) -> PublishResult:
        raw = str(raw_barcode or "").strip()
        if not raw:
            return PublishResult(ok=False, error=InvalidBarcode("please enter a valid barcode"))
        barcode = sanitize_barcode(raw)
        if not barcode:
            return PublishResult(ok=False, error=InvalidBarcode("barcode has no usable characters"))

        try:
            row = self.store.insert(self.session_id, barcode)
        except Exception as ex:
            json_log("error", "scanner.publish.failed", session_id=self.session_id, error=str(ex))
            return PublishResult(ok=False, barcode=barcode, error=PublishFailure("failed to send barcode, please try again"))

        # History shows what the user scanned, not the sanitized form.
        self._recent.appendleft(raw)
        if self._feedback is not None:
            try:
                self._feedback(HAPTIC_PULSE_MS)
            except Exception as ex:
                json_log("warn", "scanner.publish.feedback_failed", session_id=self.session_id, error=str(ex))
        record_id = str(row["id"]) if row and row.get("id") is not None else None
        return PublishResult(ok=True, barcode=barcode, record_id=record_id)


class PublisherRegistry:
    """One publisher (and therefore one recent-history list) per phone session, LRU-bounded."""

    def __init__(self, store, max_sessions: int = 256):
        self.store = store
        self.max_sessions = max_sessions
        self._publishers: OrderedDict[str, ScanPublisher] = OrderedDict()
        # Phone requests are served from the threadpool.
        self._lock = threading.Lock()

    def get(self, session_id: str) -> ScanPublisher:
        with self._lock:
            pub = self._publishers.get(session_id)
            if pub is None:
                pub = ScanPublisher(self.store, session_id)
                self._publishers[session_id] = pub
            self._publishers.move_to_end(session_id)
            while len(self._publishers) > self.max_sessions:
                self._publishers.popitem(last=False)
            return pub

    def peek(self, session_id: str) -> Optional[ScanPublisher]:
        with self._lock:
            return self._publishers.get(session_id)
