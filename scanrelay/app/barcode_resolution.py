"""
Maps a scanned token to an inventory item.

Match policy, first hit wins:
  1. exact barcode
  2. exact item id
  3. case-insensitive substring of the item name

Tokens are sanitized first; anything shorter than 3 characters afterwards is
treated as keyboard noise (stray keystrokes from the USB path) and dropped
without calling either handler.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Literal, Optional

from .errors import InvalidBarcode, NotFound, ResolutionUnavailable, ScannerError
from .inventory import InventoryItem, ScanLogEntry
from .json_log import json_log
from .validation import sanitize_barcode

MIN_TOKEN_LEN = 3

OutcomeStatus = Literal["resolved", "not_found", "invalid", "ignored"]


def resolve(barcode: str, inventory: Iterable[InventoryItem]) -> Optional[InventoryItem]:
    items = list(inventory or [])
    for item in items:
        if item.barcode is not None and item.barcode == barcode:
            return item
    for item in items:
        if str(item.id) == barcode:
            return item
    needle = barcode.lower()
    for item in items:
        if needle in (item.name or "").lower():
            return item
    return None


@dataclass
class ScanOutcome:
    status: OutcomeStatus
    barcode: str
    item: Optional[InventoryItem] = None
    error: Optional[ScannerError] = None


class BarcodeResolver:
    def __init__(
        self,
        context: str,
        load_candidates: Callable[[str], Iterable[InventoryItem]],
        log_scan: Optional[Callable[[ScanLogEntry], None]] = None,
        scanned_by: Optional[str] = None,
    ):
        self.context = context
        self._load_candidates = load_candidates
        self._log_scan = log_scan
        self.scanned_by = scanned_by

    def handle_scan(
        self,
        raw,
        on_success: Optional[Callable[[InventoryItem, str], None]] = None,
        on_failure: Optional[Callable[[ScannerError], None]] = None,
    ) -> ScanOutcome:
        token = sanitize_barcode(raw)
        if not token:
            err = InvalidBarcode(f"invalid barcode: {str(raw or '')[:50]}")
            if on_failure is not None:
                on_failure(err)
            return ScanOutcome(status="invalid", barcode="", error=err)
        if len(token) < MIN_TOKEN_LEN:
            return ScanOutcome(status="ignored", barcode=token)

        try:
            candidates = self._load_candidates(token)
        except Exception as ex:
            raise ResolutionUnavailable(str(ex)) from ex

        item = resolve(token, candidates)
        if item is None:
            err = NotFound(token)
            if on_failure is not None:
                on_failure(err)
            return ScanOutcome(status="not_found", barcode=token, error=err)

        self._record(token, item)
        if on_success is not None:
            on_success(item, token)
        return ScanOutcome(status="resolved", barcode=token, item=item)

    def _record(self, token: str, item: InventoryItem) -> None:
        if self._log_scan is None:
            return
        entry = ScanLogEntry(
            barcode=token,
            medicine_id=item.id,
            medicine_name=item.name,
            context=self.context,
            scanned_by=self.scanned_by,
        )
        try:
            self._log_scan(entry)
        except Exception as ex:
            json_log("warn", "scanner.scan_log.failed", barcode=token, medicine_id=item.id, error=str(ex))
