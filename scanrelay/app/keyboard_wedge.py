"""
Keyboard-wedge (USB HID) barcode decoder.

Hardware scanners "type" the barcode and finish with Enter, much faster than a
person can. Printable keys accumulate in a buffer; Enter flushes it; a short idle
gap (100 ms by default) throws the buffer away so human typing never builds up a
bogus barcode. State is per instance, so a sales screen and an inventory screen
can each own a decoder.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

EDITABLE_TAGS = {"INPUT", "TEXTAREA"}
DEFAULT_IDLE_S = 0.1


class KeyboardWedgeDecoder:
    def __init__(self, on_barcode: Callable[[str], None], *, idle_timeout_s: float = DEFAULT_IDLE_S, scheduler=None):
        self._on_barcode = on_barcode
        self._idle_timeout_s = idle_timeout_s
        self._scheduler_ref = scheduler
        self._buffer: list[str] = []
        self._idle_timer = None
        self._closed = False

    @property
    def buffer(self) -> str:
        return "".join(self._buffer)

    def _scheduler(self):
        if self._scheduler_ref is None:
            self._scheduler_ref = asyncio.get_running_loop()
        return self._scheduler_ref

    def handle_key(self, key: str, target_tag: Optional[str] = None, editable: bool = False) -> Optional[str]:
        """Feed one keypress. Returns the flushed barcode when Enter completes one."""
        if self._closed:
            return None
        if editable or str(target_tag or "").upper() in EDITABLE_TAGS:
            return None

        if key == "Enter":
            if not self._buffer:
                return None
            barcode = self.buffer
            self._reset()
            self._on_barcode(barcode)
            return barcode

        if isinstance(key, str) and len(key) == 1:
            self._buffer.append(key)
            self._cancel_timer()
            self._idle_timer = self._scheduler().call_later(self._idle_timeout_s, self._on_idle)
        return None

    def close(self) -> None:
        self._closed = True
        self._reset()

    def _on_idle(self) -> None:
        self._idle_timer = None
        self._buffer.clear()

    def _reset(self) -> None:
        self._cancel_timer()
        self._buffer.clear()

    def _cancel_timer(self) -> None:
        timer, self._idle_timer = self._idle_timer, None
        if timer is not None:
            timer.cancel()
