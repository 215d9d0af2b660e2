"""
Per-process registry of desktop scanner sessions.

A session runtime ties together, for one desktop screen:
- the change feed subscriber (phone scans via the relay store),
- the keyboard-wedge decoder (USB scans forwarded by the desktop browser),
- the resolver and the staging lines it fills,
- an ordered queue, so scans are resolved and reported in arrival order.

Only one desktop may be attached to a session at a time.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Optional

from fastapi.concurrency import run_in_threadpool

from .barcode_resolution import BarcodeResolver
from .change_feed import ChangeFeedSubscriber, PgNotifyFeed
from .config import settings
from .db import listen_conninfo
from .errors import ResolutionUnavailable, SessionConflict, UnknownSession
from .inventory import InventoryGateway
from .json_log import json_log
from .keyboard_wedge import KeyboardWedgeDecoder
from .relay_store import RelayStore
from .scan_sessions import ScannerSession, create_session, pairing_url, status_badge
from .scan_staging import ScanStaging
from .validation import sanitize_barcode

Send = Callable[[dict], Awaitable[Any]]


@dataclass
class SessionRuntime:
    session: ScannerSession
    staging: ScanStaging
    resolver: BarcodeResolver
    subscriber: Optional[ChangeFeedSubscriber] = None
    decoder: Optional[KeyboardWedgeDecoder] = None
    send: Optional[Send] = None
    queue: Optional[asyncio.Queue] = None
    worker: Optional[asyncio.Task] = None
    last_usb_scan: str = ""

    @property
    def attached(self) -> bool:
        return self.subscriber is not None

    @property
    def status(self) -> str:
        if self.subscriber is None:
            return "disconnected"
        return self.subscriber.status

    def enqueue(self, kind: str, payload: dict) -> None:
        if self.queue is not None:
            self.queue.put_nowait((kind, payload))


class ScannerHub:
    def __init__(
        self,
        feed,
        store,
        inventory,
        *,
        public_origin: str = "",
        reconnect_delay_s: float = 3.0,
        max_reconnect_delay_s: Optional[float] = None,
        usb_idle_s: float = 0.1,
        scheduler=None,
        run_blocking=None,
        run_background=None,
    ):
        self.feed = feed
        self.store = store
        self.inventory = inventory
        self.public_origin = public_origin
        self.reconnect_delay_s = reconnect_delay_s
        self.max_reconnect_delay_s = max_reconnect_delay_s
        self.usb_idle_s = usb_idle_s
        self._scheduler = scheduler
        self._run_blocking = run_blocking or run_in_threadpool
        self._run_background = run_background or self._executor_background
        self._sessions: dict[str, SessionRuntime] = {}

    # -- registry ---------------------------------------------------------

    def create(self, context: str, user_id: Optional[str] = None) -> SessionRuntime:
        session = create_session(context, created_by=(str(user_id) if user_id else None))
        resolver = BarcodeResolver(
            session.context,
            load_candidates=self.inventory.find_candidates,
            log_scan=self.inventory.log_scan,
            scanned_by=session.created_by,
        )
        rt = SessionRuntime(session=session, staging=ScanStaging(session.context), resolver=resolver)
        self._sessions[session.session_id] = rt
        json_log("info", "scanner.session.created", session_id=session.session_id, context=session.context)
        return rt

    def get(self, session_id: str, user_id: Optional[str] = None) -> SessionRuntime:
        rt = self._sessions.get(session_id)
        if rt is None:
            raise UnknownSession("scanner session not found")
        if user_id is not None and rt.session.created_by not in (None, str(user_id)):
            raise UnknownSession("scanner session not found")
        return rt

    def describe(self, rt: SessionRuntime) -> dict:
        status = rt.status
        return {
            "session_id": rt.session.session_id,
            "context": rt.session.context,
            "connection_state": rt.subscriber.state if rt.subscriber else "disconnected",
            "status": status,
            "badge": status_badge(status),
            "pairing_url": pairing_url(self.public_origin, rt.session.session_id),
            "attached": rt.attached,
            "last_scanned": (rt.subscriber.last_scanned if rt.subscriber else "") or rt.last_usb_scan,
            "created_at": rt.session.created_at,
        }

    def __len__(self) -> int:
        return len(self._sessions)

    # -- desktop attachment --------------------------------------------------

    async def attach(self, session_id: str, send: Send, user_id: Optional[str] = None) -> SessionRuntime:
        rt = self.get(session_id, user_id)
        if rt.attached:
            raise SessionConflict("another screen is already listening to this scanner session")

        rt.send = send
        rt.queue = asyncio.Queue()
        rt.worker = asyncio.get_running_loop().create_task(self._work(rt))
        rt.subscriber = ChangeFeedSubscriber(
            self.feed,
            session_id,
            on_scan=lambda barcode: rt.enqueue("scan", {"source": "phone", "barcode": barcode}),
            delete_record=self._delete_record,
            on_status=partial(self._on_status, rt),
            scheduler=self._scheduler,
            reconnect_delay_s=self.reconnect_delay_s,
            max_reconnect_delay_s=self.max_reconnect_delay_s,
        )
        rt.decoder = KeyboardWedgeDecoder(
            partial(self._on_usb_barcode, rt),
            idle_timeout_s=self.usb_idle_s,
            scheduler=self._scheduler,
        )
        rt.session.connection_state = "connecting"
        rt.subscriber.start()
        rt.enqueue("event", self._status_event(rt))
        json_log("info", "scanner.session.attached", session_id=session_id)
        return rt

    def handle_client_message(self, session_id: str, message: dict) -> Optional[dict]:
        rt = self.get(session_id)
        kind = str((message or {}).get("type") or "")
        if kind == "ping":
            return {"type": "pong"}
        if kind == "key":
            if rt.decoder is not None:
                rt.decoder.handle_key(
                    str(message.get("key") or ""),
                    target_tag=message.get("target"),
                    editable=bool(message.get("editable")),
                )
            return None
        return {"type": "error", "detail": f"unknown message type: {kind or '-'}"}

    async def detach(self, session_id: str) -> bool:
        """Stop listening but keep the session (and its staging lines) for a later attach."""
        rt = self._sessions.get(session_id)
        if rt is None or not rt.attached:
            return False
        await self._teardown(rt)
        json_log("info", "scanner.session.detached", session_id=session_id)
        return True

    async def close(self, session_id: str) -> bool:
        rt = self._sessions.pop(session_id, None)
        if rt is None:
            return False
        await self._teardown(rt)
        json_log("info", "scanner.session.closed", session_id=session_id)
        return True

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)

    async def _teardown(self, rt: SessionRuntime) -> None:
        subscriber, rt.subscriber = rt.subscriber, None
        if subscriber is not None:
            subscriber.close()
        decoder, rt.decoder = rt.decoder, None
        if decoder is not None:
            decoder.close()
        worker, rt.worker = rt.worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        rt.session.connection_state = "disconnected"
        rt.send = None
        rt.queue = None

    # -- staging -----------------------------------------------------------

    async def approve(self, session_id: str, user_id: Optional[str] = None) -> int:
        rt = self.get(session_id, user_id)
        lines = rt.staging.take_approvable()
        try:
            updated = await self._run_blocking(self.inventory.apply_stock_updates, lines)
        except Exception:
            rt.staging.restore(lines)
            raise
        json_log("info", "scanner.staging.approved", session_id=session_id, lines=len(lines), updated=updated)
        return updated

    # -- callbacks ---------------------------------------------------------

    def _status_event(self, rt: SessionRuntime) -> dict:
        status = rt.status
        return {"type": "status", "status": status, "badge": status_badge(status)}

    def _on_status(self, rt: SessionRuntime, status: str) -> None:
        if rt.subscriber is not None:
            rt.session.connection_state = rt.subscriber.state
        rt.enqueue("event", {"type": "status", "status": status, "badge": status_badge(status)})

    def _on_usb_barcode(self, rt: SessionRuntime, barcode: str) -> None:
        rt.last_usb_scan = barcode
        rt.enqueue("scan", {"source": "usb", "barcode": barcode})

    def _delete_record(self, record_id: str) -> None:
        self._run_background(self.store.delete, record_id)

    def _executor_background(self, fn, *args) -> None:
        fut = asyncio.get_running_loop().run_in_executor(None, fn, *args)
        fut.add_done_callback(partial(_log_background_failure, fn.__name__, args))

    # -- ordered worker ----------------------------------------------------

    async def _work(self, rt: SessionRuntime) -> None:
        queue = rt.queue
        while True:
            kind, payload = await queue.get()
            try:
                if kind == "event":
                    await self._send(rt, payload)
                elif kind == "scan":
                    await self._process_scan(rt, payload["source"], payload["barcode"])
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                # Keep the session alive; one bad scan must not stop the relay.
                json_log("error", "scanner.worker.error", session_id=rt.session.session_id, error=str(ex))
            finally:
                queue.task_done()

    async def _send(self, rt: SessionRuntime, event: dict) -> None:
        if rt.send is None:
            return
        try:
            await rt.send(event)
        except Exception as ex:
            json_log("warn", "scanner.send.failed", session_id=rt.session.session_id, event_type=event.get("type"), error=str(ex))

    async def _process_scan(self, rt: SessionRuntime, source: str, raw: str) -> None:
        try:
            outcome = await self._run_blocking(rt.resolver.handle_scan, raw)
        except ResolutionUnavailable as ex:
            json_log("error", "scanner.resolve.unavailable", session_id=rt.session.session_id, error=str(ex))
            await self._send(rt, {"type": "scan.error", "source": source, "barcode": sanitize_barcode(raw), "detail": "lookup failed"})
            return

        if outcome.status == "ignored":
            return
        if outcome.status == "invalid":
            await self._send(rt, {"type": "scan.invalid", "source": source, "raw": str(raw)[:50]})
            return
        if outcome.status == "not_found":
            line = rt.staging.add_unknown(outcome.barcode)
            await self._send(
                rt,
                {
                    "type": "scan.not_found",
                    "source": source,
                    "barcode": outcome.barcode,
                    "line": (line.as_dict() if line else None),
                },
            )
            return
        line = rt.staging.add_found(outcome.item, outcome.barcode)
        await self._send(
            rt,
            {
                "type": "scan.resolved",
                "source": source,
                "barcode": outcome.barcode,
                "item": outcome.item.as_dict(),
                "line": line.as_dict(),
            },
        )


def _log_background_failure(name: str, args: tuple, fut) -> None:
    if fut.cancelled():
        return
    ex = fut.exception()
    if ex is not None:
        json_log("warn", "scanner.background.failed", task=name, args=[str(a) for a in args], error=str(ex))


def build_default_hub() -> ScannerHub:
    feed = PgNotifyFeed(
        listen_conninfo(),
        stale_ttl_s=settings.scanner_stale_ttl_s,
        keepalive_s=settings.scanner_feed_keepalive_s,
    )
    return ScannerHub(
        feed,
        RelayStore(),
        InventoryGateway(),
        public_origin=settings.scanner_public_origin,
        reconnect_delay_s=settings.scanner_reconnect_delay_s,
        max_reconnect_delay_s=settings.scanner_reconnect_max_delay_s,
        usb_idle_s=settings.scanner_usb_idle_s,
    )
