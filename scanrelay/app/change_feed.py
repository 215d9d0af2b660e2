"""
Desktop-side change feed subscriber for one scanner session.

State machine:
  disconnected -> connecting -> connected
  connected -> reconnecting -> connecting   (feed failure, fixed or capped backoff)
  any -> disconnected                        (close)

The subscriber never gives up: a phone may come back at any time during a shift,
so a broken feed is only visible as a `reconnecting` status.

Each delivered record is handed to the scan callback once and then deleted from
the relay store (best effort). A bounded ledger of delivered ids keeps a record
that survived a failed delete from being handed out again after a reconnect.
"""

from __future__ import annotations

import asyncio
import json
from collections import OrderedDict
from typing import Any, Callable, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from .errors import SubscriptionFailure
from .json_log import json_log
from .relay_store import PENDING_SCAN_RECORDS_SQL, channel_name, pending_scan_records_params

# Feed status events, as reported by a feed subscription.
SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
TIMED_OUT = "TIMED_OUT"
CLOSED = "CLOSED"
_FAILURE_EVENTS = {CHANNEL_ERROR, TIMED_OUT}

DELIVERED_LEDGER_SIZE = 1000


def reconnect_delay(attempt: int, base_s: float, max_s: Optional[float] = None) -> float:
    if max_s is None or max_s <= base_s:
        return base_s
    return min(max_s, base_s * (2 ** max(attempt - 1, 0)))


def ui_status(state: str, failures: int = 0) -> str:
    if state == "connected":
        return "connected"
    if state == "reconnecting":
        return "reconnecting"
    if state == "connecting" and failures > 0:
        return "reconnecting"
    return "disconnected"


class ChangeFeedSubscriber:
    def __init__(
        self,
        feed,
        session_id: str,
        on_scan: Callable[[str], Any],
        *,
        delete_record: Optional[Callable[[str], Any]] = None,
        on_status: Optional[Callable[[str], Any]] = None,
        scheduler=None,
        reconnect_delay_s: float = 3.0,
        max_reconnect_delay_s: Optional[float] = None,
    ):
        self.session_id = session_id
        self.channel = channel_name(session_id)
        self.state = "disconnected"
        self.last_scanned = ""
        self._feed = feed
        self._on_scan = on_scan
        self._delete_record = delete_record
        self._on_status = on_status
        self._scheduler_ref = scheduler
        self._reconnect_delay_s = reconnect_delay_s
        self._max_reconnect_delay_s = max_reconnect_delay_s
        self._subscription = None
        self._reconnect_timer = None
        self._failures = 0
        self._started = False
        self._closed = False
        self._last_ui_status = "disconnected"
        self._delivered: OrderedDict[str, None] = OrderedDict()

    @property
    def status(self) -> str:
        return ui_status(self.state, self._failures)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._closed:
            raise SubscriptionFailure("subscriber already closed")
        if self._started:
            return
        self._started = True
        self._connect()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_reconnect_timer()
        self._drop_subscription()
        self._delivered.clear()
        self.last_scanned = ""
        self.state = "disconnected"
        self._failures = 0

    def _scheduler(self):
        if self._scheduler_ref is None:
            self._scheduler_ref = asyncio.get_running_loop()
        return self._scheduler_ref

    def _set_state(self, state: str) -> None:
        self.state = state
        status = self.status
        if status == self._last_ui_status:
            return
        self._last_ui_status = status
        if self._on_status is None:
            return
        try:
            self._on_status(status)
        except Exception as ex:
            json_log("error", "scanner.status_callback.error", session_id=self.session_id, error=str(ex))

    def _connect(self) -> None:
        self._set_state("connecting")
        try:
            self._subscription = self._feed.subscribe(
                self.channel,
                self.session_id,
                on_insert=self._handle_insert,
                on_status=self._handle_status,
            )
        except Exception as ex:
            self._subscription = None
            self._handle_status(CHANNEL_ERROR, ex)

    def _handle_status(self, event: str, error: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        if event == SUBSCRIBED:
            self._failures = 0
            if self.state != "connected":
                self._set_state("connected")
            return
        if event in _FAILURE_EVENTS:
            json_log(
                "warn",
                "scanner.feed.error",
                session_id=self.session_id,
                feed_event=event,
                error=(str(error) if error else None),
                attempt=self._failures + 1,
            )
            self._schedule_reconnect()
        # CLOSED is a normal close: whoever closed the feed owns what happens next.

    def _schedule_reconnect(self) -> None:
        # Never stack timers: a newer failure replaces the pending attempt.
        self._cancel_reconnect_timer()
        self._failures += 1
        self._set_state("reconnecting")
        delay = reconnect_delay(self._failures, self._reconnect_delay_s, self._max_reconnect_delay_s)
        self._reconnect_timer = self._scheduler().call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        if self._closed:
            return
        self._drop_subscription()
        self._connect()

    def _cancel_reconnect_timer(self) -> None:
        timer, self._reconnect_timer = self._reconnect_timer, None
        if timer is not None:
            timer.cancel()

    def _drop_subscription(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is None:
            return
        try:
            sub.unsubscribe()
        except Exception as ex:
            json_log("warn", "scanner.feed.unsubscribe_failed", session_id=self.session_id, error=str(ex))

    def _remember(self, record_id: str) -> None:
        self._delivered[record_id] = None
        while len(self._delivered) > DELIVERED_LEDGER_SIZE:
            self._delivered.popitem(last=False)

    def _handle_insert(self, record: dict) -> None:
        if self._closed:
            return
        record_id = str((record or {}).get("id") or "")
        barcode = str((record or {}).get("barcode") or "")
        if not record_id or not barcode:
            json_log("warn", "scanner.record.malformed", session_id=self.session_id, record=record)
            return
        if record_id in self._delivered:
            return
        self._remember(record_id)
        self.last_scanned = barcode
        if self.state != "connected":
            self._set_state("connected")
        try:
            self._on_scan(barcode)
        except Exception as ex:
            json_log(
                "error",
                "scanner.scan_callback.error",
                session_id=self.session_id,
                record_id=record_id,
                error=str(ex),
            )
        self._delete(record_id)

    def _delete(self, record_id: str) -> None:
        if self._delete_record is None:
            return
        try:
            self._delete_record(record_id)
        except Exception as ex:
            json_log("warn", "scanner.record.delete_failed", session_id=self.session_id, record_id=record_id, error=str(ex))


def parse_scan_notification(payload: str, session_id: str) -> Optional[dict]:
    try:
        data = json.loads(payload or "")
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    if str(data.get("session_id") or "") != session_id:
        return None
    if not data.get("id") or not data.get("barcode"):
        return None
    return {
        "id": str(data["id"]),
        "session_id": session_id,
        "barcode": str(data["barcode"]),
        "scanned_at": data.get("scanned_at"),
    }


class PgNotifyFeed:
    """
    Change feed backed by Postgres LISTEN/NOTIFY on `scanner-<session_id>`.

    Every subscription gets its own autocommit connection. After LISTEN succeeds
    the backlog of non-stale records is replayed in insertion order, so scans sent
    while the desktop was offline arrive as a burst on reconnect.
    """

    def __init__(self, conninfo: str, *, stale_ttl_s: float = 300.0, keepalive_s: float = 30.0, connect_timeout_s: int = 10):
        self.conninfo = conninfo
        self.stale_ttl_s = stale_ttl_s
        self.keepalive_s = keepalive_s
        self.connect_timeout_s = connect_timeout_s

    def subscribe(self, channel: str, session_id: str, on_insert, on_status) -> "PgNotifySubscription":
        sub = PgNotifySubscription(self, channel, session_id, on_insert, on_status)
        sub.start()
        return sub


class PgNotifySubscription:
    def __init__(self, feed: PgNotifyFeed, channel: str, session_id: str, on_insert, on_status):
        self._feed = feed
        self.channel = channel
        self.session_id = session_id
        self._on_insert = on_insert
        self._on_status = on_status
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    def unsubscribe(self) -> None:
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        try:
            await self._listen()
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            if not self._stopped:
                self._on_status(CHANNEL_ERROR, ex)
            return
        if not self._stopped:
            self._on_status(CLOSED)

    async def _listen(self) -> None:
        conn = await psycopg.AsyncConnection.connect(
            self._feed.conninfo,
            autocommit=True,
            row_factory=dict_row,
            connect_timeout=self._feed.connect_timeout_s,
        )
        async with conn:
            await conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(self.channel)))
            self._on_status(SUBSCRIBED)

            async with conn.cursor() as cur:
                await cur.execute(
                    PENDING_SCAN_RECORDS_SQL,
                    pending_scan_records_params(self.session_id, self._feed.stale_ttl_s),
                )
                backlog = await cur.fetchall()
            for row in backlog or []:
                if self._stopped:
                    return
                self._on_insert({**row, "id": str(row["id"])})

            # psycopg >= 3.3 queues notifies received outside the generator (backlog
            # query, keepalive probe) and hands them out on the next notifies() call.
            while not self._stopped:
                async for notify in conn.notifies(timeout=self._feed.keepalive_s):
                    record = parse_scan_notification(notify.payload, self.session_id)
                    if record is None:
                        json_log("warn", "scanner.feed.bad_payload", session_id=self.session_id, channel=notify.channel)
                        continue
                    self._on_insert(record)
                # A half-open TCP connection never errors on its own; probe it.
                await conn.execute("SELECT 1")
