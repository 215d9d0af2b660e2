"""Test doubles shared by the scanner tests (no database, no event loop timers)."""

from decimal import Decimal

from scanrelay.app.inventory import InventoryItem


class FakeTimer:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Manual clock with the `call_later(delay, cb) -> handle` shape of an asyncio loop."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def call_later(self, delay, callback):
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds):
        self.now += seconds
        for timer in sorted(self.pending(), key=lambda t: t.when):
            if timer.when <= self.now and not timer.cancelled:
                timer.fired = True
                timer.callback()


class FakeSubscription:
    def __init__(self, channel, session_id, on_insert, on_status):
        self.channel = channel
        self.session_id = session_id
        self.on_insert = on_insert
        self.on_status = on_status
        self.unsubscribed = False

    def unsubscribe(self):
        self.unsubscribed = True


class FakeFeed:
    def __init__(self, fail_next=0):
        self.fail_next = fail_next
        self.subscriptions = []

    def subscribe(self, channel, session_id, on_insert, on_status):
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("feed unreachable")
        sub = FakeSubscription(channel, session_id, on_insert, on_status)
        self.subscriptions.append(sub)
        return sub

    @property
    def last(self):
        return self.subscriptions[-1]


class FakeRelayStore:
    def __init__(self):
        self.records = {}
        self.deleted = []
        self.fail_insert = False
        self.fail_delete = False
        self._seq = 0

    def insert(self, session_id, barcode):
        if self.fail_insert:
            raise ConnectionError("relay store down")
        self._seq += 1
        row = {"id": f"rec-{self._seq}", "session_id": session_id, "barcode": barcode, "scanned_at": None}
        self.records[row["id"]] = row
        return row

    def delete(self, record_id):
        if self.fail_delete:
            raise ConnectionError("relay store down")
        self.deleted.append(record_id)
        return self.records.pop(record_id, None) is not None

    def ping(self):
        return True


AMOXICILLIN = InventoryItem(
    id="med-1",
    name="Amoxicillin 500mg",
    barcode="ITEM007",
    stock_quantity=40,
    unit_cost=Decimal("2.50"),
    selling_price=Decimal("4.00"),
)
PARACETAMOL = InventoryItem(
    id="med-2",
    name="Paracetamol 1g",
    barcode="6291041500213",
    stock_quantity=120,
    unit_cost=Decimal("0.80"),
    selling_price=Decimal("1.50"),
)


class FakeInventory:
    def __init__(self, items=None):
        self.items = list(items if items is not None else [AMOXICILLIN, PARACETAMOL])
        self.logged = []
        self.applied = []
        self.fail_lookup = False
        self.fail_apply = False

    def find_candidates(self, token):
        if self.fail_lookup:
            raise ConnectionError("catalog unavailable")
        return list(self.items)

    def log_scan(self, entry):
        self.logged.append(entry)

    def apply_stock_updates(self, lines):
        if self.fail_apply:
            raise ConnectionError("catalog unavailable")
        self.applied.append(list(lines))
        return len(lines)


class FakeCursor:
    """Records SQL and serves canned rows, like a psycopg cursor with dict_row."""

    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((" ".join(str(query).split()), params))

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)
