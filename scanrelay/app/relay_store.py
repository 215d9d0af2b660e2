"""
Relay store: the short-lived log of pending phone scans (`scanned_barcodes`).

Rows are inserted by the phone publisher and deleted by the desktop subscriber
right after delivery. The insert trigger (see db/migrations/001_scanner_relay.sql)
publishes each row on the `scanner-<session_id>` NOTIFY channel.
"""

from __future__ import annotations

from .db import get_conn

CHANNEL_PREFIX = "scanner-"


def channel_name(session_id: str) -> str:
    return f"{CHANNEL_PREFIX}{session_id}"


def insert_scan_record(cur, session_id: str, barcode: str) -> dict:
    cur.execute(
        """
        INSERT INTO scanned_barcodes (id, session_id, barcode, scanned_at)
        VALUES (gen_random_uuid(), %s, %s, now())
        RETURNING id, session_id, barcode, scanned_at
        """,
        (session_id, barcode),
    )
    return cur.fetchone()


def delete_scan_record(cur, record_id: str) -> bool:
    cur.execute("DELETE FROM scanned_barcodes WHERE id = %s", (record_id,))
    return bool(cur.rowcount)


# Records older than the TTL are orphans from a desktop that was not listening.
PENDING_SCAN_RECORDS_SQL = """
    SELECT id, session_id, barcode, scanned_at
    FROM scanned_barcodes
    WHERE session_id = %s
      AND scanned_at > now() - make_interval(secs => %s)
    ORDER BY scanned_at ASC, id ASC
    LIMIT %s
"""


def pending_scan_records_params(session_id: str, stale_ttl_s: float, limit: int = 200) -> tuple:
    return (session_id, float(stale_ttl_s), int(limit))


def ping(cur) -> bool:
    cur.execute("SELECT 1 AS ok")
    row = cur.fetchone()
    return bool(row and row.get("ok") == 1)


class RelayStore:
    """Pooled-connection wrappers used by the publisher, the hub and the phone endpoints."""

    def insert(self, session_id: str, barcode: str) -> dict:
        with get_conn() as conn:
            with conn.cursor() as cur:
                return insert_scan_record(cur, session_id, barcode)

    def delete(self, record_id: str) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                return delete_scan_record(cur, record_id)

    def ping(self) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                return ping(cur)
