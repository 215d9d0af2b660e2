#!/usr/bin/env python3
"""
Scan relay janitor.

A scan record only lives until the desktop that owns its session consumes it.
When nobody is listening (the desktop closed the pairing dialog, the phone kept
scanning) the record is orphaned; this worker deletes records older than the
stale TTL so the relay table stays empty in steady state.
"""

import argparse
import json
import os
import sys
import time
import traceback
from datetime import datetime

import psycopg
from psycopg.rows import dict_row

DB_URL_DEFAULT = os.getenv("DATABASE_URL", "postgresql://localhost/pharmacy")
STALE_TTL_DEFAULT = float(os.getenv("SCANNER_STALE_TTL_SECONDS") or 300)
BATCH_DEFAULT = 500


def _json_log(level: str, event: str, **fields):
    rec = {"ts": datetime.utcnow().isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)


def purge_stale_records(cur, stale_ttl_s: float, limit: int) -> int:
    cur.execute(
        """
        DELETE FROM scanned_barcodes
        WHERE id IN (
          SELECT id FROM scanned_barcodes
          WHERE scanned_at <= now() - make_interval(secs => %s)
          ORDER BY scanned_at ASC
          LIMIT %s
          FOR UPDATE SKIP LOCKED
        )
        """,
        (float(stale_ttl_s), int(limit)),
    )
    return int(cur.rowcount or 0)


def run_janitor(db_url: str, stale_ttl_s: float = STALE_TTL_DEFAULT, limit: int = BATCH_DEFAULT) -> int:
    total = 0
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        while True:
            with conn.transaction():
                with conn.cursor() as cur:
                    purged = purge_stale_records(cur, stale_ttl_s, limit)
            total += purged
            if purged < limit:
                break
    return total


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--ttl", type=float, default=STALE_TTL_DEFAULT, help="Seconds after which an unconsumed scan is stale")
    parser.add_argument("--limit", type=int, default=BATCH_DEFAULT)
    parser.add_argument("--sleep", type=float, default=60.0)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    while True:
        try:
            purged = run_janitor(args.db, stale_ttl_s=args.ttl, limit=args.limit)
            if purged:
                _json_log("info", "janitor.scan_records.purged", purged=purged, ttl_seconds=args.ttl)
        except Exception as ex:
            # Never crash the loop; the next pass retries.
            _json_log("error", "janitor.scan_records.error", error=str(ex))
            traceback.print_exc(file=sys.stderr)

        if args.once:
            break
        time.sleep(args.sleep)


if __name__ == "__main__":
    main()
