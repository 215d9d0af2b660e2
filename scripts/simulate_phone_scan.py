#!/usr/bin/env python3
"""
Simulate the phone scanner page against a running relay API.

Useful when pairing a desktop session without a phone at hand:

  python3 scripts/simulate_phone_scan.py --session sales_1700000000_abc123def 6291041500213
  python3 scripts/simulate_phone_scan.py --session sales_1700000000_abc123def --file barcodes.txt --interval 0.5

Each barcode is POSTed to /scan/barcodes exactly as the phone page does it.
Failures are reported and the next barcode is still sent (the phone never retries).
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

USER_AGENT = "scanrelay-phone-sim/1.0"


def _die(msg: str) -> None:
    print(f"error: {msg}", file=sys.stderr)
    raise SystemExit(2)


def req_json(api_base: str, method: str, path: str, payload: Any | None = None, timeout_s: int = 10) -> tuple[int, dict]:
    url = api_base.rstrip("/") + path
    data = None
    headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
    req = Request(url, data=data, headers=headers, method=method)
    try:
        with urlopen(req, timeout=timeout_s) as resp:
            body = resp.read().decode("utf-8")
            return resp.status, (json.loads(body) if body else {})
    except HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        try:
            return e.code, (json.loads(body) if body else {})
        except ValueError:
            return e.code, {"detail": body[:500]}


def read_barcodes(args) -> list[str]:
    out = [b for b in (args.barcodes or []) if b.strip()]
    if args.file:
        with open(args.file, "r", encoding="utf-8") as f:
            out.extend(line.strip() for line in f if line.strip() and not line.startswith("#"))
    return out


def main():
    parser = argparse.ArgumentParser(description="Send barcodes to a desktop pairing session like the phone page does.")
    parser.add_argument("barcodes", nargs="*", help="Barcodes to send")
    parser.add_argument("--api", default=os.getenv("SCANNER_API_BASE", "http://localhost:8001"))
    parser.add_argument("--session", required=True, help="Pairing session id (the `session` query param of the QR URL)")
    parser.add_argument("--file", help="Read additional barcodes from a file, one per line")
    parser.add_argument("--interval", type=float, default=0.0, help="Seconds to wait between scans")
    args = parser.parse_args()

    barcodes = read_barcodes(args)
    if not barcodes:
        _die("no barcodes given")

    try:
        status, res = req_json(args.api, "GET", "/scan/ping")
    except URLError as e:
        _die(f"relay API unreachable at {args.api}: {e.reason}")
    if status != 200 or not res.get("ok"):
        print(f"warning: relay reports not connected: {res}", file=sys.stderr)

    sent = 0
    for i, code in enumerate(barcodes):
        status, res = req_json(args.api, "POST", "/scan/barcodes", {"session": args.session, "barcode": code})
        if status == 200 and res.get("ok"):
            sent += 1
            print(f"sent {code!r} -> {res.get('barcode')}")
        else:
            print(f"failed {code!r}: HTTP {status} {res.get('detail') or res}", file=sys.stderr)
        if args.interval and i < len(barcodes) - 1:
            time.sleep(args.interval)

    status, res = req_json(args.api, "GET", "/scan/recent?" + urlencode({"session": args.session}))
    if status == 200:
        print("recent: " + ", ".join(res.get("recent") or []))
    print(f"done: {sent}/{len(barcodes)} sent")
    if sent != len(barcodes):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
