"""
Read/write contracts against the pharmacy catalog (`medicines`) and the scan audit
trail (`scan_logs`). The CRUD screens own these tables; the relay only needs the
lookups and writes below.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Iterable, Optional

from .db import get_conn


@dataclass(frozen=True)
class InventoryItem:
    id: str
    name: str
    barcode: Optional[str] = None
    stock_quantity: int = 0
    unit_cost: Decimal = Decimal("0")
    selling_price: Decimal = Decimal("0")

    @classmethod
    def from_row(cls, row: dict) -> "InventoryItem":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            barcode=(str(row["barcode"]) if row.get("barcode") else None),
            stock_quantity=int(row.get("stock_quantity") or 0),
            unit_cost=Decimal(str(row.get("buying_price") or 0)),
            selling_price=Decimal(str(row.get("selling_price") or 0)),
        )

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ScanLogEntry:
    barcode: str
    medicine_id: Optional[str]
    medicine_name: str
    context: str
    quantity: int = 1
    scanned_by: Optional[str] = None


def _like_escape(token: str) -> str:
    return token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def find_by_barcode_or_id_or_name(cur, token: str, limit: int = 50) -> list[InventoryItem]:
    cur.execute(
        """
        SELECT id, name, barcode, stock_quantity, buying_price, selling_price
        FROM medicines
        WHERE barcode = %s
           OR id::text = %s
           OR name ILIKE %s
        ORDER BY (barcode = %s) DESC NULLS LAST, (id::text = %s) DESC, name ASC
        LIMIT %s
        """,
        (token, token, f"%{_like_escape(token)}%", token, token, limit),
    )
    return [InventoryItem.from_row(r) for r in (cur.fetchall() or [])]


def insert_scan_log(cur, entry: ScanLogEntry) -> None:
    cur.execute(
        """
        INSERT INTO scan_logs
          (id, barcode, medicine_id, medicine_name, quantity, context, scanned_by, scanned_at)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, now())
        """,
        (
            entry.barcode,
            entry.medicine_id,
            entry.medicine_name,
            entry.quantity,
            entry.context,
            entry.scanned_by,
        ),
    )


def apply_stock_updates(cur, lines: Iterable) -> int:
    """
    Approval of an inventory scan batch: add the scanned quantities to stock and
    take over the reviewed prices. Runs inside the caller's transaction.
    """
    updated = 0
    for line in lines:
        if not line.medicine_id:
            continue
        cur.execute(
            """
            UPDATE medicines
            SET stock_quantity = stock_quantity + %s,
                buying_price = %s,
                selling_price = %s
            WHERE id = %s
            """,
            (int(line.quantity), line.unit_cost, line.selling_price, line.medicine_id),
        )
        updated += int(cur.rowcount or 0)
    return updated


class InventoryGateway:
    def find_candidates(self, token: str) -> list[InventoryItem]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                return find_by_barcode_or_id_or_name(cur, token)

    def log_scan(self, entry: ScanLogEntry) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                insert_scan_log(cur, entry)

    def apply_stock_updates(self, lines) -> int:
        with get_conn() as conn:
            with conn.cursor() as cur:
                return apply_stock_updates(cur, lines)
