from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Optional

from .errors import StagingError
from .inventory import InventoryItem

UNKNOWN_ITEM_NAME = "Unknown Item"


@dataclass
class StagedLine:
    barcode: str
    medicine_id: Optional[str]
    medicine_name: str
    quantity: int = 1
    unit_cost: Decimal = Decimal("0")
    selling_price: Decimal = Decimal("0")
    found: bool = True

    def as_dict(self) -> dict:
        return asdict(self)


class ScanStaging:
    """
    Lines built from scans for one desktop session.

    In the sales context these are cart lines; in the inventory context they are
    staging rows that a user reviews (quantities, prices) before approving them
    into stock.
    """

    def __init__(self, context: str):
        self.context = context
        self.lines: list[StagedLine] = []

    def _find(self, barcode: str) -> Optional[StagedLine]:
        for line in self.lines:
            if line.barcode == barcode:
                return line
        return None

    def add_found(self, item: InventoryItem, barcode: str) -> StagedLine:
        line = self._find(barcode)
        if line is not None:
            line.quantity += 1
            return line
        line = StagedLine(
            barcode=barcode,
            medicine_id=item.id,
            medicine_name=item.name,
            unit_cost=item.unit_cost,
            selling_price=item.selling_price,
        )
        self.lines.append(line)
        return line

    def add_unknown(self, barcode: str) -> Optional[StagedLine]:
        # Sales carts only take known items; the cashier falls back to manual entry.
        if self.context != "inventory":
            return None
        line = self._find(barcode)
        if line is not None:
            line.quantity += 1
            return line
        line = StagedLine(barcode=barcode, medicine_id=None, medicine_name=UNKNOWN_ITEM_NAME, found=False)
        self.lines.append(line)
        return line

    def _line_at(self, index: int) -> StagedLine:
        if index < 0 or index >= len(self.lines):
            raise StagingError("staging line not found")
        return self.lines[index]

    def update_quantity(self, index: int, quantity: int) -> Optional[StagedLine]:
        line = self._line_at(index)
        if quantity <= 0:
            self.lines.pop(index)
            return None
        line.quantity = int(quantity)
        return line

    def update_prices(
        self,
        index: int,
        unit_cost: Optional[Decimal] = None,
        selling_price: Optional[Decimal] = None,
    ) -> StagedLine:
        line = self._line_at(index)
        if unit_cost is not None:
            if unit_cost < 0:
                raise StagingError("unit cost must be >= 0")
            line.unit_cost = Decimal(str(unit_cost))
        if selling_price is not None:
            if selling_price < 0:
                raise StagingError("selling price must be >= 0")
            line.selling_price = Decimal(str(selling_price))
        return line

    def remove(self, index: int) -> StagedLine:
        self._line_at(index)
        return self.lines.pop(index)

    def unknown_lines(self) -> list[StagedLine]:
        return [line for line in self.lines if not line.found]

    def take_approvable(self) -> list[StagedLine]:
        """Detach all lines for approval; scans arriving meanwhile start fresh lines."""
        if self.context != "inventory":
            raise StagingError("only inventory scans can be approved into stock")
        if not self.lines:
            raise StagingError("no items to approve")
        if self.unknown_lines():
            raise StagingError("resolve unknown items before approving")
        lines = list(self.lines)
        self.lines.clear()
        return lines

    def restore(self, lines: list[StagedLine]) -> None:
        self.lines[:0] = lines

    def snapshot(self) -> list[dict]:
        return [line.as_dict() for line in self.lines]
