from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List

from db.models import InventoryItem
from pos.errors import InsufficientStock, InvalidQuantity, ItemNotFound


@dataclass(frozen=True)
class SaleLineRequest:
    """What the sale engine needs per line: which item and how many."""

    item_id: str
    quantity: int


@dataclass(frozen=True)
class CartLine:
    item_id: str
    item_name: str
    quantity: int
    unit_price: Decimal
    available_qty: int  # stock known when the line was added

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


def _check_quantity(item_id: str, quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantity(item_id, quantity)
    return quantity


class Cart:
    """
    In-memory selection for one checkout.

    Stock checks here run against the snapshot the cart was built from and only
    give early feedback; the sale engine re-checks against the store.
    """

    def __init__(self, items: Iterable[InventoryItem] = ()):
        self._known: Dict[str, InventoryItem] = {}
        self._lines: List[CartLine] = []
        self.refresh(items)

    def refresh(self, items: Iterable[InventoryItem]) -> None:
        """Replace the stock snapshot, e.g. after re-reading the store."""
        self._known = {item.id: item for item in items}

    def available_items(self) -> List[InventoryItem]:
        """Known items that can still be sold."""
        return [item for item in self._known.values() if item.quantity > 0]

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[CartLine]:
        return iter(list(self._lines))

    def _index_of(self, item_id: str) -> int:
        for i, line in enumerate(self._lines):
            if line.item_id == item_id:
                return i
        return -1

    def add_line(self, item_id: str, requested_qty: int) -> CartLine:
        """
        Add `requested_qty` of an item, merging with an existing line for the
        same item. Raises InsufficientStock without changing the cart when the
        combined quantity is more than the known stock.
        """
        requested_qty = _check_quantity(item_id, requested_qty)
        item = self._known.get(item_id)
        if item is None:
            raise ItemNotFound(item_id)

        index = self._index_of(item_id)
        if index >= 0:
            existing = self._lines[index]
            new_qty = existing.quantity + requested_qty
            if new_qty > existing.available_qty:
                raise InsufficientStock(
                    item_id,
                    requested=new_qty,
                    available=existing.available_qty,
                    item_name=existing.item_name,
                )
            line = replace(existing, quantity=new_qty)
            self._lines[index] = line
            return line

        if requested_qty > item.quantity:
            raise InsufficientStock(
                item_id,
                requested=requested_qty,
                available=item.quantity,
                item_name=item.name,
            )
        line = CartLine(
            item_id=item.id,
            item_name=item.name,
            quantity=requested_qty,
            unit_price=item.unit_price,
            available_qty=item.quantity,
        )
        self._lines.append(line)
        return line

    def adjust_line(self, index: int, delta: int) -> None:
        """Change a line's quantity by `delta`; at zero or below the line is dropped."""
        line = self._lines[index]
        new_qty = line.quantity + delta
        if new_qty <= 0:
            self.remove_line(index)
            return
        if new_qty > line.available_qty:
            raise InsufficientStock(
                line.item_id,
                requested=new_qty,
                available=line.available_qty,
                item_name=line.item_name,
            )
        self._lines[index] = replace(line, quantity=new_qty)

    def remove_line(self, index: int) -> None:
        del self._lines[index]

    def clear(self) -> None:
        self._lines.clear()

    def total(self) -> Decimal:
        return sum((line.line_total for line in self._lines), Decimal("0"))

    def requests(self) -> List[SaleLineRequest]:
        return [SaleLineRequest(line.item_id, line.quantity) for line in self._lines]
