import unittest
from datetime import datetime, timezone
from decimal import Decimal

import support  # noqa: F401

from db.models import InventoryItem
from pos.cart import Cart, SaleLineRequest
from pos.errors import InsufficientStock, InvalidQuantity, ItemNotFound

NOW = datetime(2026, 2, 7, 12, 0, tzinfo=timezone.utc)


def make_item(item_id, quantity, price="100", name=None):
    return InventoryItem(
        id=item_id,
        name=name or f"Item {item_id}",
        category="",
        unit_price=Decimal(price),
        quantity=quantity,
        low_stock_threshold=5,
        created_at=NOW,
        updated_at=NOW,
    )


class CartTestCase(unittest.TestCase):
    def setUp(self):
        self.cart = Cart(
            [
                make_item("a", 10, "100"),
                make_item("b", 2, "0.10"),
                make_item("z", 0, "5"),
            ]
        )

    def test_add_line_appends_in_order(self):
        self.cart.add_line("b", 1)
        self.cart.add_line("a", 3)
        self.assertEqual([line.item_id for line in self.cart], ["b", "a"])
        line = self.cart.lines[1]
        self.assertEqual(line.item_name, "Item a")
        self.assertEqual(line.available_qty, 10)
        self.assertEqual(line.line_total, Decimal("300"))

    def test_add_line_merges_same_item(self):
        self.cart.add_line("a", 3)
        self.cart.add_line("a", 4)
        self.assertEqual(len(self.cart), 1)
        self.assertEqual(self.cart.lines[0].quantity, 7)

    def test_add_line_over_stock_leaves_cart_unchanged(self):
        with self.assertRaises(InsufficientStock) as ctx:
            self.cart.add_line("b", 3)
        self.assertEqual(ctx.exception.item_id, "b")
        self.assertEqual(ctx.exception.available, 2)
        self.assertEqual(len(self.cart), 0)

        self.cart.add_line("a", 8)
        with self.assertRaises(InsufficientStock):
            self.cart.add_line("a", 3)
        self.assertEqual(self.cart.lines[0].quantity, 8)

    def test_add_line_rejects_unknown_and_bad_quantities(self):
        with self.assertRaises(ItemNotFound):
            self.cart.add_line("missing", 1)
        for qty in (0, -1, 1.5, True):
            with self.assertRaises(InvalidQuantity):
                self.cart.add_line("a", qty)
        with self.assertRaises(InsufficientStock):
            self.cart.add_line("z", 1)

    def test_adjust_line(self):
        self.cart.add_line("a", 2)
        self.cart.add_line("b", 1)
        self.cart.adjust_line(0, 3)
        self.assertEqual(self.cart.lines[0].quantity, 5)

        with self.assertRaises(InsufficientStock):
            self.cart.adjust_line(1, 2)
        self.assertEqual(self.cart.lines[1].quantity, 1)

        self.cart.adjust_line(0, -5)
        self.assertEqual([line.item_id for line in self.cart], ["b"])

    def test_remove_and_clear(self):
        self.cart.add_line("a", 1)
        self.cart.add_line("b", 1)
        self.cart.remove_line(0)
        self.assertEqual([line.item_id for line in self.cart], ["b"])
        self.cart.clear()
        self.assertEqual(len(self.cart), 0)
        self.assertEqual(self.cart.total(), Decimal("0"))

    def test_total_is_exact(self):
        self.cart.add_line("b", 1)
        self.cart.add_line("b", 1)
        self.cart.add_line("a", 1)
        self.assertEqual(self.cart.total(), Decimal("100.20"))

    def test_requests(self):
        self.cart.add_line("a", 2)
        self.cart.add_line("b", 1)
        self.assertEqual(
            self.cart.requests(),
            [SaleLineRequest("a", 2), SaleLineRequest("b", 1)],
        )

    def test_refresh_and_available_items(self):
        self.assertEqual({item.id for item in self.cart.available_items()}, {"a", "b"})
        self.cart.refresh([make_item("a", 1)])
        with self.assertRaises(InsufficientStock):
            self.cart.add_line("a", 2)
        with self.assertRaises(ItemNotFound):
            self.cart.add_line("b", 1)


if __name__ == "__main__":
    unittest.main()
