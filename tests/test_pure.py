import unittest
from datetime import datetime, timezone
from decimal import Decimal

import support  # noqa: F401

from db.models import Receipt, SaleLineItem
from utils import config
from utils.pure import (
    format_money,
    generate_markdown_table,
    receipt_markdown,
    receipt_share_text,
    short_id,
)

S = config.CURRENCY_SYMBOL


def make_receipt():
    return Receipt(
        id="a1b2c3d4e5f6",
        sale_id="sale-1",
        business_name="Nigro Automobiles",
        business_address="Lagos",
        items=(
            SaleLineItem("i1", "Brake pad", 2, Decimal("2500.50")),
            SaleLineItem("i2", "Fuse", 3, Decimal("0.10")),
        ),
        total_amount=Decimal("5001.30"),
        seller_name="Ada",
        buyer_name="Bola",
        created_at=datetime(2026, 2, 7, 14, 5, 9, 123456, tzinfo=timezone.utc),
    )


class FormatMoneyTestCase(unittest.TestCase):
    def test_grouping_and_cents(self):
        self.assertEqual(format_money(Decimal("1234.5")), f"{S}1,234.50")
        self.assertEqual(format_money(0), f"{S}0.00")
        self.assertEqual(format_money("1000000"), f"{S}1,000,000.00")

    def test_rounds_half_up(self):
        self.assertEqual(format_money(Decimal("0.005")), f"{S}0.01")
        self.assertEqual(format_money(Decimal("2.345")), f"{S}2.35")

    def test_negative_and_custom_symbol(self):
        self.assertEqual(format_money(Decimal("-5"), symbol="$"), "-$5.00")


class ReceiptTextTestCase(unittest.TestCase):
    def test_short_id(self):
        self.assertEqual(short_id("a1b2c3d4e5f6"), "A1B2C3D4")

    def test_share_text(self):
        text = receipt_share_text(make_receipt())
        self.assertEqual(
            text.split("\n"),
            [
                "Nigro Automobiles",
                "Lagos",
                "Receipt #A1B2C3D4",
                "Date: 2026-02-07 14:05 UTC",
                "",
                "Items:",
                f"Brake pad x2 - {S}5,001.00",
                f"Fuse x3 - {S}0.30",
                "",
                f"Total: {S}5,001.30",
                "",
                "Seller: Ada",
                "Buyer: Bola",
                "",
                "Thank you for your business!",
            ],
        )

    def test_markdown(self):
        md = receipt_markdown(make_receipt())
        self.assertTrue(md.startswith("### Nigro Automobiles\n\nLagos\n\n"))
        self.assertIn(f"| Brake pad | {S}2,500.50 | 2 | {S}5,001.00 |", md)
        self.assertIn(f"**Total:** {S}5,001.30", md)
        self.assertIn("Buyer: Bola", md)


class MarkdownTableTestCase(unittest.TestCase):
    def test_headers_and_aligns(self):
        table = generate_markdown_table(["A", "B"], [[1, "x"]], ["l", "r"])
        self.assertEqual(table, "| A | B |\n| :--- | ---: |\n| 1 | x |")

    def test_first_row_as_header(self):
        table = generate_markdown_table(None, [["H1", "H2"], ["a", "b"]])
        self.assertEqual(table.split("\n")[0], "| H1 | H2 |")
        self.assertEqual(table.split("\n")[1], "| :---: | :---: |")

    def test_empty_and_bad_aligns(self):
        self.assertEqual(generate_markdown_table(["A"], []), "")
        with self.assertRaises(ValueError):
            generate_markdown_table(["A", "B"], [["1", "2"]], ["l"])


if __name__ == "__main__":
    unittest.main()
