"""
Command line front-end for the point-of-sale tracker.

Every command reads from the store after it writes, so what is printed is
what other devices sharing the database will see.
"""
import argparse
import asyncio
import sys
from typing import List, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from db import database
from db.stores import (
    SqliteInventoryStore,
    SqliteReceiptStore,
    SqliteSalesStore,
    SqliteSettingsStore,
    StoreError,
)
from pos.cart import Cart, SaleLineRequest
from pos.checkout import SaleEngine
from pos.errors import ReceiptGenerationFailed, SaleError
from utils import config
from utils.logger import get_logger
from utils.pure import format_money, receipt_markdown, receipt_share_text, short_id
from utils.state import SessionState

_logger = get_logger(__name__)

console = Console()


def _parse_line(value: str) -> SaleLineRequest:
    item_id, sep, qty = value.rpartition(":")
    if not sep or not item_id:
        raise argparse.ArgumentTypeError(f"expected ITEM_ID:QTY, got {value!r}")
    try:
        quantity = int(qty)
    except ValueError:
        raise argparse.ArgumentTypeError(f"quantity must be a whole number in {value!r}")
    return SaleLineRequest(item_id=item_id, quantity=quantity)


def _items_table(items, title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("Unit Price", justify="right")
    table.add_column("Qty", justify="right")
    table.add_column("Low at", justify="right")
    for item in items:
        qty = f"[red]{item.quantity}[/]" if item.is_low_stock else str(item.quantity)
        table.add_row(
            item.id,
            item.name,
            item.category,
            format_money(item.unit_price),
            qty,
            str(item.low_stock_threshold),
        )
    return table


def _print_receipt(receipt, share: bool = False) -> None:
    if share:
        console.print(receipt_share_text(receipt), markup=False, highlight=False)
    else:
        console.print(Markdown(receipt_markdown(receipt)))
        console.print(f"Receipt ID: {receipt.id}  (sale {receipt.sale_id})")


def _print_login_failure(state: SessionState) -> None:
    if state.is_locked():
        console.print(
            f"[red]Too many wrong PINs. Locked until {state.lockout_until:%H:%M:%S} UTC.[/]"
        )
    else:
        left = config.MAX_FAILED_ATTEMPTS - state.failed_attempts
        console.print(f"[red]Wrong PIN. {left} attempt(s) left before lockout.[/]")


async def _run(args) -> int:
    """Run the command, asking for the PIN first when one is set and the command writes."""
    if not getattr(args, "needs_pin", False):
        return await args.func(args)
    session = SessionState()
    if await session.is_pin_setup() and not await session.login(args.pin or ""):
        _print_login_failure(session)
        return 1
    try:
        return await args.func(args)
    finally:
        session.logout()


# ---------------------------
# Commands
# ---------------------------


async def cmd_init(args) -> int:
    settings = await SqliteSettingsStore().initialize(args.name, args.address)
    console.print(f"Ready: {settings.business_name}, {settings.business_address}")
    return 0


async def cmd_business(args) -> int:
    settings = await SqliteSettingsStore().update_business_info(args.name, args.address)
    console.print(f"Business set to {settings.business_name}, {settings.business_address}")
    return 0


async def cmd_set_pin(args) -> int:
    state = SessionState()
    if await state.is_pin_setup() and not await state.login(args.old_pin or ""):
        _print_login_failure(state)
        return 1
    if not await state.setup_pin(args.pin):
        console.print("[red]PIN must be 4-6 digits.[/]")
        return 1
    console.print("PIN saved.")
    return 0


async def cmd_add_item(args) -> int:
    item = await SqliteInventoryStore().create(
        name=args.name,
        unit_price=args.price,
        quantity=args.qty,
        category=args.category,
        low_stock_threshold=args.threshold,
    )
    console.print(f"Added {item.name} as {item.id}")
    return 0


async def cmd_update_item(args) -> int:
    changes = {
        key: value
        for key, value in (
            ("name", args.name),
            ("category", args.category),
            ("unit_price", args.price),
            ("quantity", args.qty),
            ("low_stock_threshold", args.threshold),
        )
        if value is not None
    }
    item = await SqliteInventoryStore().update(args.item_id, **changes)
    if item is None:
        console.print(f"[red]Item {args.item_id} not found.[/]")
        return 1
    console.print(_items_table([item], "Updated"))
    return 0


async def cmd_delete_item(args) -> int:
    if not await SqliteInventoryStore().delete(args.item_id):
        console.print(f"[red]Item {args.item_id} not found.[/]")
        return 1
    console.print(f"Deleted {args.item_id}")
    return 0


async def cmd_items(args) -> int:
    store = SqliteInventoryStore()
    if args.search is not None:
        items = await store.search(args.search, low_stock_only=args.low_stock)
        title = f"Search: {args.search.strip()}"
    elif args.low_stock:
        items = await store.list_low_stock()
        title = "Low Stock"
    else:
        items = await store.list_all()
        title = "Inventory"
    if not items:
        console.print("No items.")
        return 0
    console.print(_items_table(items, title))
    return 0


async def cmd_summary(args) -> int:
    summary = await SqliteInventoryStore().summary()
    table = Table(title="Stock Summary", show_header=False)
    table.add_row("Items", str(summary.total_items))
    table.add_row("Units in stock", str(summary.total_stock))
    table.add_row("Stock value", format_money(summary.total_value))
    table.add_row("Low stock", str(summary.low_stock_count))
    console.print(table)
    return 0


async def cmd_sell(args) -> int:
    inventory = SqliteInventoryStore()
    cart = Cart(await inventory.list_all())
    for line in args.lines:
        cart.add_line(line.item_id, line.quantity)
    console.print(f"Cart total: {format_money(cart.total())}")

    engine = SaleEngine(inventory=inventory)
    receipt = await engine.complete_sale(cart.requests(), args.seller, args.buyer)
    _print_receipt(receipt)
    return 0


async def cmd_sales(args) -> int:
    sales = await SqliteSalesStore().list_all()
    if not sales:
        console.print("No sales yet.")
        return 0
    table = Table(title="Sales")
    table.add_column("ID")
    table.add_column("Date (UTC)")
    table.add_column("Lines", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Seller")
    table.add_column("Buyer")
    for sale in sales:
        table.add_row(
            sale.id,
            f"{sale.created_at:%Y-%m-%d %H:%M}",
            str(len(sale.items)),
            format_money(sale.total_amount),
            sale.seller_name,
            sale.buyer_name,
        )
    console.print(table)
    return 0


async def cmd_receipts(args) -> int:
    receipts = await SqliteReceiptStore().list_all()
    if not receipts:
        console.print("No receipts yet.")
        return 0
    table = Table(title="Receipts")
    table.add_column("ID")
    table.add_column("No.")
    table.add_column("Date (UTC)")
    table.add_column("Total", justify="right")
    table.add_column("Buyer")
    for receipt in receipts:
        table.add_row(
            receipt.id,
            short_id(receipt.id),
            f"{receipt.created_at:%Y-%m-%d %H:%M}",
            format_money(receipt.total_amount),
            receipt.buyer_name,
        )
    console.print(table)
    return 0


async def cmd_receipt(args) -> int:
    receipt = await SqliteReceiptStore().get_by_id(args.receipt_id)
    if receipt is None:
        console.print(f"[red]Receipt {args.receipt_id} not found.[/]")
        return 1
    _print_receipt(receipt, share=args.share)
    return 0


async def cmd_retry_receipt(args) -> int:
    receipt = await SaleEngine().create_receipt(args.sale_id)
    _print_receipt(receipt)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pos-tracker", description="Point-of-sale and inventory tracker"
    )
    parser.add_argument("--db", help="Path to the SQLite database file")
    sub = parser.add_subparsers(dest="command", required=True)

    # commands that change data take the access PIN once one is set
    pin_option = argparse.ArgumentParser(add_help=False)
    pin_option.add_argument(
        "--pin", default=config.PIN, help="Access PIN (default: $POS_PIN)"
    )
    pin_option.set_defaults(needs_pin=True)

    p = sub.add_parser("init", help="Create the database and settings")
    p.add_argument("--name", help="Business name")
    p.add_argument("--address", help="Business address")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser(
        "business", help="Set business name and address for new receipts", parents=[pin_option]
    )
    p.add_argument("name")
    p.add_argument("address")
    p.set_defaults(func=cmd_business)

    p = sub.add_parser("set-pin", help="Set or change the access PIN")
    p.add_argument("pin")
    p.add_argument("--old-pin", help="Current PIN, required when changing it")
    p.set_defaults(func=cmd_set_pin)

    p = sub.add_parser("add-item", help="Add an inventory item", parents=[pin_option])
    p.add_argument("--name", required=True)
    p.add_argument("--price", required=True)
    p.add_argument("--qty", type=int, required=True)
    p.add_argument("--category", default="")
    p.add_argument("--threshold", type=int, help="Low stock threshold")
    p.set_defaults(func=cmd_add_item)

    p = sub.add_parser("update-item", help="Edit an inventory item", parents=[pin_option])
    p.add_argument("item_id")
    p.add_argument("--name")
    p.add_argument("--price")
    p.add_argument("--qty", type=int)
    p.add_argument("--category")
    p.add_argument("--threshold", type=int)
    p.set_defaults(func=cmd_update_item)

    p = sub.add_parser("delete-item", help="Delete an inventory item", parents=[pin_option])
    p.add_argument("item_id")
    p.set_defaults(func=cmd_delete_item)

    p = sub.add_parser("items", help="List inventory")
    p.add_argument("--low-stock", action="store_true", help="Only items at or below threshold")
    p.add_argument("--search", metavar="TEXT", help="Match name or category, sorted by name")
    p.set_defaults(func=cmd_items)

    p = sub.add_parser("summary", help="Stock totals")
    p.set_defaults(func=cmd_summary)

    p = sub.add_parser("sell", help="Sell items and print the receipt", parents=[pin_option])
    p.add_argument("--seller", required=True)
    p.add_argument("--buyer", required=True)
    p.add_argument("lines", nargs="+", type=_parse_line, metavar="ITEM_ID:QTY")
    p.set_defaults(func=cmd_sell)

    p = sub.add_parser("sales", help="List sales, newest first")
    p.set_defaults(func=cmd_sales)

    p = sub.add_parser("receipts", help="List receipts, newest first")
    p.set_defaults(func=cmd_receipts)

    p = sub.add_parser("receipt", help="Show one receipt")
    p.add_argument("receipt_id")
    p.add_argument("--share", action="store_true", help="Plain text for sharing")
    p.set_defaults(func=cmd_receipt)

    p = sub.add_parser(
        "retry-receipt", help="Create the missing receipt for a sale", parents=[pin_option]
    )
    p.add_argument("sale_id")
    p.set_defaults(func=cmd_retry_receipt)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.db:
        database.DB_PATH = args.db
        database._initialized = False
    try:
        return asyncio.run(_run(args))
    except ReceiptGenerationFailed as exc:
        console.print(f"[yellow]{exc}[/]")
        console.print(f"Run: pos-tracker retry-receipt {exc.sale_id}")
        return 1
    except SaleError as exc:
        console.print(f"[red]{exc}[/]")
        return 1
    except (ValueError, StoreError) as exc:
        _logger.debug("Command failed", exc_info=True)
        console.print(f"[red]{exc}[/]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
