from decimal import ROUND_HALF_UP, Decimal
from typing import List, Literal, Optional

from utils import config


def generate_markdown_table(
    headers: Optional[List[str]],
    rows: List[List[str]],
    aligns: Optional[List[Literal["l", "c", "r"]]] = None,
) -> str:
    """
    Generate a Markdown table.

    Args:
        headers: List of column headers, or None to use first row as headers.
        rows: List of rows, each a list of strings.
        aligns: List of alignments ('l', 'c', 'r') for each column.
                Defaults to all center ('c').

    Returns:
        str: Markdown formatted table.
    """
    if not rows:
        return ""

    # If no headers, take the first row as header and remove it from rows
    if not headers:
        headers, rows = rows[0], rows[1:]

    headers = list(map(str, headers))
    rows = [list(map(str, row)) for row in rows]

    num_cols = len(headers)
    if aligns is None:
        aligns = ["c"] * num_cols
    elif len(aligns) != num_cols:
        raise ValueError("Length of aligns must match number of headers.")

    align_map = {
        "l": ":---",
        "c": ":---:",
        "r": "---:",
    }

    header_line = "| " + " | ".join(headers) + " |"
    align_line = "| " + " | ".join(align_map[a] for a in aligns) + " |"
    row_lines = ["| " + " | ".join(row) + " |" for row in rows]

    return "\n".join([header_line, align_line, *row_lines])


def format_money(amount, symbol: Optional[str] = None) -> str:
    """`1234.5` -> `₦1,234.50`. Rounds half-up to the cent for display only."""
    if symbol is None:
        symbol = config.CURRENCY_SYMBOL
    value = Decimal(str(amount)).quantize(config.MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"


def receipt_share_text(receipt) -> str:
    """Plain-text receipt suitable for a chat message or SMS."""
    lines = [
        receipt.business_name,
        receipt.business_address,
        f"Receipt #{short_id(receipt.id)}",
        f"Date: {receipt.created_at:%Y-%m-%d %H:%M} UTC",
        "",
        "Items:",
    ]
    lines += [
        f"{item.item_name} x{item.quantity} - {format_money(item.line_total)}"
        for item in receipt.items
    ]
    lines += [
        "",
        f"Total: {format_money(receipt.total_amount)}",
        "",
        f"Seller: {receipt.seller_name}",
        f"Buyer: {receipt.buyer_name}",
        "",
        "Thank you for your business!",
    ]
    return "\n".join(lines)


def short_id(record_id: str) -> str:
    return record_id[:8].upper()


def receipt_markdown(receipt) -> str:
    headers = ["Item", "Unit Price", "Quantity", "Total"]
    rows = [
        [
            item.item_name,
            format_money(item.unit_price),
            item.quantity,
            format_money(item.line_total),
        ]
        for item in receipt.items
    ]
    md = f"### {receipt.business_name}\n\n{receipt.business_address}\n\n"
    md += generate_markdown_table(headers, rows, ["l", "r", "c", "r"])
    md += f"\n\n**Total:** {format_money(receipt.total_amount)}"
    md += f"\n\nSeller: {receipt.seller_name}  \nBuyer: {receipt.buyer_name}"
    return md
