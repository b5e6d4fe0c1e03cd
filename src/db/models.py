# provide dataclass models

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple


@dataclass(frozen=True)
class InventoryItem:
    id: str
    name: str
    category: str
    unit_price: Decimal
    quantity: int
    low_stock_threshold: int
    created_at: datetime
    updated_at: datetime

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.low_stock_threshold

    @property
    def stock_value(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class SaleLineItem:
    """One sold line. Name and price are copies taken at sale time."""

    item_id: str  # weak reference, the item may be edited or deleted later
    item_name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "itemId": self.item_id,
            "itemName": self.item_name,
            "quantity": self.quantity,
            "unitPrice": str(self.unit_price),
            "total": str(self.line_total),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SaleLineItem":
        return cls(
            item_id=data["itemId"],
            item_name=data["itemName"],
            quantity=int(data["quantity"]),
            unit_price=Decimal(str(data["unitPrice"])),
        )


def sum_line_totals(items) -> Decimal:
    return sum((line.line_total for line in items), Decimal("0"))


@dataclass(frozen=True)
class Sale:
    id: str
    items: Tuple[SaleLineItem, ...]
    total_amount: Decimal
    seller_name: str
    buyer_name: str
    created_at: datetime


@dataclass(frozen=True)
class Receipt:
    id: str
    sale_id: str
    business_name: str
    business_address: str
    items: Tuple[SaleLineItem, ...]
    total_amount: Decimal
    seller_name: str
    buyer_name: str
    created_at: datetime


@dataclass(frozen=True)
class BusinessSnapshot:
    business_name: str
    business_address: str


@dataclass(frozen=True)
class AppSettings:
    id: str
    pin_hash: Optional[str]
    business_name: str
    business_address: str
    created_at: datetime
    updated_at: datetime
    failed_attempts: int = 0
    lockout_until: Optional[datetime] = None

    def snapshot(self) -> BusinessSnapshot:
        return BusinessSnapshot(self.business_name, self.business_address)


@dataclass(frozen=True)
class NewSale:
    """A sale ready to be appended; the store assigns id and created_at."""

    items: Tuple[SaleLineItem, ...]
    seller_name: str
    buyer_name: str

    @property
    def total_amount(self) -> Decimal:
        return sum_line_totals(self.items)


@dataclass(frozen=True)
class NewReceipt:
    sale_id: str
    business_name: str
    business_address: str
    items: Tuple[SaleLineItem, ...]
    total_amount: Decimal
    seller_name: str
    buyer_name: str

    @classmethod
    def for_sale(cls, sale: Sale, business: BusinessSnapshot) -> "NewReceipt":
        return cls(
            sale_id=sale.id,
            business_name=business.business_name,
            business_address=business.business_address,
            items=tuple(sale.items),
            total_amount=sale.total_amount,
            seller_name=sale.seller_name,
            buyer_name=sale.buyer_name,
        )


@dataclass(frozen=True)
class InventorySummary:
    total_items: int
    total_stock: int
    total_value: Decimal
    low_stock_count: int
