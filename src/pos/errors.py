"""
Errors raised while building a cart or completing a sale.

Every error carries a ``details`` dict naming the item or field at fault so
callers can point the operator at what to correct.
"""

from __future__ import annotations

from typing import Optional


class SaleError(Exception):
    """Base class for cart and sale failures."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(SaleError):
    """Input rejected before anything was written."""


class EmptyCart(ValidationError):
    def __init__(self):
        super().__init__("Cart is empty", details={"field": "items"})


class MissingSellerName(ValidationError):
    def __init__(self):
        super().__init__("Seller name is required", details={"field": "seller_name"})


class MissingBuyerName(ValidationError):
    def __init__(self):
        super().__init__("Buyer name is required", details={"field": "buyer_name"})


class InvalidQuantity(ValidationError):
    def __init__(self, item_id: str, quantity):
        super().__init__(
            f"Quantity for item {item_id} must be a positive whole number, got {quantity!r}",
            details={"field": "quantity", "item_id": item_id, "quantity": quantity},
        )
        self.item_id = item_id
        self.quantity = quantity


class MalformedLine(ValidationError):
    """A sale line that is not an item id with a quantity."""

    def __init__(self, index: int, line):
        super().__init__(
            f"Line {index + 1} must name an item and a quantity, got {line!r}",
            details={"field": "items", "index": index},
        )
        self.index = index


class ItemNotFound(SaleError):
    def __init__(self, item_id: str):
        super().__init__(f"Item {item_id} not found", details={"item_id": item_id})
        self.item_id = item_id


class InsufficientStock(SaleError):
    """Requested more units than are on hand. Recoverable by changing the cart."""

    def __init__(
        self,
        item_id: str,
        requested: Optional[int] = None,
        available: Optional[int] = None,
        item_name: Optional[str] = None,
    ):
        label = item_name or item_id
        if available is None:
            message = f"Insufficient stock for {label}"
        else:
            message = f"Insufficient stock for {label}: only {available} available"
        super().__init__(
            message,
            details={
                "item_id": item_id,
                "requested": requested,
                "available": available,
            },
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class TransactionFailed(SaleError):
    """
    Storage failed before the sale was recorded. Stock deducted in the attempt
    has been restored (see ``details["uncompensated"]`` for any that could not
    be) and the whole sale can be retried.
    """


class ReceiptGenerationFailed(SaleError):
    """
    The sale is durable but its receipt could not be stored. Retry with
    ``SaleEngine.create_receipt(error.sale_id)``.
    """

    def __init__(self, sale_id: str, sale=None, cause: Exception | None = None):
        super().__init__(
            f"Sale {sale_id} was recorded but its receipt could not be created",
            details={"sale_id": sale_id},
        )
        self.sale_id = sale_id
        self.sale = sale
        self.cause = cause


class SaleNotFound(SaleError):
    def __init__(self, sale_id: str):
        super().__init__(f"Sale {sale_id} not found", details={"sale_id": sale_id})
        self.sale_id = sale_id
