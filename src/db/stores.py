# src/db/stores.py
from __future__ import annotations

import json
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import aiosqlite

from db import models
from db.database import connect
from pos.errors import InsufficientStock, ItemNotFound
from utils import config
from utils.logger import get_logger
from utils.time_utils import parse_iso, to_iso, utcnow

_logger = get_logger(__name__)

_UNSET = object()


class StoreError(Exception):
    """Raised when the backing store fails (locked, unreachable, corrupt)."""


@asynccontextmanager
async def _storage_errors(action: str):
    """Translate driver errors into StoreError so callers stay backend-agnostic."""
    try:
        yield
    except aiosqlite.Error as exc:
        _logger.warning(f"{action} failed: {exc}")
        raise StoreError(f"{action} failed: {exc}") from exc


def _new_id() -> str:
    return uuid.uuid4().hex


def _to_int(val) -> Optional[int]:
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


def _to_decimal(val) -> Optional[Decimal]:
    if isinstance(val, float):
        val = repr(val)
    try:
        return Decimal(str(val))
    except (InvalidOperation, TypeError, ValueError):
        return None


def _validate_name(name) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError("Item name is required.")
    return name


def _validate_price(unit_price) -> Decimal:
    price = _to_decimal(unit_price)
    if price is None or not price.is_finite() or price < 0:
        raise ValueError(f"Unit price must be a non-negative amount, got {unit_price!r}.")
    return price


def _validate_count(value, label: str) -> int:
    count = None if isinstance(value, bool) else _to_int(value)
    if count is None or (isinstance(value, float) and not value.is_integer()):
        raise ValueError(f"{label} must be a whole number, got {value!r}.")
    if count < 0:
        raise ValueError(f"{label} cannot be negative.")
    return count


def _row_to_item(row) -> models.InventoryItem:
    return models.InventoryItem(
        id=row["id"],
        name=row["name"],
        category=row["category"],
        unit_price=Decimal(row["unit_price"]),
        quantity=int(row["quantity"]),
        low_stock_threshold=int(row["low_stock_threshold"]),
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
    )


def _dump_lines(items) -> str:
    return json.dumps([line.to_dict() for line in items])


def _load_lines(raw: Optional[str]):
    return tuple(models.SaleLineItem.from_dict(d) for d in json.loads(raw or "[]"))


def _row_to_sale(row) -> models.Sale:
    return models.Sale(
        id=row["id"],
        items=_load_lines(row["items"]),
        total_amount=Decimal(row["total_amount"]),
        seller_name=row["seller_name"],
        buyer_name=row["buyer_name"],
        created_at=parse_iso(row["created_at"]),
    )


def _row_to_receipt(row) -> models.Receipt:
    return models.Receipt(
        id=row["id"],
        sale_id=row["sale_id"],
        business_name=row["business_name"],
        business_address=row["business_address"],
        items=_load_lines(row["items"]),
        total_amount=Decimal(row["total_amount"]),
        seller_name=row["seller_name"],
        buyer_name=row["buyer_name"],
        created_at=parse_iso(row["created_at"]),
    )


def _row_to_settings(row) -> models.AppSettings:
    return models.AppSettings(
        id=row["id"],
        pin_hash=row["pin_hash"],
        business_name=row["business_name"],
        business_address=row["business_address"],
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
        failed_attempts=int(row["failed_attempts"] or 0),
        lockout_until=parse_iso(row["lockout_until"]),
    )


def _like_pattern(phrase: str) -> str:
    escaped = phrase.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


_ITEM_COLUMNS = (
    "id, name, category, unit_price, quantity, low_stock_threshold, created_at, updated_at"
)
_SALE_COLUMNS = "id, items, total_amount, seller_name, buyer_name, created_at"
_RECEIPT_COLUMNS = (
    "id, sale_id, business_name, business_address, items, total_amount, "
    "seller_name, buyer_name, created_at"
)


# ---------------------------
# Store interfaces
# ---------------------------


class InventoryStore(ABC):
    @abstractmethod
    async def get_by_id(self, item_id: str) -> Optional[models.InventoryItem]: ...

    @abstractmethod
    async def conditional_decrement(
        self, item_id: str, amount: int
    ) -> models.InventoryItem:
        """Atomically take `amount` units if at least that many are on hand.

        Raises InsufficientStock (state unchanged) or ItemNotFound.
        """

    @abstractmethod
    async def increment(self, item_id: str, amount: int) -> models.InventoryItem:
        """Put `amount` units back. Used to compensate an applied decrement."""

    @abstractmethod
    async def create(
        self,
        name: str,
        unit_price,
        quantity: int,
        category: str = "",
        low_stock_threshold: Optional[int] = None,
    ) -> models.InventoryItem: ...

    @abstractmethod
    async def update(self, item_id: str, **changes) -> Optional[models.InventoryItem]: ...

    @abstractmethod
    async def delete(self, item_id: str) -> bool: ...

    @abstractmethod
    async def list_all(self) -> List[models.InventoryItem]: ...

    @abstractmethod
    async def search(
        self, query: str, low_stock_only: bool = False
    ) -> List[models.InventoryItem]:
        """Items whose name or category contains `query` (case-insensitive), by name."""

    async def list_low_stock(self) -> List[models.InventoryItem]:
        return [item for item in await self.list_all() if item.is_low_stock]

    async def summary(self) -> models.InventorySummary:
        items = await self.list_all()
        return models.InventorySummary(
            total_items=len(items),
            total_stock=sum(item.quantity for item in items),
            total_value=sum((item.stock_value for item in items), Decimal("0")),
            low_stock_count=sum(1 for item in items if item.is_low_stock),
        )


class SalesStore(ABC):
    @abstractmethod
    async def add(self, sale: models.NewSale) -> models.Sale: ...

    @abstractmethod
    async def get_by_id(self, sale_id: str) -> Optional[models.Sale]: ...

    @abstractmethod
    async def list_all(self) -> List[models.Sale]: ...


class ReceiptStore(ABC):
    @abstractmethod
    async def add(self, receipt: models.NewReceipt) -> models.Receipt: ...

    @abstractmethod
    async def add_if_absent(self, receipt: models.NewReceipt) -> models.Receipt:
        """Store the receipt unless its sale already has one; return the sale's receipt.

        The check and the insert are one atomic step, so concurrent callers
        for the same sale all get the same receipt.
        """

    @abstractmethod
    async def get_by_id(self, receipt_id: str) -> Optional[models.Receipt]: ...

    @abstractmethod
    async def get_by_sale_id(self, sale_id: str) -> Optional[models.Receipt]: ...

    @abstractmethod
    async def list_all(self) -> List[models.Receipt]: ...


class SettingsStore(ABC):
    @abstractmethod
    async def get(self) -> Optional[models.AppSettings]: ...

    @abstractmethod
    async def initialize(
        self, business_name: Optional[str] = None, business_address: Optional[str] = None
    ) -> models.AppSettings: ...

    @abstractmethod
    async def update_business_info(
        self, business_name: str, business_address: str
    ) -> models.AppSettings: ...

    @abstractmethod
    async def set_pin_hash(self, pin_hash: Optional[str]) -> None: ...

    @abstractmethod
    async def save_login_state(
        self, failed_attempts: int, lockout_until: Optional[datetime]
    ) -> None:
        """Persist the failed-login counter and lockout so they survive restarts."""

    async def business_snapshot(self) -> models.BusinessSnapshot:
        """Current business name/address, creating the settings row if needed."""
        settings = await self.get()
        if settings is None:
            settings = await self.initialize()
        return settings.snapshot()


# ---------------------------
# Inventory
# ---------------------------


class SqliteInventoryStore(InventoryStore):
    async def get_by_id(self, item_id: str) -> Optional[models.InventoryItem]:
        """Fetch an item by id."""
        async with _storage_errors("get item"):
            async with connect() as conn:
                cur = await conn.execute(
                    f"SELECT {_ITEM_COLUMNS} FROM inventory WHERE id = ?;", (item_id,)
                )
                row = await cur.fetchone()
                await cur.close()
        if not row:
            return None
        return _row_to_item(row)

    async def conditional_decrement(
        self, item_id: str, amount: int
    ) -> models.InventoryItem:
        """
        Deduct stock with a single guarded UPDATE. The WHERE clause carries the
        availability check, so two writers can never both see enough stock.
        Returns the item as it stands after the deduction.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("Decrement amount must be a positive integer.")
        async with _storage_errors(f"decrement {item_id}"):
            async with connect() as conn:
                await conn.execute("BEGIN IMMEDIATE;")
                cur = await conn.execute(
                    """
                    UPDATE inventory
                    SET quantity = quantity - ?, updated_at = ?
                    WHERE id = ? AND quantity >= ?;
                    """,
                    (amount, to_iso(utcnow()), item_id, amount),
                )
                changed = cur.rowcount
                await cur.close()
                cur = await conn.execute(
                    f"SELECT {_ITEM_COLUMNS} FROM inventory WHERE id = ?;", (item_id,)
                )
                row = await cur.fetchone()
                await cur.close()
                if changed == 0:
                    await conn.rollback()
                    if row is None:
                        raise ItemNotFound(item_id)
                    raise InsufficientStock(
                        item_id,
                        requested=amount,
                        available=int(row["quantity"]),
                        item_name=row["name"],
                    )
                await conn.commit()
        return _row_to_item(row)

    async def increment(self, item_id: str, amount: int) -> models.InventoryItem:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("Increment amount must be a positive integer.")
        async with _storage_errors(f"increment {item_id}"):
            async with connect() as conn:
                cur = await conn.execute(
                    """
                    UPDATE inventory
                    SET quantity = quantity + ?, updated_at = ?
                    WHERE id = ?;
                    """,
                    (amount, to_iso(utcnow()), item_id),
                )
                changed = cur.rowcount
                await cur.close()
                cur = await conn.execute(
                    f"SELECT {_ITEM_COLUMNS} FROM inventory WHERE id = ?;", (item_id,)
                )
                row = await cur.fetchone()
                await cur.close()
                await conn.commit()
        if changed == 0 or row is None:
            raise ItemNotFound(item_id)
        return _row_to_item(row)

    async def create(
        self,
        name: str,
        unit_price,
        quantity: int,
        category: str = "",
        low_stock_threshold: Optional[int] = None,
    ) -> models.InventoryItem:
        """Add a new item and return it with its generated id."""
        name = _validate_name(name)
        price = _validate_price(unit_price)
        quantity = _validate_count(quantity, "Quantity")
        if low_stock_threshold is None:
            low_stock_threshold = config.DEFAULT_LOW_STOCK_THRESHOLD
        threshold = _validate_count(low_stock_threshold, "Low stock threshold")
        item_id = _new_id()
        now = to_iso(utcnow())
        async with _storage_errors("create item"):
            async with connect() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO inventory({_ITEM_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        item_id,
                        name,
                        (category or "").strip(),
                        str(price),
                        quantity,
                        threshold,
                        now,
                        now,
                    ),
                )
                await conn.commit()
        _logger.debug(f"Created item {item_id} ({name}) with {quantity} in stock")
        return await self.get_by_id(item_id)

    async def update(
        self,
        item_id: str,
        name=_UNSET,
        category=_UNSET,
        unit_price=_UNSET,
        quantity=_UNSET,
        low_stock_threshold=_UNSET,
    ) -> Optional[models.InventoryItem]:
        """
        Update only the provided fields. Return the updated item, or None if
        no item has that id.
        """
        assignments: List[str] = []
        params: list = []
        if name is not _UNSET:
            assignments.append("name = ?")
            params.append(_validate_name(name))
        if category is not _UNSET:
            assignments.append("category = ?")
            params.append((category or "").strip())
        if unit_price is not _UNSET:
            assignments.append("unit_price = ?")
            params.append(str(_validate_price(unit_price)))
        if quantity is not _UNSET:
            assignments.append("quantity = ?")
            params.append(_validate_count(quantity, "Quantity"))
        if low_stock_threshold is not _UNSET:
            assignments.append("low_stock_threshold = ?")
            params.append(_validate_count(low_stock_threshold, "Low stock threshold"))
        if not assignments:
            return await self.get_by_id(item_id)

        assignments.append("updated_at = ?")
        params.append(to_iso(utcnow()))
        async with _storage_errors(f"update {item_id}"):
            async with connect() as conn:
                res = await conn.execute(
                    f"UPDATE inventory SET {', '.join(assignments)} WHERE id = ?;",
                    tuple(params + [item_id]),
                )
                changed = res.rowcount
                await res.close()
                await conn.commit()
        if changed == 0:
            return None
        return await self.get_by_id(item_id)

    async def delete(self, item_id: str) -> bool:
        """Hard delete. Past sales keep their own copy of the item's name and price."""
        async with _storage_errors(f"delete {item_id}"):
            async with connect() as conn:
                res = await conn.execute("DELETE FROM inventory WHERE id = ?;", (item_id,))
                changed = res.rowcount
                await res.close()
                await conn.commit()
        return changed > 0

    async def list_all(self) -> List[models.InventoryItem]:
        """All items, most recently added first."""
        async with _storage_errors("list items"):
            async with connect() as conn:
                cur = await conn.execute(
                    f"""
                    SELECT {_ITEM_COLUMNS}
                    FROM inventory
                    ORDER BY created_at DESC, rowid DESC;
                    """
                )
                rows = await cur.fetchall()
                await cur.close()
        return [_row_to_item(row) for row in rows]

    async def list_low_stock(self) -> List[models.InventoryItem]:
        """Items at or below their low-stock threshold."""
        async with _storage_errors("list low stock"):
            async with connect() as conn:
                cur = await conn.execute(
                    f"""
                    SELECT {_ITEM_COLUMNS}
                    FROM inventory
                    WHERE quantity <= low_stock_threshold
                    ORDER BY created_at DESC, rowid DESC;
                    """
                )
                rows = await cur.fetchall()
                await cur.close()
        return [_row_to_item(row) for row in rows]

    async def search(
        self, query: str, low_stock_only: bool = False
    ) -> List[models.InventoryItem]:
        """
        Case-insensitive substring match on name or category, sorted by name.
        Rules:
        - Leading/trailing spaces are ignored; an empty query matches every item.
        - `low_stock_only` keeps items at or below their threshold.
        """
        phrase = (query or "").strip().lower()
        clauses: List[str] = []
        params: list = []
        if phrase:
            clauses.append("(LOWER(name) LIKE ? ESCAPE '\\' OR LOWER(category) LIKE ? ESCAPE '\\')")
            pattern = _like_pattern(phrase)
            params += [pattern, pattern]
        if low_stock_only:
            clauses.append("quantity <= low_stock_threshold")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with _storage_errors("search items"):
            async with connect() as conn:
                cur = await conn.execute(
                    f"""
                    SELECT {_ITEM_COLUMNS}
                    FROM inventory
                    {where}
                    ORDER BY LOWER(name), name, rowid;
                    """,
                    tuple(params),
                )
                rows = await cur.fetchall()
                await cur.close()
        return [_row_to_item(row) for row in rows]


# ---------------------------
# Sales
# ---------------------------


class SqliteSalesStore(SalesStore):
    async def add(self, sale: models.NewSale) -> models.Sale:
        """Append a sale. The total is recomputed from the lines."""
        if not sale.items:
            raise ValueError("A sale needs at least one line.")
        stored = models.Sale(
            id=_new_id(),
            items=tuple(sale.items),
            total_amount=sale.total_amount,
            seller_name=sale.seller_name,
            buyer_name=sale.buyer_name,
            created_at=utcnow(),
        )
        async with _storage_errors("record sale"):
            async with connect() as conn:
                await conn.execute(
                    f"INSERT INTO sales({_SALE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?);",
                    (
                        stored.id,
                        _dump_lines(stored.items),
                        str(stored.total_amount),
                        stored.seller_name,
                        stored.buyer_name,
                        to_iso(stored.created_at),
                    ),
                )
                await conn.commit()
        return stored

    async def get_by_id(self, sale_id: str) -> Optional[models.Sale]:
        async with _storage_errors("get sale"):
            async with connect() as conn:
                cur = await conn.execute(
                    f"SELECT {_SALE_COLUMNS} FROM sales WHERE id = ?;", (sale_id,)
                )
                row = await cur.fetchone()
                await cur.close()
        return _row_to_sale(row) if row else None

    async def list_all(self) -> List[models.Sale]:
        """All sales, most recent first."""
        async with _storage_errors("list sales"):
            async with connect() as conn:
                cur = await conn.execute(
                    f"SELECT {_SALE_COLUMNS} FROM sales ORDER BY created_at DESC, rowid DESC;"
                )
                rows = await cur.fetchall()
                await cur.close()
        return [_row_to_sale(row) for row in rows]


# ---------------------------
# Receipts
# ---------------------------


def _stamp_receipt(receipt: models.NewReceipt) -> models.Receipt:
    return models.Receipt(
        id=_new_id(),
        sale_id=receipt.sale_id,
        business_name=receipt.business_name,
        business_address=receipt.business_address,
        items=tuple(receipt.items),
        total_amount=receipt.total_amount,
        seller_name=receipt.seller_name,
        buyer_name=receipt.buyer_name,
        created_at=utcnow(),
    )


def _receipt_params(stored: models.Receipt) -> tuple:
    return (
        stored.id,
        stored.sale_id,
        stored.business_name,
        stored.business_address,
        _dump_lines(stored.items),
        str(stored.total_amount),
        stored.seller_name,
        stored.buyer_name,
        to_iso(stored.created_at),
    )


class SqliteReceiptStore(ReceiptStore):
    async def add(self, receipt: models.NewReceipt) -> models.Receipt:
        stored = _stamp_receipt(receipt)
        async with _storage_errors("record receipt"):
            async with connect() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO receipts({_RECEIPT_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    _receipt_params(stored),
                )
                await conn.commit()
        return stored

    async def add_if_absent(self, receipt: models.NewReceipt) -> models.Receipt:
        """
        Insert guarded by NOT EXISTS inside BEGIN IMMEDIATE, then read back the
        sale's oldest receipt. A second writer for the same sale waits for the
        first and inserts nothing.
        """
        stored = _stamp_receipt(receipt)
        async with _storage_errors("record receipt"):
            async with connect() as conn:
                await conn.execute("BEGIN IMMEDIATE;")
                cur = await conn.execute(
                    f"""
                    INSERT INTO receipts({_RECEIPT_COLUMNS})
                    SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?
                    WHERE NOT EXISTS (SELECT 1 FROM receipts WHERE sale_id = ?);
                    """,
                    _receipt_params(stored) + (stored.sale_id,),
                )
                inserted = cur.rowcount
                await cur.close()
                cur = await conn.execute(
                    f"""
                    SELECT {_RECEIPT_COLUMNS}
                    FROM receipts
                    WHERE sale_id = ?
                    ORDER BY created_at, rowid
                    LIMIT 1;
                    """,
                    (stored.sale_id,),
                )
                row = await cur.fetchone()
                await cur.close()
                await conn.commit()
        if not inserted:
            _logger.debug(f"Sale {stored.sale_id} already has receipt {row['id']}")
        return _row_to_receipt(row)

    async def get_by_id(self, receipt_id: str) -> Optional[models.Receipt]:
        async with _storage_errors("get receipt"):
            async with connect() as conn:
                cur = await conn.execute(
                    f"SELECT {_RECEIPT_COLUMNS} FROM receipts WHERE id = ?;",
                    (receipt_id,),
                )
                row = await cur.fetchone()
                await cur.close()
        return _row_to_receipt(row) if row else None

    async def get_by_sale_id(self, sale_id: str) -> Optional[models.Receipt]:
        """The receipt issued for a sale, or None. Oldest wins if there are several."""
        async with _storage_errors("get receipt by sale"):
            async with connect() as conn:
                cur = await conn.execute(
                    f"""
                    SELECT {_RECEIPT_COLUMNS}
                    FROM receipts
                    WHERE sale_id = ?
                    ORDER BY created_at, rowid
                    LIMIT 1;
                    """,
                    (sale_id,),
                )
                row = await cur.fetchone()
                await cur.close()
        return _row_to_receipt(row) if row else None

    async def list_all(self) -> List[models.Receipt]:
        async with _storage_errors("list receipts"):
            async with connect() as conn:
                cur = await conn.execute(
                    f"""
                    SELECT {_RECEIPT_COLUMNS}
                    FROM receipts
                    ORDER BY created_at DESC, rowid DESC;
                    """
                )
                rows = await cur.fetchall()
                await cur.close()
        return [_row_to_receipt(row) for row in rows]


# ---------------------------
# Settings
# ---------------------------


class SqliteSettingsStore(SettingsStore):
    SETTINGS_ID = "main"

    async def get(self) -> Optional[models.AppSettings]:
        async with _storage_errors("get settings"):
            async with connect() as conn:
                cur = await conn.execute(
                    """
                    SELECT id, pin_hash, failed_attempts, lockout_until,
                           business_name, business_address, created_at, updated_at
                    FROM app_settings
                    WHERE id = ?;
                    """,
                    (self.SETTINGS_ID,),
                )
                row = await cur.fetchone()
                await cur.close()
        return _row_to_settings(row) if row else None

    async def initialize(
        self, business_name: Optional[str] = None, business_address: Optional[str] = None
    ) -> models.AppSettings:
        """Create the settings row with defaults. An existing row is left as is."""
        now = to_iso(utcnow())
        async with _storage_errors("initialize settings"):
            async with connect() as conn:
                await conn.execute(
                    """
                    INSERT OR IGNORE INTO app_settings(
                        id, pin_hash, business_name, business_address, created_at, updated_at
                    )
                    VALUES (?, NULL, ?, ?, ?, ?);
                    """,
                    (
                        self.SETTINGS_ID,
                        business_name or config.DEFAULT_BUSINESS_NAME,
                        business_address or config.DEFAULT_BUSINESS_ADDRESS,
                        now,
                        now,
                    ),
                )
                await conn.commit()
        return await self.get()

    async def update_business_info(
        self, business_name: str, business_address: str
    ) -> models.AppSettings:
        """Change the name/address stamped on future receipts. Past receipts keep theirs."""
        business_name = (business_name or "").strip()
        if not business_name:
            raise ValueError("Business name is required.")
        business_address = (business_address or "").strip()
        await self.initialize()
        async with _storage_errors("update business info"):
            async with connect() as conn:
                await conn.execute(
                    """
                    UPDATE app_settings
                    SET business_name = ?, business_address = ?, updated_at = ?
                    WHERE id = ?;
                    """,
                    (business_name, business_address, to_iso(utcnow()), self.SETTINGS_ID),
                )
                await conn.commit()
        return await self.get()

    async def set_pin_hash(self, pin_hash: Optional[str]) -> None:
        await self.initialize()
        async with _storage_errors("set pin"):
            async with connect() as conn:
                await conn.execute(
                    "UPDATE app_settings SET pin_hash = ?, updated_at = ? WHERE id = ?;",
                    (pin_hash, to_iso(utcnow()), self.SETTINGS_ID),
                )
                await conn.commit()

    async def save_login_state(
        self, failed_attempts: int, lockout_until: Optional[datetime]
    ) -> None:
        await self.initialize()
        async with _storage_errors("save login state"):
            async with connect() as conn:
                await conn.execute(
                    """
                    UPDATE app_settings
                    SET failed_attempts = ?, lockout_until = ?
                    WHERE id = ?;
                    """,
                    (
                        failed_attempts,
                        to_iso(lockout_until) if lockout_until else None,
                        self.SETTINGS_ID,
                    ),
                )
                await conn.commit()
