"""
Sale transaction engine: turn a cart into stock deductions, a sale record and
its receipt.

Sequence per attempt, in cart order:

1. conditional decrement of every line; on any refusal or fault the
   decrements already applied in this attempt are put back
2. build the sale from the items returned by the decrements, so names and
   prices are the ones that were actually charged
3. append the sale; if that fails the decrements are put back
4. append the receipt; if that fails the sale stands and only the receipt is
   retried, through ``create_receipt`` which is idempotent per sale

Once step 1 starts the attempt runs shielded from caller cancellation.
"""

from __future__ import annotations

import asyncio
import functools
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Iterable, List, Optional, Set, Tuple

from db import models
from db.stores import (
    InventoryStore,
    ReceiptStore,
    SalesStore,
    SettingsStore,
    SqliteInventoryStore,
    SqliteReceiptStore,
    SqliteSalesStore,
    SqliteSettingsStore,
    StoreError,
)
from pos.cart import SaleLineRequest
from pos.errors import (
    EmptyCart,
    InvalidQuantity,
    MalformedLine,
    MissingBuyerName,
    MissingSellerName,
    ReceiptGenerationFailed,
    SaleError,
    SaleNotFound,
    TransactionFailed,
)
from utils.logger import get_logger

_logger = get_logger(__name__)


class SaleState(str, Enum):
    VALIDATING = "validating"
    DEDUCTING = "deducting"
    RECORDING = "recording"
    RECEIPT_PENDING = "receipt_pending"
    COMPLETE = "complete"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    COMPLETE_WITHOUT_RECEIPT = "complete_without_receipt"


_TRANSITIONS = {
    SaleState.VALIDATING: {SaleState.DEDUCTING, SaleState.FAILED},
    SaleState.DEDUCTING: {SaleState.RECORDING, SaleState.ROLLED_BACK},
    SaleState.ROLLED_BACK: {SaleState.FAILED},
    SaleState.RECORDING: {SaleState.RECEIPT_PENDING, SaleState.FAILED},
    SaleState.RECEIPT_PENDING: {
        SaleState.COMPLETE,
        SaleState.COMPLETE_WITHOUT_RECEIPT,
    },
}

TERMINAL_STATES = {
    SaleState.COMPLETE,
    SaleState.FAILED,
    SaleState.COMPLETE_WITHOUT_RECEIPT,
}

RECENT_ATTEMPTS = 100


@dataclass
class SaleAttempt:
    """Bookkeeping for one call to ``SaleEngine.complete_sale``."""

    requests: List[SaleLineRequest] = field(default_factory=list)
    seller_name: str = ""
    buyer_name: str = ""
    state: SaleState = SaleState.VALIDATING
    history: List[SaleState] = field(default_factory=lambda: [SaleState.VALIDATING])
    applied: List[Tuple[SaleLineRequest, models.InventoryItem]] = field(
        default_factory=list
    )
    reversed: List[str] = field(default_factory=list)
    uncompensated: List[str] = field(default_factory=list)
    sale: Optional[models.Sale] = None
    receipt: Optional[models.Receipt] = None
    # the caller stopped waiting; the outcome is only logged
    detached: bool = False

    def advance(self, new_state: SaleState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal sale transition {self.state.value} -> {new_state.value}")
        _logger.debug(f"Sale attempt {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


def _coerce_line(index: int, line) -> SaleLineRequest:
    """Accept SaleLineRequest/CartLine objects, (item_id, qty) pairs or dicts."""
    try:
        if isinstance(line, dict):
            item_id = line.get("item_id", line.get("itemId"))
            quantity = line.get("quantity")
        elif isinstance(line, (tuple, list)):
            item_id, quantity = line
        else:
            item_id, quantity = line.item_id, line.quantity
    except (AttributeError, TypeError, ValueError):
        raise MalformedLine(index, line) from None
    item_id = str(item_id or "").strip()
    if not item_id:
        raise MalformedLine(index, line)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantity(item_id, quantity)
    return SaleLineRequest(item_id=item_id, quantity=quantity)


class SaleEngine:
    def __init__(
        self,
        inventory: Optional[InventoryStore] = None,
        sales: Optional[SalesStore] = None,
        receipts: Optional[ReceiptStore] = None,
        settings: Optional[SettingsStore] = None,
    ):
        self.inventory = inventory or SqliteInventoryStore()
        self.sales = sales or SqliteSalesStore()
        self.receipts = receipts or SqliteReceiptStore()
        self.settings = settings or SqliteSettingsStore()
        self.last_attempt: Optional[SaleAttempt] = None
        self.recent_attempts: Deque[SaleAttempt] = deque(maxlen=RECENT_ATTEMPTS)
        self._in_flight: Set[asyncio.Task] = set()

    async def complete_sale(
        self,
        lines: Iterable,
        seller_name: str,
        buyer_name: str,
        business: Optional[models.BusinessSnapshot] = None,
    ) -> models.Receipt:
        """
        Sell the given lines and return the receipt.

        `business` is the name/address to stamp on the receipt; when omitted the
        current settings are read at receipt time.

        Raises EmptyCart, MissingSellerName, MissingBuyerName, MalformedLine or
        InvalidQuantity before touching stock; InsufficientStock or ItemNotFound after rolling
        back; TransactionFailed when storage failed before the sale was
        recorded; ReceiptGenerationFailed when only the receipt is missing.
        """
        attempt = SaleAttempt()
        self.last_attempt = attempt
        self.recent_attempts.append(attempt)
        try:
            self._validate(attempt, lines, seller_name, buyer_name)
        except SaleError:
            attempt.advance(SaleState.FAILED)
            raise

        task = asyncio.ensure_future(self._commit(attempt, business))
        self._in_flight.add(task)
        task.add_done_callback(functools.partial(self._attempt_done, attempt))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            attempt.detached = True
            raise

    def _attempt_done(self, attempt: SaleAttempt, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if not attempt.detached or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _logger.error(
                f"Sale attempt ended in {attempt.state.value} after its caller was cancelled: {exc}"
            )
        else:
            _logger.info(
                f"Sale {attempt.sale.id} completed after its caller was cancelled"
            )

    async def wait_in_flight(self) -> None:
        """Wait for attempts whose callers were cancelled to finish."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def create_receipt(
        self, sale_id: str, business: Optional[models.BusinessSnapshot] = None
    ) -> models.Receipt:
        """
        Return the receipt for a recorded sale, creating it if it does not
        exist yet. Calling this again for the same sale returns the same receipt.
        """
        try:
            existing = await self.receipts.get_by_sale_id(sale_id)
            if existing is not None:
                _logger.debug(f"Receipt {existing.id} already exists for sale {sale_id}")
                return existing
            sale = await self.sales.get_by_id(sale_id)
        except StoreError as exc:
            raise ReceiptGenerationFailed(sale_id, cause=exc) from exc
        if sale is None:
            raise SaleNotFound(sale_id)
        try:
            receipt = await self._issue_receipt(sale, business)
        except StoreError as exc:
            raise ReceiptGenerationFailed(sale_id, sale=sale, cause=exc) from exc
        _logger.info(f"Receipt {receipt.id} issued for sale {sale_id}")
        return receipt

    def _validate(self, attempt: SaleAttempt, lines, seller_name, buyer_name) -> None:
        raw_lines = list(lines or [])
        if not raw_lines:
            raise EmptyCart()
        seller = (seller_name or "").strip()
        if not seller:
            raise MissingSellerName()
        buyer = (buyer_name or "").strip()
        if not buyer:
            raise MissingBuyerName()
        attempt.requests = [_coerce_line(i, line) for i, line in enumerate(raw_lines)]
        attempt.seller_name = seller
        attempt.buyer_name = buyer

    async def _commit(
        self, attempt: SaleAttempt, business: Optional[models.BusinessSnapshot]
    ) -> models.Receipt:
        attempt.advance(SaleState.DEDUCTING)
        for request in attempt.requests:
            try:
                item = await self.inventory.conditional_decrement(
                    request.item_id, request.quantity
                )
            except Exception as exc:
                await self._roll_back(attempt)
                attempt.advance(SaleState.FAILED)
                if isinstance(exc, SaleError):
                    if attempt.uncompensated:
                        exc.details["uncompensated"] = list(attempt.uncompensated)
                    _logger.warning(f"Sale rolled back: {exc}")
                    raise
                if isinstance(exc, StoreError):
                    raise TransactionFailed(
                        f"Could not deduct stock for item {request.item_id}",
                        details={
                            "item_id": request.item_id,
                            "stage": SaleState.DEDUCTING.value,
                            "uncompensated": list(attempt.uncompensated),
                        },
                    ) from exc
                raise
            attempt.applied.append((request, item))

        line_items = tuple(
            models.SaleLineItem(
                item_id=item.id,
                item_name=item.name,
                quantity=request.quantity,
                unit_price=item.unit_price,
            )
            for request, item in attempt.applied
        )

        attempt.advance(SaleState.RECORDING)
        try:
            sale = await self.sales.add(
                models.NewSale(
                    items=line_items,
                    seller_name=attempt.seller_name,
                    buyer_name=attempt.buyer_name,
                )
            )
        except Exception as exc:
            await self._compensate(attempt)
            attempt.advance(SaleState.FAILED)
            if isinstance(exc, StoreError):
                raise TransactionFailed(
                    "Could not record the sale; stock has been restored",
                    details={
                        "stage": SaleState.RECORDING.value,
                        "uncompensated": list(attempt.uncompensated),
                    },
                ) from exc
            raise
        attempt.sale = sale

        attempt.advance(SaleState.RECEIPT_PENDING)
        try:
            receipt = await self._issue_receipt(sale, business)
        except Exception as exc:
            # the sale is durable whatever went wrong here
            attempt.advance(SaleState.COMPLETE_WITHOUT_RECEIPT)
            _logger.warning(f"Sale {sale.id} recorded without a receipt: {exc}")
            raise ReceiptGenerationFailed(sale.id, sale=sale, cause=exc) from exc
        attempt.receipt = receipt
        attempt.advance(SaleState.COMPLETE)
        _logger.info(
            f"Sale {sale.id} completed: {len(sale.items)} line(s), "
            f"total {sale.total_amount}, receipt {receipt.id}"
        )
        return receipt

    async def _roll_back(self, attempt: SaleAttempt) -> None:
        attempt.advance(SaleState.ROLLED_BACK)
        await self._compensate(attempt)

    async def _compensate(self, attempt: SaleAttempt) -> None:
        """Put back every decrement applied in this attempt, newest first."""
        for request, _item in reversed(attempt.applied):
            try:
                await self.inventory.increment(request.item_id, request.quantity)
            except Exception as exc:
                _logger.error(
                    f"Could not restore {request.quantity} unit(s) of item {request.item_id}: {exc}"
                )
                attempt.uncompensated.append(request.item_id)
                continue
            attempt.reversed.append(request.item_id)
        if attempt.applied:
            _logger.debug(
                f"Restored {len(attempt.reversed)} of {len(attempt.applied)} deduction(s)"
            )

    async def _issue_receipt(
        self, sale: models.Sale, business: Optional[models.BusinessSnapshot]
    ) -> models.Receipt:
        if business is None:
            business = await self.settings.business_snapshot()
        return await self.receipts.add_if_absent(models.NewReceipt.for_sale(sale, business))
