"""Ledger reader and ledger write path for a business day.

Movements are append-only. A mistaken entry is never edited or deleted; it is
reversed by a new movement carrying the negated value and a ``reversal_of``
pointer, so summing signed values over originals and reversals always gives
the net effect. Each original may be reversed at most once, and a reversal
cannot itself be reversed.

Once a date has a final closing its ledger is frozen: every write for that
date is refused with :class:`ConflictError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Union

from . import log
from .constants import ClosingType, MovementType
from .data_manager import ClosingRow, MovementRow, ProductRow
from .errors import ConflictError, ValidationError
from .persistence import ClosingStore, generate_record_id, resolve_timestamp


DateLike = Union[date, str]


def to_date_str(value: DateLike) -> str:
    """Normalize a business date into the ``YYYY-MM-DD`` store key.

    Raises:
        ValidationError: If ``value`` is a string that is not an ISO date.
    """

    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError as exc:
        raise ValidationError(f"Business date must be YYYY-MM-DD, got {value!r}") from exc


def to_decimal(value: object, *, label: str) -> Decimal:
    """Coerce user input (``Decimal``, ``int``, ``float`` or text) into a finite ``Decimal``.

    Raises:
        ValidationError: If ``value`` is not a finite number.
    """

    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{label} must be a number, got {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"{label} must be a finite number")
    return result


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerEntry:
    """A movement plus the reversal flag derived from the rest of the ledger."""

    movement: MovementRow
    has_been_reversed: bool

    @property
    def is_reversal(self) -> bool:
        return self.movement.is_reversal

    @property
    def movement_id(self) -> str:
        return self.movement.movement_id


@dataclass(frozen=True)
class LedgerSnapshot:
    """Everything the closing engine reads for one business date."""

    business_date: str
    products: List[ProductRow]
    stock_in: List[LedgerEntry]
    expenses: List[LedgerEntry]
    income: List[LedgerEntry]
    withdrawals: List[LedgerEntry]
    closings: List[ClosingRow]
    prior_final: Optional[ClosingRow]
    include_reversals: bool = True

    @property
    def received_by_product(self) -> Dict[str, Decimal]:
        return net_quantity_by_product(entry.movement for entry in self.stock_in)

    @property
    def listed_stock_in(self) -> List[LedgerEntry]:
        """Stock-in entries for display; reversal rows hidden unless requested."""

        return self.stock_in if self.include_reversals else outstanding(self.stock_in)

    @property
    def total_expenses(self) -> Decimal:
        return net_amount(entry.movement for entry in self.expenses)

    @property
    def total_income(self) -> Decimal:
        return net_amount(entry.movement for entry in self.income)

    @property
    def total_withdrawals(self) -> Decimal:
        return net_amount(entry.movement for entry in self.withdrawals)

    @property
    def latest_closing(self) -> Optional[ClosingRow]:
        return self.closings[0] if self.closings else None

    @property
    def final_closing(self) -> Optional[ClosingRow]:
        for record in self.closings:
            if record.closing_type == ClosingType.FINAL.value:
                return record
        return None


def annotate_reversals(movements: Iterable[MovementRow]) -> List[LedgerEntry]:
    """Flag every movement that some other movement reverses."""

    rows = list(movements)
    reversed_ids = {row.reversal_of for row in rows if row.reversal_of is not None}
    return [LedgerEntry(movement=row, has_been_reversed=row.movement_id in reversed_ids) for row in rows]


def outstanding(entries: Iterable[LedgerEntry]) -> List[LedgerEntry]:
    """Entries for history listings: reversal rows are hidden, originals kept."""

    return [entry for entry in entries if not entry.is_reversal]


def net_quantity_by_product(movements: Iterable[MovementRow]) -> Dict[str, Decimal]:
    """Sum signed stock quantities per product; the order of input is irrelevant."""

    totals: Dict[str, Decimal] = {}
    for movement in movements:
        if movement.product_id is None:
            continue
        totals[movement.product_id] = totals.get(movement.product_id, Decimal("0")) + movement.quantity
    return totals


def net_amount(movements: Iterable[MovementRow]) -> Decimal:
    """Sum signed cash amounts."""

    return sum((movement.amount for movement in movements), Decimal("0"))


def load_ledger(store: ClosingStore, business_date: DateLike, *, include_reversals: bool = True) -> LedgerSnapshot:
    """Read the products, movements and closing records for ``business_date``.

    Reads have no side effects. Any store failure propagates unchanged, so a
    caller never receives a partially loaded snapshot.

    Args:
        store (ClosingStore): Record store to query.
        business_date (date | str): Day to load.
        include_reversals (bool): When ``False`` reversal rows are left out
            of :attr:`LedgerSnapshot.listed_stock_in`. Totals always fold the
            full list so reversals keep netting out.

    Returns:
        LedgerSnapshot: Immutable view of the day.
    """

    date_str = to_date_str(business_date)
    products = store.list_products()
    stock_rows = store.find_movements(date_str, MovementType.STOCK_IN.value)
    stock_in = annotate_reversals(stock_rows)

    snapshot = LedgerSnapshot(
        business_date=date_str,
        products=products,
        stock_in=stock_in,
        expenses=annotate_reversals(store.find_movements(date_str, MovementType.EXPENSE.value)),
        income=annotate_reversals(store.find_movements(date_str, MovementType.INCOME.value)),
        withdrawals=annotate_reversals(store.find_movements(date_str, MovementType.WITHDRAWAL.value)),
        closings=store.find_closing_records(date_str),
        prior_final=store.find_prior_final_closing(date_str),
        include_reversals=include_reversals,
    )
    log.debug(
        "Loaded ledger for %s: %d products, %d stock movements, %d closing records",
        date_str,
        len(products),
        len(stock_in),
        len(snapshot.closings),
    )
    return snapshot


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StockInCommand:
    """Intent to receive stock for a product."""

    product_id: str
    quantity: Decimal
    note: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ExpenseCommand:
    amount: Decimal
    category: str
    note: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class IncomeCommand:
    amount: Decimal
    category: str
    note: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class WithdrawalCommand:
    """Intent to take cash out of the drawer."""

    amount: Decimal
    reason: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ReversalCommand:
    """Intent to reverse a prior movement; the reason is mandatory."""

    movement_id: str
    reason: str
    timestamp: Optional[datetime] = None


def require_positive(value: Decimal, *, label: str) -> None:
    """Reject zero or negative quantities and amounts.

    Raises:
        ValidationError: If ``value`` is not strictly positive.
    """

    if value <= Decimal("0"):
        log.error("%s validation failed: %s", label, value)
        raise ValidationError(f"{label} must be greater than zero")


def require_text(value: Optional[str], *, label: str) -> str:
    """Return ``value`` stripped, rejecting blank input."""

    text = (value or "").strip()
    if not text:
        log.error("%s validation failed: blank value", label)
        raise ValidationError(f"{label} is required")
    return text


def ensure_day_open(store: ClosingStore, date_str: str) -> None:
    """Refuse ledger writes for a date whose closing is final.

    Raises:
        ConflictError: If ``date_str`` already has a final closing record.
    """

    store.refresh()
    if any(record.closing_type == ClosingType.FINAL.value for record in store.find_closing_records(date_str)):
        log.warning("Ledger write refused: %s is already closed", date_str)
        raise ConflictError(f"Closing already finalized for {date_str}")


def _build_movement(
    *,
    prefix: str,
    date_str: str,
    timestamp: datetime,
    movement_type: MovementType,
    product_id: Optional[str] = None,
    quantity: Decimal = Decimal("0"),
    amount: Decimal = Decimal("0.00"),
    category: Optional[str] = None,
    note: Optional[str] = None,
    user_id: Optional[str] = None,
) -> MovementRow:
    return MovementRow(
        movement_id=generate_record_id(prefix=prefix, when=timestamp),
        date_str=date_str,
        created_at=timestamp.isoformat(),
        movement_type=movement_type.value,
        product_id=product_id,
        quantity=quantity,
        amount=amount,
        category=category,
        note=note,
        reversal_of=None,
        reversal_reason=None,
        recorded_by=user_id,
    )


def record_stock_in(
    store: ClosingStore,
    business_date: DateLike,
    command: StockInCommand,
    *,
    user_id: Optional[str] = None,
) -> MovementRow:
    """Append a stock receipt for an active product.

    Raises:
        ValidationError: If the quantity is not positive or the product is
            inactive.
        MissingReferenceError: If the product does not exist.
        ConflictError: If the date is already closed.
    """

    date_str = to_date_str(business_date)
    require_positive(command.quantity, label="Quantity")
    product = store.get_product(command.product_id)
    if not product.is_active:
        log.warning("Attempted stock-in on inactive product '%s'", command.product_id)
        raise ValidationError(f"Product '{command.product_id}' is inactive")
    ensure_day_open(store, date_str)

    movement = _build_movement(
        prefix="M",
        date_str=date_str,
        timestamp=resolve_timestamp(command.timestamp),
        movement_type=MovementType.STOCK_IN,
        product_id=command.product_id,
        quantity=command.quantity,
        note=command.note,
        user_id=user_id,
    )
    store.insert_movement(movement)
    log.info(
        "Recorded STOCK_IN '%s' for product '%s' (quantity=%s)",
        movement.movement_id,
        command.product_id,
        command.quantity,
    )
    return movement


def _record_cash(
    store: ClosingStore,
    business_date: DateLike,
    *,
    movement_type: MovementType,
    amount: Decimal,
    category: Optional[str],
    note: Optional[str],
    timestamp: Optional[datetime],
    user_id: Optional[str],
) -> MovementRow:
    date_str = to_date_str(business_date)
    require_positive(amount, label="Amount")
    ensure_day_open(store, date_str)

    movement = _build_movement(
        prefix="M",
        date_str=date_str,
        timestamp=resolve_timestamp(timestamp),
        movement_type=movement_type,
        amount=amount,
        category=category,
        note=note,
        user_id=user_id,
    )
    store.insert_movement(movement)
    log.info(
        "Recorded %s '%s' on %s (amount=%s)",
        movement_type.value,
        movement.movement_id,
        date_str,
        amount,
    )
    return movement


def record_expense(
    store: ClosingStore,
    business_date: DateLike,
    command: ExpenseCommand,
    *,
    user_id: Optional[str] = None,
) -> MovementRow:
    category = require_text(command.category, label="Category")
    return _record_cash(
        store,
        business_date,
        movement_type=MovementType.EXPENSE,
        amount=command.amount,
        category=category,
        note=command.note,
        timestamp=command.timestamp,
        user_id=user_id,
    )


def record_income(
    store: ClosingStore,
    business_date: DateLike,
    command: IncomeCommand,
    *,
    user_id: Optional[str] = None,
) -> MovementRow:
    category = require_text(command.category, label="Category")
    return _record_cash(
        store,
        business_date,
        movement_type=MovementType.INCOME,
        amount=command.amount,
        category=category,
        note=command.note,
        timestamp=command.timestamp,
        user_id=user_id,
    )


def record_withdrawal(
    store: ClosingStore,
    business_date: DateLike,
    command: WithdrawalCommand,
    *,
    user_id: Optional[str] = None,
) -> MovementRow:
    """Append a cash withdrawal.

    Withdrawals are not capped against the cash expected in the drawer.
    """

    return _record_cash(
        store,
        business_date,
        movement_type=MovementType.WITHDRAWAL,
        amount=command.amount,
        category=None,
        note=(command.reason or "").strip() or "Cash withdrawal",
        timestamp=command.timestamp,
        user_id=user_id,
    )


def validate_reversal_target(target: MovementRow, siblings: Iterable[MovementRow]) -> None:
    """Confirm ``target`` may be reversed.

    Args:
        target (MovementRow): Movement selected for reversal.
        siblings (Iterable[MovementRow]): Movements of the same date, used to
            detect an existing reversal.

    Raises:
        ValidationError: If ``target`` is itself a reversal or was already
            reversed.
    """

    if target.is_reversal:
        log.error("Cannot reverse movement '%s' because it is a reversal", target.movement_id)
        raise ValidationError("Cannot reverse a reversal entry")
    if any(row.reversal_of == target.movement_id for row in siblings):
        log.error("Movement '%s' has already been reversed", target.movement_id)
        raise ValidationError(f"Movement '{target.movement_id}' has already been reversed")


def build_reversal(
    target: MovementRow,
    *,
    reason: str,
    timestamp: datetime,
    user_id: Optional[str],
) -> MovementRow:
    """Create the movement that negates ``target``.

    The reversal is dated on the original's business day so that day's net
    totals cancel out, and keeps the original's type, product and category.
    """

    return MovementRow(
        movement_id=generate_record_id(prefix="R", when=timestamp),
        date_str=target.date_str,
        created_at=timestamp.isoformat(),
        movement_type=target.movement_type,
        product_id=target.product_id,
        quantity=-target.quantity,
        amount=-target.amount,
        category=target.category,
        note=target.note,
        reversal_of=target.movement_id,
        reversal_reason=reason,
        recorded_by=user_id,
    )


def reverse_movement(
    store: ClosingStore,
    command: ReversalCommand,
    *,
    user_id: Optional[str] = None,
) -> MovementRow:
    """Append the reversal of a prior movement.

    Raises:
        ValidationError: If the reason is blank, the target is a reversal, or
            the target was already reversed.
        MissingReferenceError: If the movement id is unknown.
        ConflictError: If the movement's date is already closed.
    """

    reason = require_text(command.reason, label="Reversal reason")
    target = store.get_movement(command.movement_id)
    validate_reversal_target(target, store.find_movements(target.date_str, target.movement_type))
    ensure_day_open(store, target.date_str)

    reversal = build_reversal(
        target,
        reason=reason,
        timestamp=resolve_timestamp(command.timestamp),
        user_id=user_id,
    )
    store.insert_movement(reversal)
    log.info(
        "Recorded reversal '%s' of %s '%s'",
        reversal.movement_id,
        target.movement_type,
        target.movement_id,
    )
    return reversal
