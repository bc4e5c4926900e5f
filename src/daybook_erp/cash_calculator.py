"""Cash reconciliation for the end-of-day drawer count.

::

    expected_cash = opening_cash + total_revenue + total_income
                    - total_expenses - total_withdrawals
    difference    = cash_counted - expected_cash

A difference within ``CASH_TOLERANCE`` either way is a match; below it is a
shortage, above it a surplus. The functions here are pure. A locked day is
reconciled from the figures stored on its final record, never from a fresh
ledger read, because locking has already rolled product stock forward.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .constants import CASH_TOLERANCE, CashStatus
from .data_manager import ClosingRow


@dataclass(frozen=True)
class CashInputs:
    """The five figures that determine expected cash."""

    opening_cash: Decimal
    total_revenue: Decimal
    total_income: Decimal
    total_expenses: Decimal
    total_withdrawals: Decimal


@dataclass(frozen=True)
class CashReconciliation:
    expected_cash: Decimal
    cash_counted: Decimal
    difference: Decimal
    status: CashStatus

    @property
    def loss(self) -> Decimal:
        return -self.difference if self.status is CashStatus.SHORTAGE else Decimal("0")

    @property
    def extra(self) -> Decimal:
        return self.difference if self.status is CashStatus.SURPLUS else Decimal("0")


def expected_cash(inputs: CashInputs) -> Decimal:
    return (
        inputs.opening_cash
        + inputs.total_revenue
        + inputs.total_income
        - inputs.total_expenses
        - inputs.total_withdrawals
    )


def classify_difference(difference: Decimal, *, tolerance: Decimal = CASH_TOLERANCE) -> CashStatus:
    """Classify ``difference``; the tolerance bound itself still counts as a match."""

    if abs(difference) <= tolerance:
        return CashStatus.MATCH
    if difference < 0:
        return CashStatus.SHORTAGE
    return CashStatus.SURPLUS


def reconcile(inputs: CashInputs, cash_counted: Decimal) -> CashReconciliation:
    expected = expected_cash(inputs)
    difference = cash_counted - expected
    return CashReconciliation(
        expected_cash=expected,
        cash_counted=cash_counted,
        difference=difference,
        status=classify_difference(difference),
    )


def inputs_from_record(
    record: ClosingRow,
    *,
    opening_cash: Optional[Decimal] = None,
    total_income: Decimal = Decimal("0"),
    total_expenses: Decimal = Decimal("0"),
) -> CashInputs:
    """Rebuild :class:`CashInputs` from a persisted closing record.

    Revenue and withdrawals always come from the record. Opening cash, income
    and expenses come from the record when it stored them; the keyword
    arguments only fill in for records written before those columns existed.
    """

    return CashInputs(
        opening_cash=record.opening_cash if record.opening_cash is not None else (opening_cash or Decimal("0")),
        total_revenue=record.total_revenue,
        total_income=record.total_income if record.total_income is not None else total_income,
        total_expenses=record.total_expenses if record.total_expenses is not None else total_expenses,
        total_withdrawals=record.total_withdrawals,
    )


def reconcile_record(
    record: ClosingRow,
    *,
    opening_cash: Optional[Decimal] = None,
    total_income: Decimal = Decimal("0"),
    total_expenses: Decimal = Decimal("0"),
) -> Optional[CashReconciliation]:
    """Reconcile a persisted record; ``None`` when it holds no cash count."""

    if record.cash_counted is None:
        return None
    inputs = inputs_from_record(
        record,
        opening_cash=opening_cash,
        total_income=total_income,
        total_expenses=total_expenses,
    )
    return reconcile(inputs, record.cash_counted)
