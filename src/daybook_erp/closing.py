"""Closing state machine for one business day.

States::

    UNSET  --seed_opening_cash-->  DRAFT  --lock-->  LOCKED_PENDING_HANDOFF
                                                      --set_next_day_opening_cash-->
                                                   LOCKED_HANDED_OFF

A day starts in ``DRAFT`` directly when the previous final closing handed
off opening cash, or when today's draft already carries a seeded amount.
``save_draft`` may run any number of times while in ``DRAFT`` and overwrites
the day's partial record. ``lock`` rolls every product's opening stock
forward, writes the final record and freezes the day.

:class:`DailyClosing` is the only writer of closing records and of product
opening stock. Every transition performs its writes first and only then
updates in-memory state, so a failed write leaves the session exactly as it
was. The current user and the business date are always explicit inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from . import log
from .cash_calculator import CashInputs, CashReconciliation, inputs_from_record, reconcile, reconcile_record
from .constants import CashStatus, ClosingState, ClosingType
from .data_manager import ClosingRow, decode_closing_snapshot, encode_closing_snapshot
from .errors import ClosingError, ConflictError, IllegalTransitionError, PartialLockFailure, ValidationError
from .ledger import DateLike, LedgerSnapshot, load_ledger, to_decimal
from .persistence import ClosingStore, generate_record_id, resolve_timestamp
from .stock_table import StockLine, StockReconciliationTable, StockTotals


ZERO = Decimal("0")


@dataclass(frozen=True)
class ClosingSummary:
    """Read-only status of a business day, as shown on a dashboard."""

    business_date: str
    state: ClosingState
    opening_cash: Optional[Decimal]
    total_revenue: Decimal
    total_income: Decimal
    total_expenses: Decimal
    total_withdrawals: Decimal
    expected_cash: Optional[Decimal]
    cash_counted: Optional[Decimal]
    difference: Optional[Decimal]
    status: Optional[CashStatus]
    next_day_opening_cash: Optional[Decimal]
    has_draft: bool
    is_locked: bool
    missing_counts: Tuple[str, ...]
    can_save_draft: bool
    can_lock: bool


def _non_negative(value: object, *, label: str) -> Decimal:
    amount = to_decimal(value, label=label)
    if amount < ZERO:
        log.error("%s validation failed: %s", label, amount)
        raise ValidationError(f"{label} cannot be negative")
    return amount


class DailyClosing:
    """Closing session for a single business date.

    Build one with :meth:`load`; the constructor takes an already loaded
    :class:`LedgerSnapshot` so tests can feed synthetic days.
    """

    def __init__(self, store: ClosingStore, ledger: LedgerSnapshot) -> None:
        self._store = store
        self._ledger = ledger
        self.business_date = ledger.business_date

        final = ledger.final_closing
        self._record: Optional[ClosingRow] = final or ledger.latest_closing
        saved = decode_closing_snapshot(self._record.report_json) if self._record else {}

        if final is not None:
            # Product stock has already been rolled forward; a rebuilt table would be wrong.
            self._table: Optional[StockReconciliationTable] = None
            self._locked_remaining: Dict[str, Decimal] = saved
        else:
            self._table = StockReconciliationTable.build(ledger.products, ledger.received_by_product, saved)
            self._locked_remaining = {}

        self._cash_counted = self._record.cash_counted if self._record else None
        self._opening_cash, self._opening_source = self._resolve_opening_cash()
        self._state = self._resolve_state()
        log.info("Loaded closing for %s in state %s", self.business_date, self._state.value)

    @classmethod
    def load(cls, store: ClosingStore, business_date: DateLike) -> "DailyClosing":
        """Read the day's ledger and closing records and derive the state."""

        store.refresh()
        return cls(store, load_ledger(store, business_date))

    def _resolve_opening_cash(self) -> Tuple[Optional[Decimal], Optional[str]]:
        prior = self._ledger.prior_final
        handoff = prior.next_day_opening_cash if prior is not None else None
        final = self._ledger.final_closing
        if final is not None and final.opening_cash is not None:
            return final.opening_cash, "record"
        # Once today's record carries opening cash it is fixed, even if a handoff arrives later.
        if self._record is not None and self._record.opening_cash is not None:
            source = "handoff" if handoff == self._record.opening_cash else "seeded"
            return self._record.opening_cash, source
        if handoff is not None:
            return handoff, "handoff"
        return None, None

    def _resolve_state(self) -> ClosingState:
        final = self._ledger.final_closing
        if final is not None:
            if final.next_day_opening_cash is not None:
                return ClosingState.LOCKED_HANDED_OFF
            return ClosingState.LOCKED_PENDING_HANDOFF
        if self._opening_cash is None:
            return ClosingState.UNSET
        return ClosingState.DRAFT

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> ClosingState:
        return self._state

    @property
    def ledger(self) -> LedgerSnapshot:
        return self._ledger

    @property
    def record(self) -> Optional[ClosingRow]:
        return self._record

    @property
    def opening_cash(self) -> Optional[Decimal]:
        return self._opening_cash

    @property
    def is_first_time(self) -> bool:
        """True when opening cash had to be (or still has to be) seeded by hand."""

        return self._opening_source in (None, "seeded")

    @property
    def cash_counted(self) -> Optional[Decimal]:
        return self._cash_counted

    @property
    def table(self) -> Optional[StockReconciliationTable]:
        """The editable stock table; ``None`` for a day that was loaded already locked."""

        return self._table

    def counted_remaining(self) -> Dict[str, Decimal]:
        if self._state.is_locked:
            return dict(self._locked_remaining)
        return self._editable_table().remaining_counts()

    def stock_totals(self) -> Optional[StockTotals]:
        return self._table.compute_totals() if self._table is not None else None

    def cash_inputs(self) -> CashInputs:
        if self._state.is_locked and self._record is not None:
            return inputs_from_record(
                self._record,
                opening_cash=self._opening_cash,
                total_income=self._ledger.total_income,
                total_expenses=self._ledger.total_expenses,
            )
        return CashInputs(
            opening_cash=self._opening_cash if self._opening_cash is not None else ZERO,
            total_revenue=self._editable_table().compute_totals().total_revenue,
            total_income=self._ledger.total_income,
            total_expenses=self._ledger.total_expenses,
            total_withdrawals=self._ledger.total_withdrawals,
        )

    def reconciliation(self) -> Optional[CashReconciliation]:
        """Counted cash against expected cash; ``None`` until cash is counted.

        A locked day is reconciled from its stored record only.
        """

        if self._state.is_locked and self._record is not None:
            return reconcile_record(
                self._record,
                opening_cash=self._opening_cash,
                total_income=self._ledger.total_income,
                total_expenses=self._ledger.total_expenses,
            )
        if self._cash_counted is None:
            return None
        return reconcile(self.cash_inputs(), self._cash_counted)

    def missing_counts(self) -> List[str]:
        if self._table is None:
            return []
        return self._table.missing_counts()

    @property
    def can_save_draft(self) -> bool:
        if self._state is not ClosingState.DRAFT:
            return False
        return self._editable_table().has_any_count or self._cash_counted is not None

    def lock_blockers(self) -> List[str]:
        """Human-readable reasons why :meth:`lock` would be refused right now."""

        if self._state.is_locked:
            return ["closing already finalized"]
        blockers: List[str] = []
        if self._opening_cash is None:
            blockers.append("opening cash not seeded")
        missing = self.missing_counts()
        if missing:
            blockers.append("remaining stock not counted for: " + ", ".join(missing))
        if self._cash_counted is None:
            blockers.append("cash in drawer not counted")
        return blockers

    @property
    def can_lock(self) -> bool:
        return self._state is ClosingState.DRAFT and not self.lock_blockers()

    def summary(self) -> ClosingSummary:
        inputs = self.cash_inputs()
        result = self.reconciliation()
        return ClosingSummary(
            business_date=self.business_date,
            state=self._state,
            opening_cash=self._opening_cash,
            total_revenue=inputs.total_revenue,
            total_income=inputs.total_income,
            total_expenses=inputs.total_expenses,
            total_withdrawals=inputs.total_withdrawals,
            expected_cash=result.expected_cash if result else None,
            cash_counted=result.cash_counted if result else self._cash_counted,
            difference=result.difference if result else None,
            status=result.status if result else None,
            next_day_opening_cash=self._record.next_day_opening_cash if self._record else None,
            has_draft=self._record is not None and self._record.closing_type == ClosingType.PARTIAL.value,
            is_locked=self._state.is_locked,
            missing_counts=tuple(self.missing_counts()),
            can_save_draft=self.can_save_draft,
            can_lock=self.can_lock,
        )

    # ------------------------------------------------------------------
    # In-memory edits
    # ------------------------------------------------------------------

    def _editable_table(self) -> StockReconciliationTable:
        if self._table is None:
            raise IllegalTransitionError(f"Closing for {self.business_date} is locked")
        return self._table

    def _require_unlocked(self, action: str) -> None:
        if self._state.is_locked:
            log.warning("Rejected %s: closing for %s is locked", action, self.business_date)
            raise IllegalTransitionError(f"Cannot {action}: closing for {self.business_date} is locked")

    def _require_state(self, allowed: ClosingState, action: str) -> None:
        if self._state is not allowed:
            log.warning(
                "Rejected %s for %s in state %s",
                action,
                self.business_date,
                self._state.value,
            )
            raise IllegalTransitionError(f"Cannot {action} in state {self._state.value}")

    def set_remaining(self, product_id: str, value: object) -> StockLine:
        """Enter (or clear with ``None``) a product's counted remaining stock."""

        self._require_unlocked("edit remaining stock")
        return self._editable_table().set_remaining(product_id, value)

    def set_cash_counted(self, amount: object) -> None:
        """Enter (or clear with ``None``) the cash counted in the drawer."""

        self._require_unlocked("edit counted cash")
        self._cash_counted = None if amount is None else _non_negative(amount, label="Counted cash")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _fresh_records(self) -> List[ClosingRow]:
        """Re-read the day's records and refuse to continue if one is final."""

        self._store.refresh()
        records = self._store.find_closing_records(self.business_date)
        if any(record.closing_type == ClosingType.FINAL.value for record in records):
            log.warning("Closing for %s was finalized elsewhere", self.business_date)
            raise ConflictError(f"Closing already finalized for {self.business_date}")
        return records

    def _closing_fields(self, *, closing_type: ClosingType, remaining: Dict[str, Decimal], user_id: Optional[str], stamp: str) -> Dict[str, Any]:
        inputs = self.cash_inputs()
        return {
            "closing_type": closing_type.value,
            "opening_cash": self._opening_cash,
            "total_revenue": inputs.total_revenue,
            "total_income": inputs.total_income,
            "total_expenses": inputs.total_expenses,
            "cash_counted": self._cash_counted,
            "total_withdrawals": inputs.total_withdrawals,
            "report_json": encode_closing_snapshot(remaining),
            "closed_by": user_id,
            "updated_at": stamp,
        }

    def _write_record(self, records: List[ClosingRow], fields: Dict[str, Any], when: datetime) -> ClosingRow:
        # Last write wins: reuse the newest partial record of the day if any.
        target = records[0] if records else None
        if target is not None:
            return self._store.update_closing(target.closing_id, fields)

        record = ClosingRow(
            closing_id=generate_record_id(prefix="C", when=when),
            date_str=self.business_date,
            closing_type=fields["closing_type"],
            opening_cash=fields["opening_cash"],
            total_revenue=fields["total_revenue"],
            total_income=fields["total_income"],
            total_expenses=fields["total_expenses"],
            cash_counted=fields["cash_counted"],
            total_withdrawals=fields["total_withdrawals"],
            report_json=fields["report_json"],
            next_day_opening_cash=None,
            closed_by=fields["closed_by"],
            notes=None,
            created_at=when.isoformat(),
            updated_at=fields["updated_at"],
        )
        return self._store.insert_closing(record)

    def seed_opening_cash(self, amount: object, *, user_id: Optional[str], timestamp: Optional[datetime] = None) -> ClosingRow:
        """Set today's opening cash by hand when no handoff exists.

        The amount is stored on the day's draft record (created if needed) and
        cannot be changed afterwards.

        Raises:
            IllegalTransitionError: Unless the state is ``UNSET``.
            ValidationError: If ``amount`` is negative or not a number.
            ConflictError: If the day was finalized elsewhere.
            PersistenceError: If the store write fails.
        """

        self._require_state(ClosingState.UNSET, "seed opening cash")
        opening = _non_negative(amount, label="Opening cash")
        records = self._fresh_records()
        when = resolve_timestamp(timestamp)
        stamp = when.isoformat()

        if records:
            record = self._store.update_closing(
                records[0].closing_id,
                {"opening_cash": opening, "closed_by": user_id, "updated_at": stamp},
            )
        else:
            record = ClosingRow(
                closing_id=generate_record_id(prefix="C", when=when),
                date_str=self.business_date,
                closing_type=ClosingType.PARTIAL.value,
                opening_cash=opening,
                total_revenue=ZERO,
                total_income=None,
                total_expenses=None,
                cash_counted=None,
                total_withdrawals=ZERO,
                report_json=None,
                next_day_opening_cash=None,
                closed_by=user_id,
                notes=None,
                created_at=stamp,
                updated_at=stamp,
            )
            record = self._store.insert_closing(record)

        self._record = record
        self._opening_cash = opening
        self._opening_source = "seeded"
        self._state = ClosingState.DRAFT
        log.info("Seeded opening cash %s for %s", opening, self.business_date)
        return record

    def save_draft(self, *, user_id: Optional[str], timestamp: Optional[datetime] = None) -> ClosingRow:
        """Persist the current counts and totals as the day's partial record.

        Product stock is not touched. Calling again overwrites the draft.

        Raises:
            IllegalTransitionError: Unless the state is ``DRAFT``.
            ValidationError: If neither a remaining count nor counted cash
                has been entered.
            ConflictError: If the day was finalized elsewhere.
            PersistenceError: If the store write fails.
        """

        self._require_state(ClosingState.DRAFT, "save draft")
        if not self.can_save_draft:
            raise ValidationError("Nothing to save: enter a remaining count or the counted cash first")
        records = self._fresh_records()
        when = resolve_timestamp(timestamp)
        fields = self._closing_fields(
            closing_type=ClosingType.PARTIAL,
            remaining=self._editable_table().remaining_counts(),
            user_id=user_id,
            stamp=when.isoformat(),
        )
        record = self._write_record(records, fields, when)
        self._record = record
        log.info(
            "Saved draft closing '%s' for %s (revenue=%s, counted=%s)",
            record.closing_id,
            self.business_date,
            fields["total_revenue"],
            fields["cash_counted"],
        )
        return record

    def _roll_stock_forward(self, remaining: Dict[str, Decimal]) -> Tuple[List[str], List[str]]:
        updated: List[str] = []
        failed: List[str] = []
        for product_id, quantity in remaining.items():
            try:
                self._store.update_product_stock(product_id, quantity)
            except ClosingError as exc:
                log.error("Opening stock update failed for '%s': %s", product_id, exc)
                failed.append(product_id)
            else:
                updated.append(product_id)
        return updated, failed

    def lock(self, *, user_id: Optional[str], timestamp: Optional[datetime] = None) -> ClosingRow:
        """Finalize the day.

        Every product's opening stock becomes its counted remaining quantity
        and the day's record is written as ``final`` with the current totals.
        All writes happen inside ``store.atomic()``. If any product update
        fails the final record is not written and
        :class:`PartialLockFailure` is raised; stores that can roll back
        discard the product updates that did succeed.

        Raises:
            IllegalTransitionError: Unless the state is ``DRAFT``.
            ValidationError: If a count, the counted cash, or opening cash is
                missing.
            ConflictError: If the day was finalized elsewhere.
            PartialLockFailure: If some product stock updates failed.
            PersistenceError: If writing the final record fails.
        """

        self._require_state(ClosingState.DRAFT, "lock closing")
        blockers = self.lock_blockers()
        if blockers:
            log.warning("Lock refused for %s: %s", self.business_date, "; ".join(blockers))
            raise ValidationError("Cannot lock closing: " + "; ".join(blockers))

        records = self._fresh_records()
        when = resolve_timestamp(timestamp)
        remaining = self._editable_table().remaining_counts()
        fields = self._closing_fields(
            closing_type=ClosingType.FINAL,
            remaining=remaining,
            user_id=user_id,
            stamp=when.isoformat(),
        )

        with self._store.atomic():
            updated, failed = self._roll_stock_forward(remaining)
            if failed:
                rolled_back = bool(getattr(self._store, "supports_rollback", False))
                log.error(
                    "Lock of %s failed for products %s (%d updated, rolled back: %s)",
                    self.business_date,
                    ", ".join(failed),
                    len(updated),
                    rolled_back,
                )
                raise PartialLockFailure(
                    f"Opening stock update failed for: {', '.join(failed)}",
                    failed_product_ids=failed,
                    updated_product_ids=updated,
                    rolled_back=rolled_back,
                )
            record = self._write_record(records, fields, when)

        self._record = record
        self._locked_remaining = dict(remaining)
        self._state = ClosingState.LOCKED_PENDING_HANDOFF
        log.info(
            "Locked closing '%s' for %s (revenue=%s, counted=%s, products=%d)",
            record.closing_id,
            self.business_date,
            fields["total_revenue"],
            fields["cash_counted"],
            len(updated),
        )
        return record

    def set_next_day_opening_cash(self, amount: object, *, timestamp: Optional[datetime] = None) -> ClosingRow:
        """Hand the drawer over to the next day; allowed once per locked day.

        Raises:
            IllegalTransitionError: Unless the state is
                ``LOCKED_PENDING_HANDOFF``.
            ValidationError: If ``amount`` is negative or not a number.
            ConflictError: If another session already set the handoff.
            PersistenceError: If the store write fails.
        """

        self._require_state(ClosingState.LOCKED_PENDING_HANDOFF, "set next day opening cash")
        handoff = _non_negative(amount, label="Next day opening cash")
        current = self._record
        self._store.refresh()
        fresh = self._store.find_closing_records(self.business_date)
        for record in fresh:
            if record.closing_type == ClosingType.FINAL.value:
                current = record
                break
        if current is None or current.next_day_opening_cash is not None:
            log.warning("Next day opening cash for %s was already set", self.business_date)
            raise ConflictError(f"Next day opening cash already set for {self.business_date}")

        stamp = resolve_timestamp(timestamp).isoformat()
        record = self._store.update_closing(
            current.closing_id,
            {"next_day_opening_cash": handoff, "updated_at": stamp},
        )
        self._record = record
        self._state = ClosingState.LOCKED_HANDED_OFF
        log.info("Handed off %s opening cash from %s", handoff, self.business_date)
        return record
