"""Tests for the daily closing state machine."""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import replace
from decimal import Decimal
from unittest.mock import Mock

import pytest

from daybook_erp import ledger
from daybook_erp.closing import DailyClosing
from daybook_erp.constants import CashStatus, ClosingState, ClosingType
from daybook_erp.data_manager import ClosingRow
from daybook_erp.errors import (
    ConflictError,
    IllegalTransitionError,
    MissingReferenceError,
    PartialLockFailure,
    PersistenceError,
    ValidationError,
)
from daybook_erp.ledger import LedgerSnapshot
from daybook_erp.persistence import ClosingStore, WorkbookStore

from conftest import make_product

DAY = "2024-03-01"
NEXT_DAY = "2024-03-02"


@pytest.fixture
def draft(stocked_store, clock) -> DailyClosing:
    """A seeded day with 5 units of A received."""

    ledger.record_stock_in(
        stocked_store, DAY, ledger.StockInCommand(product_id="A", quantity=Decimal("5"), timestamp=clock())
    )
    closing = DailyClosing.load(stocked_store, DAY)
    closing.seed_opening_cash("500", user_id="U1", timestamp=clock())
    return closing


def _count_everything(closing: DailyClosing) -> None:
    closing.set_remaining("A", "5")
    closing.set_remaining("B", "4")
    closing.set_cash_counted("700")


# ---------------------------------------------------------------------------
# Loading and seeding
# ---------------------------------------------------------------------------


def test_first_day_starts_unset(stocked_store):
    """Without a prior final closing there is no opening cash yet."""

    closing = DailyClosing.load(stocked_store, DAY)
    assert closing.state is ClosingState.UNSET
    assert closing.opening_cash is None
    assert closing.is_first_time
    assert not closing.can_lock
    assert "opening cash not seeded" in closing.lock_blockers()


def test_seed_opening_cash_moves_to_draft_and_persists(draft, stocked_store):
    """Seeding writes the draft record, so a reload starts in DRAFT."""

    assert draft.state is ClosingState.DRAFT
    assert draft.opening_cash == Decimal("500")

    reloaded = DailyClosing.load(stocked_store, DAY)
    assert reloaded.state is ClosingState.DRAFT
    assert reloaded.opening_cash == Decimal("500")
    (record,) = stocked_store.find_closing_records(DAY)
    assert record.closing_type == ClosingType.PARTIAL.value


def test_seed_rejects_negative_amount(stocked_store):
    """A negative seed fails validation and the state stays UNSET."""

    closing = DailyClosing.load(stocked_store, DAY)
    with pytest.raises(ValidationError):
        closing.seed_opening_cash("-1", user_id="U1")
    assert closing.state is ClosingState.UNSET
    assert stocked_store.find_closing_records(DAY) == []


def test_seed_only_allowed_once(draft):
    """Opening cash cannot be seeded again once in DRAFT."""

    with pytest.raises(IllegalTransitionError):
        draft.seed_opening_cash("600", user_id="U1")


def test_seed_failure_keeps_state(stocked_store, monkeypatch):
    """A failed write leaves the session UNSET."""

    closing = DailyClosing.load(stocked_store, DAY)

    def _fail(record):
        raise PersistenceError("disk full")

    monkeypatch.setattr(stocked_store, "insert_closing", _fail)
    with pytest.raises(PersistenceError):
        closing.seed_opening_cash("100", user_id="U1")
    assert closing.state is ClosingState.UNSET
    assert closing.opening_cash is None


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------


def test_save_draft_requires_draft_state(stocked_store):
    """save_draft is an illegal transition before opening cash exists."""

    closing = DailyClosing.load(stocked_store, DAY)
    closing.set_remaining("A", "1")
    with pytest.raises(IllegalTransitionError):
        closing.save_draft(user_id="U1")


def test_save_draft_requires_some_input(draft):
    """An empty draft is refused."""

    assert not draft.can_save_draft
    with pytest.raises(ValidationError):
        draft.save_draft(user_id="U1")


def test_save_draft_round_trips_counts(draft, stocked_store, clock):
    """Saved counts and counted cash are restored on reload."""

    draft.set_remaining("A", "7")
    draft.set_cash_counted("650")
    record = draft.save_draft(user_id="U1", timestamp=clock())

    assert record.closing_type == ClosingType.PARTIAL.value
    assert record.total_revenue == Decimal("180")
    assert len(stocked_store.find_closing_records(DAY)) == 1

    reloaded = DailyClosing.load(stocked_store, DAY)
    assert reloaded.table.line("A").remaining == Decimal("7")
    assert reloaded.missing_counts() == ["B"]
    assert reloaded.cash_counted == Decimal("650")


def test_save_draft_overwrites_previous_draft(draft, stocked_store, clock):
    """Repeated saves update the same partial record."""

    draft.set_remaining("A", "7")
    first = draft.save_draft(user_id="U1", timestamp=clock())
    draft.set_remaining("A", "6")
    second = draft.save_draft(user_id="U2", timestamp=clock())

    assert first.closing_id == second.closing_id
    (stored,) = stocked_store.find_closing_records(DAY)
    assert stored.total_revenue == Decimal("190")
    assert stored.closed_by == "U2"


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


def test_lock_rejected_when_a_count_is_missing(draft):
    """Every product needs a count even with cash counted and opening seeded."""

    draft.set_remaining("A", "5")
    draft.set_cash_counted("700")
    with pytest.raises(ValidationError):
        draft.lock(user_id="U1")
    assert draft.state is ClosingState.DRAFT


def test_lock_rejected_without_counted_cash(draft):
    """Counted cash is required to lock."""

    draft.set_remaining("A", "5")
    draft.set_remaining("B", "4")
    assert not draft.can_lock
    with pytest.raises(ValidationError):
        draft.lock(user_id="U1")


def test_lock_rolls_stock_forward_and_freezes_day(draft, stocked_store, clock):
    """Locking sets opening stock to the counts and writes a final record."""

    _count_everything(draft)
    assert draft.can_lock
    record = draft.lock(user_id="U1", timestamp=clock())

    assert record.closing_type == ClosingType.FINAL.value
    assert draft.state is ClosingState.LOCKED_PENDING_HANDOFF
    assert stocked_store.get_product("A").opening_stock == Decimal("5")
    assert stocked_store.get_product("B").opening_stock == Decimal("4")
    assert draft.reconciliation().status is CashStatus.MATCH

    with pytest.raises(IllegalTransitionError):
        draft.lock(user_id="U1")
    with pytest.raises(IllegalTransitionError):
        draft.save_draft(user_id="U1")
    with pytest.raises(IllegalTransitionError):
        draft.set_remaining("A", "1")


def test_locked_day_reloads_from_stored_record(draft, stocked_store, clock):
    """A reloaded locked day uses the stored totals and snapshot."""

    _count_everything(draft)
    draft.lock(user_id="U1", timestamp=clock())

    reloaded = DailyClosing.load(stocked_store, DAY)
    assert reloaded.state is ClosingState.LOCKED_PENDING_HANDOFF
    assert reloaded.table is None
    assert reloaded.counted_remaining() == {"A": Decimal("5"), "B": Decimal("4")}
    summary = reloaded.summary()
    assert summary.total_revenue == Decimal("200")
    assert summary.expected_cash == Decimal("700")
    assert summary.status is CashStatus.MATCH
    assert summary.is_locked and not summary.can_lock


def test_stale_session_cannot_save_or_lock(draft, stocked_store, clock):
    """A session loaded before another one locked gets ConflictError."""

    stale = DailyClosing.load(stocked_store, DAY)
    _count_everything(stale)

    _count_everything(draft)
    draft.lock(user_id="U1", timestamp=clock())

    with pytest.raises(ConflictError):
        stale.save_draft(user_id="U2")
    with pytest.raises(ConflictError):
        stale.lock(user_id="U2")
    assert stale.state is ClosingState.DRAFT


def test_session_on_another_store_sees_lock_from_disk(draft, config_file, clock):
    """Two stores opened on one workbook cannot both finalize the day."""

    other_store = WorkbookStore.from_config(config_file)
    other = DailyClosing.load(other_store, DAY)
    assert other.state is ClosingState.DRAFT
    _count_everything(other)

    _count_everything(draft)
    draft.lock(user_id="U1", timestamp=clock())

    with pytest.raises(ConflictError):
        other.lock(user_id="U2", timestamp=clock())
    with pytest.raises(ConflictError):
        ledger.record_expense(
            other_store, DAY, ledger.ExpenseCommand(amount=Decimal("5"), category="Ice", timestamp=clock())
        )

    reopened = WorkbookStore.from_config(config_file)
    finals = [record for record in reopened.find_closing_records(DAY) if record.closing_type == ClosingType.FINAL.value]
    assert [record.closed_by for record in finals] == ["U1"]


def test_handoff_from_another_store_is_not_overwritten(draft, config_file, clock):
    """A second session sees a handoff written through another store."""

    _count_everything(draft)
    draft.lock(user_id="U1", timestamp=clock())
    other = DailyClosing.load(WorkbookStore.from_config(config_file), DAY)
    assert other.state is ClosingState.LOCKED_PENDING_HANDOFF

    draft.set_next_day_opening_cash("700", timestamp=clock())
    with pytest.raises(ConflictError):
        other.set_next_day_opening_cash("800", timestamp=clock())
    assert DailyClosing.load(WorkbookStore.from_config(config_file), NEXT_DAY).opening_cash == Decimal("700")


def test_partial_lock_failure_rolls_back(draft, stocked_store, monkeypatch):
    """A failed product update aborts the lock and discards earlier updates."""

    _count_everything(draft)
    original = stocked_store.update_product_stock

    def _flaky(product_id, quantity):
        if product_id == "B":
            raise PersistenceError("disk full")
        original(product_id, quantity)

    monkeypatch.setattr(stocked_store, "update_product_stock", _flaky)
    with pytest.raises(PartialLockFailure) as excinfo:
        draft.lock(user_id="U1")

    failure = excinfo.value
    assert failure.failed_product_ids == ("B",)
    assert failure.updated_product_ids == ("A",)
    assert failure.rolled_back is True
    assert draft.state is ClosingState.DRAFT
    assert stocked_store.get_product("A").opening_stock == Decimal("20")
    assert all(r.closing_type == ClosingType.PARTIAL.value for r in stocked_store.find_closing_records(DAY))


def test_final_record_failure_rolls_back_stock(draft, stocked_store, monkeypatch):
    """If the final record cannot be written no product update survives."""

    _count_everything(draft)

    def _fail(closing_id, patch):
        raise PersistenceError("disk full")

    monkeypatch.setattr(stocked_store, "update_closing", _fail)
    with pytest.raises(PersistenceError):
        draft.lock(user_id="U1")
    assert draft.state is ClosingState.DRAFT
    assert stocked_store.get_product("A").opening_stock == Decimal("20")


# ---------------------------------------------------------------------------
# Handoff
# ---------------------------------------------------------------------------


def test_next_day_cash_requires_lock(draft):
    """The handoff is only allowed after locking."""

    with pytest.raises(IllegalTransitionError):
        draft.set_next_day_opening_cash("700")


def test_next_day_cash_hands_off_once(draft, stocked_store, clock):
    """Handing off moves to LOCKED_HANDED_OFF and cannot be repeated."""

    _count_everything(draft)
    draft.lock(user_id="U1", timestamp=clock())
    stale = DailyClosing.load(stocked_store, DAY)

    record = draft.set_next_day_opening_cash("700", timestamp=clock())
    assert record.next_day_opening_cash == Decimal("700")
    assert draft.state is ClosingState.LOCKED_HANDED_OFF
    with pytest.raises(IllegalTransitionError):
        draft.set_next_day_opening_cash("800")
    with pytest.raises(ConflictError):
        stale.set_next_day_opening_cash("800")

    assert DailyClosing.load(stocked_store, DAY).state is ClosingState.LOCKED_HANDED_OFF


def test_next_day_starts_in_draft_with_handoff(draft, stocked_store, clock):
    """The following day picks up the handed-off cash."""

    _count_everything(draft)
    draft.lock(user_id="U1", timestamp=clock())
    draft.set_next_day_opening_cash("650", timestamp=clock())

    tomorrow = DailyClosing.load(stocked_store, NEXT_DAY)
    assert tomorrow.state is ClosingState.DRAFT
    assert tomorrow.opening_cash == Decimal("650")
    assert not tomorrow.is_first_time
    with pytest.raises(IllegalTransitionError):
        tomorrow.seed_opening_cash("1", user_id="U1")


def test_locked_day_without_handoff_leaves_next_day_unset(draft, stocked_store, clock):
    """Until the handoff is recorded the next day has no opening cash."""

    _count_everything(draft)
    draft.lock(user_id="U1", timestamp=clock())
    assert DailyClosing.load(stocked_store, NEXT_DAY).state is ClosingState.UNSET


def test_late_handoff_keeps_seeded_opening_cash(draft, stocked_store, clock):
    """Opening cash seeded for a day survives a handoff recorded afterwards."""

    _count_everything(draft)
    draft.lock(user_id="U1", timestamp=clock())

    tomorrow = DailyClosing.load(stocked_store, NEXT_DAY)
    tomorrow.seed_opening_cash("300", user_id="U1", timestamp=clock())
    tomorrow.set_cash_counted("300")
    tomorrow.save_draft(user_id="U1", timestamp=clock())

    draft.set_next_day_opening_cash("700", timestamp=clock())

    reloaded = DailyClosing.load(stocked_store, NEXT_DAY)
    assert reloaded.state is ClosingState.DRAFT
    assert reloaded.opening_cash == Decimal("300")
    assert reloaded.is_first_time
    record = reloaded.save_draft(user_id="U1", timestamp=clock())
    assert record.opening_cash == Decimal("300")


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def test_summary_reports_live_draft_figures(draft, stocked_store, clock):
    """The summary reflects in-memory edits and ledger cash totals."""

    ledger.record_expense(
        stocked_store, DAY, ledger.ExpenseCommand(amount=Decimal("50"), category="Ice", timestamp=clock())
    )
    closing = DailyClosing.load(stocked_store, DAY)
    closing.set_remaining("A", "5")
    closing.set_cash_counted("640")

    summary = closing.summary()
    assert summary.state is ClosingState.DRAFT
    assert summary.total_revenue == Decimal("200")
    assert summary.total_expenses == Decimal("50")
    assert summary.expected_cash == Decimal("650")
    assert summary.difference == Decimal("-10")
    assert summary.status is CashStatus.SHORTAGE
    assert summary.missing_counts == ("B",)
    assert summary.has_draft
    assert summary.can_save_draft and not summary.can_lock


# ---------------------------------------------------------------------------
# Mock-backed stores
# ---------------------------------------------------------------------------


def _synthetic_day(prior_handoff: str) -> LedgerSnapshot:
    prior = replace(
        _final_record("C0", "2024-02-29"),
        next_day_opening_cash=Decimal(prior_handoff),
    )
    return LedgerSnapshot(
        business_date=DAY,
        products=[make_product("A", price="10", opening="20"), make_product("B", price="2", opening="3")],
        stock_in=[],
        expenses=[],
        income=[],
        withdrawals=[],
        closings=[],
        prior_final=prior,
    )


def _final_record(closing_id: str, date_str: str) -> ClosingRow:
    return ClosingRow(
        closing_id=closing_id,
        date_str=date_str,
        closing_type=ClosingType.FINAL.value,
        opening_cash=Decimal("0"),
        total_revenue=Decimal("0"),
        total_income=Decimal("0"),
        total_expenses=Decimal("0"),
        cash_counted=Decimal("0"),
        total_withdrawals=Decimal("0"),
        report_json=None,
        next_day_opening_cash=None,
        closed_by="U0",
        notes=None,
        created_at=f"{date_str}T20:00:00+00:00",
        updated_at=None,
    )


def test_lock_reports_no_rollback_for_plain_store():
    """Stores without rollback support report rolled_back=False."""

    store = Mock(spec=ClosingStore)
    store.find_closing_records.return_value = []
    store.atomic.return_value = nullcontext()
    store.update_product_stock.side_effect = [None, MissingReferenceError("B vanished")]

    closing = DailyClosing(store, _synthetic_day("100"))
    assert closing.state is ClosingState.DRAFT
    closing.set_remaining("A", "18")
    closing.set_remaining("B", "3")
    closing.set_cash_counted("120")

    with pytest.raises(PartialLockFailure) as excinfo:
        closing.lock(user_id="U1")

    assert excinfo.value.rolled_back is False
    assert excinfo.value.failed_product_ids == ("B",)
    store.insert_closing.assert_not_called()
    store.update_closing.assert_not_called()
    assert closing.state is ClosingState.DRAFT


def test_lock_writes_final_record_through_store():
    """A clean lock inserts one final record carrying the full snapshot."""

    store = Mock(spec=ClosingStore)
    store.find_closing_records.return_value = []
    store.atomic.return_value = nullcontext()
    store.insert_closing.side_effect = lambda record: record

    closing = DailyClosing(store, _synthetic_day("100"))
    closing.set_remaining("A", "18")
    closing.set_remaining("B", "3")
    closing.set_cash_counted("120")
    record = closing.lock(user_id="U1")

    assert store.update_product_stock.call_count == 2
    assert record.closing_type == ClosingType.FINAL.value
    assert record.total_revenue == Decimal("20")
    assert record.opening_cash == Decimal("100")
    assert record.report_json == '{"closingStock":[{"productId":"A","newOpeningStock":18},{"productId":"B","newOpeningStock":3}]}'
    assert closing.state is ClosingState.LOCKED_PENDING_HANDOFF
