"""Enumerations and policy constants shared across the daybook modules.

The data access layer, the reconciliation engine, and the CLI all read their
identifiers from here so that sheet names, movement types, and closing states
have a single spelling.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Schema version that config.ini must declare before the store accepts writes.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Counted cash within this distance of expected cash is treated as a match.
CASH_TOLERANCE = Decimal("1")

# Version of the ReportJSON snapshot blob written on closing records.
SNAPSHOT_FORMAT_VERSION = 1


class MovementType(str, Enum):
    """Kinds of append-only ledger movements recorded for a business day."""

    STOCK_IN = "STOCK_IN"
    EXPENSE = "EXPENSE"
    INCOME = "INCOME"
    WITHDRAWAL = "WITHDRAWAL"


class ClosingType(str, Enum):
    """Persisted flavour of a closing record."""

    PARTIAL = "partial"
    FINAL = "final"


class ClosingState(str, Enum):
    """Lifecycle states of a business day's closing."""

    UNSET = "UNSET"
    DRAFT = "DRAFT"
    LOCKED_PENDING_HANDOFF = "LOCKED_PENDING_HANDOFF"
    LOCKED_HANDED_OFF = "LOCKED_HANDED_OFF"

    @property
    def is_locked(self) -> bool:
        return self in (ClosingState.LOCKED_PENDING_HANDOFF, ClosingState.LOCKED_HANDED_OFF)


class CashStatus(str, Enum):
    """Classification of counted cash against expected cash."""

    MATCH = "MATCH"
    SHORTAGE = "SHORTAGE"
    SURPLUS = "SURPLUS"


class SheetName(str, Enum):
    """Worksheet names managed by the data access layer."""

    PRODUCTS = "Products"
    MOVEMENTS = "Movements"
    CLOSINGS = "Closings"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CASH_TOLERANCE",
    "SNAPSHOT_FORMAT_VERSION",
    "MovementType",
    "ClosingType",
    "ClosingState",
    "CashStatus",
    "SheetName",
]
