"""Per-product stock reconciliation for a business day.

For every product the table tracks::

    available = opening + received
    sold      = max(0, available - remaining)   (0 until a count is entered)
    revenue   = sold * sale_price

Counted ``remaining`` values are clamped into ``[0, available]``: negative
counts are rejected, counts above ``available`` are capped (nothing sold).
All operations are pure in-memory updates; the table never touches the store.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from . import log
from .data_manager import ProductRow
from .errors import MissingReferenceError, ValidationError
from .ledger import to_decimal


ZERO = Decimal("0")


@dataclass(frozen=True)
class StockLine:
    """Derived stock state of one product."""

    product_id: str
    product_name: str
    sale_price: Decimal
    opening: Decimal
    received: Decimal
    remaining: Optional[Decimal] = None

    @property
    def available(self) -> Decimal:
        return self.opening + self.received

    @property
    def has_count(self) -> bool:
        return self.remaining is not None

    @property
    def sold(self) -> Decimal:
        if self.remaining is None:
            return ZERO
        return max(ZERO, self.available - self.remaining)

    @property
    def revenue(self) -> Decimal:
        return self.sold * self.sale_price


@dataclass(frozen=True)
class StockTotals:
    total_sold: Decimal
    total_revenue: Decimal


def clamp_remaining(value: Decimal, available: Decimal) -> Decimal:
    """Fit a counted quantity into ``[0, available]``.

    Raises:
        ValidationError: If ``value`` is negative.
    """

    if value < ZERO:
        log.error("Remaining count validation failed: %s", value)
        raise ValidationError("Remaining stock cannot be negative")
    return min(value, max(available, ZERO))


class StockReconciliationTable:
    """Ordered collection of :class:`StockLine` keyed by product id."""

    def __init__(self, lines: Iterable[StockLine]) -> None:
        self._lines: Dict[str, StockLine] = {line.product_id: line for line in lines}

    @classmethod
    def build(
        cls,
        products: Iterable[ProductRow],
        received_by_product: Mapping[str, Decimal],
        saved_remaining: Optional[Mapping[str, Decimal]] = None,
    ) -> "StockReconciliationTable":
        """Assemble the table from products, net receipts and saved counts.

        Saved counts for products that no longer exist are ignored; saved
        counts are clamped like live input so a stale draft cannot produce
        negative sales.
        """

        saved_remaining = saved_remaining or {}
        lines: List[StockLine] = []
        for product in products:
            line = StockLine(
                product_id=product.product_id,
                product_name=product.product_name,
                sale_price=product.sale_price,
                opening=product.opening_stock,
                received=received_by_product.get(product.product_id, ZERO),
            )
            saved = saved_remaining.get(product.product_id)
            if saved is not None:
                line = replace(line, remaining=clamp_remaining(max(saved, ZERO), line.available))
            lines.append(line)

        stale = set(saved_remaining) - {line.product_id for line in lines}
        if stale:
            log.debug("Ignoring saved counts for unknown products: %s", ", ".join(sorted(stale)))
        return cls(lines)

    @property
    def lines(self) -> List[StockLine]:
        return list(self._lines.values())

    def line(self, product_id: str) -> StockLine:
        try:
            return self._lines[product_id]
        except KeyError as exc:
            raise MissingReferenceError(f"Unknown product id: {product_id}") from exc

    def set_remaining(self, product_id: str, value: object) -> StockLine:
        """Record (or with ``None``, clear) the counted remaining quantity.

        Returns:
            StockLine: The updated line, with the clamped count.

        Raises:
            MissingReferenceError: If ``product_id`` is not in the table.
            ValidationError: If ``value`` is negative or not a number.
        """

        line = self.line(product_id)
        if value is None:
            updated = replace(line, remaining=None)
        else:
            count = to_decimal(value, label="Remaining stock")
            updated = replace(line, remaining=clamp_remaining(count, line.available))
            if updated.remaining != count:
                log.info(
                    "Capped remaining count of '%s' from %s to available %s",
                    product_id,
                    count,
                    updated.remaining,
                )
        self._lines[product_id] = updated
        return updated

    def compute_totals(self) -> StockTotals:
        """Fold sold units and revenue over the lines that have a count."""

        counted = [line for line in self._lines.values() if line.has_count]
        return StockTotals(
            total_sold=sum((line.sold for line in counted), ZERO),
            total_revenue=sum((line.revenue for line in counted), ZERO),
        )

    def missing_counts(self) -> List[str]:
        return [line.product_id for line in self._lines.values() if not line.has_count]

    @property
    def has_any_count(self) -> bool:
        return any(line.has_count for line in self._lines.values())

    @property
    def is_complete(self) -> bool:
        return not self.missing_counts()

    def remaining_counts(self) -> Dict[str, Decimal]:
        """Entered counts only, in table order."""

        return {
            line.product_id: line.remaining
            for line in self._lines.values()
            if line.remaining is not None
        }
