"""Persistence adapter between the closing engine and the workbook store.

:class:`ClosingStore` is the read/write contract the ledger reader and the
closing state machine depend on. :class:`WorkbookStore` fulfils it on top of
:mod:`daybook_erp.data_manager`: every write outside :meth:`WorkbookStore.atomic`
is saved to disk immediately, and writes inside an ``atomic()`` block are
saved together or discarded together.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, ContextManager, Dict, Iterator, List, Mapping, Optional, Protocol
from zipfile import BadZipFile

from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import data_manager, log, use_log_file
from .constants import EXPECTED_SCHEMA_VERSION, ClosingType
from .data_manager import ClosingRow, MovementRow, ProductRow
from .errors import ConflictError, MissingReferenceError, PersistenceError, ValidationError


_STORE_FAILURES = (OSError, InvalidFileException, BadZipFile)

# Fields of a final record that may still be written, and only while unset.
_HANDOFF_FIELDS = frozenset({"next_day_opening_cash", "updated_at"})


class ClosingStore(Protocol):
    """Record-store operations consumed by the ledger reader and state machine."""

    def list_products(self) -> List[ProductRow]: ...

    def get_product(self, product_id: str) -> ProductRow: ...

    def find_movements(self, date_str: str, movement_type: Optional[str] = None) -> List[MovementRow]: ...

    def get_movement(self, movement_id: str) -> MovementRow: ...

    def insert_movement(self, record: MovementRow) -> MovementRow: ...

    def find_closing_records(self, date_str: str) -> List[ClosingRow]: ...

    def find_prior_final_closing(self, before_date: str) -> Optional[ClosingRow]: ...

    def insert_closing(self, record: ClosingRow) -> ClosingRow: ...

    def update_closing(self, closing_id: str, patch: Mapping[str, Any]) -> ClosingRow: ...

    def update_product_stock(self, product_id: str, new_opening_stock: Any) -> None: ...

    def atomic(self) -> ContextManager[None]: ...

    def refresh(self) -> None: ...


def resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_record_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Build a sortable identifier of the form ``{prefix}{YYYYMMDDHHMMSSffffff}``.

    Microseconds are packed in to keep ids unique within a second. Supplying
    ``when`` makes identifiers deterministic in tests and migrations.
    """

    when = resolve_timestamp(when)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def _newest_first(rows: List[Any], *, key: str) -> List[Any]:
    # Ties on the timestamp fall back to sheet order, later rows first.
    indexed = list(enumerate(rows))
    indexed.sort(key=lambda pair: (getattr(pair[1], key), pair[0]), reverse=True)
    return [row for _, row in indexed]


class WorkbookStore:
    """:class:`ClosingStore` backed by the daybook Excel workbook.

    Reads are served from per-sheet cache buckets that are dropped after every
    write, so a read issued right after a write always sees it. Guard reads
    call :meth:`refresh` first to pick up writes made by other sessions.
    """

    supports_rollback = True

    def __init__(self, settings: data_manager.ConfigSettings, workbook: Workbook) -> None:
        self.settings = settings
        self.workbook = workbook
        self._cache: Dict[str, List[Any]] = {}
        self._atomic_depth = 0

    @classmethod
    def from_config(cls, config_path: Optional[Path] = None) -> "WorkbookStore":
        """Resolve ``config.ini``, parse it, and open the configured workbook.

        Args:
            config_path (Path | None): Optional explicit configuration path.
                When omitted the data layer searches upward from the working
                directory.

        Raises:
            FileNotFoundError: If the configuration or workbook is missing.
            KeyError: If a mandatory configuration entry is missing.
        """

        located = data_manager.find_config_file(config_path)
        resolved = Path(located).expanduser().resolve()
        parser = data_manager.read_config(resolved)
        settings = data_manager.parse_settings(parser, base_path=resolved.parent)
        if settings.log_file is not None:
            use_log_file(settings.log_file)
        workbook = data_manager.open_workbook(settings.data_file)
        log.info("Opened daybook workbook '%s'", settings.data_file)
        return cls(settings, workbook)

    def ensure_schema_version(self) -> None:
        """Refuse to operate on a workbook declared with another schema version.

        Raises:
            RuntimeError: If ``config.ini`` declares a schema version other than
                ``EXPECTED_SCHEMA_VERSION``.
        """

        if self.settings.schema_version != EXPECTED_SCHEMA_VERSION:
            log.error(
                "Workbook schema mismatch: expected %s, found %s",
                EXPECTED_SCHEMA_VERSION,
                self.settings.schema_version,
            )
            raise RuntimeError(
                "Workbook schema mismatch: expected %s, found %s"
                % (EXPECTED_SCHEMA_VERSION, self.settings.schema_version)
            )

    # ------------------------------------------------------------------
    # Write plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _store_call(self, action: str) -> Iterator[None]:
        try:
            yield
        except _STORE_FAILURES as exc:
            log.error("Record store failure during %s: %s", action, exc)
            raise PersistenceError(f"Record store failure during {action}: {exc}", reason=exc) from exc

    def _commit(self) -> None:
        self._cache.clear()
        if self._atomic_depth:
            return
        with self._store_call("save"):
            data_manager.save_workbook(self.workbook, self.settings.data_file)

    def _discard(self) -> None:
        self._cache.clear()
        with self._store_call("rollback"):
            self.workbook = data_manager.refresh_workbook(self.settings.data_file)
        log.warning("Discarded unsaved writes to '%s'", self.settings.data_file)

    def refresh(self) -> None:
        """Reload the workbook from disk so guard reads see other sessions' writes.

        Inside an ``atomic()`` block the pending writes are kept and nothing
        is reloaded.
        """

        if self._atomic_depth:
            return
        self._cache.clear()
        with self._store_call("refresh"):
            self.workbook = data_manager.refresh_workbook(self.settings.data_file)
        log.debug("Reloaded workbook '%s'", self.settings.data_file)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Group writes so they are saved once or not at all.

        Any exception escaping the outermost block reloads the workbook from
        disk before propagating, dropping every write made inside the block.
        """

        self._atomic_depth += 1
        try:
            yield
        except BaseException:
            self._atomic_depth -= 1
            if self._atomic_depth == 0:
                self._discard()
            raise
        self._atomic_depth -= 1
        if self._atomic_depth == 0:
            self._commit()

    def _rows(self, bucket: str) -> List[Any]:
        cached = self._cache.get(bucket)
        if cached is None:
            loaders = {
                "products": data_manager.iter_products,
                "movements": data_manager.iter_movements,
                "closings": data_manager.iter_closings,
            }
            with self._store_call(f"read {bucket}"):
                cached = list(loaders[bucket](self.workbook))
            log.debug("Populated %s cache with %d rows", bucket, len(cached))
            self._cache[bucket] = cached
        return cached

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def list_products(self, *, include_inactive: bool = False) -> List[ProductRow]:
        """Products in sheet order; inactive ones only when asked for."""

        rows = self._rows("products")
        return [row for row in rows if include_inactive or row.is_active]

    def get_product(self, product_id: str) -> ProductRow:
        for row in self._rows("products"):
            if row.product_id == product_id:
                return row
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")

    def add_product(self, record: ProductRow) -> ProductRow:
        if any(row.product_id == record.product_id for row in self._rows("products")):
            raise ValidationError(f"Product id already exists: {record.product_id}")
        with self._store_call("add product"):
            data_manager.append_product(self.workbook, record)
        self._commit()
        log.info("Added product '%s' (%s)", record.product_id, record.product_name)
        return record

    def update_product_stock(self, product_id: str, new_opening_stock: Any) -> None:
        """Overwrite a product's opening stock; the only writer is the lock."""

        try:
            with self._store_call("update product stock"):
                data_manager.update_product(
                    self.workbook,
                    product_id,
                    field_values={data_manager.PRODUCT_FIELD_COLUMNS["opening_stock"]: new_opening_stock},
                )
        except KeyError as exc:
            raise MissingReferenceError(f"Unknown product id: {product_id}") from exc
        self._commit()
        log.info("Set opening stock of '%s' to %s", product_id, new_opening_stock)

    # ------------------------------------------------------------------
    # Movements
    # ------------------------------------------------------------------

    def find_movements(self, date_str: str, movement_type: Optional[str] = None) -> List[MovementRow]:
        """Movements of ``date_str`` (optionally one type), newest first."""

        rows = [
            row
            for row in self._rows("movements")
            if row.date_str == date_str and (movement_type is None or row.movement_type == movement_type)
        ]
        return _newest_first(rows, key="created_at")

    def get_movement(self, movement_id: str) -> MovementRow:
        for row in self._rows("movements"):
            if row.movement_id == movement_id:
                return row
        log.warning("Movement lookup failed for id '%s'", movement_id)
        raise MissingReferenceError(f"Unknown movement id: {movement_id}")

    def insert_movement(self, record: MovementRow) -> MovementRow:
        with self._store_call("insert movement"):
            data_manager.append_movement(self.workbook, record)
        self._commit()
        return record

    # ------------------------------------------------------------------
    # Closings
    # ------------------------------------------------------------------

    def find_closing_records(self, date_str: str) -> List[ClosingRow]:
        """Closing records of ``date_str``, newest first."""

        rows = [row for row in self._rows("closings") if row.date_str == date_str]
        return _newest_first(rows, key="created_at")

    def find_prior_final_closing(self, before_date: str) -> Optional[ClosingRow]:
        """The final record of the latest date strictly before ``before_date``."""

        finals = [
            row
            for row in self._rows("closings")
            if row.closing_type == ClosingType.FINAL.value and row.date_str < before_date
        ]
        if not finals:
            return None
        return max(finals, key=lambda row: (row.date_str, row.created_at))

    def _get_closing(self, closing_id: str) -> ClosingRow:
        for row in self._rows("closings"):
            if row.closing_id == closing_id:
                return row
        raise MissingReferenceError(f"Unknown closing id: {closing_id}")

    def _has_final(self, date_str: str, *, excluding: Optional[str] = None) -> bool:
        return any(
            row.closing_type == ClosingType.FINAL.value and row.closing_id != excluding
            for row in self.find_closing_records(date_str)
        )

    def insert_closing(self, record: ClosingRow) -> ClosingRow:
        """Append a closing record.

        Raises:
            ConflictError: If the date already has a final closing.
        """

        if self._has_final(record.date_str):
            log.warning("Refusing closing insert for finalized date %s", record.date_str)
            raise ConflictError(f"Closing already finalized for {record.date_str}")
        with self._store_call("insert closing"):
            data_manager.append_closing(self.workbook, record)
        self._commit()
        log.info(
            "Inserted %s closing '%s' for %s",
            record.closing_type,
            record.closing_id,
            record.date_str,
        )
        return record

    def update_closing(self, closing_id: str, patch: Mapping[str, Any]) -> ClosingRow:
        """Patch a closing record in place and return the updated row.

        ``patch`` is keyed by :class:`ClosingRow` attribute names. A final
        record only accepts ``next_day_opening_cash`` (plus ``updated_at``)
        and only while it is still unset.

        Raises:
            ValidationError: If ``patch`` names an unknown or read-only field.
            MissingReferenceError: If ``closing_id`` does not exist.
            ConflictError: If the patch would mutate a final record or create
                a second final record for the date.
        """

        unknown = set(patch) - set(data_manager.CLOSING_FIELD_COLUMNS)
        if unknown:
            raise ValidationError(f"Unknown closing fields: {', '.join(sorted(unknown))}")

        current = self._get_closing(closing_id)
        if current.closing_type == ClosingType.FINAL.value:
            if set(patch) - _HANDOFF_FIELDS or current.next_day_opening_cash is not None:
                log.warning("Refusing update of finalized closing '%s'", closing_id)
                raise ConflictError(f"Closing already finalized for {current.date_str}")
        elif patch.get("closing_type") == ClosingType.FINAL.value and self._has_final(
            current.date_str, excluding=closing_id
        ):
            raise ConflictError(f"Closing already finalized for {current.date_str}")

        columns = {data_manager.CLOSING_FIELD_COLUMNS[name]: value for name, value in patch.items()}
        with self._store_call("update closing"):
            data_manager.update_closing(self.workbook, closing_id, field_values=columns)
        self._commit()
        log.info("Updated closing '%s' (%s)", closing_id, ", ".join(sorted(patch)))
        return replace(current, **patch)


__all__ = [
    "ClosingStore",
    "WorkbookStore",
    "generate_record_id",
    "resolve_timestamp",
]
