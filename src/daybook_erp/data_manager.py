"""Data access layer for the daybook workbook.

This module reads from and writes to the Excel workbook that acts as the
record store. Business rules live elsewhere; everything here is row-level
plumbing.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading typed records, appending rows, and patching
   individual cells, plus the ReportJSON snapshot codec stored on closings.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import SNAPSHOT_FORMAT_VERSION, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
MOVEMENTS_SHEET = SheetName.MOVEMENTS.value
CLOSINGS_SHEET = SheetName.CLOSINGS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "ProductName",
        "Unit",
        "SalePrice",
        "OpeningStock",
        "IsActive",
    ],
    MOVEMENTS_SHEET: [
        "MovementID",
        "DateStr",
        "CreatedAt",
        "MovementType",
        "ProductID",
        "Quantity",
        "Amount",
        "Category",
        "Note",
        "ReversalOf",
        "ReversalReason",
        "RecordedBy",
    ],
    CLOSINGS_SHEET: [
        "ClosingID",
        "DateStr",
        "ClosingType",
        "OpeningCash",
        "TotalRevenue",
        "TotalIncome",
        "TotalExpenses",
        "CashCounted",
        "TotalWithdrawals",
        "ReportJSON",
        "NextDayOpeningCash",
        "ClosedBy",
        "Notes",
        "CreatedAt",
        "UpdatedAt",
    ],
}

# Dataclass attribute -> worksheet header, used when patching rows in place.
PRODUCT_FIELD_COLUMNS: Mapping[str, str] = {
    "product_name": "ProductName",
    "unit": "Unit",
    "sale_price": "SalePrice",
    "opening_stock": "OpeningStock",
    "is_active": "IsActive",
}

CLOSING_FIELD_COLUMNS: Mapping[str, str] = {
    "closing_type": "ClosingType",
    "opening_cash": "OpeningCash",
    "total_revenue": "TotalRevenue",
    "total_income": "TotalIncome",
    "total_expenses": "TotalExpenses",
    "cash_counted": "CashCounted",
    "total_withdrawals": "TotalWithdrawals",
    "report_json": "ReportJSON",
    "next_day_opening_cash": "NextDayOpeningCash",
    "closed_by": "ClosedBy",
    "notes": "Notes",
    "updated_at": "UpdatedAt",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed view of the ``config.ini`` entries the store relies on."""

    data_file: Path
    business_name: str
    schema_version: str
    default_user_id: str
    log_file: Optional[Path] = None


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    unit: Optional[str]
    sale_price: Decimal
    opening_stock: Decimal
    is_active: bool


@dataclass(frozen=True)
class MovementRow:
    """In-memory view of a row from the ``Movements`` sheet.

    Stock movements carry ``quantity``; cash movements carry ``amount``.
    Reversals negate the original's value and point back through
    ``reversal_of``.
    """

    movement_id: str
    date_str: str
    created_at: str
    movement_type: str
    product_id: Optional[str]
    quantity: Decimal
    amount: Decimal
    category: Optional[str]
    note: Optional[str]
    reversal_of: Optional[str]
    reversal_reason: Optional[str]
    recorded_by: Optional[str]

    @property
    def is_reversal(self) -> bool:
        return self.reversal_of is not None


@dataclass(frozen=True)
class ClosingRow:
    """In-memory view of a row from the ``Closings`` sheet."""

    closing_id: str
    date_str: str
    closing_type: str
    opening_cash: Optional[Decimal]
    total_revenue: Decimal
    total_income: Optional[Decimal]
    total_expenses: Optional[Decimal]
    cash_counted: Optional[Decimal]
    total_withdrawals: Decimal
    report_json: Optional[str]
    next_day_opening_cash: Optional[Decimal]
    closed_by: Optional[str]
    notes: Optional[str]
    created_at: str
    updated_at: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate ``config.ini``.

    An explicit path wins without verification. Otherwise the search walks up
    from the current working directory and returns the first match.

    Args:
        explicit_path (Path | None): Optional path that bypasses the search.

    Returns:
        Path: The supplied path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` into a ``ConfigParser``.

    Missing sections are tolerated here; :func:`parse_settings` validates them.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    Relative ``DataFile`` and optional ``LogFile`` entries are anchored at
    ``base_path`` (normally the directory holding ``config.ini``) or at the
    working directory.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative data file paths.

    Returns:
        ConfigSettings: Settings with an absolute data file path.

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        default_user = parser.get("Defaults", "DefaultUser")
        log_file_raw = parser.get("System", "LogFile", fallback=None)
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    if base_path is None:
        base_path = Path.cwd()
    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (base_path / data_file_path).resolve()
    log_file_path = None
    if log_file_raw and log_file_raw.strip():
        log_file_path = Path(log_file_raw.strip())
        if not log_file_path.is_absolute():
            log_file_path = (base_path / log_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_user_id=default_user,
        log_file=log_file_path,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the daybook workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist ``workbook`` at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory edits."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Yield :class:`ProductRow` records from the ``Products`` sheet."""

    for raw in _iter_sheet(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_movements(workbook: Workbook) -> Iterable[MovementRow]:
    """Yield :class:`MovementRow` records in sheet (insertion) order."""

    for raw in _iter_sheet(workbook, MOVEMENTS_SHEET):
        yield deserialize_movement(raw)


def iter_closings(workbook: Workbook) -> Iterable[ClosingRow]:
    """Yield :class:`ClosingRow` records in sheet (insertion) order."""

    for raw in _iter_sheet(workbook, CLOSINGS_SHEET):
        yield deserialize_closing(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_movement(workbook: Workbook, record: MovementRow) -> None:
    workbook[MOVEMENTS_SHEET].append(serialize_movement(record))


def append_closing(workbook: Workbook, record: ClosingRow) -> None:
    workbook[CLOSINGS_SHEET].append(serialize_closing(record))


def update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    field_values: Mapping[str, Any],
) -> None:
    """Overwrite selected columns of the row whose ``key_column`` matches.

    Args:
        workbook (Workbook): Workbook holding ``sheet_name``.
        sheet_name (str): Worksheet to patch.
        key_column (str): Header of the identifier column.
        key_value (str): Identifier of the row to patch.
        field_values (Mapping[str, Any]): Header name -> replacement value.

    Raises:
        KeyError: If the row or one of the headers does not exist.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in {sheet_name}: {key_value}")

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    for column, value in field_values.items():
        if column not in header_map:
            raise KeyError(f"Unknown {sheet_name} column: {column}")
        sheet.cell(row=row_index, column=header_map[column], value=value)


def update_product(workbook: Workbook, product_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Patch a ``Products`` row; ``field_values`` is keyed by header name."""

    update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values=field_values)


def update_closing(workbook: Workbook, closing_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Patch a ``Closings`` row; ``field_values`` is keyed by header name."""

    update_row(workbook, CLOSINGS_SHEET, "ClosingID", closing_id, field_values=field_values)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Return the 1-based row index whose ``key_column`` equals ``key_value``.

    Raises:
        KeyError: If ``key_column`` is not a header of ``sheet_name``.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_index] is not None and str(row[key_index]) == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    return [
        record.product_id,
        record.product_name,
        record.unit,
        record.sale_price,
        record.opening_stock,
        record.is_active,
    ]


def serialize_movement(record: MovementRow) -> list[object]:
    return [
        record.movement_id,
        record.date_str,
        record.created_at,
        record.movement_type,
        record.product_id,
        record.quantity,
        record.amount,
        record.category,
        record.note,
        record.reversal_of,
        record.reversal_reason,
        record.recorded_by,
    ]


def serialize_closing(record: ClosingRow) -> list[object]:
    return [
        record.closing_id,
        record.date_str,
        record.closing_type,
        record.opening_cash,
        record.total_revenue,
        record.total_income,
        record.total_expenses,
        record.cash_counted,
        record.total_withdrawals,
        record.report_json,
        record.next_day_opening_cash,
        record.closed_by,
        record.notes,
        record.created_at,
        record.updated_at,
    ]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None and raw != "" else Decimal(default)


def _to_optional_decimal(raw: object) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw is not None and raw != "" else None


def _to_optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw ``Products`` row; Excel may hand back ids as numbers."""

    product_id, product_name, unit, sale_price, opening_stock, is_active = raw_row[:6]
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        unit=_to_optional_text(unit),
        sale_price=_to_decimal(sale_price, "0.00"),
        opening_stock=_to_decimal(opening_stock),
        is_active=bool(is_active),
    )


def deserialize_movement(raw_row: Sequence[object]) -> MovementRow:
    """Convert a raw ``Movements`` row into a :class:`MovementRow`."""

    (
        movement_id,
        date_str,
        created_at,
        movement_type,
        product_id,
        quantity,
        amount,
        category,
        note,
        reversal_of,
        reversal_reason,
        recorded_by,
    ) = raw_row[:12]

    return MovementRow(
        movement_id=str(movement_id),
        date_str=str(date_str) if date_str is not None else "",
        created_at=str(created_at) if created_at is not None else "",
        movement_type=str(movement_type) if movement_type is not None else "",
        product_id=_to_optional_text(product_id),
        quantity=_to_decimal(quantity),
        amount=_to_decimal(amount, "0.00"),
        category=_to_optional_text(category),
        note=_to_optional_text(note),
        reversal_of=_to_optional_text(reversal_of),
        reversal_reason=_to_optional_text(reversal_reason),
        recorded_by=_to_optional_text(recorded_by),
    )


def deserialize_closing(raw_row: Sequence[object]) -> ClosingRow:
    """Convert a raw ``Closings`` row into a :class:`ClosingRow`."""

    (
        closing_id,
        date_str,
        closing_type,
        opening_cash,
        total_revenue,
        total_income,
        total_expenses,
        cash_counted,
        total_withdrawals,
        report_json,
        next_day_opening_cash,
        closed_by,
        notes,
        created_at,
        updated_at,
    ) = raw_row[:15]

    return ClosingRow(
        closing_id=str(closing_id),
        date_str=str(date_str) if date_str is not None else "",
        closing_type=str(closing_type) if closing_type is not None else "",
        opening_cash=_to_optional_decimal(opening_cash),
        total_revenue=_to_decimal(total_revenue, "0.00"),
        total_income=_to_optional_decimal(total_income),
        total_expenses=_to_optional_decimal(total_expenses),
        cash_counted=_to_optional_decimal(cash_counted),
        total_withdrawals=_to_decimal(total_withdrawals, "0.00"),
        report_json=_to_optional_text(report_json),
        next_day_opening_cash=_to_optional_decimal(next_day_opening_cash),
        closed_by=_to_optional_text(closed_by),
        notes=_to_optional_text(notes),
        created_at=str(created_at) if created_at is not None else "",
        updated_at=_to_optional_text(updated_at),
    )


def _json_number(value: Decimal) -> int | float:
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _json_product_id(product_id: str) -> int | str:
    # Historical records use numeric ids; keep them numeric in the blob.
    if product_id.isdigit() and str(int(product_id)) == product_id:
        return int(product_id)
    return product_id


def encode_closing_snapshot(remaining: Mapping[str, Decimal]) -> str:
    """Serialize per-product counts into the ReportJSON blob.

    The version 1 layout is ``{"closingStock":[{"productId":..,
    "newOpeningStock":..}]}`` with compact separators and no version key, so
    blobs written here are byte-compatible with older records.

    Args:
        remaining (Mapping[str, Decimal]): Product id -> counted remaining
            quantity, in the order the entries should appear.

    Returns:
        str: The JSON text stored in the ``ReportJSON`` column.
    """

    closing_stock = [
        {"productId": _json_product_id(product_id), "newOpeningStock": _json_number(quantity)}
        for product_id, quantity in remaining.items()
    ]
    return json.dumps({"closingStock": closing_stock}, separators=(",", ":"))


def decode_closing_snapshot(raw: object) -> dict[str, Decimal]:
    """Parse a ReportJSON blob back into product id -> remaining quantity.

    Accepts JSON text or an already decoded mapping. Blobs without a
    ``version`` key are treated as version 1. Blobs that cannot be parsed
    decode to an empty mapping and log a warning, because historical rows
    must never block loading a day.
    """

    if raw is None or raw == "":
        return {}

    try:
        payload = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        version = payload.get("version", 1)
        if version != SNAPSHOT_FORMAT_VERSION:
            log.warning("Unsupported closing snapshot version %s", version)
            return {}
        result: dict[str, Decimal] = {}
        for item in payload.get("closingStock") or []:
            result[str(item["productId"])] = Decimal(str(item["newOpeningStock"]))
        return result
    except (ValueError, TypeError, KeyError, AttributeError, InvalidOperation) as exc:
        log.warning("Ignoring unreadable closing snapshot: %s", exc)
        return {}
