"""Shared pytest fixtures and utilities for daybook tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from daybook_erp import constants, data_manager  # noqa: E402
from daybook_erp.persistence import WorkbookStore  # noqa: E402
from daybook_erp.setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_USER_ID = "U-DEFAULT"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultUser = {default_user_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_user_id: str
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized daybook workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "daybook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Corner Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_user_id: str = DEFAULT_USER_ID,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        bundle_dir = workbook_path.parent
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                default_user_id=default_user_id,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_user_id=default_user_id,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    return config_factory()


@pytest.fixture
def config_file(config_bundle: ConfigBundle) -> Path:
    """Convenience fixture returning only the config path."""

    return config_bundle.config_path


@pytest.fixture
def store(config_file: Path) -> WorkbookStore:
    """A live store over a fresh, empty workbook."""

    workbook_store = WorkbookStore.from_config(config_file)
    workbook_store.ensure_schema_version()
    return workbook_store


def make_product(
    product_id: str,
    *,
    name: str | None = None,
    price: str = "10",
    opening: str = "0",
    active: bool = True,
) -> data_manager.ProductRow:
    return data_manager.ProductRow(
        product_id=product_id,
        product_name=name or f"Product {product_id}",
        unit="pcs",
        sale_price=Decimal(price),
        opening_stock=Decimal(opening),
        is_active=active,
    )


@pytest.fixture
def stocked_store(store: WorkbookStore) -> WorkbookStore:
    """Store holding product A (price 10, opening 20) and B (price 2.50, opening 4)."""

    store.add_product(make_product("A", name="Apples", price="10", opening="20"))
    store.add_product(make_product("B", name="Bread", price="2.50", opening="4"))
    return store


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Return a callable yielding strictly increasing UTC timestamps."""

    start = datetime(2024, 3, 1, 8, 0, 0, tzinfo=UTC)
    ticks = {"count": 0}

    def _tick() -> datetime:
        ticks["count"] += 1
        return start + timedelta(seconds=ticks["count"])

    return _tick


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="daybook-cli", description="Daybook CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")
