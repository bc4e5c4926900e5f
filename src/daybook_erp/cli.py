"""Command-line entry points for the daybook closing engine.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the ledger and
closing layers. Each invocation loads the day fresh from the workbook, so a
draft saved by one command is picked up by the next.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import ledger, log
from .closing import ClosingSummary, DailyClosing
from .data_manager import ProductRow
from .errors import ClosingError
from .persistence import WorkbookStore


@dataclass(frozen=True)
class RuntimeContext:
    """Store handle plus the explicit business date and acting user."""

    store: WorkbookStore
    business_date: str
    user_id: Optional[str]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="daybook-cli",
        description="Daily closing and cash reconciliation for the daybook workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory).",
    )
    parser.add_argument(
        "--date",
        dest="business_date",
        default=None,
        help="Business date as YYYY-MM-DD (defaults to today).",
    )
    parser.add_argument(
        "--user",
        dest="user_id",
        default=None,
        help="Acting user id (defaults to DefaultUser from config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands: ledger entries and closing transitions."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "stock-in": register_stock_in_command(subparsers),
        "expense": register_cash_command(subparsers, "expense", "Record an expense paid from the drawer."),
        "income": register_cash_command(subparsers, "income", "Record extra income received into the drawer."),
        "withdraw": register_withdraw_command(subparsers),
        "reverse": register_reverse_command(subparsers),
        "seed-opening-cash": register_seed_opening_cash_command(subparsers),
        "save-draft": register_closing_command(subparsers, "save-draft", "Save the day's counts as a draft."),
        "lock": register_closing_command(subparsers, "lock", "Finalize the day and roll stock forward."),
        "next-day-cash": register_next_day_cash_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "status": register_status_command(subparsers),
        "ledger": register_ledger_command(subparsers),
        "products": register_products_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_count_assignment(text: str) -> Tuple[str, str]:
    """Split a ``PRODUCT=QTY`` argument."""
    product_id, separator, quantity = text.partition("=")
    if not separator or not product_id.strip() or not quantity.strip():
        raise argparse.ArgumentTypeError(f"expected PRODUCT=QTY, got {text!r}")
    return product_id.strip(), quantity.strip()


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--sale-price", required=True)
        parser.add_argument("--unit", default=None)
        parser.add_argument("--opening-stock", default="0")
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_stock_in_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-in``."""
    name = "stock-in"
    help_text = "Record stock received for a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_in)


def register_cash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
) -> CommandSpec:
    """Register ``expense`` or ``income``; both take an amount and a category."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    execute = run_expense if name == "expense" else run_income
    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_withdraw_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``withdraw``."""
    name = "withdraw"
    help_text = "Record cash taken out of the drawer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_withdraw)


def register_reverse_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reverse``."""
    name = "reverse"
    help_text = "Reverse a prior movement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--movement-id", required=True)
        parser.add_argument("--reason", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reverse)


def register_seed_opening_cash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``seed-opening-cash``."""
    name = "seed-opening-cash"
    help_text = "Set opening cash by hand when no previous closing handed it off."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_seed_opening_cash)


def register_closing_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
) -> CommandSpec:
    """Register ``save-draft`` or ``lock``; both accept counts to merge first."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--remaining",
            action="append",
            type=parse_count_assignment,
            default=[],
            metavar="PRODUCT=QTY",
            help="Counted remaining stock; repeat per product. Merged over the saved draft.",
        )
        parser.add_argument("--cash-counted", default=None)
        parser.set_defaults(command=name)
        return parser

    execute = run_save_draft if name == "save-draft" else run_lock
    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_next_day_cash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``next-day-cash``."""
    name = "next-day-cash"
    help_text = "Hand off the drawer amount to the next business day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_next_day_cash)


def register_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``status``."""
    name = "status"
    help_text = "Display the closing status and cash reconciliation of the day."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_status)


def register_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "Display the day's movements."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--all", dest="show_reversals", action="store_true", help="Include reversal rows.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger_report)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "Display products and their opening stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--include-inactive", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    business_date: Optional[str] = None,
    user_id: Optional[str] = None,
) -> RuntimeContext:
    """Open the store and resolve the business date and acting user."""
    store = WorkbookStore.from_config(config_path)
    store.ensure_schema_version()
    date_str = ledger.to_date_str(business_date if business_date is not None else date.today())
    return RuntimeContext(
        store=store,
        business_date=date_str,
        user_id=user_id or store.settings.default_user_id,
    )


def dispatch_command(
    context: RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_add_product(args: argparse.Namespace) -> ProductRow:
    return ProductRow(
        product_id=ledger.require_text(args.product_id, label="Product id"),
        product_name=ledger.require_text(args.product_name, label="Product name"),
        unit=args.unit,
        sale_price=ledger.to_decimal(args.sale_price, label="Sale price"),
        opening_stock=ledger.to_decimal(args.opening_stock, label="Opening stock"),
        is_active=not getattr(args, "inactive", False),
    )


def translate_stock_in(args: argparse.Namespace) -> ledger.StockInCommand:
    return ledger.StockInCommand(
        product_id=args.product_id,
        quantity=ledger.to_decimal(args.quantity, label="Quantity"),
        note=args.note,
    )


def translate_expense(args: argparse.Namespace) -> ledger.ExpenseCommand:
    return ledger.ExpenseCommand(
        amount=ledger.to_decimal(args.amount, label="Amount"),
        category=args.category,
        note=args.note,
    )


def translate_income(args: argparse.Namespace) -> ledger.IncomeCommand:
    return ledger.IncomeCommand(
        amount=ledger.to_decimal(args.amount, label="Amount"),
        category=args.category,
        note=args.note,
    )


def translate_withdraw(args: argparse.Namespace) -> ledger.WithdrawalCommand:
    return ledger.WithdrawalCommand(
        amount=ledger.to_decimal(args.amount, label="Amount"),
        reason=args.reason,
    )


def translate_reverse(args: argparse.Namespace) -> ledger.ReversalCommand:
    return ledger.ReversalCommand(movement_id=args.movement_id, reason=args.reason)


def apply_closing_inputs(closing: DailyClosing, args: argparse.Namespace) -> None:
    """Merge counts given on the command line over the saved draft."""
    for product_id, quantity in getattr(args, "remaining", None) or []:
        closing.set_remaining(product_id, quantity)
    if getattr(args, "cash_counted", None) is not None:
        closing.set_cash_counted(args.cash_counted)


def format_money(value: Optional[Decimal]) -> str:
    return "-" if value is None else f"{value:,.2f}"


def format_summary(summary: ClosingSummary, *, business_name: str = "") -> List[str]:
    """Render a :class:`ClosingSummary` as report lines."""
    header = f"{business_name} closing for {summary.business_date}".strip()
    lines = [
        header,
        f"State:             {summary.state.value}",
        f"Opening cash:      {format_money(summary.opening_cash)}",
        f"Revenue:           {format_money(summary.total_revenue)}",
        f"Income:            {format_money(summary.total_income)}",
        f"Expenses:          {format_money(summary.total_expenses)}",
        f"Withdrawals:       {format_money(summary.total_withdrawals)}",
        f"Expected cash:     {format_money(summary.expected_cash)}",
        f"Counted cash:      {format_money(summary.cash_counted)}",
    ]
    if summary.status is not None:
        lines.append(f"Difference:        {format_money(summary.difference)} ({summary.status.value})")
    if summary.next_day_opening_cash is not None:
        lines.append(f"Next day cash:     {format_money(summary.next_day_opening_cash)}")
    if summary.missing_counts:
        lines.append("Missing counts:    " + ", ".join(summary.missing_counts))
    return lines


def run_add_product(context: RuntimeContext, args: argparse.Namespace) -> int:
    record = context.store.add_product(translate_add_product(args))
    print(f"Added product {record.product_id}")
    return 0


def run_stock_in(context: RuntimeContext, args: argparse.Namespace) -> int:
    movement = ledger.record_stock_in(
        context.store, context.business_date, translate_stock_in(args), user_id=context.user_id
    )
    print(f"Recorded {movement.movement_id}")
    return 0


def run_expense(context: RuntimeContext, args: argparse.Namespace) -> int:
    movement = ledger.record_expense(
        context.store, context.business_date, translate_expense(args), user_id=context.user_id
    )
    print(f"Recorded {movement.movement_id}")
    return 0


def run_income(context: RuntimeContext, args: argparse.Namespace) -> int:
    movement = ledger.record_income(
        context.store, context.business_date, translate_income(args), user_id=context.user_id
    )
    print(f"Recorded {movement.movement_id}")
    return 0


def run_withdraw(context: RuntimeContext, args: argparse.Namespace) -> int:
    movement = ledger.record_withdrawal(
        context.store, context.business_date, translate_withdraw(args), user_id=context.user_id
    )
    print(f"Recorded {movement.movement_id}")
    return 0


def run_reverse(context: RuntimeContext, args: argparse.Namespace) -> int:
    reversal = ledger.reverse_movement(context.store, translate_reverse(args), user_id=context.user_id)
    print(f"Recorded {reversal.movement_id} reversing {reversal.reversal_of}")
    return 0


def run_seed_opening_cash(context: RuntimeContext, args: argparse.Namespace) -> int:
    closing = DailyClosing.load(context.store, context.business_date)
    closing.seed_opening_cash(args.amount, user_id=context.user_id)
    print(f"Opening cash for {context.business_date} set to {format_money(closing.opening_cash)}")
    return 0


def run_save_draft(context: RuntimeContext, args: argparse.Namespace) -> int:
    closing = DailyClosing.load(context.store, context.business_date)
    apply_closing_inputs(closing, args)
    record = closing.save_draft(user_id=context.user_id)
    print(f"Saved draft {record.closing_id}")
    return 0


def run_lock(context: RuntimeContext, args: argparse.Namespace) -> int:
    closing = DailyClosing.load(context.store, context.business_date)
    apply_closing_inputs(closing, args)
    record = closing.lock(user_id=context.user_id)
    print(f"Locked {record.closing_id}")
    for line in format_summary(closing.summary(), business_name=context.store.settings.business_name):
        print(line)
    return 0


def run_next_day_cash(context: RuntimeContext, args: argparse.Namespace) -> int:
    closing = DailyClosing.load(context.store, context.business_date)
    closing.set_next_day_opening_cash(args.amount)
    print(f"Handed off {format_money(closing.record.next_day_opening_cash)} to the next day")
    return 0


def run_status(context: RuntimeContext, args: argparse.Namespace) -> int:
    closing = DailyClosing.load(context.store, context.business_date)
    for line in format_summary(closing.summary(), business_name=context.store.settings.business_name):
        print(line)
    return 0


def run_ledger_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    snapshot = ledger.load_ledger(context.store, context.business_date)
    groups = (snapshot.stock_in, snapshot.expenses, snapshot.income, snapshot.withdrawals)
    for entries in groups:
        shown = entries if args.show_reversals else ledger.outstanding(entries)
        for entry in shown:
            movement = entry.movement
            value = movement.quantity if movement.product_id else movement.amount
            flag = " [reversed]" if entry.has_been_reversed else ""
            subject = movement.product_id or movement.category or movement.note or ""
            print(f"{movement.movement_id}  {movement.movement_type:<10} {subject:<20} {value}{flag}")
    return 0


def run_products_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    for product in context.store.list_products(include_inactive=args.include_inactive):
        status = "" if product.is_active else " (inactive)"
        print(
            f"{product.product_id:<10} {product.product_name:<24} "
            f"{format_money(product.sale_price):>10} stock {product.opening_stock}{status}"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, ClosingError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(
            getattr(args, "config", None),
            business_date=getattr(args, "business_date", None),
            user_id=getattr(args, "user_id", None),
        )
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
