"""Command-line entry points for the shop ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the ledger core,
and printing results. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any other front end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Command-line tools for the shop customer ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
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
    """Declare mutating CLI commands."""
    specs = {
        "add-customer": register_add_customer_command(),
        "record": register_record_command(),
        "delete-customer": register_delete_customer_command(),
        "check": register_check_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and exports."""
    specs = {
        "customers": register_customers_command(),
        "history": register_history_command(),
        "export": register_export_command(),
        "customer-report": register_customer_report_command(),
        "debug": register_debug_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_customer_command() -> CommandSpec:
    """Describe the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default="")
        parser.add_argument("--email", default="")
        parser.add_argument("--address", default="")
        parser.add_argument("--notes", default="")
        parser.add_argument("--opening-balance", default="0", help="Signed amount owed at creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_record_command() -> CommandSpec:
    """Describe the parser and executor for ``record``."""
    name = "record"
    help_text = "Record a sale (debit) or payment (credit) for a customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument(
            "--kind",
            required=True,
            help="debit or credit; 'sale' and 'payment' are accepted as aliases.",
        )
        parser.add_argument("--amount", required=True)
        parser.add_argument("--date", default=None, help="Transaction date as YYYY-MM-DD (defaults to today).")
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_record)


def register_delete_customer_command() -> CommandSpec:
    """Describe the parser and executor for ``delete-customer``."""
    name = "delete-customer"
    help_text = "Delete a customer and all of its transactions."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_customer)


def register_check_command() -> CommandSpec:
    """Describe the parser and executor for ``check``."""
    name = "check"
    help_text = "Verify stored balances against a full recompute and repair them."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_check)


def register_customers_command() -> CommandSpec:
    """Describe the parser and executor for ``customers``."""
    name = "customers"
    help_text = "List customers, optionally filtered by name, phone, or email."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customers)


def register_history_command() -> CommandSpec:
    """Describe the parser and executor for ``history``."""
    name = "history"
    help_text = "Show a customer's transactions with running balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history)


def register_export_command() -> CommandSpec:
    """Describe the parser and executor for ``export``."""
    name = "export"
    help_text = "Export all customers and transactions."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--format", choices=["json", "xlsx"], default="json")
        parser.add_argument("--output", type=Path, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def register_customer_report_command() -> CommandSpec:
    """Describe the parser and executor for ``customer-report``."""
    name = "customer-report"
    help_text = "Export one customer's details and transaction history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--output", type=Path, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customer_report)


def register_debug_command() -> CommandSpec:
    """Describe the parser and executor for ``debug``."""
    name = "debug"
    help_text = "Write both collections to the log for troubleshooting."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_debug)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(config_path)


def dispatch_command(
    context: core_logic.RuntimeContext,
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


def translate_add_customer(args: argparse.Namespace) -> core_logic.CreateCustomerCommand:
    """Translate CLI args into a create-customer command object."""
    return core_logic.build_create_customer_command(
        {
            "name": args.name,
            "phone": args.phone,
            "email": args.email,
            "address": args.address,
            "notes": args.notes,
            "opening_balance": args.opening_balance,
        }
    )


def translate_record(args: argparse.Namespace) -> core_logic.RecordTransactionCommand:
    """Translate CLI args into a record-transaction command object."""
    return core_logic.build_record_transaction_command(
        {
            "customer_id": args.customer_id,
            "kind": args.kind,
            "amount": args.amount,
            "date": args.date,
            "description": args.description,
        }
    )


def format_customer(customer: data_manager.CustomerRow) -> str:
    """Render one customer as a single listing line."""
    return " | ".join(
        [
            customer.customer_id,
            customer.name,
            customer.phone or "-",
            customer.email or "-",
            f"{customer.balance:.2f}",
            customer.last_transaction_date.isoformat(),
        ]
    )


def format_transaction(transaction: data_manager.TransactionRow) -> str:
    """Render one transaction as a single history line."""
    return " | ".join(
        [
            transaction.date.isoformat(),
            transaction.kind.label,
            f"{transaction.amount:.2f}",
            transaction.description or "-",
            f"{transaction.balance_after:.2f}",
        ]
    )


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-customer workflow."""
    command = translate_add_customer(args)
    customer = core_logic.create_customer(context, command)
    print(format_customer(customer))
    return 0


def run_record(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the record-transaction workflow."""
    command = translate_record(args)
    transaction = core_logic.record_transaction(context, command)
    print(f"{transaction.transaction_id} | {format_transaction(transaction)}")
    return 0


def run_delete_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-customer workflow."""
    removed = core_logic.delete_customer(context, args.customer_id)
    print(f"Deleted customer {args.customer_id} and {removed} transaction(s)")
    return 0


def run_check(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reconciliation workflow."""
    repaired = core_logic.reconcile(context)
    if repaired:
        print("Repaired: " + ", ".join(repaired))
    else:
        print("All balances consistent")
    return 0


def run_customers(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer listing workflow."""
    predicate = core_logic.matches_search_term(args.search)
    for customer in core_logic.list_customers(context, predicate):
        print(format_customer(customer))
    return 0


def run_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction history workflow."""
    customer = core_logic.get_customer(context, args.customer_id)
    print(f"{customer.name} - opening balance {customer.opening_balance:.2f}")
    for transaction in core_logic.get_transaction_history(context, customer.customer_id):
        print(format_transaction(transaction))
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the export workflow in the requested format."""
    if args.format == "xlsx":
        path = core_logic.export_workbook(context, args.output)
    else:
        path = core_logic.export_json(context, args.output)
    print(path)
    return 0


def run_customer_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the per-customer report workflow."""
    path = core_logic.export_customer_report(context, args.customer_id, args.output)
    print(path)
    return 0


def run_debug(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Log the store contents and summarize the counts on stdout."""
    core_logic.log_snapshot(context)
    print(
        f"Logged {len(context.ledger.customers)} customer(s) and "
        f"{len(context.ledger.transactions)} transaction(s)"
    )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.LedgerError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    Write commands persist inside the ledger core, so nothing is written here;
    a failing command leaves the store untouched.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
