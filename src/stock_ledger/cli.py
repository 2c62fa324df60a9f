"""Command-line entry points for the stock ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the business layer, and printing the
results. Keeping the CLI thin lets tests, scripts, or an HTTP front-end reuse
the same business functions.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import MovementType
from .data_manager import StockPeriod
from .exceptions import ChainInconsistency, LedgerError, PropagationIncomplete, StorageUnavailable


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
        prog="stock-ledger",
        description="Command-line tools for the monthly stock ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
        "record": register_record_command(subparsers),
        "update-entry": register_update_entry_command(subparsers),
        "delete-entry": register_delete_entry_command(subparsers),
        "expire": register_expire_command(subparsers),
        "repair": register_repair_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "balance": register_balance_command(subparsers),
        "period": register_period_command(subparsers),
        "history": register_history_command(subparsers),
        "audit": register_audit_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_product_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--tenant-id", default=None, help="Tenant id (defaults to [Defaults] DefaultTenant).")
    parser.add_argument("--product-id", required=True)


def _add_period_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--year", type=int, required=True)
    parser.add_argument("--month", type=int, required=True, choices=range(1, 13), metavar="MONTH")


def _add_detail_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--timestamp", type=datetime.fromisoformat, default=None, help="ISO-8601 timestamp.")
    parser.add_argument("--source-reference", default=None)
    parser.add_argument("--batch-number", default=None)
    parser.add_argument("--expire-date", type=date.fromisoformat, default=None, help="ISO date (YYYY-MM-DD).")
    parser.add_argument("--notes", dest="notes", default=None)


def register_record_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``record``."""
    name = "record"
    help_text = "Record a stock movement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_arguments(parser)
        parser.add_argument(
            "--type",
            dest="movement_type",
            type=str.upper,
            choices=[member.value for member in MovementType if member is not MovementType.CUSTOM],
            required=True,
        )
        parser.add_argument("--quantity", type=int, required=True)
        _add_detail_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_record)


def register_update_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-entry``."""
    name = "update-entry"
    help_text = "Replace the quantity and details of an existing entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_arguments(parser)
        _add_period_arguments(parser)
        parser.add_argument("--entry-id", required=True)
        parser.add_argument(
            "--type",
            dest="movement_type",
            type=str.upper,
            choices=[member.value for member in MovementType if member is not MovementType.CUSTOM],
            required=True,
        )
        parser.add_argument("--quantity", type=int, required=True)
        _add_detail_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_entry)


def register_delete_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-entry``."""
    name = "delete-entry"
    help_text = "Delete an entry and carry the new balance forward."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_arguments(parser)
        _add_period_arguments(parser)
        parser.add_argument("--entry-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_entry)


def register_expire_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expire``."""
    name = "expire"
    help_text = "Write off batches whose expiry date has passed."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_arguments(parser)
        parser.add_argument("--now", type=datetime.fromisoformat, default=None, help="Evaluate expiry as of this time.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expire)


def register_repair_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``repair``."""
    name = "repair"
    help_text = "Recompute a product's carry-forward chain."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tenant-id", default=None)
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument("--product-id")
        target.add_argument("--all", action="store_true", help="Repair every product of the tenant.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_repair)


def register_balance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balance``."""
    name = "balance"
    help_text = "Display the current stock balance of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balance)


def register_period_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``period``."""
    name = "period"
    help_text = "Display one month's entries and totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_arguments(parser)
        _add_period_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_period)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display the carry-forward chain of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history)


def register_audit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Check a product's chain without changing it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


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


def resolve_tenant(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    """Return ``--tenant-id`` or the configured default tenant."""
    tenant_id = getattr(args, "tenant_id", None) or context.settings.default_tenant_id
    if not tenant_id:
        raise KeyError("No tenant id given and no [Defaults] DefaultTenant configured")
    return tenant_id


def translate_record(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.MovementCommand:
    """Translate CLI args into a movement command object."""
    return core_logic.build_movement_command(
        resolve_tenant(context, args),
        args.product_id,
        MovementType(args.movement_type),
        args.quantity,
        timestamp=args.timestamp,
        source_reference=args.source_reference,
        batch_number=args.batch_number,
        expire_date=args.expire_date,
        notes=args.notes,
    )


def format_period(period: StockPeriod) -> list[str]:
    """Render a period as printable lines."""
    lines = [
        f"{period.label}  opening={period.opening_balance}  closing={period.closing_balance}",
        f"  added={period.total_added}  used={period.total_used}  "
        f"expired={period.total_expired}  damaged={period.total_damaged}",
    ]
    for entry in period.movements:
        lines.append(
            f"  {entry.entry_id}  {entry.timestamp.isoformat()}  {entry.movement_type:<10} "
            f"+{entry.added} -{entry.used} -{entry.expired} -{entry.damaged}  balance={entry.running_balance}"
        )
    return lines


def run_record(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the record workflow via the BLL."""
    command = translate_record(context, args)
    recorded = core_logic.record_movement(context, command)
    print(f"{recorded.entry.entry_id}  {recorded.period.label}  balance={recorded.running_balance}")
    return 0


def run_update_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the entry update workflow via the BLL."""
    replacement = translate_record(context, args)
    period = core_logic.update_movement(
        context,
        replacement.tenant_id,
        replacement.product_id,
        args.year,
        args.month,
        args.entry_id,
        replacement,
    )
    print("\n".join(format_period(period)))
    return 0


def run_delete_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the entry deletion workflow via the BLL."""
    period = core_logic.delete_movement(
        context,
        resolve_tenant(context, args),
        args.product_id,
        args.year,
        args.month,
        args.entry_id,
    )
    print("\n".join(format_period(period)))
    return 0


def run_expire(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the auto-expiry workflow via the BLL."""
    recorded = core_logic.expire_due_stock(context, resolve_tenant(context, args), args.product_id, args.now)
    for item in recorded:
        print(f"{item.entry.source_reference}  expired={item.entry.expired}  balance={item.running_balance}")
    print(f"{len(recorded)} batch(es) expired")
    return 0


def run_repair(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the chain repair workflow via the BLL."""
    if args.all:
        reports = core_logic.repair_all(context, getattr(args, "tenant_id", None))
    else:
        reports = [core_logic.repair_product(context, resolve_tenant(context, args), args.product_id)]
    for report in reports:
        print(
            f"{report.tenant_id}/{report.product_id}: examined={report.periods_examined} "
            f"corrected={report.periods_corrected}"
        )
    return 0


def run_balance(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the current balance lookup."""
    balance = core_logic.get_current_balance(context, resolve_tenant(context, args), args.product_id)
    print(balance)
    return 0


def run_period(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the period lookup."""
    period = core_logic.get_period(context, resolve_tenant(context, args), args.product_id, args.year, args.month)
    print("\n".join(format_period(period)))
    return 0


def run_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the chain listing."""
    for period in core_logic.list_periods(context, resolve_tenant(context, args), args.product_id):
        print(f"{period.label}: carry={period.opening_balance} -> closing={period.closing_balance}")
    return 0


def run_audit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the strict chain verification."""
    core_logic.verify_product(context, resolve_tenant(context, args), args.product_id)
    print("Chain is consistent")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, ChainInconsistency):
        for finding in error.findings:
            log.error("%s", finding)
        log.error("%s", error)
        return 5
    if isinstance(error, PropagationIncomplete):
        log.error("%s", error)
        return 5
    if isinstance(error, StorageUnavailable):
        log.error("%s (retryable)", error)
        return 4
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, (LedgerError, ValueError)):
        log.error("%s", error)
        return 2
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
