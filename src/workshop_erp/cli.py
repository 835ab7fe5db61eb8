"""Command-line entry points for the workshop persistence toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on the business layer. Keeping the CLI thin
ensures the same parser configuration can be reused by tests, scripts, or the
automation hook that takes scheduled backups.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import backup, core_logic, ledger, log
from .constants import Backend
from .exceptions import WorkshopError


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
        prog="workshop-cli",
        description="Backup and reporting tools for the workshop store.",
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
    backup_specs = register_backup_commands(subparsers)
    report_specs = register_report_commands(subparsers)
    return build_command_table([*backup_specs.values(), *report_specs.values()])


def register_backup_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare the snapshot, retention and restore commands."""
    specs = {
        "backup": register_backup_command(subparsers),
        "list-backups": register_list_backups_command(subparsers),
        "prune-backups": register_prune_backups_command(subparsers),
        "restore": register_restore_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_report_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only reporting commands."""
    specs = {
        "balance": register_balance_command(subparsers),
        "stats": register_stats_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_backup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``backup``."""
    name = "backup"
    help_text = "Take a snapshot of the store and apply the retention limit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_backup)


def register_list_backups_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``list-backups``."""
    name = "list-backups"
    help_text = "List existing snapshots, most recent first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_list_backups)


def register_prune_backups_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``prune-backups``."""
    name = "prune-backups"
    help_text = "Delete the oldest snapshots beyond the retention limit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--keep", type=int, default=None, help="Snapshots to keep (defaults to MaxSnapshots).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_prune_backups)


def register_restore_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Replace the store content with a snapshot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restore)


def register_balance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balance``."""
    name = "balance"
    help_text = "Display total, paid and residual amounts of a work order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--work-order-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balance)


def register_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Display work order counts and ledger totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--year", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Raises:
        ValueError: If the configuration selects the in-memory backend, whose
            content would vanish when the command exits.
    """
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    if context.settings.backend is Backend.MEMORY:
        core_logic.close_runtime_context(context)
        raise ValueError(f"{target}: the memory backend does not persist between commands; use Backend = workbook")
    return context


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


def run_backup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Take a snapshot; a failed cleanup is reported but does not fail the command."""
    manager = backup.manager_from_settings(context.store, context.settings)
    result = manager.snapshot()
    print(f"Snapshot created: {result.location}")
    if result.degraded:
        print(f"Warning: snapshot created but cleanup failed: {result.retention_error}")
    return 0


def run_list_backups(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    manager = backup.manager_from_settings(context.store, context.settings)
    snapshots = manager.list()
    if not snapshots:
        print("No snapshots found.")
    for location in snapshots:
        print(location)
    return 0


def run_prune_backups(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    manager = backup.manager_from_settings(context.store, context.settings)
    removed = manager.prune(args.keep)
    for location in removed:
        print(f"Removed: {location}")
    print(f"{len(removed)} snapshot(s) removed.")
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    manager = backup.manager_from_settings(context.store, context.settings)
    manager.restore(args.location)
    print(f"Store restored from {args.location}")
    return 0


def run_balance(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    balance = ledger.work_order_balance(context, args.work_order_id)
    print(f"Total:    {balance.total}")
    print(f"Paid:     {balance.paid}")
    print(f"Residual: {balance.residual}")
    return 0


def run_stats(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    open_orders, closed_orders = core_logic.work_order_stats(context)
    totals = ledger.ledger_totals(context, args.year)
    period = f" ({args.year})" if args.year is not None else ""
    print(f"Open work orders:   {open_orders}")
    print(f"Closed work orders: {closed_orders}")
    print(f"Income{period}:  {totals.income}")
    print(f"Expense{period}: {totals.expense}")
    print(f"Balance{period}: {totals.balance}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, WorkshopError):
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
    context: Optional[core_logic.RuntimeContext] = None
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
    finally:
        if context is not None:
            core_logic.close_runtime_context(context)
