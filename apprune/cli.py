from __future__ import annotations

import argparse
import dataclasses
import os
import sys
from collections.abc import Sequence

import structlog
from rich.console import Console
from rich.prompt import Confirm

from apprune.config.loader import CONFIG_PATH, load_config, sample_config_json
from apprune.config.schema import AppConfig, ScanRoot, clamp_field
from apprune.engine import categorize, group_duplicates, plan_and_execute_removal, run_scan
from apprune.log import configure_logging
from apprune.models.enums import HashAlgorithm
from apprune.models.inventory import Inventory
from apprune.models.removal import RemovalRequest
from apprune.services.backup import prune_backups
from apprune.services.formatting import format_bytes, parse_bytes
from apprune.services.removal import RemovalPlanner
from apprune.ui.summary import render_removal, render_summary

logger = structlog.get_logger(__name__)


def _size(text: str) -> int:
    try:
        return parse_bytes(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="apprune",
        description="Find duplicate installed applications and remove redundant copies safely.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", default=CONFIG_PATH, help="Path to config JSON")
    parser.add_argument("--log-level", choices=["debug", "info", "warning", "error"], help="Override logLevel")
    parser.add_argument("--json-logs", action="store_true", help="Emit structured logs as JSON lines")
    parser.add_argument("--sample-config", action="store_true", help="Print a sample config and exit")

    sub = parser.add_subparsers(dest="command")

    scan = sub.add_parser("scan", help="Scan roots and report duplicates and categories")
    scan.add_argument("roots", nargs="*", help="Roots to scan (default: configured scanRoots)")
    scan.add_argument("--workers", type=int, help="Hashing threads (default: threadCount)")
    scan.add_argument("--algorithm", choices=[a.value for a in HashAlgorithm], help="Hash algorithm")
    scan.add_argument("--max-file-size", type=_size, help="Skip members larger than this (e.g. 2GB)")
    scan.add_argument("--top", type=int, default=20, help="Rows shown in the error table")

    remove = sub.add_parser("remove", help="Remove duplicate copies found by a fresh scan")
    remove.add_argument("targets", nargs="+", help="Paths (or ids from this scan) of copies to remove")
    remove.add_argument("--no-backup", action="store_true", help="Delete without writing a backup first")
    remove.add_argument("--dry-run", action="store_true", help="Validate only; touch nothing")
    remove.add_argument("-y", "--yes", action="store_true", help="Skip the confirmation prompt")

    prune = sub.add_parser("prune-backups", help="Delete backup batches older than the retention window")
    prune.add_argument("--days", type=int, help="Retention in days (default: retainBackups)")
    return parser


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    changes: dict[str, object] = {}
    if getattr(args, "roots", None):
        changes["scan_roots"] = [ScanRoot(path=p) for p in args.roots]
    if getattr(args, "workers", None):
        changes["thread_count"] = clamp_field(args.workers, "thread_count")
    if getattr(args, "algorithm", None):
        changes["hash_algorithm"] = HashAlgorithm.from_str(args.algorithm)
    if getattr(args, "max_file_size", None) is not None:
        changes["max_file_size"] = args.max_file_size
    return dataclasses.replace(config, **changes) if changes else config


def _scan(console: Console, config: AppConfig) -> Inventory | None:
    with console.status("[bold blue]Scanning applications...") as status:

        def _progress(path: str, processed: int, estimate: int) -> None:
            status.update(f"[bold blue]Hashing {processed}/{estimate}[/bold blue] {path}")

        result = run_scan(config, progress_callback=_progress)
    if result.is_err():
        err = result.unwrap_err()
        console.print(f"[red]Scan failed ({err.code.value}):[/red] {err.path} {err.message}")
        return None
    return result.unwrap()


def _resolve_targets(inventory: Inventory, targets: Sequence[str]) -> tuple[set[str], list[str]]:
    by_path = {e.path: e.id for e in inventory.entries}
    ids: set[str] = set()
    unknown: list[str] = []
    for target in targets:
        path = os.path.abspath(os.path.expanduser(target))
        if target in inventory:
            ids.add(target)
        elif path in by_path:
            ids.add(by_path[path])
        else:
            unknown.append(target)
    return ids, unknown


def cmd_scan(console: Console, config: AppConfig, args: argparse.Namespace) -> int:
    inventory = _scan(console, config)
    if inventory is None:
        return 2
    groups = group_duplicates(inventory, config)
    assignment = categorize(inventory, config.categories)
    render_summary(console, inventory, groups, assignment, config.categories, top_n=args.top)
    return 0


def cmd_remove(console: Console, config: AppConfig, args: argparse.Namespace) -> int:
    inventory = _scan(console, config)
    if inventory is None:
        return 2
    ids, unknown = _resolve_targets(inventory, args.targets)
    for target in unknown:
        console.print(f"[yellow]Not found in scan:[/yellow] {target}")

    groups = group_duplicates(inventory, config)
    backup = config.backup_before_removal and not args.no_backup
    request = RemovalRequest.of(ids, groups, backup=backup)

    if args.dry_run:
        plan = RemovalPlanner(inventory, config).plan(request)
        for entry in plan.accepted:
            console.print(f"[green]Would remove[/green] {entry.path} ({format_bytes(entry.size_bytes)})")
        render_removal(console, plan.rejected)
        return 0

    if not ids:
        return 1
    if not args.yes and not Confirm.ask(f"Remove {len(ids)} application(s)?", console=console):
        return 1

    outcome = plan_and_execute_removal(request, inventory, config)
    if outcome.is_err():
        err = outcome.unwrap_err()
        console.print(f"[red]Removal aborted ({err.code.value}):[/red] {err.path} {err.message}")
        return 2
    results = list(outcome.unwrap())
    freed = render_removal(console, results)
    console.print(f"Freed [bold]{format_bytes(freed)}[/bold]")
    return 0 if all(r.ok for r in results) else 1


def cmd_prune(console: Console, config: AppConfig, args: argparse.Namespace) -> int:
    days = config.retain_backups if args.days is None else clamp_field(args.days, "retain_backups")
    removed = prune_backups(config.backup_location, days)
    for path in removed:
        console.print(f"Pruned {path}")
    console.print(f"Removed [bold]{len(removed)}[/bold] backup batch(es) older than {days} days")
    return 0


_COMMANDS = {
    "scan": cmd_scan,
    "remove": cmd_remove,
    "prune-backups": cmd_prune,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    console = Console()

    if args.sample_config:
        console.print_json(sample_config_json())
        return 0
    if args.command is None:
        parser.print_help()
        return 1

    loaded = load_config(args.config)
    if loaded.is_err():
        console.print(f"[red]{loaded.unwrap_err()}[/red]")
        return 2
    config = _apply_overrides(loaded.unwrap(), args)
    configure_logging(args.log_level or config.log_level, json_format=args.json_logs)
    logger.debug("command_started", command=args.command, config=args.config)
    return _COMMANDS[args.command](console, config, args)


if __name__ == "__main__":
    sys.exit(main())
