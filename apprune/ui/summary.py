from __future__ import annotations

from collections.abc import Iterable, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from apprune.config.schema import Category
from apprune.models.enums import RemovalStatus
from apprune.models.groups import DuplicateGroup, DuplicateReport
from apprune.models.inventory import Inventory
from apprune.models.removal import RemovalResult
from apprune.services.formatting import format_bytes
from apprune.services.grouping import build_report
from apprune.services.rules import category_counts

_STATUS_STYLE = {
    RemovalStatus.REMOVED: "green",
    RemovalStatus.REJECTED: "yellow",
    RemovalStatus.FAILED: "red",
}


def _stats_panel(inventory: Inventory, report: DuplicateReport) -> Panel:
    stats = inventory.stats
    body = (
        f"Applications: [bold]{len(inventory)}[/bold]\n"
        f"Total Size: [bold]{format_bytes(stats.total_bytes)}[/bold]\n"
        f"Duplicate Groups: [bold]{report.group_count}[/bold]\n"
        f"Reclaimable: [bold]{format_bytes(report.reclaimable_bytes)}[/bold]\n"
        f"Partial Digests: [bold]{stats.partial}[/bold]\n"
        f"Access Errors: [bold]{stats.errors}[/bold]"
    )
    return Panel(body, title="Scan Summary", border_style="blue")


def _groups_table(groups: Sequence[DuplicateGroup]) -> Table:
    table = Table(title="Duplicate Applications", header_style="bold cyan")
    table.add_column("ID")
    table.add_column("Path")
    table.add_column("Role", justify="center")
    table.add_column("Size", justify="right")
    for index, group in enumerate(groups):
        if index:
            table.add_section()
        for member in group.members:
            keep = member.id == group.canonical_id
            table.add_row(
                member.id,
                escape(member.path),
                "[green]KEEP[/green]" if keep else "DUP",
                format_bytes(member.size_bytes),
            )
    return table


def _categories_table(assignment: dict[str, str], categories: Sequence[Category]) -> Table:
    counts = category_counts(assignment)
    table = Table(title="Applications by Category", header_style="bold magenta")
    table.add_column("Category")
    table.add_column("Count", justify="right")
    for cat in categories:
        table.add_row(cat.name, str(counts.get(cat.id, 0)))
    return table


def _errors_table(inventory: Inventory, top_n: int) -> Table:
    table = Table(title="Unreadable Applications", header_style="bold red")
    table.add_column("Path")
    table.add_column("Error")
    for err in inventory.errors[:top_n]:
        table.add_row(escape(err.path), err.code.value)
    return table


def render_summary(
    console: Console,
    inventory: Inventory,
    groups: Sequence[DuplicateGroup],
    assignment: dict[str, str],
    categories: Sequence[Category],
    top_n: int = 20,
) -> None:
    report = build_report(groups)
    console.print(_stats_panel(inventory, report))
    if groups:
        console.print(_groups_table(groups))
    else:
        console.print("[green]No duplicate applications found.[/green]")
    if categories:
        console.print(_categories_table(assignment, categories))
    if inventory.errors:
        console.print(_errors_table(inventory, top_n))


def render_removal(console: Console, results: Iterable[RemovalResult]) -> int:
    """Print one row per result; returns the total bytes freed."""
    table = Table(title="Removal Results", header_style="bold yellow")
    table.add_column("Path")
    table.add_column("Status", justify="center")
    table.add_column("Detail")
    table.add_column("Freed", justify="right")
    freed = 0
    for result in results:
        style = _STATUS_STYLE[result.status]
        detail = result.backup.location if result.backup is not None and result.ok else result.message
        table.add_row(
            escape(result.path or result.entry_id),
            f"[{style}]{result.status.value.upper()}[/{style}]",
            escape(detail),
            format_bytes(result.bytes_freed),
        )
        freed += result.bytes_freed
    console.print(table)
    return freed
