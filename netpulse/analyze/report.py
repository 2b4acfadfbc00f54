"""Human-readable analysis report, rendered with rich.

Sections: General, HTTP, ICMP, IPv4, IPv6, Outages, Store Metadata.
"""

from __future__ import annotations

from collections.abc import Iterable

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table

from netpulse.analyze.outage import (
    DEFAULT_GAP_TOLERANCE,
    Outage,
    outages,
    sort_by_severity,
)
from netpulse.analyze.stats import CategoryStats, summarize
from netpulse.records import Combination, IpStack, fmt_timestamp
from netpulse.store import Store


def _section(console: Console, title: str) -> None:
    console.print(Rule(f"[bold]{title}[/bold]", align="left"))


def _key_values(rows: Iterable[tuple[str, str]]) -> Table:
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan", min_width=24)
    table.add_column()
    for key, value in rows:
        table.add_row(key, value)
    return table


def stats_rows(stats: CategoryStats) -> list[tuple[str, str]]:
    rows = [
        ("checks", f"{stats.total:08}"),
        ("checks ok", f"{stats.ok:08}"),
        ("checks bad", f"{stats.bad:08}"),
        ("success ratio", f"{stats.success_ratio * 100:.2f}%"),
        ("first check at", fmt_timestamp(stats.first_timestamp)),
        ("last check at", fmt_timestamp(stats.last_timestamp)),
    ]
    if stats.mean_latency_ms is not None:
        rows.append((
            "latency min/avg/max",
            f"{stats.min_latency_ms} / {stats.mean_latency_ms:.1f} / {stats.max_latency_ms} ms",
        ))
    return rows


def store_metadata(store: Store) -> list[tuple[str, str]]:
    """Hashes, versions and sizes of a store that lives on disk."""
    mem = store.size_in_memory()
    disk = store.size_on_disk()
    return [
        ("Hash Datastructure", store.display_hash()),
        ("Hash Store File", store.hash_of_file()),
        ("Store Version (mem)", str(int(store.version))),
        ("Store Version (file)", str(int(Store.peek_version(store.path)))),
        ("Store Size (mem)", f"{mem} B"),
        ("Store Size (file)", f"{disk} B"),
        ("File to Mem Ratio", f"{disk / mem:.5f}"),
    ]


def outage_panel(outage: Outage) -> Panel:
    style = "red" if outage.severity.is_complete else "yellow"
    return Panel(outage.describe(), border_style=style, expand=False)


def render_report(
    console: Console,
    store: Store,
    *,
    period: float,
    enabled: Iterable[Combination] | None = None,
    stack_filter: IpStack | None = None,
    cutoff: int | None = None,
    by_severity: bool = False,
    tolerance: float = DEFAULT_GAP_TOLERANCE,
) -> None:
    """Print the full report for ``store`` to ``console``."""
    for name, stats in summarize(store.records).items():
        _section(console, name)
        if stats.total == 0:
            console.print("Store has no checks yet" if name == "General" else "None")
        else:
            console.print(_key_values(stats_rows(stats)))
        console.print()

    _section(console, "Outages")
    found = outages(
        store.records,
        period=period,
        enabled=enabled,
        stack_filter=stack_filter,
        cutoff=cutoff,
        tolerance=tolerance,
    )
    if by_severity:
        found = sort_by_severity(found)
    if not found:
        console.print("None")
    for outage in found:
        console.print(outage_panel(outage))
    console.print()

    _section(console, "Store Metadata")
    console.print(_key_values(store_metadata(store)))
