"""Console entry points for the `netpulse` reader and the `netpulsed` daemon."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from netpulse import __version__
from netpulse.analyze.report import render_report
from netpulse.config import DaemonConfig, settings
from netpulse.daemon import end_daemon, running_instance, serve
from netpulse.errors import DaemonAlreadyRunningError, StoreError
from netpulse.records import CheckRecord, IpStack
from netpulse.runner import CheckRunner
from netpulse.store import Store

console = Console()
err_console = Console(stderr=True)


def _setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


def _load_config(store: str | None) -> DaemonConfig:
    config = DaemonConfig.from_settings(settings)
    if store:
        config = dataclasses.replace(config, store_path=Path(store))
    return config


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {number}")
    return number


def _print_records(records: list[CheckRecord]) -> None:
    if not records:
        console.print("[dim]No checks[/dim]")
    for record in records:
        style = "green" if record.is_success else "red"
        console.print(record.describe(), style=style, highlight=False, soft_wrap=True)


# ── netpulse ─────────────────────────────────────────────────────────────────


def cmd_analyze(args: argparse.Namespace, config: DaemonConfig) -> int:
    store = Store.load(config.store_path, readonly=True)
    render_report(
        console,
        store,
        period=config.period_seconds,
        enabled=config.enabled,
        stack_filter=IpStack(args.stack) if args.stack else None,
        cutoff=args.cutoff,
        by_severity=args.by_severity,
        tolerance=config.gap_tolerance,
    )
    return 0


def cmd_dump(args: argparse.Namespace, config: DaemonConfig) -> int:
    store = Store.load(config.store_path, readonly=True)
    records = [r for r in store.records if not (args.failed and r.is_success)]
    _print_records(records)
    return 0


def cmd_test(args: argparse.Namespace, config: DaemonConfig) -> int:
    with console.status("[bold green]Running checks..."):
        records = CheckRunner(config).run_cycle()
    _print_records(records)
    return 0


def cmd_rewrite(args: argparse.Namespace, config: DaemonConfig) -> int:
    store = Store.load(config.store_path)
    store.save()
    console.print(f"Rewrote {config.store_path} ({len(store)} checks, version {int(store.version)})")
    return 0


def cmd_migrate(args: argparse.Namespace, config: DaemonConfig) -> int:
    store = Store.load(config.store_path)
    old = store.version
    if not store.migrate():
        console.print(f"Store is already at version {int(old)}, nothing to do")
        return 0
    store.save()
    console.print(f"Migrated {config.store_path} from version {int(old)} to {int(store.version)}")
    return 0


def cmd_version(args: argparse.Namespace, config: DaemonConfig | None = None) -> int:
    console.print(f"netpulse {__version__}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="netpulse", description="Analyze netpulse connectivity history")
    parser.add_argument("--store", help="Path to the store file (default: NETPULSE_STORE_PATH)")
    sub = parser.add_subparsers(dest="command")

    analyze = sub.add_parser("analyze", help="Print the analysis report (default)")
    analyze.add_argument("--stack", choices=[s.value for s in IpStack], help="Only analyze one IP stack")
    analyze.add_argument("--cutoff", type=_non_negative_int, help="Only analyze the N most recent checks")
    analyze.add_argument("--by-severity", action="store_true", help="Rank outages by severity")

    dump = sub.add_parser("dump", help="Print every stored check")
    dump.add_argument("--failed", action="store_true", help="Only failed checks")

    sub.add_parser("test", help="Run all checks once without storing them")
    sub.add_parser("rewrite", help="Load the store and save it again")
    sub.add_parser("migrate", help="Upgrade the store to the current format version")
    sub.add_parser("version", help="Print the version")
    return parser


COMMANDS = {
    "analyze": cmd_analyze,
    "dump": cmd_dump,
    "test": cmd_test,
    "rewrite": cmd_rewrite,
    "migrate": cmd_migrate,
}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging()

    if args.command == "version":
        sys.exit(cmd_version(args))
    if args.command is None:
        args = parser.parse_args([*(sys.argv[1:] if argv is None else argv), "analyze"])

    try:
        config = _load_config(args.store)
    except ValueError as e:
        err_console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)

    try:
        sys.exit(COMMANDS[args.command](args, config))
    except StoreError as e:
        err_console.print(f"[red]Store error:[/red] {e}")
        sys.exit(1)


# ── netpulsed ────────────────────────────────────────────────────────────────


def daemon_run(config: DaemonConfig) -> int:
    console.print(
        Panel.fit(
            f"[bold]netpulse daemon[/bold]\n"
            f"Store:  {config.store_path}\n"
            f"Checks: {', '.join(c.value for c in config.enabled)}\n"
            f"Period: {config.period_seconds}s (timeout {config.timeout_seconds}s)",
            title=config.daemon_name,
            border_style="green",
        )
    )
    try:
        return serve(config)
    except DaemonAlreadyRunningError as e:
        err_console.print(f"[red]{e}[/red]")
        return 1


def daemon_info(config: DaemonConfig) -> int:
    proc = running_instance(config)
    if proc is None:
        console.print(f"{config.daemon_name} is [red]not running[/red]")
        return 1
    console.print(f"{config.daemon_name} is [green]running[/green] (pid {proc.pid})")
    try:
        console.print(f"Store {config.store_path}: version {int(Store.peek_version(config.store_path))}")
    except StoreError as e:
        console.print(f"Store {config.store_path}: [yellow]{e}[/yellow]")
    return 0


def daemon_end(config: DaemonConfig) -> int:
    pid = end_daemon(config)
    if pid is None:
        err_console.print(f"{config.daemon_name} is not running")
        return 1
    console.print(f"Asked {config.daemon_name} (pid {pid}) to stop")
    return 0


DAEMON_COMMANDS = {"run": daemon_run, "info": daemon_info, "end": daemon_end}


def daemon_main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="netpulsed", description="netpulse connectivity daemon")
    parser.add_argument("--store", help="Path to the store file (default: NETPULSE_STORE_PATH)")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the daemon in the foreground")
    sub.add_parser("info", help="Show whether the daemon is running")
    sub.add_parser("end", help="Stop the running daemon")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(1)
    _setup_logging()

    try:
        config = _load_config(args.store)
    except ValueError as e:
        err_console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)
    sys.exit(DAEMON_COMMANDS[args.command](config))


if __name__ == "__main__":
    main()
