"""Liveness guard — refuse to start a second daemon on the same store.

The process table comes from psutil; the daemon also records its pid in a
pid file. A pid file whose process is gone (or is some other program) is
stale and gets removed.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import psutil

from netpulse.errors import DaemonAlreadyRunningError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    cmdline: tuple[str, ...] = ()

    def matches(self, name: str) -> bool:
        """True if this process runs the program called ``name``."""
        if self.name == name:
            return True
        if not self.cmdline:
            return False
        program = os.path.basename(self.cmdline[0])
        if program == name:
            return True
        # Interpreted entry points show up as "python3 .../netpulsed"
        return (
            program.startswith("python")
            and len(self.cmdline) > 1
            and os.path.basename(self.cmdline[1]) == name
        )


def list_processes() -> list[ProcessInfo]:
    """Snapshot of the running processes."""
    processes = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        info = proc.info
        processes.append(ProcessInfo(
            pid=info["pid"],
            name=info["name"] or "",
            cmdline=tuple(info["cmdline"] or ()),
        ))
    return processes


def process_info(pid: int) -> ProcessInfo | None:
    """The process with ``pid``, or None if it no longer exists."""
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            name = proc.name()
            try:
                cmdline = tuple(proc.cmdline())
            except psutil.AccessDenied:
                cmdline = ()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
    return ProcessInfo(pid=pid, name=name, cmdline=cmdline)


def find_running_instance(
    name: str,
    processes: list[ProcessInfo],
    own_pid: int | None = None,
    exclude: Iterable[int] = (),
) -> ProcessInfo | None:
    """First process running ``name`` that is not us.

    Pids in ``exclude`` are skipped too (e.g. the launcher that started us).
    """
    own_pid = os.getpid() if own_pid is None else own_pid
    skipped = set(exclude)
    for proc in processes:
        if proc.pid == own_pid or proc.pid in skipped:
            continue
        if proc.matches(name):
            return proc
    return None


# ── Pid file ─────────────────────────────────────────────────────────────────


def read_pid_file(path: Path) -> int | None:
    """The pid recorded in ``path``, or None if there is no usable pid file."""
    try:
        return int(path.read_text().strip())
    except FileNotFoundError:
        return None
    except ValueError:
        logger.warning("Pid file %s does not contain a pid", path)
        return None


def write_pid_file(path: Path, pid: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{os.getpid() if pid is None else pid}\n")


def remove_pid_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def recorded_instance(
    name: str, pid_file: Path, processes: list[ProcessInfo] | None = None,
) -> ProcessInfo | None:
    """The live process named by ``pid_file``, if it runs ``name``."""
    recorded = read_pid_file(pid_file)
    if recorded is None:
        return None
    if processes is None:
        owner = process_info(recorded)
    else:
        owner = next((p for p in processes if p.pid == recorded), None)
    if owner is not None and owner.matches(name):
        return owner
    return None


def ensure_not_running(
    name: str,
    pid_file: Path | None = None,
    processes: list[ProcessInfo] | None = None,
    own_pid: int | None = None,
    exclude: Iterable[int] = (),
) -> None:
    """Raise DaemonAlreadyRunningError if another instance is alive.

    A leftover pid file with no matching live process is removed.
    """
    own_pid = os.getpid() if own_pid is None else own_pid

    if pid_file is not None and read_pid_file(pid_file) not in (None, own_pid):
        owner = recorded_instance(name, pid_file, processes)
        if owner is not None:
            raise DaemonAlreadyRunningError(owner.pid, name)
        logger.info("Removing stale pid file %s", pid_file)
        remove_pid_file(pid_file)

    if processes is None:
        processes = list_processes()
    running = find_running_instance(name, processes, own_pid, exclude)
    if running is not None:
        raise DaemonAlreadyRunningError(running.pid, name)
