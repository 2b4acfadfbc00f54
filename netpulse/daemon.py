"""Daemon control loop — drive the runner and the store on a fixed period.

States::

    STARTING ──load ok──▶ RUNNING ◀──▶ RELOAD_PENDING
        │                    │
        └──load failed──┐    └──stop──▶ STOP_REQUESTED ──final save──▶ STOPPED
                        ▼
                     STOPPED

Signal handlers only set flags on ``ControlSignals``. The loop looks at those
flags between cycles, so a stop never interrupts a batch half-way: the cycle
in flight finishes, is saved, and only then does the loop exit.

Store errors: a transient ``StoreIoError`` on save is logged and retried on
the next cycle. A file that is unreadable or from an unknown format
(decompress, deserialize, unsupported version), or checks that cannot be
encoded in the store's version (serialize), stop the daemon with a
non-zero status.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from enum import Enum

from netpulse.checks import Clock
from netpulse.config import DaemonConfig
from netpulse.errors import StoreError, StoreIoError
from netpulse.liveness import (
    ProcessInfo,
    ensure_not_running,
    find_running_instance,
    list_processes,
    recorded_instance,
    remove_pid_file,
    write_pid_file,
)
from netpulse.records import CheckRecord
from netpulse.runner import CheckRunner
from netpulse.store import Store

logger = logging.getLogger(__name__)


class DaemonState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    RELOAD_PENDING = "reload_pending"
    STOP_REQUESTED = "stop_requested"
    STOPPED = "stopped"


# ── Signals ──────────────────────────────────────────────────────────────────


class ControlSignals:
    """Cancellation token shared between signal handlers and the loop."""

    def __init__(self) -> None:
        self._stop = threading.Event()
        self._reload = threading.Event()
        self._wake = threading.Event()

    def request_stop(self) -> None:
        self._stop.set()
        self._wake.set()

    def request_reload(self) -> None:
        self._reload.set()
        self._wake.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def take_reload(self) -> bool:
        """True once per reload request."""
        if self._reload.is_set():
            self._reload.clear()
            return True
        return False

    def wait(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds. True if woken by a signal."""
        woken = self._wake.wait(timeout)
        self._wake.clear()
        return woken


def install_signal_handlers(signals: ControlSignals) -> None:
    """SIGTERM/SIGINT stop the daemon, SIGHUP reloads the store.

    Must be called from the main thread.
    """
    signal.signal(signal.SIGTERM, lambda signum, frame: signals.request_stop())
    signal.signal(signal.SIGINT, lambda signum, frame: signals.request_stop())
    signal.signal(signal.SIGHUP, lambda signum, frame: signals.request_reload())


# ── Control loop ─────────────────────────────────────────────────────────────


class ControlLoop:
    """Sequential cycle loop. Owns the store; nothing else touches it."""

    def __init__(
        self,
        config: DaemonConfig,
        signals: ControlSignals,
        runner: CheckRunner | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self.signals = signals
        self.runner = runner or CheckRunner(config)
        self.clock = clock or time.time
        self.state = DaemonState.STARTING
        self.store: Store | None = None
        self.cycles = 0
        self._last_boundary: int | None = None
        self._retry_save = False
        # Records appended since the last successful save
        self._unsaved: list[CheckRecord] = []

    def run(self) -> int:
        """Run until stopped. Returns the process exit status."""
        try:
            self.store = Store.load_or_create(self.config.store_path)
        except StoreError:
            logger.exception("Could not open the store at %s", self.config.store_path)
            self.state = DaemonState.STOPPED
            return 1

        if self.store.needs_migration:
            logger.warning(
                "Store %s uses format version %d; run `netpulse migrate` to upgrade it",
                self.config.store_path, self.store.version,
            )
        self.state = DaemonState.RUNNING
        logger.info(
            "Daemon running: %d checks every %ds, store %s (%d checks loaded)",
            len(self.config.enabled), self.config.period_seconds,
            self.config.store_path, len(self.store),
        )

        try:
            while not self.signals.stop_requested:
                if self.signals.take_reload():
                    self._reload()
                    continue
                timestamp = self._wait_for_boundary()
                if timestamp is None:
                    continue
                self._cycle(timestamp)
            self.state = DaemonState.STOP_REQUESTED
            logger.info("Stop requested, saving %d pending checks", len(self._unsaved))
            self._save(final=True)
        except StoreError:
            logger.exception("Fatal store error, stopping the daemon")
            self.state = DaemonState.STOPPED
            return 1

        self.state = DaemonState.STOPPED
        logger.info("Daemon stopped after %d cycles", self.cycles)
        return 0

    def _wait_for_boundary(self) -> int | None:
        """Sleep until the next period boundary; None if a signal woke us."""
        period = self.config.period_seconds
        now = self.clock()
        boundary = (int(now // period) + 1) * period
        if self._last_boundary is not None:
            # Never run the same slot twice, even if the wait returned early
            boundary = max(boundary, self._last_boundary + period)
        if self.signals.wait(max(0.0, boundary - now)):
            return None
        self._last_boundary = boundary
        return boundary

    def _cycle(self, timestamp: int) -> None:
        batch = self.runner.run_cycle(timestamp)
        self.store.add_checks(batch)
        self._unsaved.extend(batch)
        self.cycles += 1
        if self._retry_save or self.cycles % self.config.save_every == 0:
            self._save()

    def _save(self, final: bool = False) -> None:
        try:
            self.store.save()
        except StoreIoError:
            if final:
                raise
            logger.warning(
                "Could not save the store, retrying next cycle (%d checks pending)",
                len(self._unsaved), exc_info=True,
            )
            self._retry_save = True
            return
        self._retry_save = False
        self._unsaved.clear()

    def _reload(self) -> None:
        self.state = DaemonState.RELOAD_PENDING
        logger.info("Reloading the store from %s", self.config.store_path)
        try:
            fresh = Store.load(self.config.store_path)
        except StoreIoError:
            logger.warning("Reload failed, keeping the current store", exc_info=True)
            self.state = DaemonState.RUNNING
            return
        fresh.add_checks(self._unsaved)
        logger.info(
            "Reloaded %d checks (%d unsaved carried over)", len(fresh), len(self._unsaved),
        )
        self.store = fresh
        self.state = DaemonState.RUNNING


# ── Process management ───────────────────────────────────────────────────────


def serve(config: DaemonConfig) -> int:
    """Run the daemon in the foreground until SIGTERM. Returns the exit status."""
    ensure_not_running(config.daemon_name, config.pid_file, exclude=(os.getppid(),))
    if config.pid_file is not None:
        write_pid_file(config.pid_file)

    signals = ControlSignals()
    install_signal_handlers(signals)
    loop = ControlLoop(config, signals)
    status: list[int] = []

    def control() -> None:
        try:
            status.append(loop.run())
        except Exception:
            logger.exception("Control loop crashed")
            status.append(1)

    thread = threading.Thread(target=control, name="netpulse-control")
    try:
        thread.start()
        thread.join()
    finally:
        if config.pid_file is not None:
            remove_pid_file(config.pid_file)
    return status[0] if status else 1


def running_instance(config: DaemonConfig) -> ProcessInfo | None:
    """The live daemon for this config, if any."""
    if config.pid_file is not None:
        owner = recorded_instance(config.daemon_name, config.pid_file)
        if owner is not None:
            return owner
    return find_running_instance(config.daemon_name, list_processes(), exclude=(os.getppid(),))


def end_daemon(config: DaemonConfig) -> int | None:
    """Send SIGTERM to the running daemon. Returns its pid, or None."""
    proc = running_instance(config)
    if proc is None:
        return None
    os.kill(proc.pid, signal.SIGTERM)
    logger.info("Sent SIGTERM to %s (pid %d)", config.daemon_name, proc.pid)
    return proc.pid
