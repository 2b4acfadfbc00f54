"""Configuration — environment/.env settings plus the validated runtime config.

``Settings`` is what operators edit (``NETPULSE_*`` variables or a ``.env``
file). ``DaemonConfig`` is the immutable object the daemon actually runs on;
building it validates the enabled checks once, so a contradictory entry is
rejected before the control loop starts.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

from netpulse.errors import (
    AmbiguousCombinationError,
    MissingCombinationError,
    UnknownCombinationError,
)
from netpulse.records import TARGET_V4, TARGET_V6, CheckKind, Combination, IpStack

DEFAULT_STORE_DIR = "/var/lib/netpulse"
STORE_NAME = "netpulse.store"
DEFAULT_PID_FILE = "/run/netpulse/netpulse.pid"


class Settings(BaseSettings):
    """Operator-facing settings loaded from environment / .env file."""

    model_config = {
        "env_prefix": "NETPULSE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # Store
    store_path: str = f"{DEFAULT_STORE_DIR}/{STORE_NAME}"

    # Probing
    period_seconds: int = 60
    timeout_seconds: float = 10.0
    enabled_checks: str = "http-v4,http-v6,icmp-v4,icmp-v6"  # comma separated
    target_v4: str = TARGET_V4
    target_v6: str = TARGET_V6

    # Persistence cadence (in cycles)
    save_every: int = 1

    # Outage grouping: max gap between failures, in periods
    gap_tolerance: float = 1.5

    # Daemon process
    pid_file: str = DEFAULT_PID_FILE
    daemon_name: str = "netpulsed"

    # Logging
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level


settings = Settings()


# ── Combination parsing ──────────────────────────────────────────────────────

_KIND_TOKENS = {"http": CheckKind.HTTP, "https": CheckKind.HTTP, "icmp": CheckKind.ICMP, "ping": CheckKind.ICMP}
_STACK_TOKENS = {"v4": IpStack.V4, "ipv4": IpStack.V4, "v6": IpStack.V6, "ipv6": IpStack.V6}
_SPLIT = re.compile(r"[-+_/\s]+")


def parse_combination(entry: str) -> Combination:
    """Parse one entry like ``http-v4`` into a Combination.

    Raises AmbiguousCombinationError when the entry names two kinds or two
    stacks, MissingCombinationError when it lacks either.
    """
    tokens = [t for t in _SPLIT.split(entry.strip().lower()) if t]
    kinds: set[CheckKind] = set()
    stacks: set[IpStack] = set()
    for token in tokens:
        if token in _KIND_TOKENS:
            kinds.add(_KIND_TOKENS[token])
        elif token in _STACK_TOKENS:
            stacks.add(_STACK_TOKENS[token])
        else:
            raise UnknownCombinationError(f"Unknown token {token!r} in check {entry!r}")

    if len(kinds) > 1 or len(stacks) > 1:
        raise AmbiguousCombinationError(
            f"Check {entry!r} names more than one kind or stack: "
            f"{sorted(k.value for k in kinds)} / {sorted(s.value for s in stacks)}"
        )
    if not kinds or not stacks:
        missing = "kind (http|icmp)" if not kinds else "stack (v4|v6)"
        raise MissingCombinationError(f"Check {entry!r} is missing a {missing}")
    return Combination.of(kinds.pop(), stacks.pop())


def parse_combinations(raw: str | list[str]) -> tuple[Combination, ...]:
    """Parse a comma separated list (or a list) of entries, keeping order."""
    entries = raw.split(",") if isinstance(raw, str) else list(raw)
    result: list[Combination] = []
    for entry in entries:
        if not entry.strip():
            continue
        combination = parse_combination(entry)
        if combination not in result:
            result.append(combination)
    if not result:
        raise MissingCombinationError("No checks are enabled")
    return tuple(result)


# ── Runtime config ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DaemonConfig:
    """Immutable configuration handed to the runner, daemon and analyzer."""

    enabled: tuple[Combination, ...]
    store_path: Path
    period_seconds: int = 60
    timeout_seconds: float = 10.0
    target_v4: str = TARGET_V4
    target_v6: str = TARGET_V6
    save_every: int = 1
    gap_tolerance: float = 1.5
    pid_file: Path | None = None
    daemon_name: str = "netpulsed"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.enabled:
            raise MissingCombinationError("No checks are enabled")
        if len(set(self.enabled)) != len(self.enabled):
            raise AmbiguousCombinationError(f"Duplicate checks enabled: {self.enabled}")
        if self.period_seconds <= 0:
            raise ValueError(f"period_seconds must be positive, got {self.period_seconds}")
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {self.timeout_seconds}")
        if self.save_every < 1:
            raise ValueError(f"save_every must be at least 1, got {self.save_every}")
        if self.gap_tolerance < 1:
            raise ValueError(f"gap_tolerance must be at least 1 period, got {self.gap_tolerance}")
        if IpStack.of(self.target_v4) is not IpStack.V4:
            raise ValueError(f"target_v4 is not an IPv4 address: {self.target_v4}")
        if IpStack.of(self.target_v6) is not IpStack.V6:
            raise ValueError(f"target_v6 is not an IPv6 address: {self.target_v6}")

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> DaemonConfig:
        s = s or settings
        return cls(
            enabled=parse_combinations(s.enabled_checks),
            store_path=Path(s.store_path),
            period_seconds=s.period_seconds,
            timeout_seconds=s.timeout_seconds,
            target_v4=s.target_v4,
            target_v6=s.target_v6,
            save_every=s.save_every,
            gap_tolerance=s.gap_tolerance,
            pid_file=Path(s.pid_file) if s.pid_file else None,
            daemon_name=s.daemon_name,
            log_level=s.log_level,
        )

    def target_for(self, combination: Combination) -> str:
        return self.target_v4 if combination.stack is IpStack.V4 else self.target_v6
