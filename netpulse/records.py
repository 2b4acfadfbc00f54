"""Core record types — what a probe is, and what it produced.

A ``CheckRecord`` is created once by the executor and never mutated. The
probe it came from is identified by a ``Combination``: one of the four
closed (kind, stack) pairs the daemon can enable.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

# Default probe targets per IP stack
TARGET_V4 = "1.1.1.1"
TARGET_V6 = "2606:4700:4700::1111"

# Largest latency a record can carry; the store reserves 0xFFFF for "none"
MAX_LATENCY_MS = 0xFFFE


# ── Kinds, stacks, combinations ──────────────────────────────────────────────


class CheckKind(str, Enum):
    HTTP = "http"
    ICMP = "icmp"

    @property
    def label(self) -> str:
        return "HTTP(S)" if self is CheckKind.HTTP else "ICMP"


class IpStack(str, Enum):
    V4 = "v4"
    V6 = "v6"

    @property
    def label(self) -> str:
        return "IPv4" if self is IpStack.V4 else "IPv6"

    @classmethod
    def of(cls, address: str) -> IpStack:
        """Stack of a literal IP address. Raises ValueError for non-IPs."""
        return cls.V4 if ipaddress.ip_address(address).version == 4 else cls.V6


class Combination(str, Enum):
    """A single (kind, stack) pair that can be enabled independently."""

    HTTP_V4 = "http-v4"
    HTTP_V6 = "http-v6"
    ICMP_V4 = "icmp-v4"
    ICMP_V6 = "icmp-v6"

    @property
    def kind(self) -> CheckKind:
        return CheckKind(self.value.split("-")[0])

    @property
    def stack(self) -> IpStack:
        return IpStack(self.value.split("-")[1])

    @classmethod
    def of(cls, kind: CheckKind, stack: IpStack) -> Combination:
        return cls(f"{kind.value}-{stack.value}")

    @classmethod
    def for_stack(cls, stack: IpStack) -> tuple[Combination, ...]:
        return tuple(c for c in cls if c.stack is stack)


class FailureCause(str, Enum):
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    ERROR = "error"


# ── CheckRecord ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CheckRecord:
    """Timestamped outcome of one probe.

    Exactly one of ``latency_ms`` (success) or ``cause`` (failure) is set.
    ``timestamp`` is whole seconds since the Unix epoch, UTC.
    """

    timestamp: int
    kind: CheckKind
    stack: IpStack
    target: str
    latency_ms: int | None = None
    cause: FailureCause | None = None

    def __post_init__(self) -> None:
        if (self.latency_ms is None) == (self.cause is None):
            raise ValueError(
                "A check record needs either a latency (success) or a cause (failure)"
            )
        if self.latency_ms is not None and not 0 <= self.latency_ms <= MAX_LATENCY_MS:
            raise ValueError(f"Latency out of range 0..{MAX_LATENCY_MS}: {self.latency_ms}")
        if IpStack.of(self.target) is not self.stack:
            raise ValueError(f"Target {self.target} is not an {self.stack.label} address")

    @classmethod
    def success(
        cls, timestamp: int, combination: Combination, target: str, latency_ms: int,
    ) -> CheckRecord:
        return cls(
            timestamp=timestamp, kind=combination.kind, stack=combination.stack,
            target=target, latency_ms=latency_ms,
        )

    @classmethod
    def failure(
        cls, timestamp: int, combination: Combination, target: str, cause: FailureCause,
    ) -> CheckRecord:
        return cls(
            timestamp=timestamp, kind=combination.kind, stack=combination.stack,
            target=target, cause=cause,
        )

    @property
    def is_success(self) -> bool:
        return self.cause is None

    @property
    def combination(self) -> Combination:
        return Combination.of(self.kind, self.stack)

    @property
    def time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def describe(self) -> str:
        outcome = f"{self.latency_ms} ms" if self.is_success else f"FAILED ({self.cause.value})"
        return (
            f"{fmt_timestamp(self.timestamp)}  {self.kind.label:<7} {self.stack.label}  "
            f"{self.target:<22} {outcome}"
        )


def fmt_timestamp(timestamp: int) -> str:
    """Render epoch seconds as an ISO-8601 UTC string."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def default_target(stack: IpStack) -> str:
    return TARGET_V4 if stack is IpStack.V4 else TARGET_V6
