"""Aggregate counters per category: overall, per probe kind, per IP stack."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from netpulse.records import CheckKind, CheckRecord, IpStack


@dataclass(frozen=True)
class CategoryStats:
    total: int = 0
    ok: int = 0
    first_timestamp: int | None = None
    last_timestamp: int | None = None
    min_latency_ms: int | None = None
    mean_latency_ms: float | None = None
    max_latency_ms: int | None = None

    @property
    def bad(self) -> int:
        return self.total - self.ok

    @property
    def success_ratio(self) -> float:
        return self.ok / self.total if self.total else 0.0

    @classmethod
    def of(cls, records: Iterable[CheckRecord]) -> CategoryStats:
        items = list(records)
        if not items:
            return cls()
        latencies = [r.latency_ms for r in items if r.latency_ms is not None]
        timestamps = [r.timestamp for r in items]
        return cls(
            total=len(items),
            ok=sum(1 for r in items if r.is_success),
            first_timestamp=min(timestamps),
            last_timestamp=max(timestamps),
            min_latency_ms=min(latencies) if latencies else None,
            mean_latency_ms=sum(latencies) / len(latencies) if latencies else None,
            max_latency_ms=max(latencies) if latencies else None,
        )


CATEGORIES: dict[str, Callable[[CheckRecord], bool]] = {
    "General": lambda r: True,
    "HTTP": lambda r: r.kind is CheckKind.HTTP,
    "ICMP": lambda r: r.kind is CheckKind.ICMP,
    "IPv4": lambda r: r.stack is IpStack.V4,
    "IPv6": lambda r: r.stack is IpStack.V6,
}


def summarize(records: Iterable[CheckRecord]) -> dict[str, CategoryStats]:
    """Stats for every category, in report order."""
    items = list(records)
    return {
        name: CategoryStats.of(r for r in items if matches(r))
        for name, matches in CATEGORIES.items()
    }
