"""Outage detection — group temporally adjacent failures and rank them.

Pipeline (``outages()``):

1. stable sort by timestamp; records sharing a timestamp keep store order
2. restrict to one IP stack (records *and* the enabled set), then cut off
   to the most recent N records
3. drop successes
4. split the failures wherever two neighbours are more than
   ``tolerance * period`` seconds apart
5. rate each group by how many enabled combinations failed inside it

The stack filter runs before grouping: filtering afterwards would count
combinations that were never probed in the analysed window as "enabled"
and turn a Complete outage into a Partial one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from fractions import Fraction

from netpulse.records import CheckRecord, Combination, IpStack, fmt_timestamp

logger = logging.getLogger(__name__)

# Max gap between two failures of one outage, in sampling periods
DEFAULT_GAP_TOLERANCE = 1.5


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Severity:
    """How many of the enabled combinations failed inside an outage window."""

    failed: int
    enabled: int

    def __post_init__(self) -> None:
        if self.enabled < 1 or not 0 < self.failed <= self.enabled:
            raise ValueError(f"Invalid severity {self.failed}/{self.enabled}")

    @property
    def is_complete(self) -> bool:
        return self.failed == self.enabled

    @property
    def fraction(self) -> Fraction:
        return Fraction(self.failed, self.enabled)

    @property
    def percentage(self) -> float:
        return float(self.fraction * 100)

    def __str__(self) -> str:
        if self.is_complete:
            return "Complete"
        return f"Partial ({self.percentage:.1f}%)"


@dataclass(frozen=True)
class Outage:
    """A maximal run of failures no more than the gap tolerance apart.

    ``end`` is None when the outage consists of a single record, which may
    mean it is still ongoing.
    """

    records: tuple[CheckRecord, ...]
    severity: Severity

    def __post_init__(self) -> None:
        if not self.records:
            raise ValueError("An outage needs at least one failed check")
        if any(r.is_success for r in self.records):
            raise ValueError("An outage may only contain failed checks")

    @property
    def start(self) -> int:
        return self.records[0].timestamp

    @property
    def end(self) -> int | None:
        if len(self.records) == 1:
            return None
        return self.records[-1].timestamp

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def combinations(self) -> frozenset[Combination]:
        return frozenset(r.combination for r in self.records)

    def describe(self) -> str:
        if self.end is None:
            span = f"From {fmt_timestamp(self.start)} STILL ONGOING"
        else:
            span = f"From {fmt_timestamp(self.start)} To {fmt_timestamp(self.end)}"
        kinds = ", ".join(sorted(c.value for c in self.combinations))
        return f"{span}\nChecks: {self.total}\nSeverity: {self.severity}\nFailed: {kinds}"


# ── Analysis ─────────────────────────────────────────────────────────────────


def outages(
    records: Iterable[CheckRecord],
    *,
    period: float,
    enabled: Iterable[Combination] | None = None,
    stack_filter: IpStack | None = None,
    cutoff: int | None = None,
    tolerance: float = DEFAULT_GAP_TOLERANCE,
) -> list[Outage]:
    """Derive outages from a check history, most recent first.

    ``enabled`` is the configured set of combinations; the combinations
    actually present in the analysed records are always added to it.
    """
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    if cutoff is not None and cutoff < 0:
        raise ValueError(f"cutoff must not be negative, got {cutoff}")

    ordered = sorted(records, key=lambda r: r.timestamp)
    enabled_set = set(enabled or ())

    if stack_filter is not None:
        ordered = [r for r in ordered if r.stack is stack_filter]
        enabled_set &= set(Combination.for_stack(stack_filter))
    if cutoff is not None:
        ordered = ordered[-cutoff:] if cutoff else []

    enabled_set |= {r.combination for r in ordered}
    failures = [r for r in ordered if not r.is_success]
    if not failures:
        return []

    max_gap = tolerance * period
    groups: list[list[CheckRecord]] = [[failures[0]]]
    for previous, current in zip(failures, failures[1:]):
        if current.timestamp - previous.timestamp <= max_gap:
            groups[-1].append(current)
        else:
            groups.append([current])

    result = [
        Outage(
            records=tuple(group),
            severity=Severity(
                failed=len({r.combination for r in group}),
                enabled=len(enabled_set),
            ),
        )
        for group in groups
    ]
    logger.debug(
        "Found %d outages in %d checks (%d failed)",
        len(result), len(ordered), len(failures),
    )
    return sort_by_recency(result)


# ── Orderings ────────────────────────────────────────────────────────────────


def _recency_key(outage: Outage) -> tuple[int, int, int]:
    end = outage.end if outage.end is not None else outage.start
    return (outage.start, end, outage.total)


def sort_by_recency(items: Sequence[Outage]) -> list[Outage]:
    """Most recent start first; ties by later end, then by more checks."""
    return sorted(items, key=_recency_key, reverse=True)


def sort_by_severity(items: Sequence[Outage]) -> list[Outage]:
    """Complete before Partial, then higher fraction, more checks, more recent."""
    return sorted(
        items,
        key=lambda o: (
            o.severity.is_complete, o.severity.fraction, o.total, _recency_key(o),
        ),
        reverse=True,
    )
