"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from netpulse.config import DaemonConfig
from netpulse.errors import ProbeFailure
from netpulse.records import CheckKind, CheckRecord, Combination, FailureCause, default_target


def ok(timestamp: int, combination: Combination, latency_ms: int = 20) -> CheckRecord:
    return CheckRecord.success(timestamp, combination, default_target(combination.stack), latency_ms)


def fail(
    timestamp: int, combination: Combination, cause: FailureCause = FailureCause.TIMEOUT,
) -> CheckRecord:
    return CheckRecord.failure(timestamp, combination, default_target(combination.stack), cause)


class FakeTransport:
    """Transport that fails the configured kinds and answers the rest instantly."""

    def __init__(self, failing: dict[CheckKind, FailureCause] | None = None, latency_ms: int = 12) -> None:
        self.failing = failing or {}
        self.latency_ms = latency_ms
        self.calls: list[tuple[CheckKind, str, float]] = []

    def __call__(self, kind: CheckKind, target: str, timeout: float) -> int:
        self.calls.append((kind, target, timeout))
        if kind in self.failing:
            raise ProbeFailure(self.failing[kind], "simulated")
        return self.latency_ms


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "netpulse.store"


@pytest.fixture
def config(store_path: Path) -> DaemonConfig:
    return DaemonConfig(
        enabled=tuple(Combination),
        store_path=store_path,
        period_seconds=60,
        timeout_seconds=0.5,
    )


@pytest.fixture
def sample_records() -> list[CheckRecord]:
    return [
        ok(0, Combination.HTTP_V4),
        ok(0, Combination.ICMP_V6, latency_ms=35),
        fail(60, Combination.HTTP_V4),
        fail(60, Combination.ICMP_V6, FailureCause.UNREACHABLE),
        fail(120, Combination.HTTP_V6, FailureCause.ERROR),
        ok(180, Combination.ICMP_V4, latency_ms=70),
    ]
