"""Run one probe and turn whatever happens into a record."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from netpulse.errors import ProbeFailure
from netpulse.probes import Transport, default_transport
from netpulse.records import MAX_LATENCY_MS, CheckRecord, Combination, FailureCause

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def execute_check(
    combination: Combination,
    target: str,
    timeout: float,
    transport: Transport | None = None,
    clock: Clock | None = None,
    timestamp: int | None = None,
) -> CheckRecord:
    """Run a single probe. Never raises: failures become failure records.

    ``timestamp`` lets a runner stamp every record of a cycle identically;
    when omitted it is taken from ``clock`` (default ``time.time``).
    """
    transport = transport or default_transport
    if timestamp is None:
        timestamp = int((clock or time.time)())

    try:
        latency_ms = transport(combination.kind, target, timeout)
    except ProbeFailure as e:
        logger.warning("%s check against %s failed: %s", combination.value, target, e)
        return CheckRecord.failure(timestamp, combination, target, e.cause)
    except Exception as e:
        logger.warning(
            "%s check against %s raised %s: %s",
            combination.value, target, type(e).__name__, e,
        )
        return CheckRecord.failure(timestamp, combination, target, FailureCause.ERROR)

    latency_ms = min(max(0, int(latency_ms)), MAX_LATENCY_MS)
    record = CheckRecord.success(timestamp, combination, target, latency_ms)
    logger.debug("%s", record.describe())
    return record
