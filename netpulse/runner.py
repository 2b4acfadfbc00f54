"""Concurrent check runner — one cycle of probes, fan-out then join.

Every enabled combination gets its own short-lived thread. All threads share
the cycle timestamp and the read-only config, and each writes only its own
result slot, so no locking is needed. The join uses one shared deadline:
a cycle takes about as long as its slowest probe, not the sum of all probes.
"""

from __future__ import annotations

import logging
import threading
import time

from netpulse.checks import Clock, execute_check
from netpulse.config import DaemonConfig
from netpulse.probes import Transport
from netpulse.records import CheckRecord, FailureCause

logger = logging.getLogger(__name__)

# Extra time past the probe timeout before a worker is given up on
JOIN_GRACE = 1.0


class CheckRunner:
    """Runs all enabled checks of a config concurrently, once per call."""

    def __init__(
        self,
        config: DaemonConfig,
        transport: Transport | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self.transport = transport
        self.clock = clock or time.time

    def run_cycle(self, timestamp: int | None = None) -> list[CheckRecord]:
        """Probe every enabled combination; one record each, in config order."""
        if timestamp is None:
            timestamp = int(self.clock())
        combinations = self.config.enabled
        slots: list[CheckRecord | None] = [None] * len(combinations)

        def work(index: int) -> None:
            combination = combinations[index]
            slots[index] = execute_check(
                combination,
                self.config.target_for(combination),
                self.config.timeout_seconds,
                transport=self.transport,
                timestamp=timestamp,
            )

        threads = [
            threading.Thread(
                target=work, args=(i,), name=f"check-{c.value}", daemon=True,
            )
            for i, c in enumerate(combinations)
        ]
        for thread in threads:
            thread.start()

        deadline = time.monotonic() + self.config.timeout_seconds + JOIN_GRACE
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))

        records: list[CheckRecord] = []
        for index, (combination, thread) in enumerate(zip(combinations, threads)):
            record = slots[index]
            if thread.is_alive() or record is None:
                logger.warning(
                    "%s check did not finish within %.1fs, recording a timeout",
                    combination.value, self.config.timeout_seconds,
                )
                record = CheckRecord.failure(
                    timestamp, combination,
                    self.config.target_for(combination), FailureCause.TIMEOUT,
                )
            records.append(record)

        failed = sum(1 for r in records if not r.is_success)
        logger.info("Cycle at %d: %d checks, %d failed", timestamp, len(records), failed)
        return records
