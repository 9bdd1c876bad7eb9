"""
Process-lifetime keeper counters. Reset only by restarting the process.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from scanner.models import ExecutionOutcome, OpportunityKind, OutcomeStatus

logger = logging.getLogger(__name__)

# Keys of KeeperStats.summary(), in display order
SUMMARY_FIELDS = (
    "orders_executed",
    "positions_liquidated",
    "prices_updated",
    "errors",
    "last_run_timestamp",
    "already_done",
    "economic_rejections",
    "transient_failures",
    "cycles",
    "paused_cycles",
    "session_duration_sec",
)


@dataclass
class KeeperStats:
    """Aggregate counters mutated by the execution engine and cycle controller."""

    orders_executed: int = 0
    positions_liquidated: int = 0
    prices_updated: int = 0
    errors: int = 0
    last_run_timestamp: float | None = None

    already_done: int = 0
    economic_rejections: int = 0
    transient_failures: int = 0
    cycles: int = 0
    paused_cycles: int = 0

    _session_start: float = field(default_factory=time.time)

    def record_outcome(self, outcome: ExecutionOutcome, price_count: int = 0) -> None:
        """
        Fold one execution outcome into the counters.
        ALREADY_DONE is a no-op success: it never touches the action counters.
        """
        status = outcome.status
        if status == OutcomeStatus.SUCCESS:
            if outcome.opportunity is None:
                self.prices_updated += price_count
            elif outcome.opportunity.kind == OpportunityKind.ORDER_EXECUTION:
                self.orders_executed += 1
            else:
                self.positions_liquidated += 1
        elif status == OutcomeStatus.ALREADY_DONE:
            self.already_done += 1
        elif status == OutcomeStatus.ECONOMIC_REJECTION:
            self.economic_rejections += 1
        elif status == OutcomeStatus.TRANSIENT_FAILURE:
            self.transient_failures += 1
        elif status == OutcomeStatus.UNKNOWN_FAILURE:
            self.errors += 1

    def record_error(self) -> None:
        self.errors += 1

    def mark_run(self) -> None:
        self.last_run_timestamp = time.time()

    @property
    def session_duration_sec(self) -> float:
        return time.time() - self._session_start

    def summary(self) -> dict:
        """Snapshot of current counters."""
        return {
            "orders_executed": self.orders_executed,
            "positions_liquidated": self.positions_liquidated,
            "prices_updated": self.prices_updated,
            "errors": self.errors,
            "last_run_timestamp": self.last_run_timestamp,
            "already_done": self.already_done,
            "economic_rejections": self.economic_rejections,
            "transient_failures": self.transient_failures,
            "cycles": self.cycles,
            "paused_cycles": self.paused_cycles,
            "session_duration_sec": round(self.session_duration_sec, 0),
        }
