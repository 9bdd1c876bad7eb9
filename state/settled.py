"""
Process-lifetime record of orders/positions observed as settled (executed,
closed, or already handled by another keeper). Settlement is one-way on the
ledger, so once an id lands here it is never scanned or targeted again.
"""

from __future__ import annotations

import logging
import threading

from scanner.models import OpportunityKind

logger = logging.getLogger(__name__)


class SettledRegistry:
    """Thread-safe set of settled (kind, id) pairs. Scans read it from worker threads."""

    def __init__(self) -> None:
        self._settled: dict[OpportunityKind, set[int]] = {kind: set() for kind in OpportunityKind}
        self._lock = threading.Lock()

    def mark(self, kind: OpportunityKind, target_id: int) -> None:
        with self._lock:
            if target_id not in self._settled[kind]:
                self._settled[kind].add(target_id)
                logger.debug("Marked %s #%d settled", kind.value, target_id)

    def is_settled(self, kind: OpportunityKind, target_id: int) -> bool:
        with self._lock:
            return target_id in self._settled[kind]

    def count(self, kind: OpportunityKind) -> int:
        with self._lock:
            return len(self._settled[kind])

    def clear(self) -> None:
        with self._lock:
            for ids in self._settled.values():
                ids.clear()
