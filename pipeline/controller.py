"""
Keeper cycle controller.

One tick: pause check -> scan -> execute -> report. Orders are scanned every
tick, positions every Nth tick, oracle freshness every Mth tick (when the
price-refresh phase is enabled), and a stats box is printed periodically.
Each phase catches its own failures so one broken read never ends the loop.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from client.ledger import LedgerGateway
from client.price_feed import CoinGeckoPriceFeed, PriceFeedError
from executor.engine import ExecutionEngine
from monitor.display import (
    print_cycle_error,
    print_cycle_header,
    print_cycle_summary,
    print_outcome,
    print_paused,
    print_pending_orders,
    print_stats,
)
from monitor.stats import KeeperStats
from scanner.amm import to_wei
from scanner.models import PRICE_DECIMALS, ExecutionOutcome
from scanner.opportunities import OpportunityScanner, ScanResult
from scanner.staleness import PriceStalenessMonitor

logger = logging.getLogger(__name__)


class CyclePhase(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    EXECUTING = "executing"
    REPORTING = "reporting"


@dataclass
class CycleReport:
    """What one tick did."""

    cycle: int
    paused: bool = False
    orders: ScanResult | None = None
    positions: ScanResult | None = None
    stale_tokens: list[str] = field(default_factory=list)
    outcomes: list[ExecutionOutcome] = field(default_factory=list)
    failed_phases: list[str] = field(default_factory=list)
    elapsed_sec: float = 0.0


class CycleController:
    """
    Drives the keeper. run_cycle() is one tick; run_forever() repeats it until
    stop() is called. The sleeper waits on a threading.Event so stop() takes
    effect immediately between ticks. An in-flight write is never aborted.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        scanner: OpportunityScanner,
        engine: ExecutionEngine,
        stats: KeeperStats,
        staleness: PriceStalenessMonitor | None = None,
        price_feed: CoinGeckoPriceFeed | None = None,
        cycle_interval_sec: float = 20.0,
        pause_cooldown_sec: float = 20.0,
        liquidation_every_n_cycles: int = 2,
        stats_every_n_cycles: int = 20,
        idle_notice_every_n_cycles: int = 4,
        price_check_every_n_cycles: int = 15,
        enable_order_execution: bool = True,
        enable_liquidation: bool = True,
        enable_price_updates: bool = False,
    ):
        if enable_price_updates and (staleness is None or price_feed is None):
            raise ValueError("Price updates need both a staleness monitor and a price feed")
        self._gateway = gateway
        self._scanner = scanner
        self._engine = engine
        self._stats = stats
        self._staleness = staleness
        self._price_feed = price_feed
        self._cycle_interval_sec = cycle_interval_sec
        self._pause_cooldown_sec = pause_cooldown_sec
        self._liquidation_every = liquidation_every_n_cycles
        self._stats_every = stats_every_n_cycles
        self._idle_notice_every = idle_notice_every_n_cycles
        self._price_check_every = price_check_every_n_cycles
        self._enable_orders = enable_order_execution
        self._enable_liquidation = enable_liquidation
        self._enable_prices = enable_price_updates

        self._phase = CyclePhase.IDLE
        self._stop_event = threading.Event()

    @property
    def phase(self) -> CyclePhase:
        return self._phase

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request shutdown. Safe to call from a signal handler."""
        self._stop_event.set()

    # -- one tick ---------------------------------------------------------------

    def _check_operational(self, report: CycleReport) -> bool:
        try:
            paused = self._gateway.is_paused()
        except Exception as e:
            logger.warning("Pause check failed, treating system as not operational: %s", e)
            self._stats.record_error()
            report.failed_phases.append("pause_check")
            return False
        return not paused

    def run_cycle(self, cycle: int) -> CycleReport:
        """Run one tick. Never raises for ledger or feed failures."""
        start = time.time()
        report = CycleReport(cycle=cycle)
        self._stats.cycles += 1
        print_cycle_header(cycle)

        self._phase = CyclePhase.SCANNING
        if not self._check_operational(report):
            report.paused = True
            self._stats.paused_cycles += 1
            print_paused(self._pause_cooldown_sec)
            self._phase = CyclePhase.IDLE
            report.elapsed_sec = time.time() - start
            return report

        if self._enable_orders:
            self._run_orders(report)
        if self._enable_liquidation and cycle % self._liquidation_every == 0:
            self._run_positions(report)
        if self._enable_prices and cycle % self._price_check_every == 0:
            self._run_price_refresh(report)

        self._phase = CyclePhase.REPORTING
        self._stats.mark_run()
        if (
            report.orders is not None
            and report.orders.total_ids == 0
            and cycle % self._idle_notice_every == 0
        ):
            logger.info("  No active orders | Cycle %d | system operational", cycle)
        report.elapsed_sec = time.time() - start
        print_cycle_summary(report)
        if cycle % self._stats_every == 0:
            print_stats(self._stats.summary(), cycle=cycle)

        self._phase = CyclePhase.IDLE
        return report

    def _execute(self, report: CycleReport, result: ScanResult) -> None:
        if not result.opportunities:
            return
        self._phase = CyclePhase.EXECUTING
        outcomes = self._engine.execute_batch(result.opportunities)
        for outcome in outcomes:
            print_outcome(outcome)
        report.outcomes.extend(outcomes)
        self._phase = CyclePhase.SCANNING

    def _run_orders(self, report: CycleReport) -> None:
        try:
            result = self._scanner.scan_orders()
            report.orders = result
            self._execute(report, result)
            if result.pending and not result.opportunities:
                print_pending_orders(result.pending)
        except Exception as e:
            logger.error("Order phase failed: %s", e, exc_info=True)
            self._stats.record_error()
            report.failed_phases.append("orders")

    def _run_positions(self, report: CycleReport) -> None:
        try:
            result = self._scanner.scan_positions()
            report.positions = result
            self._execute(report, result)
            if result.total_ids > 0 and not result.opportunities and not result.failed_ids:
                logger.info("  All %d positions are healthy", result.total_ids)
        except Exception as e:
            logger.error("Liquidation phase failed: %s", e, exc_info=True)
            self._stats.record_error()
            report.failed_phases.append("positions")

    def _run_price_refresh(self, report: CycleReport) -> None:
        try:
            stale = self._staleness.check().stale_tokens
            report.stale_tokens = stale
            if not stale:
                return
            quotes = self._price_feed.get_prices(stale)
            missing = [t for t in stale if t not in quotes]
            if missing:
                logger.warning("No reference price for %d stale token(s): %s", len(missing), ", ".join(missing))
            if not quotes:
                return
            tokens = list(quotes)
            prices = [to_wei(quotes[t], PRICE_DECIMALS) for t in tokens]
            self._phase = CyclePhase.EXECUTING
            outcomes = self._engine.submit_price_updates(tokens, prices)
            for outcome in outcomes:
                print_outcome(outcome)
            report.outcomes.extend(outcomes)
        except PriceFeedError as e:
            logger.warning("Price refresh skipped: %s", e)
            self._stats.record_error()
            report.failed_phases.append("prices")
        except Exception as e:
            logger.error("Price refresh phase failed: %s", e, exc_info=True)
            self._stats.record_error()
            report.failed_phases.append("prices")

    # -- loop -------------------------------------------------------------------

    def _sleep_remaining(self, cycle_start: float, interval: float) -> None:
        """Sleep for the rest of the interval; returns early on stop()."""
        remaining = interval - (time.time() - cycle_start)
        if remaining > 0:
            logger.debug("Sleeping %.1fs until next cycle...", remaining)
            self._stop_event.wait(remaining)

    def run_forever(self, max_cycles: int | None = None) -> int:
        """Tick until stop() (or max_cycles). Returns the number of ticks run."""
        cycle = 0
        while not self.stopped:
            cycle += 1
            cycle_start = time.time()
            try:
                report = self.run_cycle(cycle)
                interval = self._pause_cooldown_sec if report.paused else self._cycle_interval_sec
            except Exception as e:
                # Display or stats bugs; phases already contain ledger failures
                logger.debug("Keeper cycle error", exc_info=True)
                print_cycle_error(e)
                self._stats.record_error()
                self._phase = CyclePhase.IDLE
                interval = self._cycle_interval_sec
            if max_cycles is not None and cycle >= max_cycles:
                break
            self._sleep_remaining(cycle_start, interval)
        return cycle
