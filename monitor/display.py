"""
Clean, scannable console output for the keeper.

Pure formatting functions that emit structured log lines using box-drawing
characters. No side effects beyond logging. All data arrives via arguments.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from typing import TYPE_CHECKING

from config import Config
from scanner.models import ExecutionOutcome, Order, OutcomeStatus

if TYPE_CHECKING:
    from pipeline.controller import CycleReport

logger = logging.getLogger(__name__)

# Box-drawing characters
_TOP = "\u250c"  # ┌
_MID = "\u2502"  # │
_BOT = "\u2514"  # └
_DASH = "\u2500"  # ─
_VERT_SEP = "\u2502"  # │ (inline separator)

_PENDING_PREVIEW = 3


def _short_addr(address: str) -> str:
    """0x1234abcd... style abbreviation."""
    if len(address) <= 12:
        return address
    return address[:10] + "\u2026"


def _mode_label(cfg: Config) -> str:
    return "DRY-RUN" if cfg.dry_run else "LIVE"


def format_duration(seconds: float) -> str:
    """Format seconds into a human-readable duration string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds) // 60
    secs = seconds - minutes * 60
    if minutes < 60:
        return f"{minutes}m {secs:.0f}s"
    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def _outcome_breakdown(outcomes: list[ExecutionOutcome]) -> str:
    """Return e.g. '(2 success, 1 already_done)'."""
    counts: Counter[str] = Counter(o.status.value for o in outcomes)
    parts = [f"{v} {k}" for k, v in counts.most_common()]
    return f"({', '.join(parts)})"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def print_startup(cfg: Config) -> None:
    """Compact config block emitted once after the banner."""
    phases = [
        "orders" if cfg.enable_order_execution else "~orders~",
        "liquidation" if cfg.enable_liquidation else "~liquidation~",
        "prices" if cfg.enable_price_updates else "~prices~",
    ]
    logger.info(
        "  Mode: %-10s Chain: %d  RPC: %s",
        _mode_label(cfg), cfg.chain_id, cfg.rpc_url,
    )
    logger.info("  Phases: %s", "  ".join(phases))
    logger.info(
        "  Router: %s  Oracle: %s",
        _short_addr(cfg.router_address), _short_addr(cfg.oracle_address),
    )
    logger.info(
        "  Interval: %.0fs  Liquidate >= %s%% loss  Gas buffer: %s%%  Batch <= %d",
        cfg.cycle_interval_sec, cfg.liquidation_threshold_pct, cfg.gas_buffer_pct, cfg.max_batch_size,
    )


def print_diagnostics(
    keeper_address: str,
    native_balance_eth: str,
    paused: bool | None,
    order_cost_eth: str | None = None,
) -> None:
    """Keeper identity block printed once the context is up."""
    status = "unknown" if paused is None else ("PAUSED" if paused else "operational")
    logger.info("  %s Keeper: %s", _TOP, keeper_address or "(read-only)")
    logger.info("  %s Balance: %s ETH", _MID, native_balance_eth)
    if order_cost_eth is not None:
        logger.info("  %s Order gas cost: ~%s ETH", _MID, order_cost_eth)
    logger.info("  %s System: %s", _BOT, status)


def print_cycle_header(cycle: int) -> None:
    """Emit a horizontal divider with cycle number and wall-clock time."""
    ts = time.strftime("%H:%M:%S")
    label = f" Cycle {cycle} "
    # Pad to ~60 chars total
    left_dashes = _DASH * 2
    right_pad = 60 - len(left_dashes) - len(label) - len(ts) - 3
    if right_pad < 2:
        right_pad = 2
    line = f"{left_dashes}{label}{_DASH * right_pad} {ts} {_DASH * 2}"
    logger.info(line)


def print_paused(cooldown_sec: float) -> None:
    logger.info("  %s System not operational, waiting %.0fs", _TOP, cooldown_sec)


def print_pending_orders(pending: list[Order]) -> None:
    """First few orders that exist but whose price condition is not met."""
    for order in pending[:_PENDING_PREVIEW]:
        logger.info(
            "  %s Order %d: %s %s waiting for price condition",
            _MID, order.id, order.kind.value, order.direction.value,
        )
    if len(pending) > _PENDING_PREVIEW:
        logger.info("  %s ... and %d more pending", _MID, len(pending) - _PENDING_PREVIEW)


def print_cycle_summary(report: CycleReport) -> None:
    """Close the cycle box with what was scanned and what was written."""
    parts = []
    if report.orders is not None:
        parts.append(f"{report.orders.found}/{report.orders.total_ids} orders ready")
    if report.positions is not None:
        parts.append(f"{report.positions.found}/{report.positions.total_ids} positions liquidatable")
    if report.stale_tokens:
        parts.append(f"{len(report.stale_tokens)} stale prices")
    scanned = f" {_VERT_SEP} ".join(parts) if parts else "nothing scanned"

    if report.outcomes:
        logger.info(
            "  %s %s %s %d writes %s in %.1fs",
            _BOT, scanned, _VERT_SEP, len(report.outcomes), _outcome_breakdown(report.outcomes),
            report.elapsed_sec, extra={"cycle": report.cycle},
        )
    else:
        logger.info("  %s %s in %.1fs", _BOT, scanned, report.elapsed_sec, extra={"cycle": report.cycle})
    if report.failed_phases:
        logger.info("  %s Phase errors: %s", _BOT, ", ".join(report.failed_phases))


def print_outcome(outcome: ExecutionOutcome) -> None:
    """One line per write attempt."""
    opp = outcome.opportunity
    target = f"{opp.kind.value} #{opp.target_id}" if opp is not None else "price update"
    if opp is not None and opp.description:
        target = opp.description
    if outcome.status == OutcomeStatus.SUCCESS:
        tx = outcome.receipt.tx_hash if outcome.receipt else ""
        logger.info("  %s \u2713 %s %s", _MID, target, tx)
    else:
        logger.info("  %s \u2717 %s: %s %s", _MID, target, outcome.status.value, outcome.reason)


def print_stats(summary: dict, cycle: int | None = None) -> None:
    """
    Periodic stats box. The header record carries the whole summary as
    extras so the JSON log gets one machine-readable snapshot per box.
    """
    last_run = summary.get("last_run_timestamp")
    last_run_str = time.strftime("%H:%M:%S", time.localtime(last_run)) if last_run else "Never"
    logger.info("")
    logger.info(
        "  %s KEEPER STATS (%s)", _TOP, format_duration(summary.get("session_duration_sec", 0)),
        extra={**summary, "cycle": cycle},
    )
    logger.info("  %s  %-24s %d", _MID, "Orders executed:", summary["orders_executed"])
    logger.info("  %s  %-24s %d", _MID, "Positions liquidated:", summary["positions_liquidated"])
    logger.info("  %s  %-24s %d", _MID, "Prices updated:", summary["prices_updated"])
    logger.info(
        "  %s  %-24s %d already done %s %d economic %s %d transient",
        _MID, "Skipped:", summary["already_done"], _VERT_SEP,
        summary["economic_rejections"], _VERT_SEP, summary["transient_failures"],
    )
    logger.info("  %s  %-24s %d", _MID, "Errors:", summary["errors"])
    logger.info("  %s  %-24s %d (%d paused)", _MID, "Cycles:", summary["cycles"], summary["paused_cycles"])
    logger.info("  %s  %-24s %s", _BOT, "Last run:", last_run_str)


def print_cycle_error(error: Exception) -> None:
    """Emit a compact error box when a cycle fails outside any phase."""
    msg = str(error).split("\n")[0]
    logger.error("  %s Cycle error: %s", _TOP, msg)
