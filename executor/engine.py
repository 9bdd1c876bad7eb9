"""
Execution engine. Turns opportunities into keeper transactions, one at a time,
and classifies every result into an ExecutionOutcome.

Writes are strictly sequential: two transactions in flight from the same key
would contend for the nonce. Nothing raised while handling one opportunity
escapes execute(); the batch always runs to the end.
"""

from __future__ import annotations

import logging
import re
import time
from decimal import Decimal
from typing import Sequence

from client.ledger import (
    LedgerError,
    LedgerGateway,
    LedgerTransientError,
    TransactionRejected,
)
from executor.retry import RetryPolicy
from monitor.stats import KeeperStats
from scanner.amm import AmmMath, Number, to_decimal
from scanner.models import (
    ExecutionOutcome,
    Opportunity,
    OpportunityKind,
    OutcomeStatus,
    Receipt,
)
from state.settled import SettledRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 10
DEFAULT_GAS_BUFFER_PCT = Decimal(20)

# Checked in this order: a settled target can also mention price words.
_ALREADY_DONE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"already\s+(executed|liquidated|closed|settled|filled|cancel+ed)",
        r"order\s+(is\s+)?(executed|cancel+ed)",
        r"position\s+(is\s+)?(not\s+open|closed)",
        r"not\s+open",
        r"order\s+not\s+active",
    )
]
_ECONOMIC_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"slippage",
        r"price\s+(deviation|change|impact)",
        r"deviation\s+too\s+(large|high)",
        r"circuit\s*breaker",
        r"stale\s+price|price\s+(is\s+)?stale",
        r"insufficient",
        r"not\s+liquidatable|cannot\s+liquidate",
        r"price\s+condition",
    )
]
_TRANSIENT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"time(d)?\s*out",
        r"nonce\s+too\s+low",
        r"replacement\s+transaction\s+underpriced",
        r"already\s+known",
        r"connection\s+(reset|refused|aborted|error)",
        r"too\s+many\s+requests|rate\s+limit",
        r"header\s+not\s+found",
    )
]


def classify_failure(error: BaseException) -> OutcomeStatus:
    """Map a gateway exception onto the outcome taxonomy."""
    text = error.reason if isinstance(error, TransactionRejected) else str(error)
    if any(p.search(text) for p in _ALREADY_DONE_PATTERNS):
        return OutcomeStatus.ALREADY_DONE
    if any(p.search(text) for p in _ECONOMIC_PATTERNS):
        return OutcomeStatus.ECONOMIC_REJECTION
    if isinstance(error, LedgerTransientError) or isinstance(error, TimeoutError):
        return OutcomeStatus.TRANSIENT_FAILURE
    if any(p.search(text) for p in _TRANSIENT_PATTERNS):
        return OutcomeStatus.TRANSIENT_FAILURE
    return OutcomeStatus.UNKNOWN_FAILURE


def _retryable(error: BaseException) -> bool:
    return classify_failure(error) == OutcomeStatus.TRANSIENT_FAILURE


def _short_reason(error: BaseException) -> str:
    """First line of an error message; RPC errors tend to dump the whole payload."""
    text = error.reason if isinstance(error, TransactionRejected) else str(error)
    return (text.splitlines() or [type(error).__name__])[0][:200] or type(error).__name__


class ExecutionEngine:
    """
    execute(opportunity) -> ExecutionOutcome.

    SUCCESS and ALREADY_DONE both mark the target settled; only SUCCESS moves
    the action counters. TRANSIENT failures get the retry policy's bounded
    retries inside the same attempt and are never carried across cycles.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        stats: KeeperStats,
        registry: SettledRegistry,
        amm: AmmMath | None = None,
        retry_policy: RetryPolicy | None = None,
        gas_buffer_pct: Number = DEFAULT_GAS_BUFFER_PCT,
        max_price_impact_pct: Number = 0,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        dry_run: bool = False,
    ):
        if max_batch_size < 1:
            raise ValueError(f"max_batch_size must be >= 1, got {max_batch_size}")
        self._gateway = gateway
        self._stats = stats
        self._registry = registry
        self._amm = amm or AmmMath()
        self._retry = retry_policy or RetryPolicy()
        self._gas_buffer_pct = to_decimal(gas_buffer_pct)
        self._max_price_impact_pct = to_decimal(max_price_impact_pct)
        self._max_batch_size = max_batch_size
        self._dry_run = dry_run

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def gas_hint(self, estimated_gas: int) -> int:
        """Gas limit with the configured headroom, whole units."""
        padded = Decimal(self._amm.apply_slippage(estimated_gas, self._gas_buffer_pct, is_minimum=False))
        return int(padded)

    # -- single opportunity ---------------------------------------------------

    def execute(self, opportunity: Opportunity) -> ExecutionOutcome:
        start = time.time()
        try:
            outcome = self._execute(opportunity, start)
        except Exception as e:
            # Anything not already classified is an unknown failure of this
            # opportunity only.
            logger.error(
                "Unexpected error handling %s #%d: %s",
                opportunity.kind.value, opportunity.target_id, e, exc_info=True,
            )
            outcome = ExecutionOutcome(
                status=OutcomeStatus.UNKNOWN_FAILURE,
                opportunity=opportunity,
                reason=_short_reason(e),
                elapsed_ms=(time.time() - start) * 1000,
            )
        self._record(outcome)
        self._stats.record_outcome(outcome)
        return outcome

    def _execute(self, opportunity: Opportunity, start: float) -> ExecutionOutcome:
        kind = opportunity.kind
        target = opportunity.target_id

        if self._registry.is_settled(kind, target):
            return self._outcome(OutcomeStatus.ALREADY_DONE, opportunity, start, reason="settled earlier")

        if self._already_settled_on_chain(opportunity):
            return self._outcome(OutcomeStatus.ALREADY_DONE, opportunity, start, reason="settled on chain")

        rejection = self._preflight_price_impact(opportunity)
        if rejection:
            return self._outcome(OutcomeStatus.ECONOMIC_REJECTION, opportunity, start, reason=rejection)

        gas_hint = self.gas_hint(opportunity.estimated_gas)
        if self._dry_run:
            logger.info(
                "[DRY-RUN] Would submit %s #%d (gas=%d, reward~%s)",
                kind.value, target, gas_hint, opportunity.estimated_reward,
            )
            return self._outcome(OutcomeStatus.SKIPPED_DRY_RUN, opportunity, start)

        if kind == OpportunityKind.ORDER_EXECUTION:
            submit = lambda: self._gateway.execute_order(target, gas_hint)  # noqa: E731
        else:
            submit = lambda: self._gateway.liquidate_position(target, gas_hint)  # noqa: E731

        description = f"{kind.value} #{target}"
        attempts = 0

        def _attempt() -> Receipt:
            nonlocal attempts
            attempts += 1
            return submit()

        try:
            receipt, attempts = self._retry.call(_attempt, retry_on=_retryable, description=description)
        except LedgerError as e:
            status = classify_failure(e)
            return self._outcome(status, opportunity, start, reason=_short_reason(e), attempts=attempts)
        except TimeoutError as e:
            return self._outcome(
                OutcomeStatus.TRANSIENT_FAILURE, opportunity, start, reason=_short_reason(e), attempts=attempts,
            )
        return self._outcome(OutcomeStatus.SUCCESS, opportunity, start, receipt=receipt, attempts=attempts)

    def _already_settled_on_chain(self, opportunity: Opportunity) -> bool:
        """
        Re-read the target just before writing. A failed read is not fatal:
        the contract stays the final judge and the write goes ahead.
        """
        try:
            if opportunity.kind == OpportunityKind.ORDER_EXECUTION:
                return self._gateway.get_order(opportunity.target_id).executed
            return not self._gateway.get_position(opportunity.target_id).is_open
        except LedgerError as e:
            logger.debug(
                "Pre-flight read for %s #%d failed, submitting anyway: %s",
                opportunity.kind.value, opportunity.target_id, e,
            )
            return False

    def _preflight_price_impact(self, opportunity: Opportunity) -> str:
        """Return a rejection reason if the order would move the pool too far, else ''."""
        if self._max_price_impact_pct <= 0 or not opportunity.is_order:
            return ""
        if not opportunity.token_in or not opportunity.token_out or opportunity.amount_in <= 0:
            return ""
        try:
            reserve_in, reserve_out = self._gateway.pool_reserves(opportunity.token_in, opportunity.token_out)
        except LedgerError as e:
            logger.debug("Reserve read for order #%d failed, skipping impact guard: %s", opportunity.target_id, e)
            return ""
        impact = Decimal(self._amm.price_impact(reserve_in, reserve_out, opportunity.amount_in))
        if impact > self._max_price_impact_pct:
            return f"price impact {impact}% exceeds {self._max_price_impact_pct}%"
        return ""

    def _outcome(
        self,
        status: OutcomeStatus,
        opportunity: Opportunity,
        start: float,
        receipt: Receipt | None = None,
        reason: str = "",
        attempts: int = 0,
    ) -> ExecutionOutcome:
        return ExecutionOutcome(
            status=status,
            opportunity=opportunity,
            receipt=receipt,
            reason=reason,
            attempts=attempts,
            elapsed_ms=(time.time() - start) * 1000,
        )

    def _record(self, outcome: ExecutionOutcome) -> None:
        """Update counters, the settled registry and the log for one outcome."""
        opp = outcome.opportunity
        label = f"{opp.kind.value} #{opp.target_id}" if opp else "price update"
        status = outcome.status

        if opp is not None and status in (OutcomeStatus.SUCCESS, OutcomeStatus.ALREADY_DONE):
            self._registry.mark(opp.kind, opp.target_id)

        tx = outcome.receipt.tx_hash if outcome.receipt else None
        extra = {
            "target_id": opp.target_id if opp else None,
            "kind": opp.kind.value if opp else "price_update",
            "status": status.value,
            "tx_hash": tx,
            "attempts": outcome.attempts,
            "reason": outcome.reason or None,
        }
        if status == OutcomeStatus.SUCCESS:
            logger.info(
                "%s landed: tx=%s attempts=%d (%.0fms)", label, tx or "?", outcome.attempts, outcome.elapsed_ms,
                extra=extra,
            )
        elif status == OutcomeStatus.ALREADY_DONE:
            logger.info("%s already handled (%s)", label, outcome.reason, extra=extra)
        elif status == OutcomeStatus.ECONOMIC_REJECTION:
            logger.info("%s rejected: %s", label, outcome.reason, extra=extra)
        elif status == OutcomeStatus.TRANSIENT_FAILURE:
            logger.warning("%s failed after %d attempt(s): %s", label, outcome.attempts, outcome.reason, extra=extra)
        elif status == OutcomeStatus.UNKNOWN_FAILURE:
            logger.error("%s failed: %s", label, outcome.reason, extra=extra)
        else:
            logger.debug("%s skipped (dry run)", label, extra=extra)

    # -- batches ----------------------------------------------------------------

    def execute_batch(self, opportunities: Sequence[Opportunity]) -> list[ExecutionOutcome]:
        """Attempt every opportunity in discovery order, one write at a time."""
        return [self.execute(opportunity) for opportunity in opportunities]

    def submit_price_updates(self, tokens: Sequence[str], prices: Sequence[int]) -> list[ExecutionOutcome]:
        """
        Push oracle prices in chunks of at most max_batch_size. Each chunk is
        classified like any other write; a failed chunk does not stop the rest.
        """
        if len(tokens) != len(prices):
            raise ValueError(f"tokens and prices differ in length: {len(tokens)} != {len(prices)}")
        outcomes = []
        for i in range(0, len(tokens), self._max_batch_size):
            chunk_tokens = list(tokens[i:i + self._max_batch_size])
            chunk_prices = [int(p) for p in prices[i:i + self._max_batch_size]]
            outcomes.append(self._submit_price_chunk(chunk_tokens, chunk_prices))
        return outcomes

    def _submit_price_chunk(self, tokens: list[str], prices: list[int]) -> ExecutionOutcome:
        start = time.time()
        if self._dry_run:
            logger.info("[DRY-RUN] Would update %d oracle price(s): %s", len(tokens), ", ".join(tokens))
            return ExecutionOutcome(status=OutcomeStatus.SKIPPED_DRY_RUN, opportunity=None)

        attempts = 0

        def _attempt() -> Receipt:
            nonlocal attempts
            attempts += 1
            return self._gateway.batch_update_prices(tokens, prices)

        try:
            receipt, attempts = self._retry.call(
                _attempt, retry_on=_retryable, description=f"batch price update ({len(tokens)})",
            )
        except (LedgerError, TimeoutError) as e:
            status = classify_failure(e)
            # No settled state exists for a price push.
            if status == OutcomeStatus.ALREADY_DONE:
                status = OutcomeStatus.UNKNOWN_FAILURE
            outcome = ExecutionOutcome(
                status=status, opportunity=None, reason=_short_reason(e),
                attempts=attempts, elapsed_ms=(time.time() - start) * 1000,
            )
        else:
            outcome = ExecutionOutcome(
                status=OutcomeStatus.SUCCESS, opportunity=None, receipt=receipt,
                attempts=attempts, elapsed_ms=(time.time() - start) * 1000,
            )
        self._record(outcome)
        self._stats.record_outcome(outcome, price_count=len(tokens))
        return outcome
