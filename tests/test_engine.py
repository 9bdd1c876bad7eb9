"""
Unit tests for executor/engine.py -- keeper execution and failure classification.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from client.ledger import LedgerCallError, LedgerError, LedgerTransientError, TransactionRejected
from executor.engine import ExecutionEngine, classify_failure
from executor.retry import RetryPolicy
from scanner.models import Opportunity, OpportunityKind, OutcomeStatus

from conftest import ONE, TOKEN_A, TOKEN_B, make_order, make_position


def _order_opp(order_id: int, amount_in: int = 1000 * ONE) -> Opportunity:
    return Opportunity(
        kind=OpportunityKind.ORDER_EXECUTION,
        target_id=order_id,
        estimated_gas=300_000,
        estimated_reward=Decimal(1),
        token_in=TOKEN_A,
        token_out=TOKEN_B,
        amount_in=amount_in,
    )


def _liq_opp(position_id: int) -> Opportunity:
    return Opportunity(
        kind=OpportunityKind.POSITION_LIQUIDATION,
        target_id=position_id,
        estimated_gas=400_000,
        estimated_reward=Decimal(5),
        loss_pct=Decimal(85),
    )


@pytest.fixture
def engine(ledger, stats, registry, no_sleep_retry):
    return ExecutionEngine(ledger, stats, registry, retry_policy=no_sleep_retry)


class TestClassifyFailure:
    @pytest.mark.parametrize("reason", [
        "Order already executed",
        "Position not open",
        "already liquidated",
        "Order not active",
    ])
    def test_already_done(self, reason):
        assert classify_failure(TransactionRejected(reason)) == OutcomeStatus.ALREADY_DONE

    @pytest.mark.parametrize("reason", [
        "Slippage too high",
        "Price change too large",
        "Price deviation too large",
        "Circuit breaker active",
        "Stale price",
        "Insufficient liquidity",
        "Price condition not met",
    ])
    def test_economic(self, reason):
        assert classify_failure(TransactionRejected(reason)) == OutcomeStatus.ECONOMIC_REJECTION

    @pytest.mark.parametrize("error", [
        LedgerTransientError("read timed out"),
        LedgerError("nonce too low"),
        LedgerError("replacement transaction underpriced"),
        TimeoutError("receipt wait"),
    ])
    def test_transient(self, error):
        assert classify_failure(error) == OutcomeStatus.TRANSIENT_FAILURE

    def test_unknown(self):
        assert classify_failure(TransactionRejected("Ownable: caller is not the owner")) == OutcomeStatus.UNKNOWN_FAILURE

    def test_already_done_wins_over_price_words(self):
        err = TransactionRejected("Order already executed at stale price")
        assert classify_failure(err) == OutcomeStatus.ALREADY_DONE


class TestExecute:
    def test_order_success(self, engine, ledger, stats, registry):
        ledger.orders[1] = make_order(1)
        outcome = engine.execute(_order_opp(1))
        assert outcome.status == OutcomeStatus.SUCCESS
        assert outcome.receipt is not None
        assert outcome.attempts == 1
        assert stats.orders_executed == 1
        assert registry.is_settled(OpportunityKind.ORDER_EXECUTION, 1)

    def test_liquidation_success(self, engine, ledger, stats):
        ledger.positions[3] = make_position(3)
        outcome = engine.execute(_liq_opp(3))
        assert outcome.status == OutcomeStatus.SUCCESS
        assert stats.positions_liquidated == 1
        assert ledger.writes == [("liquidate_position", 3, 480_000)]

    def test_gas_hint_has_buffer(self, engine):
        assert engine.gas_hint(300_000) == 360_000
        assert engine.gas_hint(400_001) == 480_001

    def test_already_done_leaves_counters(self, engine, ledger, stats, registry):
        ledger.orders[1] = make_order(1)
        ledger.write_errors[("execute_order", 1)].append(TransactionRejected("Order already executed"))
        outcome = engine.execute(_order_opp(1))
        assert outcome.status == OutcomeStatus.ALREADY_DONE
        assert stats.orders_executed == 0
        assert stats.errors == 0
        assert registry.is_settled(OpportunityKind.ORDER_EXECUTION, 1)

    def test_preflight_reread_skips_write(self, engine, ledger, stats):
        ledger.orders[1] = make_order(1, executed=True)
        outcome = engine.execute(_order_opp(1))
        assert outcome.status == OutcomeStatus.ALREADY_DONE
        assert ledger.writes == []
        assert stats.orders_executed == 0

    def test_preflight_read_failure_still_submits(self, engine, ledger):
        ledger.orders[1] = make_order(1)
        ledger.read_errors[("get_order", 1)] = LedgerCallError("flaky")
        outcome = engine.execute(_order_opp(1))
        assert outcome.status == OutcomeStatus.SUCCESS

    def test_settled_target_never_resubmitted(self, engine, ledger, stats):
        ledger.orders[1] = make_order(1)
        assert engine.execute(_order_opp(1)).status == OutcomeStatus.SUCCESS
        second = engine.execute(_order_opp(1))
        assert second.status == OutcomeStatus.ALREADY_DONE
        assert len(ledger.writes) == 1
        assert stats.orders_executed == 1

    def test_economic_rejection_not_retried(self, engine, ledger, stats):
        ledger.orders[1] = make_order(1)
        ledger.write_errors[("execute_order", 1)].append(TransactionRejected("Slippage too high"))
        outcome = engine.execute(_order_opp(1))
        assert outcome.status == OutcomeStatus.ECONOMIC_REJECTION
        assert outcome.attempts == 1
        assert len(ledger.writes) == 1
        assert stats.economic_rejections == 1
        assert stats.errors == 0

    def test_transient_retried_once_then_succeeds(self, engine, ledger, stats):
        ledger.orders[1] = make_order(1)
        ledger.write_errors[("execute_order", 1)].append(LedgerTransientError("connection reset"))
        outcome = engine.execute(_order_opp(1))
        assert outcome.status == OutcomeStatus.SUCCESS
        assert outcome.attempts == 2
        assert stats.orders_executed == 1

    def test_transient_gives_up_after_bound(self, engine, ledger, stats, registry):
        ledger.orders[1] = make_order(1)
        ledger.write_errors[("execute_order", 1)].extend([
            LedgerTransientError("timeout"),
            LedgerTransientError("timeout"),
            LedgerTransientError("timeout"),
        ])
        outcome = engine.execute(_order_opp(1))
        assert outcome.status == OutcomeStatus.TRANSIENT_FAILURE
        assert outcome.attempts == 2
        assert len(ledger.writes) == 2
        assert stats.transient_failures == 1
        assert not registry.is_settled(OpportunityKind.ORDER_EXECUTION, 1)

    def test_unknown_failure_counts_error(self, engine, ledger, stats):
        ledger.orders[1] = make_order(1)
        ledger.write_errors[("execute_order", 1)].append(TransactionRejected("execution reverted"))
        outcome = engine.execute(_order_opp(1))
        assert outcome.status == OutcomeStatus.UNKNOWN_FAILURE
        assert stats.errors == 1

    def test_unexpected_exception_contained(self, engine, ledger, stats):
        ledger.orders[1] = make_order(1)
        ledger.write_errors[("execute_order", 1)].append(KeyError("decoder bug"))
        outcome = engine.execute(_order_opp(1))
        assert outcome.status == OutcomeStatus.UNKNOWN_FAILURE
        assert stats.errors == 1

    def test_backoff_sleeps_between_attempts(self, ledger, stats, registry):
        sleeps = []
        engine = ExecutionEngine(
            ledger, stats, registry,
            retry_policy=RetryPolicy(max_attempts=2, backoff_sec=2.0, sleep=sleeps.append),
        )
        ledger.orders[1] = make_order(1)
        ledger.write_errors[("execute_order", 1)].append(LedgerTransientError("timeout"))
        engine.execute(_order_opp(1))
        assert sleeps == [2.0]


class TestPriceImpactGuard:
    def test_rejects_large_impact_without_write(self, ledger, stats, registry, no_sleep_retry):
        engine = ExecutionEngine(ledger, stats, registry, retry_policy=no_sleep_retry, max_price_impact_pct=5)
        ledger.orders[1] = make_order(1, amount_in=100 * ONE)
        ledger.reserves[(TOKEN_A, TOKEN_B)] = (1000 * ONE, 2000 * ONE)  # ~9.09% impact
        outcome = engine.execute(_order_opp(1, amount_in=100 * ONE))
        assert outcome.status == OutcomeStatus.ECONOMIC_REJECTION
        assert ledger.writes == []

    def test_allows_small_impact(self, ledger, stats, registry, no_sleep_retry):
        engine = ExecutionEngine(ledger, stats, registry, retry_policy=no_sleep_retry, max_price_impact_pct=5)
        ledger.orders[1] = make_order(1, amount_in=10 * ONE)
        ledger.reserves[(TOKEN_A, TOKEN_B)] = (1000 * ONE, 2000 * ONE)  # ~0.99% impact
        outcome = engine.execute(_order_opp(1, amount_in=10 * ONE))
        assert outcome.status == OutcomeStatus.SUCCESS

    def test_disabled_by_default(self, engine, ledger):
        # No reserves configured: a reserve read would fail the fake with KeyError.
        ledger.orders[1] = make_order(1)
        assert engine.execute(_order_opp(1)).status == OutcomeStatus.SUCCESS


class TestDryRun:
    def test_no_writes_no_counters(self, ledger, stats, registry):
        engine = ExecutionEngine(ledger, stats, registry, dry_run=True)
        ledger.orders[1] = make_order(1)
        outcome = engine.execute(_order_opp(1))
        assert outcome.status == OutcomeStatus.SKIPPED_DRY_RUN
        assert ledger.writes == []
        assert stats.orders_executed == 0
        assert not registry.is_settled(OpportunityKind.ORDER_EXECUTION, 1)

    def test_price_updates_skipped(self, ledger, stats, registry):
        engine = ExecutionEngine(ledger, stats, registry, dry_run=True)
        outcomes = engine.submit_price_updates([TOKEN_A], [ONE])
        assert [o.status for o in outcomes] == [OutcomeStatus.SKIPPED_DRY_RUN]
        assert ledger.writes == []
        assert stats.prices_updated == 0


class TestExecuteBatch:
    def test_continues_past_failures_in_order(self, engine, ledger, stats):
        for i in range(1, 5):
            ledger.orders[i] = make_order(i)
        ledger.write_errors[("execute_order", 2)].append(TransactionRejected("Slippage"))
        ledger.write_errors[("execute_order", 3)].append(RuntimeError("unexpected"))
        outcomes = engine.execute_batch([_order_opp(i) for i in range(1, 5)])
        assert [o.status for o in outcomes] == [
            OutcomeStatus.SUCCESS,
            OutcomeStatus.ECONOMIC_REJECTION,
            OutcomeStatus.UNKNOWN_FAILURE,
            OutcomeStatus.SUCCESS,
        ]
        assert [w[1] for w in ledger.writes] == [1, 2, 3, 4]
        assert stats.orders_executed == 2

    def test_writes_are_sequential(self, stats, registry, no_sleep_retry):
        gateway = MagicMock()
        gateway.get_order.return_value = make_order(1)
        in_flight = []

        def _execute(order_id, gas_hint):
            assert not in_flight, "concurrent write"
            in_flight.append(order_id)
            in_flight.pop()
            return MagicMock(tx_hash="0xabc")

        gateway.execute_order.side_effect = _execute
        engine = ExecutionEngine(gateway, stats, registry, retry_policy=no_sleep_retry)
        engine.execute_batch([_order_opp(i) for i in range(1, 4)])
        assert gateway.execute_order.call_count == 3


class TestSubmitPriceUpdates:
    def test_chunks_to_batch_size(self, engine, ledger, stats):
        tokens = [f"0x{i:040x}" for i in range(23)]
        prices = [ONE * (i + 1) for i in range(23)]
        outcomes = engine.submit_price_updates(tokens, prices)
        sizes = [len(w[1]) for w in ledger.writes]
        assert sizes == [10, 10, 3]
        assert all(o.status == OutcomeStatus.SUCCESS for o in outcomes)
        assert stats.prices_updated == 23

    def test_custom_batch_size(self, ledger, stats, registry):
        engine = ExecutionEngine(ledger, stats, registry, max_batch_size=4)
        engine.submit_price_updates([TOKEN_A] * 9, [ONE] * 9)
        assert [len(w[1]) for w in ledger.writes] == [4, 4, 1]

    def test_failed_chunk_does_not_stop_rest(self, engine, ledger, stats):
        ledger.write_errors[("batch_update_prices", None)].append(TransactionRejected("Ownable: caller is not updater"))
        outcomes = engine.submit_price_updates([TOKEN_A] * 12, [ONE] * 12)
        assert [o.status for o in outcomes] == [OutcomeStatus.UNKNOWN_FAILURE, OutcomeStatus.SUCCESS]
        assert stats.prices_updated == 2
        assert stats.errors == 1

    def test_length_mismatch(self, engine):
        with pytest.raises(ValueError):
            engine.submit_price_updates([TOKEN_A, TOKEN_B], [ONE])

    def test_zero_batch_size_rejected(self, ledger, stats, registry):
        with pytest.raises(ValueError):
            ExecutionEngine(ledger, stats, registry, max_batch_size=0)
