"""
Opportunity discovery. Walks the order and position id spaces and keeps the
ones the keeper can act on right now.

Best-effort enumeration: a read that fails for one id is logged and that id
is skipped; the rest of the scan continues. Scanning never writes.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Mapping, TypeVar

from client.ledger import LedgerGateway
from scanner.amm import AmmMath, Number, from_wei, to_decimal
from scanner.liquidation import InvalidPositionError, LiquidationMonitor
from scanner.models import (
    Opportunity,
    OpportunityKind,
    Order,
    Position,
)
from state.settled import SettledRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ORDER_GAS = 300_000
DEFAULT_LIQUIDATION_GAS = 400_000
DEFAULT_ORDER_REWARD_FEE_PCT = Decimal("0.1")
DEFAULT_LIQUIDATION_REWARD_PCT = Decimal(10)


@dataclass
class ScanResult:
    """What one pass over an id space found."""

    kind: OpportunityKind
    opportunities: list[Opportunity] = field(default_factory=list)
    total_ids: int = 0
    settled: int = 0
    skipped_settled: int = 0
    failed_ids: list[int] = field(default_factory=list)
    # Unexecuted orders whose price condition is not met yet.
    pending: list[Order] = field(default_factory=list)
    elapsed_sec: float = 0.0

    @property
    def found(self) -> int:
        return len(self.opportunities)


class OpportunityScanner:
    """
    Turns ledger state into Opportunity lists.

    Reads for distinct ids are independent, so they are fanned out over up
    to *max_workers* threads; results always come back in id order.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        monitor: LiquidationMonitor,
        registry: SettledRegistry,
        amm: AmmMath | None = None,
        token_decimals: Mapping[str, int] | None = None,
        order_reward_fee_pct: Number = DEFAULT_ORDER_REWARD_FEE_PCT,
        liquidation_reward_pct: Number = DEFAULT_LIQUIDATION_REWARD_PCT,
        order_gas_estimate: int = DEFAULT_ORDER_GAS,
        liquidation_gas_estimate: int = DEFAULT_LIQUIDATION_GAS,
        max_workers: int = 4,
    ):
        self._gateway = gateway
        self._monitor = monitor
        self._registry = registry
        self._amm = amm or AmmMath()
        self._decimals = {k.lower(): v for k, v in (token_decimals or {}).items()}
        self._order_reward_fee_pct = to_decimal(order_reward_fee_pct)
        self._liquidation_reward_pct = to_decimal(liquidation_reward_pct)
        self._order_gas = order_gas_estimate
        self._liquidation_gas = liquidation_gas_estimate
        self._max_workers = max(1, max_workers)

    def _token_decimals(self, token: str) -> int:
        return self._decimals.get(token.lower(), 18)

    def _fan_out(self, fn: Callable[[int], T], ids: list[int]) -> list[tuple[int, T | None, Exception | None]]:
        """Apply *fn* to every id, capturing per-id exceptions. Preserves id order."""

        def _safe(item_id: int) -> tuple[int, T | None, Exception | None]:
            try:
                return item_id, fn(item_id), None
            except Exception as e:
                return item_id, None, e

        if self._max_workers == 1 or len(ids) <= 1:
            return [_safe(i) for i in ids]
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            return list(pool.map(_safe, ids))

    # -- orders ---------------------------------------------------------------

    def _read_order(self, order_id: int) -> tuple[Order, bool]:
        order = self._gateway.get_order(order_id)
        if order.executed:
            return order, False
        return order, bool(self._gateway.should_execute_order(order_id))

    def scan_orders(self) -> ScanResult:
        """Find unexecuted orders the Router reports as ready to execute."""
        start = time.time()
        result = ScanResult(kind=OpportunityKind.ORDER_EXECUTION)
        next_id = int(self._gateway.next_order_id())
        all_ids = list(range(1, next_id))
        result.total_ids = len(all_ids)

        ids = []
        for order_id in all_ids:
            if self._registry.is_settled(OpportunityKind.ORDER_EXECUTION, order_id):
                result.skipped_settled += 1
            else:
                ids.append(order_id)

        for order_id, value, error in self._fan_out(self._read_order, ids):
            if error is not None:
                logger.warning("Order %d lookup failed, skipping: %s", order_id, error)
                result.failed_ids.append(order_id)
                continue
            order, ready = value
            if order.executed:
                self._registry.mark(OpportunityKind.ORDER_EXECUTION, order_id)
                result.settled += 1
            elif ready:
                result.opportunities.append(self._order_opportunity(order))
            else:
                result.pending.append(order)

        result.elapsed_sec = time.time() - start
        logger.debug(
            "Order scan: %d ids, %d ready, %d pending, %d settled (+%d cached), %d failed in %.2fs",
            result.total_ids, result.found, len(result.pending), result.settled,
            result.skipped_settled, len(result.failed_ids), result.elapsed_sec,
        )
        return result

    def _order_opportunity(self, order: Order) -> Opportunity:
        amount = from_wei(order.amount_in, self._token_decimals(order.token_in))
        reward = Decimal(self._amm.fee(amount, self._order_reward_fee_pct))
        return Opportunity(
            kind=OpportunityKind.ORDER_EXECUTION,
            target_id=order.id,
            estimated_gas=self._order_gas,
            estimated_reward=reward,
            description=f"Execute {order.kind.value} {order.direction.value} order #{order.id}",
            token_in=order.token_in,
            token_out=order.token_out,
            amount_in=order.amount_in,
        )

    # -- positions --------------------------------------------------------------

    def scan_positions(self) -> ScanResult:
        """Find open positions whose loss crossed the liquidation threshold."""
        start = time.time()
        result = ScanResult(kind=OpportunityKind.POSITION_LIQUIDATION)
        next_id = int(self._gateway.next_position_id())
        all_ids = list(range(1, next_id))
        result.total_ids = len(all_ids)

        ids = []
        for position_id in all_ids:
            if self._registry.is_settled(OpportunityKind.POSITION_LIQUIDATION, position_id):
                result.skipped_settled += 1
            else:
                ids.append(position_id)

        open_positions: list[Position] = []
        for position_id, position, error in self._fan_out(self._gateway.get_position, ids):
            if error is not None:
                logger.warning("Position %d lookup failed, skipping: %s", position_id, error)
                result.failed_ids.append(position_id)
                continue
            if not position.is_open:
                self._registry.mark(OpportunityKind.POSITION_LIQUIDATION, position_id)
                result.settled += 1
                continue
            open_positions.append(position)

        prices = self._read_prices(sorted({p.token for p in open_positions}))

        for position in open_positions:
            price = prices.get(position.token)
            if price is None:
                result.failed_ids.append(position.id)
                continue
            try:
                liquidatable, loss = self._monitor.evaluate(position, price)
            except InvalidPositionError as e:
                logger.warning("Position %d cannot be evaluated, skipping: %s", position.id, e)
                result.failed_ids.append(position.id)
                continue
            if liquidatable:
                result.opportunities.append(self._liquidation_opportunity(position, loss))

        result.failed_ids.sort()
        result.elapsed_sec = time.time() - start
        logger.debug(
            "Position scan: %d ids, %d open, %d liquidatable, %d settled (+%d cached), %d failed in %.2fs",
            result.total_ids, len(open_positions), result.found, result.settled,
            result.skipped_settled, len(result.failed_ids), result.elapsed_sec,
        )
        return result

    def _read_prices(self, tokens: list[str]) -> dict[str, int]:
        """One oracle read per distinct token. Tokens whose read fails are absent."""
        prices: dict[str, int] = {}
        if not tokens:
            return prices
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(tokens))) as pool:
            futures = {token: pool.submit(self._gateway.current_price, token) for token in tokens}
            for token, future in futures.items():
                try:
                    prices[token] = int(future.result())
                except Exception as e:
                    logger.warning("Oracle price for %s unavailable, skipping its positions: %s", token, e)
        return prices

    def _liquidation_opportunity(self, position: Position, loss: Decimal) -> Opportunity:
        collateral = from_wei(position.collateral_amount, self._token_decimals(position.token))
        reward = Decimal(self._amm.fee(collateral, self._liquidation_reward_pct))
        return Opportunity(
            kind=OpportunityKind.POSITION_LIQUIDATION,
            target_id=position.id,
            estimated_gas=self._liquidation_gas,
            estimated_reward=reward,
            description=(
                f"Liquidate {position.kind.value} position #{position.id} "
                f"({position.leverage}x, loss {loss:.2f}%)"
            ),
            loss_pct=loss,
        )
