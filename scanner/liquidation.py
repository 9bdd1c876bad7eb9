"""
Liquidation policy. Computes a position's loss percent against the current
oracle price and decides whether it crossed the configured threshold.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext

from scanner.amm import Number, to_decimal
from scanner.models import Direction, Position

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_PCT = Decimal(80)

_HUNDRED = Decimal(100)
_ZERO = Decimal(0)


class InvalidPositionError(ValueError):
    """Raised when a position cannot be evaluated (e.g. zero entry price)."""
    pass


def loss_percent(entry_price: Number, current_price: Number, direction: Direction) -> Decimal:
    """
    Loss as a non-negative percent of entry price.
    Long loses when price falls, short loses when price rises; a profitable
    position has zero loss.
    """
    with localcontext() as ctx:
        ctx.prec = 60
        entry = to_decimal(entry_price)
        current = to_decimal(current_price)
        if entry <= 0:
            raise InvalidPositionError(f"Entry price must be positive, got {entry}")
        if direction == Direction.LONG:
            if current >= entry:
                return _ZERO
            return (entry - current) / entry * _HUNDRED
        if current <= entry:
            return _ZERO
        return (current - entry) / entry * _HUNDRED


def pnl_percent(entry_price: Number, current_price: Number, direction: Direction) -> Decimal:
    """Signed PnL percent (negative is a loss), unleveraged."""
    with localcontext() as ctx:
        ctx.prec = 60
        entry = to_decimal(entry_price)
        current = to_decimal(current_price)
        if entry <= 0:
            raise InvalidPositionError(f"Entry price must be positive, got {entry}")
        if direction == Direction.LONG:
            return (current - entry) / entry * _HUNDRED
        return (entry - current) / entry * _HUNDRED


@dataclass(frozen=True)
class LiquidationMonitor:
    """
    Threshold policy for liquidations.

    threshold_pct: loss percent at or above which a position is liquidatable.
    liquidate_longs / liquidate_shorts: which directions the keeper acts on.
    """

    threshold_pct: Decimal = DEFAULT_THRESHOLD_PCT
    liquidate_longs: bool = True
    liquidate_shorts: bool = True

    def __post_init__(self) -> None:
        threshold = to_decimal(self.threshold_pct)
        if threshold <= 0 or threshold > _HUNDRED:
            raise ValueError(f"Liquidation threshold must be in (0, 100], got {threshold}")
        object.__setattr__(self, "threshold_pct", threshold)

    def direction_enabled(self, direction: Direction) -> bool:
        return self.liquidate_longs if direction == Direction.LONG else self.liquidate_shorts

    def is_liquidatable(self, entry_price: Number, current_price: Number, direction: Direction) -> bool:
        if not self.direction_enabled(direction):
            return False
        return loss_percent(entry_price, current_price, direction) >= self.threshold_pct

    def evaluate(self, position: Position, current_price: int) -> tuple[bool, Decimal]:
        """
        Return (liquidatable, loss_pct) for an on-chain position.
        Closed positions are never liquidatable.
        """
        loss = loss_percent(position.entry_price, current_price, position.kind)
        if not position.is_open or not self.direction_enabled(position.kind):
            return False, loss
        return loss >= self.threshold_pct, loss
