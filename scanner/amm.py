"""
Constant-product AMM math. Mirrors the pool's pricing so the keeper can size
trades and bound slippage before submitting a transaction.

All arithmetic is Decimal; results are fixed-decimal strings at a configured
precision. Rounding is truncation toward zero everywhere, so the same inputs
always produce the same guard values.

  amount_out = in_with_fee * reserve_out / (reserve_in + in_with_fee)
  in_with_fee = amount_in * (1 - fee_pct / 100)
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext

logger = logging.getLogger(__name__)

DEFAULT_FEE_PERCENT = Decimal("0.3")
DEFAULT_PRECISION = 6
PERCENT_PRECISION = 2

# Working precision for intermediate values. 18-decimal wei amounts of
# realistic size fit with room to spare.
_CONTEXT_PREC = 60

_HUNDRED = Decimal(100)
_ZERO = Decimal(0)
_ONE = Decimal(1)

Number = int | str | Decimal


def to_decimal(value: Number) -> Decimal:
    """
    Parse an amount into Decimal. Floats are refused: a binary float has
    already lost the exact value the caller meant.
    """
    if isinstance(value, bool):
        raise TypeError("bool is not a valid amount")
    if isinstance(value, float):
        raise TypeError(f"float amounts are not accepted ({value!r}); pass str or Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Not a decimal amount: {value!r}") from e


def quantize(value: Decimal, places: int) -> Decimal:
    """Truncate toward zero to *places* fractional digits."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN)


def from_wei(raw: int, decimals: int = 18) -> Decimal:
    """Raw integer amount -> Decimal token units (exact)."""
    with localcontext() as ctx:
        ctx.prec = _CONTEXT_PREC
        return Decimal(int(raw)).scaleb(-decimals)


def to_wei(amount: Number, decimals: int = 18) -> int:
    """Decimal token units -> raw integer, truncating sub-unit dust."""
    with localcontext() as ctx:
        ctx.prec = _CONTEXT_PREC
        scaled = to_decimal(amount).scaleb(decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))


class AmmMath:
    """Deterministic constant-product formulas with a fixed output precision."""

    def __init__(self, precision: int = DEFAULT_PRECISION, default_fee_percent: Number = DEFAULT_FEE_PERCENT):
        if precision < 0:
            raise ValueError(f"precision must be >= 0, got {precision}")
        self.precision = precision
        self.default_fee_percent = to_decimal(default_fee_percent)

    def _fmt(self, value: Decimal, places: int | None = None) -> str:
        places = self.precision if places is None else places
        return format(quantize(value, places), "f")

    def _fee(self, fee_percent: Number | None) -> Decimal:
        return self.default_fee_percent if fee_percent is None else to_decimal(fee_percent)

    def amount_out(
        self,
        amount_in: Number,
        reserve_in: Number,
        reserve_out: Number,
        fee_percent: Number | None = None,
    ) -> str:
        """Output received for *amount_in*, after the pool fee."""
        with localcontext() as ctx:
            ctx.prec = _CONTEXT_PREC
            a_in = to_decimal(amount_in)
            r_in = to_decimal(reserve_in)
            r_out = to_decimal(reserve_out)
            if r_in == 0 or r_out == 0:
                return self._fmt(_ZERO)
            in_with_fee = a_in * (_ONE - self._fee(fee_percent) / _HUNDRED)
            out = in_with_fee * r_out / (r_in + in_with_fee)
            return self._fmt(out)

    def amount_in(
        self,
        amount_out: Number,
        reserve_in: Number,
        reserve_out: Number,
        fee_percent: Number | None = None,
    ) -> str:
        """
        Input needed to receive *amount_out*. Zero when the pool is empty or
        the request would drain the output reserve.
        """
        with localcontext() as ctx:
            ctx.prec = _CONTEXT_PREC
            a_out = to_decimal(amount_out)
            r_in = to_decimal(reserve_in)
            r_out = to_decimal(reserve_out)
            if r_in == 0 or r_out == 0 or a_out >= r_out:
                return self._fmt(_ZERO)
            numerator = a_out * r_in
            denominator = (r_out - a_out) * (_ONE - self._fee(fee_percent) / _HUNDRED)
            return self._fmt(numerator / denominator)

    def price_impact(self, reserve_in: Number, reserve_out: Number, amount_in: Number) -> str:
        """
        Percent move between the spot price and the trade's effective price,
        holding k = reserve_in * reserve_out. Always >= 0.
        """
        with localcontext() as ctx:
            ctx.prec = _CONTEXT_PREC
            r_in = to_decimal(reserve_in)
            r_out = to_decimal(reserve_out)
            a_in = to_decimal(amount_in)
            if r_in == 0 or r_out == 0 or a_in <= 0:
                return self._fmt(_ZERO)
            k = r_in * r_out
            new_reserve_in = r_in + a_in
            new_reserve_out = k / new_reserve_in
            out = r_out - new_reserve_out
            price_before = r_out / r_in
            price_after = out / a_in
            impact = abs((price_before - price_after) / price_before) * _HUNDRED
            return self._fmt(impact)

    def apply_slippage(self, amount: Number, slippage_percent: Number, is_minimum: bool = True) -> str:
        """
        Minimum acceptable output (is_minimum) or maximum acceptable input.
        The sign of *slippage_percent* is ignored.
        """
        with localcontext() as ctx:
            ctx.prec = _CONTEXT_PREC
            value = to_decimal(amount)
            slippage = abs(to_decimal(slippage_percent)) / _HUNDRED
            factor = _ONE - slippage if is_minimum else _ONE + slippage
            return self._fmt(value * factor)

    def fee(self, amount: Number, fee_percent: Number | None = None) -> str:
        with localcontext() as ctx:
            ctx.prec = _CONTEXT_PREC
            return self._fmt(to_decimal(amount) * self._fee(fee_percent) / _HUNDRED)

    def net_amount(self, amount: Number, fee_percent: Number | None = None) -> str:
        """Amount minus the (already truncated) fee, so fee + net == amount."""
        with localcontext() as ctx:
            ctx.prec = _CONTEXT_PREC
            return self._fmt(to_decimal(amount) - Decimal(self.fee(amount, fee_percent)))

    def convert_by_price(self, amount: Number, from_price: Number, to_price: Number) -> str:
        with localcontext() as ctx:
            ctx.prec = _CONTEXT_PREC
            to_p = to_decimal(to_price)
            if to_p == 0:
                return self._fmt(_ZERO)
            return self._fmt(to_decimal(amount) * to_decimal(from_price) / to_p)

    def percent_change(self, old: Number, new: Number) -> str:
        """Signed percent change at 2 decimals; 0 when *old* is 0."""
        with localcontext() as ctx:
            ctx.prec = _CONTEXT_PREC
            old_d = to_decimal(old)
            if old_d == 0:
                return self._fmt(_ZERO, PERCENT_PRECISION)
            change = (to_decimal(new) - old_d) / old_d * _HUNDRED
            return self._fmt(change, PERCENT_PRECISION)

    def is_within_tolerance(self, value_a: Number, value_b: Number, tolerance_percent: Number = 1) -> bool:
        a = to_decimal(value_a)
        b = to_decimal(value_b)
        if a == 0 and b == 0:
            return True
        if a == 0 or b == 0:
            return False
        return abs(a - b) <= abs(a) * to_decimal(tolerance_percent) / _HUNDRED

    def has_sufficient_balance(self, available: Number, required: Number, buffer: Number = "0.01") -> bool:
        """True if *available* covers *required* plus a fractional buffer."""
        return to_decimal(available) >= to_decimal(required) * (_ONE + to_decimal(buffer))
