"""
Shared test doubles: an in-memory ledger that behaves like the Router,
Oracle and Pool contracts closely enough for scanner/engine/controller tests.
"""

from __future__ import annotations

from collections import defaultdict

import pytest

from executor.retry import RetryPolicy
from monitor.stats import KeeperStats
from scanner.models import Direction, Order, OrderKind, Position, Receipt
from state.settled import SettledRegistry

TOKEN_A = "0x00000000000000000000000000000000000000aa"
TOKEN_B = "0x00000000000000000000000000000000000000bb"
ONE = 10**18


def make_order(order_id: int, executed: bool = False, amount_in: int = 1000 * ONE, **kw) -> Order:
    defaults = dict(
        owner="0xowner",
        token_in=TOKEN_A,
        token_out=TOKEN_B,
        target_price=2000 * ONE,
        kind=OrderKind.LIMIT,
        direction=Direction.LONG,
    )
    defaults.update(kw)
    return Order(id=order_id, amount_in=amount_in, executed=executed, **defaults)


def make_position(
    position_id: int,
    entry_price: int = 100 * ONE,
    kind: Direction = Direction.LONG,
    is_open: bool = True,
    collateral_amount: int = 50 * ONE,
    token: str = TOKEN_A,
) -> Position:
    return Position(
        id=position_id,
        owner="0xowner",
        token=token,
        collateral_amount=collateral_amount,
        leverage=5,
        kind=kind,
        entry_price=entry_price,
        size=collateral_amount * 5,
        is_open=is_open,
    )


class FakeLedger:
    """
    In-memory LedgerGateway. Writes flip on-chain state the way the real
    contracts do. Queue exceptions in write_errors[(method, id)] to make
    the next write(s) fail.
    """

    def __init__(self) -> None:
        self.paused = False
        self.orders: dict[int, Order] = {}
        self.positions: dict[int, Position] = {}
        self.ready: set[int] = set()
        self.prices: dict[str, int] = {}
        self.last_updated: dict[str, int] = {}
        self.reserves: dict[tuple[str, str], tuple[int, int]] = {}
        self.balance = 2 * ONE

        self.read_errors: dict[tuple[str, object], Exception] = {}
        self.write_errors: dict[tuple[str, object], list[Exception]] = defaultdict(list)
        self.writes: list[tuple] = []
        self._tx = 0

    @property
    def keeper_address(self) -> str:
        return "0xkeeper"

    def _maybe_fail_read(self, method: str, key: object) -> None:
        if (method, key) in self.read_errors:
            raise self.read_errors[(method, key)]

    def _maybe_fail_write(self, method: str, key: object) -> None:
        queued = self.write_errors.get((method, key))
        if queued:
            raise queued.pop(0)

    def _receipt(self) -> Receipt:
        self._tx += 1
        return Receipt(tx_hash=f"0x{self._tx:064x}", block_number=100 + self._tx, gas_used=210_000)

    # reads

    def is_paused(self) -> bool:
        self._maybe_fail_read("is_paused", None)
        return self.paused

    def next_order_id(self) -> int:
        return max(self.orders, default=0) + 1

    def next_position_id(self) -> int:
        return max(self.positions, default=0) + 1

    def get_order(self, order_id: int) -> Order:
        self._maybe_fail_read("get_order", order_id)
        return self.orders[order_id]

    def get_position(self, position_id: int) -> Position:
        self._maybe_fail_read("get_position", position_id)
        return self.positions[position_id]

    def should_execute_order(self, order_id: int) -> bool:
        return order_id in self.ready

    def current_price(self, token: str) -> int:
        self._maybe_fail_read("current_price", token)
        return self.prices[token]

    def price_last_updated(self, token: str) -> int:
        self._maybe_fail_read("price_last_updated", token)
        return self.last_updated[token]

    def pool_reserves(self, token_in: str, token_out: str) -> tuple[int, int]:
        return self.reserves[(token_in, token_out)]

    def native_balance(self) -> int:
        return self.balance

    # writes

    def execute_order(self, order_id: int, gas_hint: int) -> Receipt:
        self.writes.append(("execute_order", order_id, gas_hint))
        self._maybe_fail_write("execute_order", order_id)
        order = self.orders[order_id]
        self.orders[order_id] = Order(**{**order.__dict__, "executed": True})
        self.ready.discard(order_id)
        return self._receipt()

    def liquidate_position(self, position_id: int, gas_hint: int) -> Receipt:
        self.writes.append(("liquidate_position", position_id, gas_hint))
        self._maybe_fail_write("liquidate_position", position_id)
        position = self.positions[position_id]
        self.positions[position_id] = Position(**{**position.__dict__, "is_open": False})
        return self._receipt()

    def batch_update_prices(self, tokens, prices) -> Receipt:
        self.writes.append(("batch_update_prices", tuple(tokens), tuple(prices)))
        self._maybe_fail_write("batch_update_prices", None)
        for token, price in zip(tokens, prices):
            self.prices[token] = price
        return self._receipt()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def stats() -> KeeperStats:
    return KeeperStats()


@pytest.fixture
def registry() -> SettledRegistry:
    return SettledRegistry()


@pytest.fixture
def no_sleep_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=2, backoff_sec=0.5, sleep=lambda _: None)
