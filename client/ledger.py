"""
Ledger gateway protocol. One explicit method per contract operation the
keeper needs; adapters translate to a concrete chain's call encoding.

Gateways raise the errors below instead of returning defaults, so callers
decide per call site how each failure category is treated.
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from scanner.models import Order, Position, Receipt


class LedgerError(Exception):
    """Base class for every failure surfaced by a ledger gateway."""
    pass


class LedgerTransientError(LedgerError):
    """Network/RPC-layer failure: timeout, dropped connection, nonce contention."""
    pass


class ReceiptTimeout(LedgerTransientError):
    """A sent transaction was not mined in time. *tx_hash* is still in flight."""

    def __init__(self, message: str, tx_hash: str):
        super().__init__(message)
        self.tx_hash = tx_hash


class LedgerCallError(LedgerError):
    """A read call reverted or returned data that could not be decoded."""
    pass


class TransactionRejected(LedgerError):
    """A write was rejected by the contract. *reason* is the revert message."""

    def __init__(self, reason: str, tx_hash: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.tx_hash = tx_hash


@runtime_checkable
class LedgerGateway(Protocol):
    """
    Read/write access to the Router, Trading, Oracle and Pool contracts.

    Amounts and prices are raw on-chain integers (token decimals for amounts,
    18 decimals for prices).
    """

    @property
    def keeper_address(self) -> str:
        """Address that signs keeper transactions."""
        ...

    def is_paused(self) -> bool:
        """True if the system is paused or under an emergency stop."""
        ...

    def next_order_id(self) -> int:
        ...

    def next_position_id(self) -> int:
        ...

    def get_order(self, order_id: int) -> Order:
        ...

    def get_position(self, position_id: int) -> Position:
        ...

    def should_execute_order(self, order_id: int) -> bool:
        """The Router's own readiness predicate for an order."""
        ...

    def current_price(self, token: str) -> int:
        """Oracle price, 18 decimals."""
        ...

    def price_last_updated(self, token: str) -> int:
        """Unix timestamp of the oracle's last update for *token*."""
        ...

    def pool_reserves(self, token_in: str, token_out: str) -> tuple[int, int]:
        """(reserve_in, reserve_out) held by the pool, raw integers."""
        ...

    def native_balance(self) -> int:
        """Keeper's native balance in wei."""
        ...

    def execute_order(self, order_id: int, gas_hint: int) -> Receipt:
        ...

    def liquidate_position(self, position_id: int, gas_hint: int) -> Receipt:
        ...

    def batch_update_prices(self, tokens: Sequence[str], prices: Sequence[int]) -> Receipt:
        ...
