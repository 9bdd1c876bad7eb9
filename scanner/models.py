"""
Data models for the keeper. Pure data, no behavior beyond small derived properties.

Raw on-chain integers (token-native decimals, 18-decimal prices) are kept as
ints; conversion to Decimal happens in scanner.amm.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"
PRICE_DECIMALS = 18


class OrderKind(Enum):
    LIMIT = "limit"
    STOP_LOSS = "stop_loss"
    SELF_EXEC = "self_exec"


class Direction(Enum):
    LONG = "long"
    SHORT = "short"


class OpportunityKind(Enum):
    ORDER_EXECUTION = "order_execution"
    POSITION_LIQUIDATION = "position_liquidation"


class OutcomeStatus(Enum):
    SUCCESS = "success"
    ALREADY_DONE = "already_done"
    ECONOMIC_REJECTION = "economic_rejection"
    TRANSIENT_FAILURE = "transient_failure"
    UNKNOWN_FAILURE = "unknown_failure"
    SKIPPED_DRY_RUN = "skipped_dry_run"


@dataclass(frozen=True)
class Order:
    id: int
    owner: str
    token_in: str
    token_out: str
    amount_in: int
    target_price: int
    kind: OrderKind
    direction: Direction
    executed: bool
    created_at: int = 0


@dataclass(frozen=True)
class Position:
    id: int
    owner: str
    token: str
    collateral_amount: int
    leverage: int
    kind: Direction
    entry_price: int
    size: int
    is_open: bool
    created_at: int = 0


@dataclass(frozen=True)
class PriceQuote:
    token: str
    price: int
    last_update: int
    is_stale: bool = False


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_number: int = 0
    gas_used: int = 0
    status: int = 1


@dataclass(frozen=True)
class Opportunity:
    kind: OpportunityKind
    target_id: int
    estimated_gas: int
    estimated_reward: Decimal
    description: str = ""
    # Only set for liquidations.
    loss_pct: Decimal | None = None
    # Pair for the pre-flight price-impact guard (orders only).
    token_in: str = ""
    token_out: str = ""
    amount_in: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def is_order(self) -> bool:
        return self.kind == OpportunityKind.ORDER_EXECUTION


@dataclass(frozen=True)
class ExecutionOutcome:
    status: OutcomeStatus
    opportunity: Opportunity | None
    receipt: Receipt | None = None
    reason: str = ""
    attempts: int = 0
    elapsed_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        """True for a landed transaction or a competitor's earlier settlement."""
        return self.status in (OutcomeStatus.SUCCESS, OutcomeStatus.ALREADY_DONE)
