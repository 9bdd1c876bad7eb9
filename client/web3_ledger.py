"""
web3.py implementation of the LedgerGateway protocol.

Reads are plain eth_call through the shared retry policy. Writes are
simulated first (so a revert costs no gas and yields its reason), then
signed with the keeper key, sent, and awaited with a bounded timeout.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Sequence, TypeVar

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)

from client.abi import load_abi, output_names
from client.gas import GasOracle
from client.ledger import (
    LedgerCallError,
    LedgerError,
    LedgerTransientError,
    ReceiptTimeout,
    TransactionRejected,
)
from executor.retry import RetryPolicy
from scanner.models import Direction, Order, OrderKind, Position, Receipt

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ORDER_KINDS = {0: OrderKind.LIMIT, 1: OrderKind.STOP_LOSS, 2: OrderKind.SELF_EXEC}

_TRANSIENT_RPC_HINTS = (
    "nonce too low",
    "replacement transaction underpriced",
    "already known",
    "timeout",
    "header not found",
    "too many requests",
)


def _revert_reason(exc: ContractLogicError) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message.replace("execution reverted: ", "").replace("execution reverted", "").strip() or "execution reverted"


def _wrap_errors(description: str, fn: Callable[[], T], write: bool = False) -> T:
    """Translate web3/requests exceptions into the ledger error taxonomy."""
    try:
        return fn()
    except ContractLogicError as e:
        reason = _revert_reason(e)
        if write:
            raise TransactionRejected(reason) from e
        raise LedgerCallError(f"{description} reverted: {reason}") from e
    except requests.exceptions.HTTPError as e:
        # 429 and 5xx are transient; other 4xx are not
        status = e.response.status_code if e.response is not None else None
        if status is None or status == 429 or status >= 500:
            raise LedgerTransientError(f"{description}: {e}") from e
        raise LedgerError(f"{description}: {e}") from e
    except (requests.exceptions.RequestException, TimeExhausted) as e:
        raise LedgerTransientError(f"{description}: {e}") from e
    except Web3RPCError as e:
        message = getattr(e, "message", None) or str(e)
        if any(hint in message.lower() for hint in _TRANSIENT_RPC_HINTS):
            raise LedgerTransientError(f"{description}: {message}") from e
        raise LedgerError(f"{description}: {message}") from e
    except Web3Exception as e:
        raise LedgerCallError(f"{description}: {e}") from e


class Web3LedgerGateway:
    """
    LedgerGateway over an HTTP JSON-RPC node.

    private_key may be empty for a read-only (dry-run) gateway; write methods
    then raise LedgerError.
    """

    def __init__(
        self,
        rpc_url: str,
        router_address: str,
        oracle_address: str,
        private_key: str = "",
        chain_id: int | None = None,
        pool_address: str = "",
        access_control_address: str = "",
        abi_dir: str = "",
        gas_oracle: GasOracle | None = None,
        read_retry: RetryPolicy | None = None,
        request_timeout_sec: float = 30.0,
        receipt_timeout_sec: float = 60.0,
        web3: Web3 | None = None,
    ):
        self._w3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout_sec}))
        self._chain_id = chain_id
        self._gas_oracle = gas_oracle
        self._read_retry = read_retry or RetryPolicy()
        self._receipt_timeout_sec = receipt_timeout_sec
        self._account = Account.from_key(private_key) if private_key else None
        # One write in flight per key; nonces come from the pending pool.
        self._write_lock = threading.Lock()
        self._in_flight: dict[str, bytes] = {}

        self._router_abi = load_abi("Router", abi_dir)
        self._router = self._contract(router_address, self._router_abi)
        self._oracle = self._contract(oracle_address, load_abi("Oracle", abi_dir))
        self._pool = self._contract(pool_address, load_abi("Pool", abi_dir)) if pool_address else None
        self._access_control = (
            self._contract(access_control_address, load_abi("AccessControl", abi_dir))
            if access_control_address else None
        )
        self._order_fields = output_names(self._router_abi, "getOrder")
        self._position_fields = output_names(self._router_abi, "getPosition")

    def _contract(self, address: str, abi: list[dict]):
        return self._w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    @property
    def keeper_address(self) -> str:
        return self._account.address if self._account else ""

    # -- reads ------------------------------------------------------------------

    def _read(self, description: str, fn: Callable[[], T]) -> T:
        result, _ = self._read_retry.call(lambda: _wrap_errors(description, fn), description=description)
        return result

    def is_paused(self) -> bool:
        paused = self._read("isSystemPaused", lambda: self._router.functions.isSystemPaused().call())
        if paused:
            return True
        if self._access_control is not None:
            stopped = self._read("emergencyStop", lambda: self._access_control.functions.emergencyStop().call())
            return bool(stopped)
        return False

    def next_order_id(self) -> int:
        return int(self._read("getNextOrderId", lambda: self._router.functions.getNextOrderId().call()))

    def next_position_id(self) -> int:
        return int(self._read("getNextPositionId", lambda: self._router.functions.getNextPositionId().call()))

    def get_order(self, order_id: int) -> Order:
        raw = self._read(f"getOrder({order_id})", lambda: self._router.functions.getOrder(order_id).call())
        return self._decode_order(raw)

    def get_position(self, position_id: int) -> Position:
        raw = self._read(f"getPosition({position_id})", lambda: self._router.functions.getPosition(position_id).call())
        return self._decode_position(raw)

    def should_execute_order(self, order_id: int) -> bool:
        return bool(self._read(
            f"shouldExecuteOrder({order_id})",
            lambda: self._router.functions.shouldExecuteOrder(order_id).call(),
        ))

    def current_price(self, token: str) -> int:
        addr = Web3.to_checksum_address(token)
        return int(self._read(f"getPrice({token})", lambda: self._oracle.functions.getPrice(addr).call()))

    def price_last_updated(self, token: str) -> int:
        addr = Web3.to_checksum_address(token)
        info = self._read(
            f"getTokenPriceInfo({token})",
            lambda: self._oracle.functions.getTokenPriceInfo(addr).call(),
        )
        return int(info[1])

    def pool_reserves(self, token_in: str, token_out: str) -> tuple[int, int]:
        if self._pool is None:
            raise LedgerCallError("Pool address not configured")
        addr_in = Web3.to_checksum_address(token_in)
        addr_out = Web3.to_checksum_address(token_out)
        reserve_in = self._read(
            f"totalTokenBalances({token_in})", lambda: self._pool.functions.totalTokenBalances(addr_in).call(),
        )
        reserve_out = self._read(
            f"totalTokenBalances({token_out})", lambda: self._pool.functions.totalTokenBalances(addr_out).call(),
        )
        return int(reserve_in), int(reserve_out)

    def native_balance(self) -> int:
        if not self._account:
            return 0
        return int(self._read("getBalance", lambda: self._w3.eth.get_balance(self._account.address)))

    def _decode_order(self, raw: Sequence[Any]) -> Order:
        try:
            f = dict(zip(self._order_fields, raw))
            return Order(
                id=int(f["id"]),
                owner=f["user"],
                token_in=f["tokenIn"],
                token_out=f["tokenOut"],
                amount_in=int(f["amountIn"]),
                target_price=int(f["targetPrice"]),
                kind=_ORDER_KINDS[int(f["orderType"])],
                direction=Direction.LONG if f["isLong"] else Direction.SHORT,
                executed=bool(f["executed"]),
                created_at=int(f.get("createdAt", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerCallError(f"Undecodable order payload: {e}") from e

    def _decode_position(self, raw: Sequence[Any]) -> Position:
        try:
            f = dict(zip(self._position_fields, raw))
            return Position(
                id=int(f["id"]),
                owner=f["user"],
                token=f["token"],
                collateral_amount=int(f["collateralAmount"]),
                leverage=int(f["leverage"]),
                kind=Direction.LONG if int(f["positionType"]) == 0 else Direction.SHORT,
                entry_price=int(f["entryPrice"]),
                size=int(f["size"]),
                is_open=bool(f["isOpen"]),
                created_at=int(f.get("createdAt", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerCallError(f"Undecodable position payload: {e}") from e

    # -- writes -----------------------------------------------------------------

    def execute_order(self, order_id: int, gas_hint: int) -> Receipt:
        return self._transact(f"selfExecuteOrder({order_id})", self._router.functions.selfExecuteOrder(order_id), gas_hint)

    def liquidate_position(self, position_id: int, gas_hint: int) -> Receipt:
        return self._transact(
            f"liquidatePosition({position_id})", self._router.functions.liquidatePosition(position_id), gas_hint,
        )

    def batch_update_prices(self, tokens: Sequence[str], prices: Sequence[int]) -> Receipt:
        if len(tokens) != len(prices):
            raise ValueError(f"tokens and prices differ in length: {len(tokens)} != {len(prices)}")
        addrs = [Web3.to_checksum_address(t) for t in tokens]
        fn = self._oracle.functions.batchUpdatePrices(addrs, [int(p) for p in prices])
        gas_hint = 80_000 + 40_000 * len(addrs)
        return self._transact(f"batchUpdatePrices({len(addrs)})", fn, gas_hint)

    def _transact(self, description: str, fn, gas_hint: int) -> Receipt:
        """
        Simulate, sign, send and await one transaction. Raises LedgerError subclasses.

        A transaction whose receipt wait timed out stays in flight under its
        description; the next call for the same description re-awaits that hash
        instead of sending a second transaction.
        """
        if self._account is None:
            raise LedgerError(f"{description}: no keeper key configured (read-only gateway)")
        sender = self._account.address

        with self._write_lock:
            tx_hash = self._in_flight.get(description)
            if tx_hash is not None and not _wrap_errors(
                f"lookup {description}", lambda: self._still_known(tx_hash),
            ):
                logger.warning("%s: in-flight tx %s was dropped, resending", description, Web3.to_hex(tx_hash))
                del self._in_flight[description]
                tx_hash = None

            start = time.time()
            if tx_hash is None:
                _wrap_errors(f"simulate {description}", lambda: fn.call({"from": sender}), write=True)
                tx_hash = _wrap_errors(description, lambda: self._build_and_send(fn, sender, gas_hint), write=True)
                logger.debug("%s sent: %s", description, Web3.to_hex(tx_hash))
            else:
                logger.info("%s: awaiting in-flight tx %s", description, Web3.to_hex(tx_hash))

            try:
                receipt = _wrap_errors(
                    f"await {description}",
                    lambda: self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout_sec),
                )
            except LedgerTransientError as e:
                self._in_flight[description] = tx_hash
                raise ReceiptTimeout(str(e), tx_hash=Web3.to_hex(tx_hash)) from e
            self._in_flight.pop(description, None)

        result = Receipt(
            tx_hash=Web3.to_hex(tx_hash),
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            status=int(receipt["status"]),
        )
        if result.status != 1:
            reason = self._replay_reason(fn, sender, result.block_number)
            raise TransactionRejected(reason, tx_hash=result.tx_hash)
        logger.debug(
            "%s mined in block %d, gas=%d (%.1fs)",
            description, result.block_number, result.gas_used, time.time() - start,
        )
        return result

    def _build_and_send(self, fn, sender: str, gas_hint: int):
        tx_params = {
            "from": sender,
            "nonce": self._w3.eth.get_transaction_count(sender, "pending"),
            "gas": int(gas_hint),
            "gasPrice": self._gas_price(),
        }
        if self._chain_id is not None:
            tx_params["chainId"] = self._chain_id
        tx = fn.build_transaction(tx_params)
        signed = self._account.sign_transaction(tx)
        return self._w3.eth.send_raw_transaction(signed.raw_transaction)

    def _still_known(self, tx_hash) -> bool:
        """False once the node no longer knows the transaction (dropped from the mempool)."""
        try:
            self._w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return False
        return True

    def _gas_price(self) -> int:
        if self._gas_oracle is not None:
            return self._gas_oracle.get_gas_price_wei()
        return int(self._w3.eth.gas_price)

    def _replay_reason(self, fn, sender: str, block_number: int) -> str:
        """Re-run a reverted call at its block to recover the revert message."""
        try:
            fn.call({"from": sender}, block_identifier=block_number)
        except ContractLogicError as e:
            return _revert_reason(e)
        except (Web3Exception, requests.exceptions.RequestException) as e:
            logger.debug("Revert replay failed: %s", e)
        return "execution reverted"
