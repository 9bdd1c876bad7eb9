"""
Cached gas price oracle. Queries the node's eth_gasPrice over JSON-RPC;
results are cached to avoid hitting the RPC on every keeper transaction.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal

import httpx

logger = logging.getLogger(__name__)

_TIMEOUT = 5.0
_WEI_PER_GWEI = 10**9


class GasOracle:
    """
    Cached gas price in wei. Falls back to a configured default when the RPC
    is unreachable, so a flaky gas read never blocks a keeper write.
    """

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:8545",
        cache_sec: float = 10.0,
        default_gas_gwei: float = 1.0,
        allow_network: bool = True,
        timeout: float = _TIMEOUT,
    ):
        self._rpc_url = rpc_url
        self._cache_sec = cache_sec
        self._default_wei = int(Decimal(str(default_gas_gwei)) * _WEI_PER_GWEI)
        self._allow_network = allow_network
        self._timeout = timeout

        self._cached_wei: int | None = None
        self._gas_ts: float = 0.0

    def get_gas_price_wei(self) -> int:
        """Return current gas price in wei. Uses cache if fresh."""
        now = time.time()
        if self._cached_wei is not None and (now - self._gas_ts) < self._cache_sec:
            return self._cached_wei
        if not self._allow_network:
            return self._default_wei

        try:
            resp = httpx.post(
                self._rpc_url,
                json={"jsonrpc": "2.0", "method": "eth_gasPrice", "params": [], "id": 1},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            wei = int(resp.json()["result"], 16)
            self._cached_wei = wei
            self._gas_ts = now
            logger.debug("Gas price: %.2f gwei", wei / _WEI_PER_GWEI)
            return wei
        except (httpx.HTTPError, KeyError, ValueError, TypeError) as e:
            logger.warning(
                "Gas price fetch failed, using default %.2f gwei: %s",
                self._default_wei / _WEI_PER_GWEI, e,
            )
            return self._default_wei

    def estimate_cost_eth(self, gas_units: int) -> Decimal:
        """Native-asset cost of *gas_units* at the current gas price."""
        return Decimal(gas_units * self.get_gas_price_wei()).scaleb(-18)
