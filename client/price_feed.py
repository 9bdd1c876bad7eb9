"""
Reference price feed for the oracle refresh phase. Reads USD prices from
CoinGecko's simple/price endpoint and returns them as Decimal, keyed by
token address.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Mapping

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class PriceFeedError(Exception):
    """Raised when the feed cannot produce a price."""
    pass


class CoinGeckoPriceFeed:
    """
    token_ids: token address -> CoinGecko id. Addresses without an id are
    never priced. One HTTP request covers every token; responses are cached
    for cache_sec.
    """

    def __init__(
        self,
        token_ids: Mapping[str, str],
        host: str = "https://api.coingecko.com/api/v3",
        cache_sec: float = 30.0,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._token_ids = {addr: cg for addr, cg in token_ids.items() if cg}
        self._host = host.rstrip("/")
        self._cache_sec = cache_sec
        self._http = httpx.Client(timeout=timeout)
        self._cache: dict[str, Decimal] = {}
        self._cache_ts: float = 0.0

    def supports(self, token: str) -> bool:
        return token in self._token_ids

    def _fetch(self) -> dict[str, Decimal]:
        ids = sorted(set(self._token_ids.values()))
        resp = self._http.get(
            f"{self._host}/simple/price",
            params={"ids": ",".join(ids), "vs_currencies": "usd"},
        )
        resp.raise_for_status()
        payload = resp.json()

        prices: dict[str, Decimal] = {}
        for address, cg_id in self._token_ids.items():
            raw = payload.get(cg_id, {}).get("usd")
            if raw is None:
                logger.warning("Price feed has no USD quote for %s (%s)", address, cg_id)
                continue
            try:
                # str() keeps the JSON literal instead of a binary float expansion
                prices[address] = Decimal(str(raw))
            except InvalidOperation:
                logger.warning("Price feed returned junk for %s: %r", cg_id, raw)
        return prices

    def get_prices(self, tokens: list[str]) -> dict[str, Decimal]:
        """
        Prices for the requested tokens that the feed knows about.
        Raises PriceFeedError if the HTTP request fails.
        """
        wanted = [t for t in tokens if self.supports(t)]
        if not wanted:
            return {}
        now = time.time()
        if not self._cache or (now - self._cache_ts) >= self._cache_sec:
            try:
                self._cache = self._fetch()
            except (httpx.HTTPError, ValueError) as e:
                raise PriceFeedError(f"Price feed request failed: {e}") from e
            self._cache_ts = now
        return {t: self._cache[t] for t in wanted if t in self._cache}

    def close(self) -> None:
        self._http.close()
