"""
Oracle freshness check. Flags tokens whose price has not been refreshed
within the configured window.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from client.ledger import LedgerGateway
from scanner.models import NATIVE_TOKEN, PriceQuote

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SEC = 3600


@dataclass
class StalenessReport:
    quotes: list[PriceQuote] = field(default_factory=list)
    # Tokens whose timestamp could not be read; also included in stale_tokens.
    failed: list[str] = field(default_factory=list)

    @property
    def stale_tokens(self) -> list[str]:
        return [q.token for q in self.quotes if q.is_stale]


class PriceStalenessMonitor:
    """
    A token is stale iff now - last_update > max_age_sec. The native asset
    (zero address) is always checked alongside the configured tokens.
    A token whose timestamp read fails is reported stale.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        tokens: Iterable[str],
        max_age_sec: float = DEFAULT_MAX_AGE_SEC,
        include_native: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        if max_age_sec <= 0:
            raise ValueError(f"max_age_sec must be positive, got {max_age_sec}")
        self._gateway = gateway
        tokens = list(tokens)
        if include_native and NATIVE_TOKEN not in tokens:
            tokens.insert(0, NATIVE_TOKEN)
        self._tokens = tokens
        self._max_age_sec = max_age_sec
        self._clock = clock

    @property
    def tokens(self) -> list[str]:
        return list(self._tokens)

    def is_stale(self, last_update: int, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        return now - last_update > self._max_age_sec

    def check(self) -> StalenessReport:
        report = StalenessReport()
        now = self._clock()
        for token in self._tokens:
            try:
                last_update = int(self._gateway.price_last_updated(token))
                price = int(self._gateway.current_price(token))
            except Exception as e:
                logger.warning("Price freshness read failed for %s, treating as stale: %s", token, e)
                report.failed.append(token)
                report.quotes.append(PriceQuote(token=token, price=0, last_update=0, is_stale=True))
                continue
            stale = self.is_stale(last_update, now)
            if stale:
                logger.info(
                    "Stale oracle price: %s last updated %.0fs ago (max %.0fs)",
                    token, now - last_update, self._max_age_sec,
                )
            report.quotes.append(PriceQuote(token=token, price=price, last_update=last_update, is_stale=stale))
        return report
