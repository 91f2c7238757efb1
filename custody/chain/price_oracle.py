"""Reference price (ETH/USD) with TTL caching and staleness fallback."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed

from custody.metrics import record_price_fetch, set_price_consecutive_failures

logger = logging.getLogger(__name__)

DEFAULT_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price?ids=ethereum&vs_currencies=usd"
FALLBACK_PRICE_USD = 2000.0
CACHE_TTL_SECONDS = 300.0
DEGRADED_CACHE_TTL_SECONDS = 900.0
DEGRADED_AFTER_FAILURES = 3
FETCH_ATTEMPTS = 2
RETRY_DELAY_SECONDS = 1.0
MAX_PLAUSIBLE_PRICE = 100_000.0


class PriceFetchError(RuntimeError):
    """Raised when the upstream price source returns nothing usable."""


_RETRYABLE = (httpx.HTTPError, PriceFetchError, ValueError)


def _log_retry_attempt(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    logger.warning(
        "ETH price fetch attempt %d/%d failed: %s",
        retry_state.attempt_number,
        FETCH_ATTEMPTS,
        outcome.exception() if outcome is not None else "unknown error",
    )


@dataclass
class PriceCacheEntry:
    asset: str
    price: float
    fetched_at: float


class PriceOracle:
    """Serve the native asset's USD price from a process-wide cache.

    On a miss the upstream is tried ``FETCH_ATTEMPTS`` times. When every
    attempt fails the last cached price is returned even if expired, and
    ``FALLBACK_PRICE_USD`` only when nothing was ever cached. After
    ``DEGRADED_AFTER_FAILURES`` consecutive failures the TTL is stretched to
    ``DEGRADED_CACHE_TTL_SECONDS``.
    """

    asset = "ethereum"

    def __init__(
        self,
        *,
        url: str = DEFAULT_PRICE_URL,
        timeout_seconds: float = 5.0,
        retry_delay_seconds: float = RETRY_DELAY_SECONDS,
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._retry_delay = retry_delay_seconds
        self._http_client_factory = http_client_factory or (lambda: httpx.AsyncClient(timeout=timeout_seconds))
        self._clock = clock
        self._entry: Optional[PriceCacheEntry] = None
        self._consecutive_failures = 0

    @property
    def cache_ttl_seconds(self) -> float:
        if self._consecutive_failures >= DEGRADED_AFTER_FAILURES:
            return DEGRADED_CACHE_TTL_SECONDS
        return CACHE_TTL_SECONDS

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def get_price_usd(self) -> float:
        entry = self._entry
        if entry is not None and self._clock() - entry.fetched_at < self.cache_ttl_seconds:
            record_price_fetch("cache")
            return entry.price

        try:
            price = await self._fetch_with_retry()
        except PriceFetchError as exc:
            self._consecutive_failures += 1
            set_price_consecutive_failures(self._consecutive_failures)
            logger.error("Failed to fetch ETH price: %s", exc)
            if self._entry is not None:
                logger.warning("Using stale ETH price due to upstream failure")
                record_price_fetch("stale")
                return self._entry.price
            logger.warning("Using fallback ETH price: $%s", FALLBACK_PRICE_USD)
            record_price_fetch("fallback")
            return FALLBACK_PRICE_USD

        self._entry = PriceCacheEntry(asset=self.asset, price=price, fetched_at=self._clock())
        self._consecutive_failures = 0
        set_price_consecutive_failures(0)
        record_price_fetch("fresh")
        return price

    async def _fetch_with_retry(self) -> float:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(FETCH_ATTEMPTS),
            wait=wait_fixed(self._retry_delay),
            retry=retry_if_exception_type(_RETRYABLE),
            before_sleep=_log_retry_attempt,
            reraise=True,
        )
        try:
            return await retrying(self._fetch_once)
        except (httpx.HTTPError, ValueError) as exc:
            raise PriceFetchError(str(exc) or type(exc).__name__) from exc

    async def _fetch_once(self) -> float:
        async with self._http_client_factory() as client:
            response = await client.get(
                self._url, headers={"Accept": "application/json"}, timeout=self._timeout
            )
            response.raise_for_status()
            data = response.json()

        price = (data.get(self.asset) or {}).get("usd") if isinstance(data, dict) else None
        if isinstance(price, bool) or not isinstance(price, (int, float)):
            raise PriceFetchError("invalid response structure from price source")
        if price <= 0 or price > MAX_PLAUSIBLE_PRICE:
            raise PriceFetchError(f"unreasonable ETH price returned: ${price}")
        return float(price)

    def clear(self) -> None:
        self._entry = None
        self._consecutive_failures = 0
        set_price_consecutive_failures(0)

    def stats(self) -> Dict[str, Any]:
        entry = self._entry
        age = self._clock() - entry.fetched_at if entry is not None else None
        return {
            "has_cached_price": entry is not None,
            "cached_price": entry.price if entry is not None else None,
            "cache_age_seconds": age,
            "cache_expired": age >= self.cache_ttl_seconds if age is not None else None,
            "consecutive_failures": self._consecutive_failures,
            "cache_ttl_seconds": self.cache_ttl_seconds,
        }
