"""
memetrader Core: Resilient Client

Executes a single logical read (SOL balance, token price, metadata) against the
best available endpoint from an EndpointPool.

Fallback ladder:
1. Fresh cache hit (no network)
2. Up to max_attempts endpoint calls, each on an endpoint not yet tried when one
   is eligible, with jittered exponential backoff
3. Stale cache entry (any age)
4. Caller-supplied estimate()
5. AllEndpointsFailed

Retries on:
- 429 / rate-limit markers (also benches the endpoint)
- Timeouts, connection errors, 5xx

Does NOT retry on:
- 4xx (except 429) - still falls through to stale cache / estimate
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

import requests

from core.endpoint_pool import Endpoint, EndpointKind, EndpointPool
from core.exceptions import (
    AllEndpointsFailed,
    NonRetryableError,
    RateLimited,
    TransientNetworkError,
)
from core.response_cache import ResponseCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

SOURCE_FRESH = "fresh"
SOURCE_CACHE = "cache"
SOURCE_STALE = "stale"
SOURCE_ESTIMATE = "estimate"

RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests", "rate limits exceeded")


@dataclass
class FetchResult:
    """Value plus where it came from"""
    value: Any
    source: str
    cache_age_seconds: float = 0.0

    @property
    def degraded(self) -> bool:
        return self.source in (SOURCE_STALE, SOURCE_ESTIMATE)


@dataclass
class RetryPolicy:
    """Retry/backoff tunables"""
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 8.0
    jitter_pct: float = 25.0
    attempt_timeout_seconds: Optional[float] = 15.0

    def backoff(self, attempt: int) -> float:
        """Delay after a failed attempt (1-based): base * 2^(attempt-1), jittered"""
        delay = min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** (attempt - 1)))
        jitter = delay * (self.jitter_pct / 100.0)
        return max(0.0, delay + random.uniform(-jitter, jitter))


def classify_failure(exc: BaseException) -> str:
    """
    Map an exception to "rate_limit", "non_retryable" or "transient".
    """
    if isinstance(exc, RateLimited):
        return "rate_limit"
    if isinstance(exc, NonRetryableError):
        return "non_retryable"
    if isinstance(exc, TransientNetworkError):
        return "transient"

    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        status_code = exc.response.status_code
        if status_code == 429:
            return "rate_limit"
        if 400 <= status_code < 500:
            return "non_retryable"
        return "transient"

    message = str(exc).lower()
    if any(marker in message for marker in RATE_LIMIT_MARKERS):
        return "rate_limit"
    return "transient"


class ResilientClient:
    """
    Reliable reads over flaky third-party endpoints.

    Usage:
        client = ResilientClient(pool, cache)
        price = client.execute(
            EndpointKind.PRICE, f"price:{mint}", ttl=60,
            operation=lambda ep: oracle.get_price(mint, ep),
            estimate=lambda: last_price,
        )
    """

    def __init__(
        self,
        pool: EndpointPool,
        cache: ResponseCache,
        retry_policy: Optional[RetryPolicy] = None,
        metrics=None,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 8,
    ):
        self.pool = pool
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics
        self._sleep = sleep
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.retry_policy.attempt_timeout_seconds:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="resilient-io")

        logger.info(
            f"Initialized ResilientClient (max_attempts={self.retry_policy.max_attempts}, "
            f"backoff_base={self.retry_policy.backoff_base_seconds}s, "
            f"timeout={self.retry_policy.attempt_timeout_seconds}s)"
        )

    def close(self) -> None:
        """Release the attempt worker pool"""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def execute(
        self,
        kind: EndpointKind,
        cache_key: str,
        ttl: float,
        operation: Callable[[Endpoint], T],
        max_attempts: Optional[int] = None,
        estimate: Optional[Callable[[], T]] = None,
    ) -> T:
        """Run operation with retries and fallbacks, returning only the value"""
        return self.execute_with_source(
            kind, cache_key, ttl, operation, max_attempts=max_attempts, estimate=estimate,
        ).value

    def execute_with_source(
        self,
        kind: EndpointKind,
        cache_key: str,
        ttl: float,
        operation: Callable[[Endpoint], T],
        max_attempts: Optional[int] = None,
        estimate: Optional[Callable[[], T]] = None,
    ) -> FetchResult:
        """
        Run operation with retries and fallbacks.

        Args:
            kind: Endpoint family to draw from
            cache_key: Key for the response cache
            ttl: Seconds a fresh result stays valid
            operation: Callable receiving the chosen endpoint
            max_attempts: Override policy attempts
            estimate: Last-resort value producer

        Returns:
            FetchResult with value and source

        Raises:
            AllEndpointsFailed: When attempts, cache and estimate are exhausted
        """
        cached = self.cache.get(cache_key)
        if cached is not None:
            self._record_read(kind, SOURCE_CACHE)
            return FetchResult(cached.value, SOURCE_CACHE)

        attempts = max(1, int(max_attempts or self.retry_policy.max_attempts))
        last_error: Optional[BaseException] = None
        made = 0
        tried = []

        for attempt in range(1, attempts + 1):
            endpoint = self.pool.select_best(kind, exclude=tried)
            tried.append(endpoint.url)
            made = attempt
            started = time.monotonic()
            try:
                result = self._run_with_timeout(operation, endpoint)
            except Exception as exc:
                duration = time.monotonic() - started
                last_error = exc
                failure = classify_failure(exc)
                tripped = self.pool.record_failure(endpoint, is_rate_limit=(failure == "rate_limit"))
                self._record_failure(endpoint, failure, duration, tripped)

                logger.warning(
                    f"{kind.value} read '{cache_key}' failed on {endpoint.name} "
                    f"({failure}): {exc}, attempt {attempt}/{attempts}"
                )

                if failure == "non_retryable":
                    break

                if attempt < attempts:
                    delay = self.retry_policy.backoff(attempt)
                    logger.info(f"Retrying in {delay:.1f}s...")
                    self._sleep(delay)
                continue

            self.pool.record_success(endpoint)
            self.cache.put(cache_key, result, ttl)
            if self.metrics is not None:
                self.metrics.record_api_call(endpoint.name, kind.value, time.monotonic() - started, "ok")
            self._record_read(kind, SOURCE_FRESH)
            return FetchResult(result, SOURCE_FRESH)

        return self._fallback(kind, cache_key, made, last_error, estimate)

    def _fallback(
        self,
        kind: EndpointKind,
        cache_key: str,
        attempts: int,
        last_error: Optional[BaseException],
        estimate: Optional[Callable[[], Any]],
    ) -> FetchResult:
        stale = self.cache.get_stale(cache_key)
        if stale is not None:
            age = stale.age(self.cache.now())
            logger.warning(
                f"DEGRADED read '{cache_key}': serving stale cache ({age:.0f}s old) "
                f"after {attempts} failed attempt(s)"
            )
            self._record_read(kind, SOURCE_STALE)
            return FetchResult(stale.value, SOURCE_STALE, cache_age_seconds=age)

        if estimate is not None:
            value = estimate()
            logger.warning(
                f"DEGRADED read '{cache_key}': using estimate {value!r} "
                f"after {attempts} failed attempt(s)"
            )
            self._record_read(kind, SOURCE_ESTIMATE)
            return FetchResult(value, SOURCE_ESTIMATE)

        logger.error(f"All {attempts} attempt(s) exhausted for '{cache_key}', no fallback available")
        self._record_read(kind, "failed")
        raise AllEndpointsFailed(cache_key, attempts, last_error)

    def _run_with_timeout(self, operation: Callable[[Endpoint], T], endpoint: Endpoint) -> T:
        timeout = self.retry_policy.attempt_timeout_seconds
        if self._executor is None or not timeout:
            return operation(endpoint)

        future = self._executor.submit(operation, endpoint)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise TransientNetworkError(f"{endpoint.name}: timed out after {timeout:.1f}s")

    def _record_read(self, kind: EndpointKind, source: str) -> None:
        if self.metrics is not None:
            self.metrics.record_data_read(kind.value, source)

    def _record_failure(self, endpoint: Endpoint, failure: str, duration: float, tripped: bool) -> None:
        if self.metrics is None:
            return
        self.metrics.record_api_call(endpoint.name, endpoint.kind.value, duration, failure)
        self.metrics.record_api_error(failure, self._consecutive_failures(endpoint))
        if tripped:
            self.metrics.record_circuit_breaker_trip(endpoint.name)

    def _consecutive_failures(self, endpoint: Endpoint) -> int:
        for tracked in self.pool.endpoints(endpoint.kind):
            if tracked.url == endpoint.url:
                return tracked.consecutive_failures
        return 0
