"""
Tests for ResilientClient

Covers the fallback ladder (fresh → cache → stale → estimate → error),
rotation across endpoints, 429 benching, non-retryable short-circuit and
backoff scheduling.
"""
from unittest.mock import Mock

import pytest
import requests

from core.endpoint_pool import EndpointKind
from core.exceptions import AllEndpointsFailed, NonRetryableError, RateLimited, TransientNetworkError
from core.resilient_client import (
    SOURCE_CACHE,
    SOURCE_ESTIMATE,
    SOURCE_FRESH,
    SOURCE_STALE,
    RetryPolicy,
    classify_failure,
)


def _failing(exc):
    calls = []

    def operation(endpoint):
        calls.append(endpoint.url)
        raise exc

    return operation, calls


class TestFreshAndCached:
    """Happy path"""

    def test_fresh_result_cached(self, client, cache):
        operation = Mock(return_value=0.42)

        result = client.execute_with_source(EndpointKind.PRICE, "price:BONK", 30, operation)

        assert result.value == 0.42
        assert result.source == SOURCE_FRESH
        assert cache.get("price:BONK").value == 0.42
        assert operation.call_args[0][0].url == "https://price-a.test/v4/price"

    def test_valid_cache_skips_endpoints(self, client, cache, pool):
        cache.put("price:BONK", 0.5, ttl=30)
        operation = Mock(return_value=9.9)

        result = client.execute_with_source(EndpointKind.PRICE, "price:BONK", 30, operation)

        assert result.value == 0.5
        assert result.source == SOURCE_CACHE
        operation.assert_not_called()

    def test_expired_cache_refetches(self, client, cache, clock):
        cache.put("price:BONK", 0.5, ttl=30)
        clock.advance(31)

        assert client.execute(EndpointKind.PRICE, "price:BONK", 30, lambda ep: 0.6) == 0.6

    def test_success_resets_endpoint_failures(self, client, pool):
        endpoint = pool.select_best(EndpointKind.PRICE)
        pool.record_failure(endpoint)

        client.execute(EndpointKind.PRICE, "price:X", 30, lambda ep: 1.0)

        assert pool.endpoints(EndpointKind.PRICE)[0].consecutive_failures == 0


class TestRetries:
    """Rotation and backoff"""

    def test_rotates_to_next_endpoint_after_failure(self, client, sleeps):
        seen = []

        def operation(endpoint):
            seen.append(endpoint.url)
            if len(seen) == 1:
                raise TransientNetworkError("connection reset")
            return 1.5

        result = client.execute_with_source(EndpointKind.PRICE, "price:X", 30, operation)

        assert result.value == 1.5
        assert seen == ["https://price-a.test/v4/price", "https://price-b.test/v4/price"]
        assert len(sleeps) == 1

    def test_no_sleep_after_last_attempt(self, client, sleeps):
        operation, calls = _failing(TransientNetworkError("timeout"))

        with pytest.raises(AllEndpointsFailed):
            client.execute(EndpointKind.PRICE, "price:X", 30, operation)

        assert len(calls) == 3
        assert len(sleeps) == 2

    def test_max_attempts_override(self, client):
        operation, calls = _failing(TransientNetworkError("timeout"))
        with pytest.raises(AllEndpointsFailed):
            client.execute(EndpointKind.PRICE, "price:X", 30, operation, max_attempts=1)
        assert len(calls) == 1

    def test_non_retryable_skips_remaining_attempts(self, client, sleeps):
        operation, calls = _failing(NonRetryableError("HTTP 400"))

        with pytest.raises(AllEndpointsFailed) as exc_info:
            client.execute(EndpointKind.PRICE, "price:X", 30, operation)

        assert len(calls) == 1
        assert sleeps == []
        assert isinstance(exc_info.value.last_error, NonRetryableError)

    def test_rate_limit_benches_endpoint(self, client, pool):
        seen = []

        def operation(endpoint):
            seen.append(endpoint.url)
            if endpoint.url.startswith("https://price-a"):
                raise RateLimited("429 Too Many Requests")
            return 2.0

        assert client.execute(EndpointKind.PRICE, "price:X", 30, operation) == 2.0

        # Next read (different key) avoids the benched endpoint entirely
        seen.clear()
        client.execute(EndpointKind.PRICE, "price:Y", 30, operation)
        assert seen == ["https://price-b.test/v4/price"]
        stats = {s.url: s for s in pool.snapshot()}
        assert stats["https://price-a.test/v4/price"].rate_limited

    def test_backoff_grows_exponentially(self):
        policy = RetryPolicy(backoff_base_seconds=1.0, backoff_max_seconds=8.0, jitter_pct=0.0)
        assert [policy.backoff(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0, 8.0]

    def test_backoff_jitter_bounded(self):
        policy = RetryPolicy(backoff_base_seconds=2.0, jitter_pct=25.0)
        for _ in range(50):
            assert 1.5 <= policy.backoff(1) <= 2.5


class TestFallbackLadder:
    """Stale cache, estimate, then error"""

    def test_stale_cache_served_when_all_attempts_fail(self, client, cache, clock, metrics):
        cache.put("balance:w", 3.0, ttl=30)
        clock.advance(600)
        operation, _ = _failing(TransientNetworkError("down"))

        result = client.execute_with_source(EndpointKind.RPC, "balance:w", 30, operation, estimate=lambda: 0.0)

        assert result.value == 3.0
        assert result.source == SOURCE_STALE
        assert result.degraded
        assert result.cache_age_seconds == 600
        assert metrics.read_count("rpc", SOURCE_STALE) == 1

    def test_estimate_used_without_cache(self, client, metrics):
        operation, _ = _failing(TransientNetworkError("down"))

        result = client.execute_with_source(EndpointKind.PRICE, "price:X", 30, operation, estimate=lambda: 0.77)

        assert result.value == 0.77
        assert result.source == SOURCE_ESTIMATE
        assert metrics.read_count("price", SOURCE_ESTIMATE) == 1

    def test_error_carries_last_failure(self, client):
        operation, _ = _failing(TransientNetworkError("final straw"))

        with pytest.raises(AllEndpointsFailed) as exc_info:
            client.execute(EndpointKind.PRICE, "price:X", 30, operation)

        assert exc_info.value.attempts == 3
        assert "final straw" in str(exc_info.value.last_error)

    def test_failures_open_breaker_and_record_metrics(self, client, pool, metrics):
        operation, _ = _failing(TransientNetworkError("down"))
        for key in range(4):
            with pytest.raises(AllEndpointsFailed):
                client.execute(EndpointKind.PRICE, f"price:{key}", 30, operation)

        assert any(s.breaker_open for s in pool.snapshot() if s.kind == "price")
        assert metrics.read_count("price", "failed") == 4


class TestClassification:
    """Exception → failure class"""

    def _http_error(self, status):
        response = Mock()
        response.status_code = status
        return requests.exceptions.HTTPError(f"HTTP {status}", response=response)

    def test_http_429_is_rate_limit(self):
        assert classify_failure(self._http_error(429)) == "rate_limit"

    def test_http_4xx_is_non_retryable(self):
        assert classify_failure(self._http_error(404)) == "non_retryable"

    def test_http_5xx_is_transient(self):
        assert classify_failure(self._http_error(503)) == "transient"

    def test_message_markers(self):
        assert classify_failure(RuntimeError("Too Many Requests")) == "rate_limit"
        assert classify_failure(RuntimeError("socket hang up")) == "transient"


def test_attempt_timeout_counts_as_transient(pool, cache, sleeps):
    import threading

    from core.resilient_client import ResilientClient

    release = threading.Event()
    client = ResilientClient(
        pool, cache, RetryPolicy(max_attempts=1, attempt_timeout_seconds=0.05), sleep=sleeps.append,
    )
    try:
        with pytest.raises(AllEndpointsFailed) as exc_info:
            client.execute(EndpointKind.PRICE, "price:slow", 30, lambda ep: release.wait(5))
        assert isinstance(exc_info.value.last_error, TransientNetworkError)
    finally:
        release.set()
        client.close()
