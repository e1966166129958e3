"""
memetrader Core: Endpoint Pool

Ranked, health-tracked list of interchangeable network endpoints
(Solana RPC nodes, price APIs) with per-endpoint circuit breakers and
rate-limit cool-downs.

Pattern: lazy breaker reset (no background sweep). An endpoint is eligible when
it is not rate limited and its breaker is closed; an open breaker heals on
the first eligibility check after the cooldown window.
"""

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class EndpointKind(Enum):
    """Endpoint families served by the pool"""
    RPC = "rpc"
    PRICE = "price"


@dataclass
class Endpoint:
    """Health state for a single endpoint"""
    url: str
    kind: EndpointKind
    priority: int = 0  # lower = preferred

    consecutive_failures: int = 0
    opened_at: Optional[float] = None  # breaker open since
    rate_limited_until: Optional[float] = None
    last_failure_at: Optional[float] = None
    last_success_at: Optional[float] = None

    @property
    def name(self) -> str:
        """URL without query string (keeps API keys out of logs)"""
        return self.url.split("?", 1)[0]


@dataclass
class EndpointStats:
    """Read-only view of an endpoint for diagnostics"""
    url: str
    kind: str
    priority: int
    consecutive_failures: int
    breaker_open: bool
    rate_limited: bool


class EndpointPool:
    """
    Endpoint ranking and gating per kind.

    Features:
    - Priority ordering (ties broken by most recent success)
    - Circuit breaker per endpoint with lazy self-heal
    - Rate-limit cool-down independent of breaker state
    - Degraded mode: always returns a candidate when any endpoint of the
      kind is configured

    Usage:
        pool = EndpointPool([Endpoint("https://api.mainnet-beta.solana.com", EndpointKind.RPC, 1)])
        endpoint = pool.select_best(EndpointKind.RPC)
        try:
            ...
            pool.record_success(endpoint)
        except RateLimited:
            pool.record_failure(endpoint, is_rate_limit=True)
    """

    def __init__(
        self,
        endpoints: Iterable[Endpoint] = (),
        breaker_threshold: int = 5,
        cooldown_window: float = 300.0,
        rate_limit_cooldown: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize endpoint pool.

        Args:
            endpoints: Initial endpoints (any kind)
            breaker_threshold: Consecutive failures that open the breaker
            cooldown_window: Seconds an open breaker stays open
            rate_limit_cooldown: Seconds an endpoint is benched after a 429
            clock: Time source (seconds), injectable for tests
        """
        if breaker_threshold < 1:
            raise ValueError(f"breaker_threshold must be >= 1, got {breaker_threshold}")

        self.breaker_threshold = breaker_threshold
        self.cooldown_window = float(cooldown_window)
        self.rate_limit_cooldown = float(rate_limit_cooldown)
        self._clock = clock
        self._lock = Lock()
        self._endpoints: Dict[EndpointKind, List[Endpoint]] = {kind: [] for kind in EndpointKind}

        for endpoint in endpoints:
            self.add(endpoint)

        logger.info(
            f"Initialized EndpointPool (rpc={len(self._endpoints[EndpointKind.RPC])}, "
            f"price={len(self._endpoints[EndpointKind.PRICE])}, "
            f"breaker={breaker_threshold} fails/{cooldown_window:.0f}s, "
            f"rate_limit_cooldown={rate_limit_cooldown:.0f}s)"
        )

    def add(self, endpoint: Endpoint) -> None:
        """Register an endpoint. URLs are unique per kind."""
        with self._lock:
            bucket = self._endpoints[endpoint.kind]
            if any(existing.url == endpoint.url for existing in bucket):
                logger.warning(f"Endpoint {endpoint.name} already registered for {endpoint.kind.value}")
                return
            bucket.append(endpoint)
            bucket.sort(key=lambda ep: ep.priority)

    def endpoints(self, kind: EndpointKind) -> List[Endpoint]:
        """Copies of the endpoints of a kind, priority ordered"""
        with self._lock:
            return [replace(ep) for ep in self._endpoints[kind]]

    def _breaker_open(self, endpoint: Endpoint, now: float) -> bool:
        """Breaker check with lazy reset. Caller holds the lock."""
        if endpoint.opened_at is None:
            return False

        if now - endpoint.opened_at < self.cooldown_window:
            return True

        # Cooldown elapsed: heal
        logger.info(f"Circuit breaker healed for {endpoint.name} after {now - endpoint.opened_at:.0f}s")
        endpoint.opened_at = None
        endpoint.consecutive_failures = 0
        return False

    def _eligible(self, endpoint: Endpoint, now: float) -> bool:
        if endpoint.rate_limited_until is not None and now < endpoint.rate_limited_until:
            return False
        return not self._breaker_open(endpoint, now)

    def is_eligible(self, endpoint: Endpoint) -> bool:
        """Whether an endpoint can take traffic right now"""
        with self._lock:
            tracked = self._find(endpoint)
            return self._eligible(tracked, self._clock())

    def select_best(self, kind: EndpointKind, exclude: Iterable[str] = ()) -> Endpoint:
        """
        Select the preferred eligible endpoint for a kind.

        URLs in exclude (already tried by the caller) are skipped while any
        other eligible endpoint remains.

        Falls back to the endpoint whose last failure is oldest when nothing is
        eligible, so callers always get a candidate.

        Raises:
            ValueError: If no endpoint of this kind is configured
        """
        with self._lock:
            bucket = self._endpoints[kind]
            if not bucket:
                raise ValueError(f"No endpoints configured for kind={kind.value}")

            now = self._clock()
            eligible = [ep for ep in bucket if self._eligible(ep, now)]
            skipped = set(exclude)
            untried = [ep for ep in eligible if ep.url not in skipped]
            if untried:
                eligible = untried

            if eligible:
                return min(
                    eligible,
                    key=lambda ep: (ep.priority, -(ep.last_success_at or 0.0)),
                )

            fallback = min(
                bucket,
                key=lambda ep: (ep.last_failure_at or float("-inf"), ep.priority),
            )
            logger.warning(
                f"All {kind.value} endpoints unavailable, degraded selection: {fallback.name}"
            )
            return fallback

    def _find(self, endpoint: Endpoint) -> Endpoint:
        """Resolve a (possibly copied) endpoint to the tracked instance"""
        for tracked in self._endpoints[endpoint.kind]:
            if tracked.url == endpoint.url:
                return tracked
        raise KeyError(f"Unknown endpoint {endpoint.name} ({endpoint.kind.value})")

    def record_success(self, endpoint: Endpoint) -> None:
        """Reset failure count and breaker state after a successful call"""
        with self._lock:
            tracked = self._find(endpoint)
            if tracked.opened_at is not None:
                logger.info(f"Circuit breaker closed for {tracked.name}")
            tracked.consecutive_failures = 0
            tracked.opened_at = None
            tracked.last_success_at = self._clock()

    def record_failure(self, endpoint: Endpoint, is_rate_limit: bool = False) -> bool:
        """
        Record a failed call.

        Args:
            endpoint: Endpoint that failed
            is_rate_limit: Whether the failure was a rate limit (429)

        Returns:
            True if this failure opened the breaker
        """
        with self._lock:
            tracked = self._find(endpoint)
            now = self._clock()
            tracked.consecutive_failures += 1
            tracked.last_failure_at = now

            tripped = False
            if tracked.opened_at is None and tracked.consecutive_failures >= self.breaker_threshold:
                tracked.opened_at = now
                tripped = True
                logger.warning(
                    f"Circuit breaker OPEN for {tracked.name} "
                    f"({tracked.consecutive_failures} consecutive failures, "
                    f"cooldown {self.cooldown_window:.0f}s)"
                )

            if is_rate_limit:
                tracked.rate_limited_until = now + self.rate_limit_cooldown
                logger.warning(
                    f"Rate limited on {tracked.name}, benched for {self.rate_limit_cooldown:.0f}s"
                )

            return tripped

    def snapshot(self) -> List[EndpointStats]:
        """Current health of every endpoint"""
        with self._lock:
            now = self._clock()
            stats = []
            for kind in EndpointKind:
                for ep in self._endpoints[kind]:
                    stats.append(EndpointStats(
                        url=ep.name,
                        kind=kind.value,
                        priority=ep.priority,
                        consecutive_failures=ep.consecutive_failures,
                        breaker_open=ep.opened_at is not None and now - ep.opened_at < self.cooldown_window,
                        rate_limited=ep.rate_limited_until is not None and now < ep.rate_limited_until,
                    ))
            return stats
