"""Prometheus-backed metrics hooks for data reads and the risk loop."""

from __future__ import annotations

import logging
from collections import Counter as TallyCounter
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose data-access and risk-loop stats via Prometheus.

    Each instance owns its CollectorRegistry, so tests and multiple engines
    never collide on metric registration. Local tallies are kept regardless of
    the enabled flag for diagnostics.
    """

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = CollectorRegistry()

        self._reads: TallyCounter = TallyCounter()
        self._exits: TallyCounter = TallyCounter()
        self._last_api_event: Optional[Dict[str, str]] = None
        self._last_tick_seconds: Optional[float] = None
        self._open_positions = 0

        if not self._enabled:
            return

        self._data_reads_counter = Counter(
            "memetrader_data_reads_total",
            "External data reads by endpoint kind and source (fresh, cache, stale, estimate, failed)",
            labelnames=("kind", "source"),
            registry=self.registry,
        )
        self._api_latency_summary = Summary(
            "memetrader_endpoint_latency_seconds",
            "Latency of endpoint calls",
            labelnames=("endpoint", "kind", "status"),
            registry=self.registry,
        )
        self._api_errors_counter = Counter(
            "memetrader_endpoint_errors_total",
            "Endpoint call failures by classification",
            labelnames=("error_type",),
            registry=self.registry,
        )
        self._api_consecutive_errors_gauge = Gauge(
            "memetrader_endpoint_consecutive_errors",
            "Consecutive failures on the most recently failing endpoint",
            registry=self.registry,
        )
        self._circuit_breaker_gauge = Gauge(
            "memetrader_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=open)",
            labelnames=("endpoint",),
            registry=self.registry,
        )
        self._circuit_breaker_trips_counter = Counter(
            "memetrader_circuit_breaker_trips_total",
            "Total number of circuit breaker trips",
            labelnames=("endpoint",),
            registry=self.registry,
        )
        self._exits_counter = Counter(
            "memetrader_exits_total",
            "Position exits by reason and kind (close, partial)",
            labelnames=("reason", "action"),
            registry=self.registry,
        )
        self._exit_failures_counter = Counter(
            "memetrader_exit_failures_total",
            "Exit requests rejected by the trade executor",
            registry=self.registry,
        )
        self._corrupt_counter = Counter(
            "memetrader_corrupt_positions_total",
            "Positions frozen after an invariant violation",
            registry=self.registry,
        )
        self._tick_summary = Summary(
            "memetrader_tick_duration_seconds",
            "Duration of a risk evaluation tick",
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "memetrader_open_positions",
            "Number of currently ACTIVE positions",
            registry=self.registry,
        )
        self._capital_gauge = Gauge(
            "memetrader_capital_base",
            "Portfolio value in base currency",
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port, registry=self.registry)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound metrics exporter to port %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                continue

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_data_read(self, kind: str, source: str) -> None:
        self._reads[(kind, source)] += 1
        if self._enabled:
            self._data_reads_counter.labels(kind=kind, source=source).inc()

    def record_api_call(self, endpoint: str, kind: str, duration: float, status: str) -> None:
        self._last_api_event = {
            "endpoint": endpoint,
            "kind": kind,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self._enabled:
            self._api_latency_summary.labels(endpoint=endpoint, kind=kind, status=status).observe(duration)

    def record_api_error(self, error_type: str, consecutive_count: int) -> None:
        """Record endpoint failure and the endpoint's consecutive failure count"""
        if self._enabled:
            self._api_errors_counter.labels(error_type=error_type).inc()
            self._api_consecutive_errors_gauge.set(max(consecutive_count, 0))

    def record_circuit_breaker_state(self, endpoint: str, is_open: bool) -> None:
        if self._enabled:
            self._circuit_breaker_gauge.labels(endpoint=endpoint).set(1 if is_open else 0)

    def record_circuit_breaker_trip(self, endpoint: str) -> None:
        if self._enabled:
            self._circuit_breaker_gauge.labels(endpoint=endpoint).set(1)
            self._circuit_breaker_trips_counter.labels(endpoint=endpoint).inc()

    def record_exit(self, reason: str, action: str = "close") -> None:
        self._exits[(reason, action)] += 1
        if self._enabled:
            self._exits_counter.labels(reason=reason, action=action).inc()

    def record_exit_failure(self) -> None:
        if self._enabled:
            self._exit_failures_counter.inc()

    def record_corrupt_position(self) -> None:
        if self._enabled:
            self._corrupt_counter.inc()

    def record_tick(self, duration: float) -> None:
        self._last_tick_seconds = duration
        if self._enabled:
            self._tick_summary.observe(duration)

    def record_open_positions(self, count: int) -> None:
        self._open_positions = max(count, 0)
        if self._enabled:
            self._positions_gauge.set(self._open_positions)

    def record_capital(self, capital: float) -> None:
        if self._enabled:
            self._capital_gauge.set(max(capital, 0.0))

    def read_count(self, kind: str, source: str) -> int:
        return self._reads[(kind, source)]

    def exit_count(self, reason: str, action: str = "close") -> int:
        return self._exits[(reason, action)]

    def reads_snapshot(self) -> Dict[Tuple[str, str], int]:
        return dict(self._reads)

    def last_api_event(self) -> Optional[Dict[str, str]]:
        return dict(self._last_api_event) if self._last_api_event else None

    def last_tick_seconds(self) -> Optional[float]:
        return self._last_tick_seconds

    def open_positions(self) -> int:
        return self._open_positions


__all__ = ["MetricsRecorder"]
