"""
Position Management: Risk Engine Tick

Refreshes every ACTIVE position, ratchets peak price and trailing stop,
applies the exit policy and hands exits to the TradeExecutor.

Per position, per tick:
1. Price via MarketData (stale cache / last known price as fallback)
2. Invariant check → CORRUPT on violation, never traded again
3. max_price_reached and trailing_stop_price ratchet upward only
4. ExitPolicy decision (emergency > stop > trailing > tiers > timeout)
5. Executor close; on failure the position stays ACTIVE and is re-decided next tick
"""
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from core.exceptions import AllEndpointsFailed, FetchError, InvariantViolation
from core.exit_policy import ACTION_PARTIAL, ExitDecision, ExitPolicy
from core.market_data import MarketData
from core.position_state import Position, PositionStatus
from core.strategy_profile import StrategyProfile, StrategyProfileSelector
from core.trading_interfaces import TradeExecutor

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickReport:
    """What one tick did"""
    profile: str
    started_at: datetime
    evaluated: int = 0
    closed: List[str] = field(default_factory=list)
    partials: List[str] = field(default_factory=list)
    exec_failures: List[str] = field(default_factory=list)
    corrupt: List[str] = field(default_factory=list)
    price_unavailable: List[str] = field(default_factory=list)
    degraded_reads: int = 0
    duration_seconds: float = 0.0

    @property
    def summary(self) -> str:
        return (
            f"profile={self.profile} evaluated={self.evaluated} closed={len(self.closed)} "
            f"partials={len(self.partials)} exec_failures={len(self.exec_failures)} "
            f"corrupt={len(self.corrupt)} no_price={len(self.price_unavailable)} "
            f"degraded={self.degraded_reads} ({self.duration_seconds:.2f}s)"
        )


class PositionRiskEngine:
    """
    Bounded-lifetime exit management for held positions.

    Responsibilities:
    - Pick the active StrategyProfile from current capital each tick
    - Keep price state of every ACTIVE position fresh
    - Close or trim positions according to the exit policy
    - Persist every change through the PositionStore
    """

    def __init__(
        self,
        store,
        market: MarketData,
        executor: TradeExecutor,
        selector: StrategyProfileSelector,
        exit_policy: Optional[ExitPolicy] = None,
        valuer=None,
        metrics=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the risk engine.

        Args:
            store: PositionStore holding all positions
            market: Price reads
            executor: Sells on exit decisions
            selector: Capital → StrategyProfile
            exit_policy: Role tables and emergency floor (defaults if None)
            valuer: PortfolioValuer feeding the selector (first profile if None)
            metrics: Optional MetricsRecorder
            clock: UTC datetime source
        """
        self.store = store
        self.market = market
        self.executor = executor
        self.selector = selector
        self.exit_policy = exit_policy or ExitPolicy()
        self.valuer = valuer
        self.metrics = metrics
        self._clock = clock
        self._last_profile: Optional[StrategyProfile] = None

        logger.info(
            f"PositionRiskEngine initialized: {len(self.store.active())} active positions, "
            f"emergency_floor={self.exit_policy.emergency_floor_percent:.1f}%"
        )

    @property
    def active_profile(self) -> StrategyProfile:
        """Profile used by the latest tick (first profile before any tick)"""
        return self._last_profile or self.selector.profiles[0]

    def current_profile(self) -> StrategyProfile:
        """Profile for current capital; keeps the previous one if valuation fails"""
        if self.valuer is None:
            profile = self.selector.select(0.0)
        else:
            try:
                capital = self.valuer.current_capital()
            except FetchError as e:
                fallback = self._last_profile or self.selector.profiles[0]
                logger.warning(f"Capital valuation failed ({e}), keeping profile {fallback.name}")
                return fallback
            profile = self.selector.select(capital)
            if self.metrics is not None:
                self.metrics.record_capital(capital)

        if self._last_profile is not None and profile.name != self._last_profile.name:
            logger.info(f"Strategy profile changed: {self._last_profile.name} → {profile.name}")
        self._last_profile = profile
        return profile

    def tick(self) -> TickReport:
        """
        Evaluate every ACTIVE position once.

        Returns:
            TickReport describing what happened
        """
        started = time.monotonic()
        profile = self.current_profile()
        report = TickReport(profile=profile.name, started_at=self._clock())

        for position in self.store.active():
            with self.store.lock(position.id):
                current = self.store.get(position.id)
                # Another tick may have closed it while we waited
                if current is None or not current.is_active:
                    continue
                report.evaluated += 1
                self._evaluate_position(current, profile, report)

        report.duration_seconds = time.monotonic() - started
        if self.metrics is not None:
            self.metrics.record_tick(report.duration_seconds)
            self.metrics.record_open_positions(len(self.store.active()))

        if report.closed or report.partials or report.exec_failures or report.corrupt:
            logger.info(f"Risk tick: {report.summary}")
        else:
            logger.debug(f"Risk tick: {report.summary}")
        return report

    def _evaluate_position(self, position: Position, profile: StrategyProfile, report: TickReport) -> None:
        now = self._clock()

        try:
            result = self.market.get_price(
                position.token_id,
                ttl=profile.price_cache_ttl_seconds,
                last_known=position.current_price,
            )
        except AllEndpointsFailed as e:
            logger.warning(f"No price for {position.symbol} ({position.id}): {e}; skipping this tick")
            report.price_unavailable.append(position.id)
            return

        if result.degraded:
            report.degraded_reads += 1

        try:
            self._validate(position, result.value)
        except InvariantViolation as e:
            self._freeze(position, e, now)
            report.corrupt.append(position.id)
            return

        self._refresh(position, float(result.value), result.source, profile)

        decision = self.exit_policy.evaluate(position, profile, now)
        if decision is None:
            self.store.save(position)
            return

        logger.info(
            f"EXIT SIGNAL: {position.symbol} {decision.reason.upper()} ({position.role.value}) - "
            f"PnL: {decision.pnl_percent:+.2f}%, Hold: {position.hold_seconds(now) / 60:.1f}m, "
            f"Price: {position.entry_price:.8f} → {position.current_price:.8f}"
            + (f", selling {decision.fraction:.0%}" if decision.action == ACTION_PARTIAL else "")
        )
        self._execute(position, decision, now, report)

    def _validate(self, position: Position, price) -> None:
        """Raise InvariantViolation if the position or the new price is unusable"""
        if price is None or not isinstance(price, (int, float)) or not math.isfinite(price):
            raise InvariantViolation(position.id, f"price is not a finite number ({price!r})")
        if price < 0:
            raise InvariantViolation(position.id, f"negative price {price}")
        reason = position.check_invariants()
        if reason:
            raise InvariantViolation(position.id, reason)

    def _refresh(self, position: Position, price: float, source: str, profile: StrategyProfile) -> None:
        """Update price state; peak and trailing stop never move down"""
        position.current_price = price
        position.last_price_source = source
        position.max_price_reached = max(position.max_price_reached, price)

        trailing_pct = self.exit_policy.trailing_percent(position.role, profile)
        candidate = position.max_price_reached * (1.0 - trailing_pct)
        position.trailing_stop_price = max(position.trailing_stop_price, candidate)

    def _freeze(self, position: Position, error: InvariantViolation, now: datetime) -> None:
        logger.error(f"Position {position.id} ({position.symbol}) frozen as CORRUPT: {error.reason}")
        position.transition(PositionStatus.CORRUPT, now=now, reason=error.reason)
        self.store.save(position)
        if self.metrics is not None:
            self.metrics.record_corrupt_position()

    def _execute(self, position: Position, decision: ExitDecision, now: datetime, report: TickReport) -> None:
        try:
            fill = self.executor.close(position, decision.fraction)
        except Exception as e:
            # Keep ACTIVE with refreshed price state; the next tick re-decides
            logger.error(f"Exit {decision.reason} failed for {position.id} ({position.symbol}): {e}")
            self.store.save(position)
            report.exec_failures.append(position.id)
            if self.metrics is not None:
                self.metrics.record_exit_failure()
            return

        exit_price = fill.exit_price if fill.exit_price and fill.exit_price > 0 else position.current_price

        if decision.action == ACTION_PARTIAL:
            position.apply_partial_exit(
                tier=decision.tier,
                fraction=decision.fraction,
                price=exit_price,
                now=now,
                tx_ref=fill.tx_ref,
            )
            report.partials.append(position.id)
            logger.info(
                f"Partial exit {decision.tier} on {position.symbol}: sold {decision.fraction:.0%} "
                f"@ {exit_price:.8f}, remaining {position.entry_amount_base:.6f} base"
            )
        else:
            position.transition(
                decision.status,
                now=now,
                reason=decision.reason,
                exit_price=exit_price,
                tx_ref=fill.tx_ref,
            )
            report.closed.append(position.id)

        try:
            self.store.save(position)
        except Exception as e:
            logger.error(
                f"EXECUTED BUT NOT PERSISTED: {decision.action} {decision.reason} on {position.id} "
                f"({position.symbol}) filled {decision.fraction:.0%} @ {exit_price:.8f} tx={fill.tx_ref}; "
                f"on-disk record is stale, reconcile before restart: {e}"
            )
            raise
        if self.metrics is not None:
            self.metrics.record_exit(decision.reason, decision.action)
