"""
Exit Policy: Stop-Loss, Trailing Stop, Role Tiers and Timeouts

Pure evaluation of a refreshed position against the active StrategyProfile and
the role exit table. Conditions are checked in a fixed order and the first
match wins:

1. Emergency floor      → CLOSED_LOSS
2. Stop-loss            → CLOSED_LOSS
3. Trailing stop        → CLOSED_TRAILING (only while in profit)
4. Role tier            → CLOSED_PROFIT or partial exit
5. Max hold time        → CLOSED_TIMEOUT
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from core.position_state import Position, PositionRole, PositionStatus
from core.strategy_profile import StrategyProfile

logger = logging.getLogger(__name__)

DEFAULT_EMERGENCY_FLOOR_PERCENT = -40.0

ACTION_CLOSE = "close"
ACTION_PARTIAL = "partial"


@dataclass(frozen=True)
class ExitTier:
    """Sell sell_fraction of the position once pnl reaches threshold_percent"""
    name: str
    threshold_percent: float
    sell_fraction: float = 1.0

    @property
    def is_full(self) -> bool:
        return self.sell_fraction >= 1.0


@dataclass(frozen=True)
class RoleExitPolicy:
    """
    Role-specific overrides on top of the active StrategyProfile.

    None means "use the profile value". An empty tier list means the profile
    take-profit is used as a single full-exit tier.
    """
    trailing_stop_percent: Optional[float] = None
    stop_loss_percent: Optional[float] = None
    max_hold_ms: Optional[int] = None
    unbounded_hold: bool = False
    tiers: Tuple[ExitTier, ...] = ()

    def __post_init__(self):
        if self.trailing_stop_percent is not None and not 0.0 < self.trailing_stop_percent < 1.0:
            raise ValueError("trailing_stop_percent must be in (0, 1)")
        if self.stop_loss_percent is not None and self.stop_loss_percent >= 0:
            raise ValueError("stop_loss_percent must be negative")
        names = [tier.name for tier in self.tiers]
        if len(set(names)) != len(names):
            raise ValueError(f"Tier names must be unique, got {names}")
        for tier in self.tiers:
            if not 0.0 < tier.sell_fraction <= 1.0:
                raise ValueError(f"Tier {tier.name}: sell_fraction must be in (0, 1]")


DEFAULT_ROLE_POLICIES: Dict[PositionRole, RoleExitPolicy] = {
    PositionRole.SCALP: RoleExitPolicy(
        trailing_stop_percent=0.08,
        max_hold_ms=300_000,
        tiers=(
            ExitTier("scalp_partial_50", 10.0, 0.5),
            ExitTier("scalp_full", 15.0, 1.0),
        ),
    ),
    PositionRole.MOMENTUM: RoleExitPolicy(
        trailing_stop_percent=0.12,
        max_hold_ms=21_600_000,
        tiers=(
            ExitTier("momentum_partial_60", 25.0, 0.6),
            ExitTier("momentum_full", 50.0, 1.0),
        ),
    ),
    PositionRole.MOONSHOT: RoleExitPolicy(
        trailing_stop_percent=0.25,
        unbounded_hold=True,
        tiers=(
            ExitTier("moonshot_partial_30", 200.0, 0.3),
            ExitTier("moonshot_major_70", 1000.0, 0.7),
        ),
    ),
    PositionRole.HEDGE: RoleExitPolicy(
        trailing_stop_percent=0.05,
        stop_loss_percent=-5.0,
        tiers=(ExitTier("hedge_quick_profit", 5.0, 1.0),),
    ),
    PositionRole.DEFAULT: RoleExitPolicy(),
}


@dataclass
class ExitDecision:
    """Outcome of one evaluation"""
    action: str                       # "close" or "partial"
    reason: str                       # emergency_stop, stop_loss, trailing_stop, <tier name>, max_hold
    status: Optional[PositionStatus]  # terminal status for closes
    pnl_percent: float
    fraction: float = 1.0
    tier: Optional[str] = None
    metadata: Dict[str, float] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.action == ACTION_CLOSE


class ExitPolicy:
    """
    Deterministic exit rules parameterized by profile and role table.
    """

    def __init__(
        self,
        role_policies: Optional[Dict[PositionRole, RoleExitPolicy]] = None,
        emergency_floor_percent: float = DEFAULT_EMERGENCY_FLOOR_PERCENT,
    ):
        if emergency_floor_percent >= 0:
            raise ValueError("emergency_floor_percent must be negative")
        self.role_policies = dict(DEFAULT_ROLE_POLICIES)
        if role_policies:
            self.role_policies.update(role_policies)
        self.emergency_floor_percent = emergency_floor_percent

    def role_policy(self, role: PositionRole) -> RoleExitPolicy:
        return self.role_policies.get(role) or self.role_policies[PositionRole.DEFAULT]

    def trailing_percent(self, role: PositionRole, profile: StrategyProfile) -> float:
        override = self.role_policy(role).trailing_stop_percent
        return override if override is not None else profile.trailing_stop_percent

    def stop_loss_percent(self, role: PositionRole, profile: StrategyProfile) -> float:
        """Effective stop: the tighter (closer to zero) of profile and role"""
        override = self.role_policy(role).stop_loss_percent
        if override is None:
            return profile.stop_loss_percent
        return max(override, profile.stop_loss_percent)

    def max_hold_seconds(self, role: PositionRole, profile: StrategyProfile) -> Optional[float]:
        policy = self.role_policy(role)
        if policy.unbounded_hold:
            return None
        if policy.max_hold_ms is not None:
            return policy.max_hold_ms / 1000.0
        return profile.max_hold_seconds

    def tiers(self, role: PositionRole, profile: StrategyProfile) -> List[ExitTier]:
        policy = self.role_policy(role)
        if policy.tiers:
            return sorted(policy.tiers, key=lambda tier: tier.threshold_percent)
        return [ExitTier("take_profit", profile.take_profit_percent, 1.0)]

    def evaluate(self, position: Position, profile: StrategyProfile, now: datetime) -> Optional[ExitDecision]:
        """
        Check exit conditions on an already refreshed position.

        Priority order: emergency > stop_loss > trailing_stop > tiers > max_hold

        Returns:
            ExitDecision if an exit condition is met, None otherwise
        """
        if not position.is_active:
            return None

        price = position.current_price
        pnl_pct = position.pnl_percent(price)
        hold_seconds = position.hold_seconds(now)
        meta = {"price": price, "hold_seconds": hold_seconds}

        # 1. Emergency floor (safety net below every configured stop)
        if pnl_pct <= self.emergency_floor_percent:
            return ExitDecision(ACTION_CLOSE, "emergency_stop", PositionStatus.CLOSED_LOSS, pnl_pct, metadata=meta)

        # 2. Stop-loss
        if pnl_pct <= self.stop_loss_percent(position.role, profile):
            return ExitDecision(ACTION_CLOSE, "stop_loss", PositionStatus.CLOSED_LOSS, pnl_pct, metadata=meta)

        # 3. Trailing stop (locks in gains only)
        if price <= position.trailing_stop_price and pnl_pct > 0:
            return ExitDecision(ACTION_CLOSE, "trailing_stop", PositionStatus.CLOSED_TRAILING, pnl_pct, metadata=meta)

        # 4. Role tiers: highest crossed tier above every tier already taken
        tiers = self.tiers(position.role, profile)
        taken = set(position.taken_tiers())
        taken_ceiling = max(
            (tier.threshold_percent for tier in tiers if tier.name in taken),
            default=float("-inf"),
        )
        crossed = [
            tier for tier in tiers
            if pnl_pct >= tier.threshold_percent and tier.threshold_percent > taken_ceiling
        ]
        if crossed:
            tier = crossed[-1]
            if tier.is_full:
                return ExitDecision(
                    ACTION_CLOSE, tier.name, PositionStatus.CLOSED_PROFIT, pnl_pct, tier=tier.name, metadata=meta,
                )
            return ExitDecision(
                ACTION_PARTIAL, tier.name, None, pnl_pct,
                fraction=tier.sell_fraction, tier=tier.name, metadata=meta,
            )

        # 5. Max hold time
        max_hold = self.max_hold_seconds(position.role, profile)
        if max_hold is not None and hold_seconds >= max_hold:
            return ExitDecision(ACTION_CLOSE, "max_hold", PositionStatus.CLOSED_TIMEOUT, pnl_pct, metadata=meta)

        return None
