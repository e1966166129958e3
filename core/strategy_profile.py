"""
memetrader Core: Strategy Profiles

Milestone table mapping portfolio capital to a named bundle of risk
parameters. Selection is a pure function of capital.
"""

import bisect
import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyProfile:
    """Risk parameters active once capital reaches min_capital"""
    name: str
    min_capital: float
    max_position_fraction: float
    stop_loss_percent: float        # negative, e.g. -15.0
    take_profit_percent: float      # positive, e.g. 15.0
    trailing_stop_percent: float    # fraction in (0, 1), e.g. 0.08
    poll_interval_ms: int
    max_hold_duration_ms: Optional[int] = None
    price_cache_ttl_ms: int = 60_000

    def __post_init__(self):
        if self.min_capital < 0:
            raise ValueError(f"{self.name}: min_capital must be >= 0")
        if not 0.0 < self.max_position_fraction <= 1.0:
            raise ValueError(f"{self.name}: max_position_fraction must be in (0, 1]")
        if self.stop_loss_percent >= 0:
            raise ValueError(f"{self.name}: stop_loss_percent must be negative")
        if self.take_profit_percent <= 0:
            raise ValueError(f"{self.name}: take_profit_percent must be positive")
        if not 0.0 < self.trailing_stop_percent < 1.0:
            raise ValueError(f"{self.name}: trailing_stop_percent must be in (0, 1)")
        if self.poll_interval_ms <= 0:
            raise ValueError(f"{self.name}: poll_interval_ms must be positive")
        if self.max_hold_duration_ms is not None and self.max_hold_duration_ms <= 0:
            raise ValueError(f"{self.name}: max_hold_duration_ms must be positive or null")

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def price_cache_ttl_seconds(self) -> float:
        return self.price_cache_ttl_ms / 1000.0

    @property
    def max_hold_seconds(self) -> Optional[float]:
        if self.max_hold_duration_ms is None:
            return None
        return self.max_hold_duration_ms / 1000.0

    def position_size(self, capital: float) -> float:
        """Base-currency amount for a new entry"""
        return max(0.0, capital) * self.max_position_fraction


DEFAULT_PROFILES: List[StrategyProfile] = [
    StrategyProfile("micro_rotation", 0.0, 0.25, -12.0, 15.0, 0.08, 5_000, 120_000, 30_000),
    StrategyProfile("compound_rotation", 5.0, 0.20, -15.0, 25.0, 0.10, 10_000, 180_000, 30_000),
    StrategyProfile("protect_winners", 25.0, 0.08, -20.0, 40.0, 0.12, 15_000, 600_000, 60_000),
    StrategyProfile("layered_hold", 100.0, 0.05, -25.0, 60.0, 0.15, 20_000, 1_800_000, 90_000),
    StrategyProfile("strategic_hold", 500.0, 0.03, -30.0, 100.0, 0.20, 30_000, 7_200_000, 120_000),
]


class StrategyProfileSelector:
    """
    Pure selection over a statically ordered milestone table.

    The active profile is the last one whose min_capital <= capital; capital
    below every floor maps to the first profile.
    """

    def __init__(self, profiles: Optional[Iterable[StrategyProfile]] = None):
        ordered = list(profiles) if profiles is not None else list(DEFAULT_PROFILES)
        if not ordered:
            raise ValueError("At least one strategy profile is required")

        floors = [profile.min_capital for profile in ordered]
        if floors != sorted(floors) or len(set(floors)) != len(floors):
            raise ValueError(f"Profiles must be ordered by unique ascending min_capital, got {floors}")

        self._profiles: Sequence[StrategyProfile] = tuple(ordered)
        self._floors = floors
        logger.info(
            "Initialized StrategyProfileSelector: "
            + ", ".join(f"{p.name}@{p.min_capital:g}" for p in self._profiles)
        )

    @property
    def profiles(self) -> Sequence[StrategyProfile]:
        return self._profiles

    def select(self, current_capital: float) -> StrategyProfile:
        """Last profile whose min_capital <= capital; non-finite capital maps to the first profile"""
        if not math.isfinite(current_capital):
            logger.warning(f"Non-finite capital {current_capital!r}, using profile {self._profiles[0].name}")
            return self._profiles[0]
        index = bisect.bisect_right(self._floors, current_capital) - 1
        return self._profiles[max(index, 0)]
