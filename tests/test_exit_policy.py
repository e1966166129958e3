"""
Tests for ExitPolicy priority order and role tables.
"""
from datetime import timedelta

import pytest

from core.exit_policy import ACTION_CLOSE, ACTION_PARTIAL, ExitPolicy, ExitTier, RoleExitPolicy
from core.position_state import Position, PositionRole, PositionStatus
from core.strategy_profile import DEFAULT_PROFILES, StrategyProfile
from tests.helpers import FakeClock

PROFILE = StrategyProfile(
    name="test",
    min_capital=0,
    max_position_fraction=0.25,
    stop_loss_percent=-15.0,
    take_profit_percent=20.0,
    trailing_stop_percent=0.10,
    poll_interval_ms=5_000,
    max_hold_duration_ms=600_000,
)


@pytest.fixture
def now():
    return FakeClock().now()


def _position(now, role=PositionRole.DEFAULT, price=1.0, peak=None, trailing=0.0, age_seconds=0):
    position = Position(
        token_id="mint",
        symbol="MEME",
        entry_price=1.0,
        entry_amount_base=1.0,
        tokens_received=1.0,
        role=role,
        entry_time=now - timedelta(seconds=age_seconds),
    )
    position.current_price = price
    position.max_price_reached = max(peak or price, 1.0)
    position.trailing_stop_price = trailing
    return position


class TestPriority:
    """First matching condition wins"""

    def test_no_exit_inside_band(self, now):
        assert ExitPolicy().evaluate(_position(now, price=1.05), PROFILE, now) is None

    def test_emergency_beats_stop_loss(self, now):
        decision = ExitPolicy().evaluate(_position(now, price=0.55), PROFILE, now)
        assert decision.reason == "emergency_stop"
        assert decision.status is PositionStatus.CLOSED_LOSS

    def test_stop_loss(self, now):
        decision = ExitPolicy().evaluate(_position(now, price=0.85), PROFILE, now)
        assert decision.reason == "stop_loss"
        assert decision.status is PositionStatus.CLOSED_LOSS

    def test_stop_loss_beats_trailing_stop(self, now):
        # Past the stop-loss and under the trailing stop on the same tick
        position = _position(now, price=0.80, peak=1.3, trailing=1.17)
        for _ in range(5):
            decision = ExitPolicy().evaluate(position, PROFILE, now)
            assert decision.reason == "stop_loss"
            assert decision.status is PositionStatus.CLOSED_LOSS

    def test_shipped_floor_below_every_profile_stop(self, now):
        policy = ExitPolicy()
        for profile in DEFAULT_PROFILES:
            assert policy.emergency_floor_percent < profile.stop_loss_percent
            # Just past the profile stop still reads as a normal stop-loss
            price = 1.0 + (profile.stop_loss_percent - 1.0) / 100.0
            decision = policy.evaluate(_position(now, price=price), profile, now)
            assert decision.reason == "stop_loss"

    def test_stop_loss_beats_timeout(self, now):
        decision = ExitPolicy().evaluate(_position(now, price=0.80, age_seconds=10_000), PROFILE, now)
        assert decision.reason == "stop_loss"

    def test_trailing_requires_profit(self, now):
        # Below trailing stop but under water: stop-loss territory only
        position = _position(now, price=0.95, peak=1.2, trailing=1.08)
        assert ExitPolicy().evaluate(position, PROFILE, now) is None

    def test_trailing_stop_in_profit(self, now):
        position = _position(now, price=1.07, peak=1.2, trailing=1.08)
        decision = ExitPolicy().evaluate(position, PROFILE, now)
        assert decision.reason == "trailing_stop"
        assert decision.status is PositionStatus.CLOSED_TRAILING

    def test_take_profit_default_role(self, now):
        decision = ExitPolicy().evaluate(_position(now, price=1.25), PROFILE, now)
        assert decision.action == ACTION_CLOSE
        assert decision.status is PositionStatus.CLOSED_PROFIT
        assert decision.reason == "take_profit"

    def test_timeout(self, now):
        decision = ExitPolicy().evaluate(_position(now, price=1.01, age_seconds=600), PROFILE, now)
        assert decision.reason == "max_hold"
        assert decision.status is PositionStatus.CLOSED_TIMEOUT

    def test_terminal_position_ignored(self, now):
        position = _position(now, price=0.5)
        position.transition(PositionStatus.CLOSED_LOSS, now=now, reason="manual", exit_price=0.5)
        assert ExitPolicy().evaluate(position, PROFILE, now) is None


class TestRoleTables:
    """Role overrides"""

    def test_scalp_partial_then_full(self, now):
        policy = ExitPolicy()
        position = _position(now, role=PositionRole.SCALP, price=1.11)

        first = policy.evaluate(position, PROFILE, now)
        assert first.action == ACTION_PARTIAL
        assert first.tier == "scalp_partial_50"
        assert first.fraction == 0.5

        position.apply_partial_exit(tier=first.tier, fraction=first.fraction, price=1.11, now=now)
        assert policy.evaluate(position, PROFILE, now) is None

        position.current_price = 1.16
        position.max_price_reached = 1.16
        second = policy.evaluate(position, PROFILE, now)
        assert second.action == ACTION_CLOSE
        assert second.reason == "scalp_full"

    def test_highest_crossed_tier_wins(self, now):
        position = _position(now, role=PositionRole.SCALP, price=1.20)
        decision = ExitPolicy().evaluate(position, PROFILE, now)
        assert decision.reason == "scalp_full"

    def test_scalp_max_hold_overrides_profile(self, now):
        position = _position(now, role=PositionRole.SCALP, price=1.01, age_seconds=300)
        assert ExitPolicy().evaluate(position, PROFILE, now).reason == "max_hold"

    def test_lower_tier_consumed_by_higher_tier(self, now):
        policy = ExitPolicy()
        position = _position(now, role=PositionRole.MOONSHOT, price=12.0)

        first = policy.evaluate(position, PROFILE, now)
        assert first.tier == "moonshot_major_70"
        position.apply_partial_exit(tier=first.tier, fraction=first.fraction, price=12.0, now=now)

        # moonshot_partial_30 is crossed but sits below the tier already taken
        assert policy.evaluate(position, PROFILE, now) is None

    def test_moonshot_never_times_out(self, now):
        position = _position(now, role=PositionRole.MOONSHOT, price=1.5, age_seconds=10 * 86_400)
        assert ExitPolicy().evaluate(position, PROFILE, now) is None

    def test_hedge_stop_tighter_than_profile(self, now):
        decision = ExitPolicy().evaluate(_position(now, role=PositionRole.HEDGE, price=0.95), PROFILE, now)
        assert decision.reason == "stop_loss"

    def test_role_stop_cannot_loosen_profile(self):
        policy = ExitPolicy({PositionRole.SCALP: RoleExitPolicy(stop_loss_percent=-40.0)})
        assert policy.stop_loss_percent(PositionRole.SCALP, PROFILE) == -15.0

    def test_trailing_percent_falls_back_to_profile(self):
        policy = ExitPolicy()
        assert policy.trailing_percent(PositionRole.DEFAULT, PROFILE) == 0.10
        assert policy.trailing_percent(PositionRole.MOMENTUM, PROFILE) == 0.12

    def test_custom_emergency_floor(self, now):
        policy = ExitPolicy(emergency_floor_percent=-10.0)
        assert policy.evaluate(_position(now, price=0.89), PROFILE, now).reason == "emergency_stop"

    def test_invalid_tier_fraction_rejected(self):
        with pytest.raises(ValueError):
            RoleExitPolicy(tiers=(ExitTier("bad", 10.0, 1.5),))

    def test_evaluation_is_deterministic(self, now):
        policy = ExitPolicy()
        position = _position(now, role=PositionRole.MOMENTUM, price=1.3, peak=1.4, trailing=1.232)
        decisions = {policy.evaluate(position, PROFILE, now).reason for _ in range(10)}
        assert decisions == {"momentum_partial_60"}
