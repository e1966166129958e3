"""
Tests for PositionOpener sizing and entry bookkeeping.
"""
import pytest

from core.entry import PositionOpener
from core.exceptions import ExecError, InvariantViolation
from core.position_state import PositionRole, PositionStatus


@pytest.fixture
def opener(store, executor, selector, clock):
    return PositionOpener(store, executor, selector, clock=clock.now)


def test_size_follows_active_profile(opener, executor):
    position = opener.open("mint-1", "BONK", capital=10.0)

    # compound_rotation: 20% of capital
    assert executor.opens == [("mint-1", pytest.approx(2.0))]
    assert position.entry_amount_base == pytest.approx(2.0)
    assert position.status is PositionStatus.ACTIVE


def test_position_persisted_with_fill(opener, store, executor):
    executor.entry_price = 0.004
    position = opener.open("mint-1", "BONK", capital=1.0, role=PositionRole.MOMENTUM)

    stored = store.get(position.id)
    assert stored.entry_price == 0.004
    assert stored.tokens_received == pytest.approx(0.25 / 0.004)
    assert stored.entry_tx_ref == "buy-1"
    assert stored.role is PositionRole.MOMENTUM


def test_initial_trailing_stop_uses_role(opener):
    position = opener.open("mint-1", "BONK", capital=1.0, role=PositionRole.MOONSHOT)
    assert position.trailing_stop_price == pytest.approx(0.75)
    assert position.max_price_reached == 1.0


def test_exec_error_creates_no_record(opener, store, executor):
    executor.fail_opens = True
    with pytest.raises(ExecError):
        opener.open("mint-1", "BONK", capital=10.0)
    assert len(store) == 0


def test_zero_capital_rejected(opener, executor):
    with pytest.raises(ValueError):
        opener.open("mint-1", "BONK", capital=0.0)
    assert executor.opens == []


def test_bad_fill_rejected(opener, store, executor):
    executor.tokens_per_base = 0.0
    with pytest.raises(InvariantViolation):
        opener.open("mint-1", "BONK", capital=10.0)
    assert len(store) == 0
