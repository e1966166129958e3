"""Test helpers for the memetrader test suite"""

from tests.helpers.fakes import (
    FakeBalanceOracle,
    FakeClock,
    FakeExecutor,
    FakePriceOracle,
)

__all__ = [
    "FakeBalanceOracle",
    "FakeClock",
    "FakeExecutor",
    "FakePriceOracle",
]
