"""
memetrader Core: Portfolio Valuation

Capital = wallet base balance + mark-to-market of ACTIVE positions.
The result feeds StrategyProfileSelector on every risk tick.
"""

import logging
from typing import Optional

from core.market_data import DEFAULT_BALANCE_TTL_SECONDS, MarketData

logger = logging.getLogger(__name__)


class PortfolioValuer:
    """
    Current capital in base currency.

    The balance read falls back to stale cache, then to the last balance seen
    by this valuer. With no wallet configured, only open positions count.
    """

    def __init__(
        self,
        market: MarketData,
        store,
        wallet_address: Optional[str] = None,
        balance_ttl: float = DEFAULT_BALANCE_TTL_SECONDS,
    ):
        self.market = market
        self.store = store
        self.wallet_address = wallet_address
        self.balance_ttl = balance_ttl
        self._last_balance: Optional[float] = None

    def wallet_balance(self) -> float:
        if not self.wallet_address:
            return 0.0

        result = self.market.get_balance(
            self.wallet_address,
            ttl=self.balance_ttl,
            last_known=self._last_balance,
        )
        balance = float(result.value)
        if result.degraded:
            logger.warning(f"Wallet balance is {result.source} ({balance:.6f})")
        else:
            self._last_balance = balance
        return balance

    def positions_value(self) -> float:
        return sum(position.market_value() for position in self.store.active())

    def current_capital(self) -> float:
        """
        Raises:
            AllEndpointsFailed: Balance unavailable and never seen before
        """
        capital = self.wallet_balance() + self.positions_value()
        logger.debug(f"Current capital: {capital:.6f}")
        return capital
