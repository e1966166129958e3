"""
memetrader Core: Market Data

Read façade over ResilientClient with the cache keys and TTLs used by the
trading loops. Every read goes through the fallback ladder, so callers get a
FetchResult and decide what a degraded source means for them.
"""

import logging
from typing import Optional

from core.endpoint_pool import EndpointKind
from core.resilient_client import FetchResult, ResilientClient
from core.trading_interfaces import BalanceOracle, PriceOracle

logger = logging.getLogger(__name__)

DEFAULT_PRICE_TTL_SECONDS = 60.0
DEFAULT_BALANCE_TTL_SECONDS = 30.0


def price_cache_key(token_id: str) -> str:
    return f"price:{token_id}"


def balance_cache_key(address: str) -> str:
    return f"balance:{address}"


class MarketData:
    """
    Price and balance reads.

    Usage:
        market = MarketData(client, price_oracle, balance_oracle)
        result = market.get_price(mint, ttl=30, last_known=position.current_price)
        if result.degraded:
            ...
    """

    def __init__(
        self,
        client: ResilientClient,
        price_oracle: PriceOracle,
        balance_oracle: Optional[BalanceOracle] = None,
    ):
        self.client = client
        self.price_oracle = price_oracle
        self.balance_oracle = balance_oracle

    def get_price(
        self,
        token_id: str,
        ttl: float = DEFAULT_PRICE_TTL_SECONDS,
        last_known: Optional[float] = None,
    ) -> FetchResult:
        """
        Current token price.

        Args:
            token_id: Token mint address
            ttl: Seconds a fresh price is reused
            last_known: Last observed price, served as estimate when > 0

        Raises:
            AllEndpointsFailed: No endpoint, cache entry or estimate could answer
        """
        estimate = None
        if last_known is not None and last_known > 0:
            estimate = lambda: last_known  # noqa: E731

        return self.client.execute_with_source(
            EndpointKind.PRICE,
            price_cache_key(token_id),
            ttl,
            lambda endpoint: self.price_oracle.get_price(token_id, endpoint),
            estimate=estimate,
        )

    def get_balance(
        self,
        address: str,
        ttl: float = DEFAULT_BALANCE_TTL_SECONDS,
        last_known: Optional[float] = None,
    ) -> FetchResult:
        """Wallet base-currency balance"""
        if self.balance_oracle is None:
            raise RuntimeError("MarketData was built without a balance oracle")

        estimate = None
        if last_known is not None:
            estimate = lambda: last_known  # noqa: E731

        return self.client.execute_with_source(
            EndpointKind.RPC,
            balance_cache_key(address),
            ttl,
            lambda endpoint: self.balance_oracle.get_balance(address, endpoint),
            estimate=estimate,
        )
