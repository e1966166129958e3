"""
memetrader Core: External Capabilities

Abstract seams for the collaborators the risk core does not own: price
discovery, wallet balance reads and trade execution. Concrete HTTP/paper
implementations live in infra/oracles.py; tests use in-memory fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from core.endpoint_pool import Endpoint
from core.position_state import Position


@dataclass
class EntryFill:
    """Result of a buy"""
    entry_price: float
    tokens_received: float
    tx_ref: Optional[str] = None


@dataclass
class ExitFill:
    """Result of a (partial) sell"""
    exit_price: float
    tx_ref: Optional[str] = None


class PriceOracle(ABC):
    """Token price in base currency (SOL) from one endpoint"""

    @abstractmethod
    def get_price(self, token_id: str, endpoint: Endpoint) -> float:
        """
        Fetch the current price.

        Raises:
            FetchError: On any network or payload failure
        """
        pass


class BalanceOracle(ABC):
    """Wallet base-currency balance from one RPC endpoint"""

    @abstractmethod
    def get_balance(self, address: str, endpoint: Endpoint) -> float:
        pass


class TradeExecutor(ABC):
    """
    Buys and sells on behalf of the bot.

    Both calls raise ExecError on failure; callers keep the prior state.
    """

    @abstractmethod
    def open(self, token_id: str, amount: float) -> EntryFill:
        """Spend amount of base currency on token_id"""
        pass

    @abstractmethod
    def close(self, position: Position, fraction: float = 1.0) -> ExitFill:
        """Sell fraction of the position's remaining tokens"""
        pass
