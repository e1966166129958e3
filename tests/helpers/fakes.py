"""
Deterministic stand-ins for external capabilities.

Scripted oracles return (or raise) queued values per token so engine and
client tests can reproduce exact price paths and endpoint failures.
"""

from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

from core.endpoint_pool import Endpoint
from core.exceptions import ExecError
from core.position_state import Position
from core.trading_interfaces import BalanceOracle, EntryFill, ExitFill, PriceOracle, TradeExecutor

EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock usable as both a float and a datetime source"""

    def __init__(self, start: float = 1_000_000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds

    def now(self) -> datetime:
        return EPOCH + timedelta(seconds=self.t)


class FakePriceOracle(PriceOracle):
    """
    Per-token queue of prices or exceptions.

    The last queued item repeats once the queue is down to one element.
    Every call is recorded as (token_id, endpoint url).
    """

    def __init__(self, prices: Optional[Dict[str, List[Any]]] = None):
        self.queues: Dict[str, Deque[Any]] = defaultdict(deque)
        self.calls: List[Tuple[str, str]] = []
        for token_id, values in (prices or {}).items():
            self.queue(token_id, *values)

    def queue(self, token_id: str, *values: Any) -> None:
        self.queues[token_id].extend(values)

    def get_price(self, token_id: str, endpoint: Endpoint) -> float:
        self.calls.append((token_id, endpoint.url))
        queue = self.queues[token_id]
        if not queue:
            raise AssertionError(f"No scripted price for {token_id}")
        value = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(value, BaseException):
            raise value
        return value


class FakeBalanceOracle(BalanceOracle):
    def __init__(self, balance: float = 0.0):
        self.balance = balance
        self.error: Optional[BaseException] = None
        self.calls = 0

    def get_balance(self, address: str, endpoint: Endpoint) -> float:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.balance


class FakeExecutor(TradeExecutor):
    """
    Fills at the position's current price (or a fixed entry price on open).

    Set fail_closes to make the next N close calls raise ExecError.
    """

    def __init__(self, entry_price: float = 1.0, tokens_per_base: Optional[float] = None):
        self.entry_price = entry_price
        self.tokens_per_base = tokens_per_base
        self.fail_closes = 0
        self.fail_opens = False
        self.opens: List[Tuple[str, float]] = []
        self.closes: List[Tuple[str, float]] = []

    def open(self, token_id: str, amount: float) -> EntryFill:
        if self.fail_opens:
            raise ExecError("swap failed", token_id=token_id)
        self.opens.append((token_id, amount))
        per_base = self.tokens_per_base if self.tokens_per_base is not None else 1.0 / self.entry_price
        return EntryFill(entry_price=self.entry_price, tokens_received=amount * per_base, tx_ref=f"buy-{len(self.opens)}")

    def close(self, position: Position, fraction: float = 1.0) -> ExitFill:
        if self.fail_closes > 0:
            self.fail_closes -= 1
            raise ExecError("sell transaction dropped", token_id=position.token_id)
        self.closes.append((position.id, fraction))
        return ExitFill(exit_price=position.current_price, tx_ref=f"sell-{len(self.closes)}")
