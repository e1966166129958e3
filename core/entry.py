"""
memetrader Core: Position Entry

Sizes a buy from the active StrategyProfile, executes it and records the
resulting ACTIVE Position. Used by the token-scanning loop.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Callable, Optional

from core.exceptions import InvariantViolation
from core.exit_policy import ExitPolicy
from core.position_state import Position, PositionRole
from core.strategy_profile import StrategyProfileSelector
from core.trading_interfaces import TradeExecutor

logger = logging.getLogger(__name__)


class PositionOpener:
    """
    Entry side of the position lifecycle.

    ExecError from the executor propagates and no record is created.
    """

    def __init__(
        self,
        store,
        executor: TradeExecutor,
        selector: StrategyProfileSelector,
        exit_policy: Optional[ExitPolicy] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.executor = executor
        self.selector = selector
        self.exit_policy = exit_policy or ExitPolicy()
        self._clock = clock

    def position_size(self, capital: float) -> float:
        return self.selector.select(capital).position_size(capital)

    def open(
        self,
        token_id: str,
        symbol: str,
        capital: float,
        role: PositionRole = PositionRole.DEFAULT,
    ) -> Position:
        """
        Buy token_id sized by the profile active at capital.

        Args:
            token_id: Token mint address
            symbol: Display symbol
            capital: Current portfolio value in base currency
            role: Exit-policy tag

        Returns:
            The persisted ACTIVE Position

        Raises:
            ValueError: Computed size is not positive
            ExecError: Buy failed
            InvariantViolation: Fill reported an unusable price or size
        """
        profile = self.selector.select(capital)
        amount = profile.position_size(capital)
        if amount <= 0:
            raise ValueError(f"Position size for {symbol} is {amount:.6f} at capital {capital:.6f}")

        logger.info(
            f"Opening {role.value} position in {symbol}: {amount:.6f} base "
            f"({profile.max_position_fraction:.0%} of {capital:.6f}, profile={profile.name})"
        )
        fill = self.executor.open(token_id, amount)

        if not math.isfinite(fill.entry_price) or fill.entry_price <= 0:
            raise InvariantViolation(token_id, f"fill entry_price must be > 0, got {fill.entry_price}")
        if not math.isfinite(fill.tokens_received) or fill.tokens_received <= 0:
            raise InvariantViolation(token_id, f"fill tokens_received must be > 0, got {fill.tokens_received}")

        trailing_pct = self.exit_policy.trailing_percent(role, profile)
        position = Position(
            token_id=token_id,
            symbol=symbol,
            entry_price=fill.entry_price,
            entry_amount_base=amount,
            tokens_received=fill.tokens_received,
            role=role,
            entry_time=self._clock(),
            entry_tx_ref=fill.tx_ref,
            trailing_stop_price=fill.entry_price * (1.0 - trailing_pct),
        )
        self.store.add(position)

        logger.info(
            f"Opened {position.id}: {fill.tokens_received:.4f} {symbol} @ {fill.entry_price:.8f} "
            f"(trailing stop {position.trailing_stop_price:.8f}, tx={fill.tx_ref})"
        )
        return position
