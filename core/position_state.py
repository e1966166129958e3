"""
memetrader Core: Position State Machine

Explicit position lifecycle with one-way terminal transitions.

States: ACTIVE → (CLOSED_PROFIT | CLOSED_LOSS | CLOSED_TRAILING | CLOSED_TIMEOUT | CORRUPT)

Provides:
- Position record with flat serialization
- Transition validation (terminal records are immutable)
- Partial exit bookkeeping
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class PositionRole(Enum):
    """Exit-policy tag assigned at entry"""
    SCALP = "SCALP"
    MOMENTUM = "MOMENTUM"
    MOONSHOT = "MOONSHOT"
    HEDGE = "HEDGE"
    DEFAULT = "DEFAULT"


class PositionStatus(Enum):
    """Position lifecycle states"""
    ACTIVE = "ACTIVE"
    CLOSED_PROFIT = "CLOSED_PROFIT"
    CLOSED_LOSS = "CLOSED_LOSS"
    CLOSED_TRAILING = "CLOSED_TRAILING"
    CLOSED_TIMEOUT = "CLOSED_TIMEOUT"
    CORRUPT = "CORRUPT"            # frozen for manual review


TERMINAL_STATUSES = frozenset(status for status in PositionStatus if status is not PositionStatus.ACTIVE)

VALID_TRANSITIONS = {
    PositionStatus.ACTIVE: set(TERMINAL_STATUSES),
    # Terminal states have no outbound transitions
    **{status: set() for status in TERMINAL_STATUSES},
}


class PositionFrozenError(RuntimeError):
    """Attempt to mutate a terminal position"""


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class PartialExit:
    """One partial take-profit fill"""
    tier: str
    fraction: float
    price: float
    time: datetime
    tx_ref: Optional[str] = None
    base_amount_released: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "fraction": self.fraction,
            "price": self.price,
            "time": self.time.isoformat(),
            "tx_ref": self.tx_ref,
            "base_amount_released": self.base_amount_released,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartialExit":
        return cls(
            tier=data["tier"],
            fraction=float(data["fraction"]),
            price=float(data["price"]),
            time=_parse_ts(data["time"]),
            tx_ref=data.get("tx_ref"),
            base_amount_released=float(data.get("base_amount_released", 0.0)),
        )


@dataclass
class Position:
    """
    Held token position.

    Mutated only by PositionRiskEngine while ACTIVE; immutable once terminal.
    """
    token_id: str
    symbol: str
    entry_price: float
    entry_amount_base: float
    tokens_received: float = 0.0
    role: PositionRole = PositionRole.DEFAULT
    id: str = field(default_factory=lambda: f"pos_{uuid.uuid4().hex[:16]}")
    entry_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    entry_tx_ref: Optional[str] = None

    # Computed state
    current_price: float = 0.0
    max_price_reached: float = 0.0
    trailing_stop_price: float = 0.0
    last_price_source: Optional[str] = None
    partial_exits: List[PartialExit] = field(default_factory=list)

    # State
    status: PositionStatus = PositionStatus.ACTIVE

    # Close fields (set once)
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    exit_reason: Optional[str] = None
    exit_tx_ref: Optional[str] = None
    corruption_reason: Optional[str] = None

    def __post_init__(self):
        """Seed peak and current price from the entry"""
        if not self.token_id:
            raise ValueError("Position token_id is required")
        if self.max_price_reached < self.entry_price:
            self.max_price_reached = self.entry_price
        if self.current_price <= 0:
            self.current_price = self.entry_price

    @property
    def is_active(self) -> bool:
        return self.status is PositionStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def pnl_percent(self, price: Optional[float] = None) -> float:
        """Unrealized PnL % at price (default: current price)"""
        mark = self.current_price if price is None else price
        return (mark - self.entry_price) / self.entry_price * 100.0

    def hold_seconds(self, now: datetime) -> float:
        return (now - self.entry_time).total_seconds()

    def market_value(self) -> float:
        """Mark-to-market value in base currency"""
        return self.tokens_received * self.current_price

    def taken_tiers(self) -> List[str]:
        return [partial.tier for partial in self.partial_exits]

    def check_invariants(self) -> Optional[str]:
        """Return a description of the first broken invariant, or None"""
        for label, value in (
            ("entry_price", self.entry_price),
            ("entry_amount_base", self.entry_amount_base),
            ("current_price", self.current_price),
            ("tokens_received", self.tokens_received),
        ):
            if value is None or not math.isfinite(value):
                return f"{label} is not a finite number ({value!r})"
        if self.entry_price <= 0:
            return f"entry_price must be > 0, got {self.entry_price}"
        if self.entry_amount_base <= 0:
            return f"entry_amount_base must be > 0, got {self.entry_amount_base}"
        if self.current_price < 0:
            return f"current_price must be >= 0, got {self.current_price}"
        if self.tokens_received < 0:
            return f"tokens_received must be >= 0, got {self.tokens_received}"
        if self.max_price_reached < self.entry_price:
            return f"max_price_reached {self.max_price_reached} below entry {self.entry_price}"
        if self.trailing_stop_price > self.max_price_reached:
            return f"trailing_stop_price {self.trailing_stop_price} above peak {self.max_price_reached}"
        return None

    def ensure_active(self) -> None:
        if not self.is_active:
            raise PositionFrozenError(f"Position {self.id} is {self.status.value}; record is immutable")

    def transition(
        self,
        new_status: PositionStatus,
        *,
        now: datetime,
        reason: str,
        exit_price: Optional[float] = None,
        tx_ref: Optional[str] = None,
    ) -> None:
        """
        Move to a terminal status and stamp the close fields.

        Raises:
            PositionFrozenError: If the position is already terminal
            ValueError: If the transition is not allowed
        """
        self.ensure_active()
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise ValueError(f"Invalid transition for {self.id}: {self.status.value} → {new_status.value}")

        old_status = self.status
        self.status = new_status
        self.exit_time = now
        self.exit_reason = reason
        if new_status is PositionStatus.CORRUPT:
            self.corruption_reason = reason
        else:
            self.exit_price = exit_price
            self.exit_tx_ref = tx_ref

        logger.info(f"Position {self.id} ({self.symbol}) transitioned: {old_status.value} → {new_status.value} [{reason}]")

    def apply_partial_exit(
        self,
        *,
        tier: str,
        fraction: float,
        price: float,
        now: datetime,
        tx_ref: Optional[str] = None,
    ) -> PartialExit:
        """
        Shrink the position after a partial sell. Never increases size.
        """
        self.ensure_active()
        if not 0.0 < fraction < 1.0:
            raise ValueError(f"Partial exit fraction must be in (0, 1), got {fraction}")

        released = self.entry_amount_base * fraction
        self.entry_amount_base -= released
        self.tokens_received *= (1.0 - fraction)

        partial = PartialExit(
            tier=tier,
            fraction=fraction,
            price=price,
            time=now,
            tx_ref=tx_ref,
            base_amount_released=released,
        )
        self.partial_exits.append(partial)
        return partial

    def to_dict(self) -> Dict[str, Any]:
        """Flat record for persistence"""
        return {
            "id": self.id,
            "token_id": self.token_id,
            "symbol": self.symbol,
            "role": self.role.value,
            "entry_price": self.entry_price,
            "entry_amount_base": self.entry_amount_base,
            "tokens_received": self.tokens_received,
            "entry_time": self.entry_time.isoformat(),
            "entry_tx_ref": self.entry_tx_ref,
            "current_price": self.current_price,
            "max_price_reached": self.max_price_reached,
            "trailing_stop_price": self.trailing_stop_price,
            "last_price_source": self.last_price_source,
            "partial_exits": [partial.to_dict() for partial in self.partial_exits],
            "status": self.status.value,
            "exit_price": self.exit_price,
            "exit_time": _iso(self.exit_time),
            "exit_reason": self.exit_reason,
            "exit_tx_ref": self.exit_tx_ref,
            "corruption_reason": self.corruption_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            id=data["id"],
            token_id=data["token_id"],
            symbol=data.get("symbol", ""),
            role=PositionRole(data.get("role", PositionRole.DEFAULT.value)),
            entry_price=float(data["entry_price"]),
            entry_amount_base=float(data["entry_amount_base"]),
            tokens_received=float(data.get("tokens_received", 0.0)),
            entry_time=_parse_ts(data["entry_time"]),
            entry_tx_ref=data.get("entry_tx_ref"),
            current_price=float(data.get("current_price", 0.0)),
            max_price_reached=float(data.get("max_price_reached", 0.0)),
            trailing_stop_price=float(data.get("trailing_stop_price", 0.0)),
            last_price_source=data.get("last_price_source"),
            partial_exits=[PartialExit.from_dict(item) for item in data.get("partial_exits", [])],
            status=PositionStatus(data.get("status", PositionStatus.ACTIVE.value)),
            exit_price=data.get("exit_price"),
            exit_time=_parse_ts(data.get("exit_time")),
            exit_reason=data.get("exit_reason"),
            exit_tx_ref=data.get("exit_tx_ref"),
            corruption_reason=data.get("corruption_reason"),
        )
