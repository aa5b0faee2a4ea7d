from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Side(str, Enum):
    LONG = "long"
    SHORT = "short"

    @classmethod
    def from_size(cls, size: float) -> "Side":
        return cls.LONG if size > 0 else cls.SHORT

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @property
    def exit_order_side(self) -> str:
        return "sell" if self is Side.LONG else "buy"


class TradeType(str, Enum):
    OPEN = "open"
    CLOSE = "close"


class TradeStatus(str, Enum):
    FILLED = "filled"
    PENDING = "pending"


@dataclass(frozen=True)
class Position:
    symbol: str
    side: Side
    quantity: float
    entry_price: float
    mark_price: float
    leverage: float

    def is_valid(self) -> bool:
        for value in (self.entry_price, self.mark_price, self.leverage):
            if value is None or not math.isfinite(value) or value == 0:
                return False
        return True


@dataclass
class MonitorRecord:
    last_check_time: float
    check_count: int = 0


@dataclass(frozen=True)
class ThresholdDecision:
    threshold_percent: float
    risk_level: str
    description: str
    is_dynamic: bool


@dataclass(frozen=True)
class TimeframeSnapshot:
    current_price: Optional[float] = None
    ema20: Optional[float] = None
    atr14: Optional[float] = None
    impulse_direction: int = 0


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    price: float
    timeframes: Dict[str, TimeframeSnapshot] = field(default_factory=dict)

    def timeframe(self, name: str) -> Optional[TimeframeSnapshot]:
        return self.timeframes.get(name)


@dataclass
class TradeRecord:
    order_id: str
    symbol: str
    side: Side
    type: TradeType
    price: float
    quantity: float
    leverage: float
    pnl: float
    fee: float
    timestamp: datetime
    status: TradeStatus
    id: Optional[int] = None


@dataclass
class DecisionRecord:
    timestamp: datetime
    market_analysis: Dict[str, Any]
    decision: str
    actions_taken: list
    iteration: int = 0
    account_value: float = 0.0
    positions_count: int = 0
    id: Optional[int] = None


@dataclass(frozen=True)
class ClosedPosition:
    """Payload of the ``position_closed`` event."""

    symbol: str
    side: Side
    order_id: str
    exit_price: float
    quantity: float
    pnl: float
    fee: float
    filled: bool
