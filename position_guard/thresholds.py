"""Stop-loss threshold selection.

Static mode maps leverage onto three buckets of the strategy's leverage range.
Dynamic mode derives four market signals from a 1m/5m snapshot and hands them
to the strategy's calculator. A missing input, a calculator error or a
non-finite result falls back to the static bucket for that call.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import config
from position_guard.log import log_json
from position_guard.models import MarketSnapshot, Side, ThresholdDecision, TimeframeSnapshot
from position_guard.strategy_config import StopLossConfig, StrategyConfig

__all__ = [
    "ThresholdCalculator",
    "MarketSignals",
    "static_band_edges",
    "calculate_volatility",
    "analyze_structure_strength",
    "analyze_micro_rhythm",
    "analyze_market_state",
    "derive_signals",
]

logger = logging.getLogger(__name__)

MICRO_GAP_PCT = 0.1


def _finite(value: Optional[float]) -> bool:
    return value is not None and isinstance(value, (int, float)) and math.isfinite(value)


def _positive(value: Optional[float]) -> bool:
    return _finite(value) and value > 0


def _gap_pct(tf: Optional[TimeframeSnapshot]) -> Optional[float]:
    """Signed (price - ema20) / ema20 in percent, None when inputs are unusable."""
    if tf is None or not _positive(tf.current_price) or not _positive(tf.ema20):
        return None
    return (tf.current_price - tf.ema20) / tf.ema20 * 100


def static_band_edges(leverage_min: float, leverage_max: float) -> Tuple[int, int]:
    span = leverage_max - leverage_min
    low_edge = math.ceil(leverage_min + span * 0.33)
    mid_edge = math.ceil(leverage_min + span * 0.67)
    return low_edge, mid_edge


# ----------------------------------------------------------------------
# Signals
# ----------------------------------------------------------------------
def calculate_volatility(snapshot: MarketSnapshot, default: Optional[float] = None) -> Optional[float]:
    """ATR14/price on 1m, else 1m price drift, else 5m ATR, else ``default``; None without a price."""
    if default is None:
        default = config.DEFAULT_VOLATILITY_PCT
    price = snapshot.price
    if not _positive(price):
        return None
    tf1m = snapshot.timeframe("1m")
    tf5m = snapshot.timeframe("5m")
    if tf1m is not None and _positive(tf1m.atr14):
        return round(tf1m.atr14 / price * 100, 2)
    if tf1m is not None and _positive(tf1m.current_price):
        return round(abs(price - tf1m.current_price) / tf1m.current_price * 100, 2)
    if tf5m is not None and _positive(tf5m.atr14):
        return round(tf5m.atr14 / price * 100, 2)
    return float(default)


def analyze_structure_strength(snapshot: MarketSnapshot) -> Optional[str]:
    gap = _gap_pct(snapshot.timeframe("5m"))
    if gap is None:
        return None
    gap = abs(gap)
    if gap < 0.3:
        return "weak"
    if gap > 1.2:
        return "strong"
    return "normal"


def analyze_micro_rhythm(snapshot: MarketSnapshot, side: Side) -> Optional[str]:
    tf1m = snapshot.timeframe("1m")
    gap = _gap_pct(tf1m)
    if gap is None:
        return None
    impulse = tf1m.impulse_direction or 0
    rising = gap > MICRO_GAP_PCT and impulse > 0
    falling = gap < -MICRO_GAP_PCT and impulse < 0
    if side is Side.LONG:
        if rising:
            return "favorable"
        if falling:
            return "unfavorable"
    else:
        if falling:
            return "favorable"
        if rising:
            return "unfavorable"
    return "neutral"


def analyze_market_state(snapshot: MarketSnapshot) -> Optional[str]:
    gap5m = _gap_pct(snapshot.timeframe("5m"))
    gap1m = _gap_pct(snapshot.timeframe("1m"))
    if gap5m is None or gap1m is None:
        return None
    gap5m, gap1m = abs(gap5m), abs(gap1m)
    if gap5m > 0.8:
        return "trend"
    if gap5m > 0.3:
        # 5m still trending while 1m hugs its EMA: a pullback inside the trend
        return "trend_with_pullback" if gap1m < 0.3 else "trend"
    if gap5m < 0.15:
        return "range"
    return "breakout_attempt"


@dataclass(frozen=True)
class MarketSignals:
    volatility: float
    structure_strength: str
    micro_rhythm: str
    market_state: str


def derive_signals(snapshot: Optional[MarketSnapshot], side: Side) -> Optional[MarketSignals]:
    """All four signals, or None when any of them cannot be computed."""
    if snapshot is None:
        return None
    volatility = calculate_volatility(snapshot)
    structure = analyze_structure_strength(snapshot)
    rhythm = analyze_micro_rhythm(snapshot, side)
    state = analyze_market_state(snapshot)
    if volatility is None or not _finite(volatility) or None in (structure, rhythm, state):
        return None
    return MarketSignals(volatility, structure, rhythm, state)


# ----------------------------------------------------------------------
# Calculator
# ----------------------------------------------------------------------
class ThresholdCalculator:
    """Turns (leverage, side, optional snapshot) into a ThresholdDecision."""

    def __init__(
        self,
        strategy: StrategyConfig,
        *,
        min_percent: Optional[float] = None,
        max_percent: Optional[float] = None,
    ) -> None:
        self.strategy = strategy
        self.stop_loss: StopLossConfig = strategy.require_protection()
        self.min_percent = float(config.DYNAMIC_MIN_PERCENT if min_percent is None else min_percent)
        self.max_percent = float(config.DYNAMIC_MAX_PERCENT if max_percent is None else max_percent)
        self.low_edge, self.mid_edge = static_band_edges(strategy.leverage_min, strategy.leverage_max)

    @property
    def is_dynamic(self) -> bool:
        return self.stop_loss.is_dynamic

    def describe_static_bands(self) -> List[Dict[str, object]]:
        sl = self.stop_loss
        lev_min = self.strategy.leverage_min
        return [
            {"level": "low", "leverage": f"{lev_min:g}-{self.low_edge}x", "threshold": sl.low},
            {"level": "mid", "leverage": f"{self.low_edge + 1}-{self.mid_edge}x", "threshold": sl.mid},
            {"level": "high", "leverage": f">={self.mid_edge + 1}x", "threshold": sl.high},
        ]

    def static_threshold(self, leverage: float) -> ThresholdDecision:
        sl = self.stop_loss
        if leverage > self.mid_edge:
            return ThresholdDecision(
                threshold_percent=sl.high,
                risk_level="static-high",
                description=f"leverage above {self.mid_edge}x, fixed stop {sl.high:.2f}%",
                is_dynamic=False,
            )
        if leverage > self.low_edge:
            return ThresholdDecision(
                threshold_percent=sl.mid,
                risk_level="static-mid",
                description=f"leverage {self.low_edge + 1}-{self.mid_edge}x, fixed stop {sl.mid:.2f}%",
                is_dynamic=False,
            )
        return ThresholdDecision(
            threshold_percent=sl.low,
            risk_level="static-low",
            description=f"leverage {self.strategy.leverage_min:g}-{self.low_edge}x, fixed stop {sl.low:.2f}%",
            is_dynamic=False,
        )

    def threshold(
        self,
        symbol: str,
        leverage: float,
        side: Side,
        snapshot: Optional[MarketSnapshot] = None,
    ) -> ThresholdDecision:
        if not self.is_dynamic or snapshot is None:
            return self.static_threshold(leverage)

        signals = derive_signals(snapshot, side)
        if signals is None:
            log_json(logger, logging.INFO, {"event": "dynamic_stop_fallback", "symbol": symbol, "reason": "missing_inputs"})
            return self.static_threshold(leverage)

        try:
            raw = float(
                self.stop_loss.calculate(
                    signals.volatility,
                    leverage,
                    signals.structure_strength,
                    signals.micro_rhythm,
                    signals.market_state,
                )
            )
        except Exception as exc:
            log_json(
                logger,
                logging.WARNING,
                {"event": "dynamic_stop_fallback", "symbol": symbol, "reason": "calculator_error", "error": str(exc)},
            )
            return self.static_threshold(leverage)

        if not math.isfinite(raw):
            log_json(logger, logging.WARNING, {"event": "dynamic_stop_fallback", "symbol": symbol, "reason": "non_finite"})
            return self.static_threshold(leverage)

        value = max(self.min_percent, min(self.max_percent, raw))
        log_json(
            logger,
            logging.INFO,
            {
                "event": "dynamic_stop",
                "symbol": symbol,
                "leverage": leverage,
                "volatility": signals.volatility,
                "structure": signals.structure_strength,
                "micro_rhythm": signals.micro_rhythm,
                "market_state": signals.market_state,
                "raw": raw,
                "threshold": value,
            },
        )
        return ThresholdDecision(
            threshold_percent=value,
            risk_level="dynamic",
            description=(
                f"dynamic stop {value:.2f}% (volatility {signals.volatility:.2f}%, "
                f"{signals.structure_strength} structure, {signals.micro_rhythm} rhythm, {signals.market_state})"
            ),
            is_dynamic=True,
        )
