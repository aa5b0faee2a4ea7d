from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Mapping, Optional

import config
from position_guard.errors import ConfigurationError

__all__ = [
    "StopLossMode",
    "StopLossConfig",
    "StrategyConfig",
    "DynamicCalculator",
    "register_strategy",
    "get_strategy",
    "available_strategies",
    "load_strategy_config",
    "swing_trend_dynamic_stop",
]

# (volatility_pct, leverage, structure_strength, micro_rhythm, market_state) -> threshold percent
DynamicCalculator = Callable[[float, float, str, str, str], float]


class StopLossMode(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"

    @classmethod
    def parse(cls, value: object) -> "StopLossMode":
        if isinstance(value, cls):
            return value
        text = str(value or "static").strip().lower()
        try:
            return cls(text)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown stop-loss mode: {value!r}") from exc


@dataclass(frozen=True)
class StopLossConfig:
    low: float
    mid: float
    high: float
    mode: StopLossMode = StopLossMode.STATIC
    calculate: Optional[DynamicCalculator] = None

    def __post_init__(self) -> None:
        for name in ("low", "mid", "high"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value >= 0:
                raise ConfigurationError(f"stop_loss.{name} must be a negative finite number, got {value!r}")
        if not (self.low >= self.mid >= self.high):
            raise ConfigurationError(
                f"stop_loss thresholds must widen with leverage (low >= mid >= high), "
                f"got low={self.low} mid={self.mid} high={self.high}"
            )
        if self.mode is StopLossMode.DYNAMIC and not callable(self.calculate):
            raise ConfigurationError("dynamic stop-loss mode requires a calculate function")

    @property
    def is_dynamic(self) -> bool:
        return self.mode is StopLossMode.DYNAMIC


@dataclass(frozen=True)
class StrategyConfig:
    name: str
    enable_code_level_protection: bool
    stop_loss: Optional[StopLossConfig]
    leverage_min: float
    leverage_max: float

    def __post_init__(self) -> None:
        if not (0 < self.leverage_min <= self.leverage_max):
            raise ConfigurationError(
                f"leverage range invalid for {self.name}: [{self.leverage_min}, {self.leverage_max}]"
            )

    def require_protection(self) -> StopLossConfig:
        """Return the stop-loss config, raising when the monitor must not run."""
        if not self.enable_code_level_protection:
            raise ConfigurationError(
                f"strategy {self.name!r} has code-level protection disabled (enable_code_level_protection = False)"
            )
        if self.stop_loss is None:
            raise ConfigurationError(f"strategy {self.name!r} has no stop-loss configuration")
        return self.stop_loss


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


_STRUCTURE_FACTOR = {"weak": 0.85, "normal": 1.0, "strong": 1.15}
_RHYTHM_FACTOR = {"favorable": 1.1, "neutral": 1.0, "unfavorable": 0.85}
_STATE_FACTOR = {"trend": 1.1, "trend_with_pullback": 1.2, "range": 0.9, "breakout_attempt": 1.0}


def swing_trend_dynamic_stop(
    volatility: float,
    leverage: float,
    structure_strength: str,
    micro_rhythm: str,
    market_state: str,
) -> float:
    """Price-distance stop of 0.55%..2.30% scaled by volatility and structure, expressed as leveraged pnl%."""
    base = _clamp(volatility * 0.8, 0.55, 2.30)
    factor = (
        _STRUCTURE_FACTOR.get(structure_strength, 1.0)
        * _RHYTHM_FACTOR.get(micro_rhythm, 1.0)
        * _STATE_FACTOR.get(market_state, 1.0)
    )
    price_pct = _clamp(base * factor, 0.55, 2.30)
    return -round(price_pct * leverage, 2)


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------
StrategyFactory = Callable[[int], StrategyConfig]

_REGISTRY: Dict[str, StrategyFactory] = {}


def register_strategy(name: str) -> Callable[[StrategyFactory], StrategyFactory]:
    def _decorator(factory: StrategyFactory) -> StrategyFactory:
        _REGISTRY[name] = factory
        return factory

    return _decorator


def get_strategy(name: str, max_leverage: int) -> StrategyConfig:
    try:
        factory = _REGISTRY[name]
    except KeyError:
        raise KeyError(f"Unknown strategy {name!r}; available: {sorted(_REGISTRY)}") from None
    return factory(int(max_leverage))


def available_strategies() -> Mapping[str, StrategyFactory]:
    return dict(_REGISTRY)


def _leverage_range(max_leverage: int, lo_frac: float, hi_frac: float) -> tuple:
    lev_min = max(2, math.ceil(max_leverage * lo_frac))
    lev_max = max(3, math.ceil(max_leverage * hi_frac))
    return lev_min, max(lev_min, lev_max)


@register_strategy("swing-trend")
def _swing_trend(max_leverage: int) -> StrategyConfig:
    lev_min, lev_max = _leverage_range(max_leverage, 0.3, 0.6)
    return StrategyConfig(
        name="swing-trend",
        enable_code_level_protection=True,
        stop_loss=StopLossConfig(low=-6.0, mid=-7.0, high=-8.0, calculate=swing_trend_dynamic_stop),
        leverage_min=lev_min,
        leverage_max=lev_max,
    )


@register_strategy("visual-pattern")
def _visual_pattern(max_leverage: int) -> StrategyConfig:
    lev_min, lev_max = _leverage_range(max_leverage, 0.60, 0.85)
    return StrategyConfig(
        name="visual-pattern",
        enable_code_level_protection=True,
        stop_loss=StopLossConfig(low=-5.5, mid=-6.5, high=-7.5),
        leverage_min=lev_min,
        leverage_max=lev_max,
    )


@register_strategy("multi-agent-consensus")
def _multi_agent_consensus(max_leverage: int) -> StrategyConfig:
    lev_min, lev_max = _leverage_range(max_leverage, 0.55, 0.80)
    return StrategyConfig(
        name="multi-agent-consensus",
        enable_code_level_protection=True,
        stop_loss=StopLossConfig(low=-6.0, mid=-7.0, high=-8.0),
        leverage_min=lev_min,
        leverage_max=lev_max,
    )


@register_strategy("ai-autonomous")
def _ai_autonomous(max_leverage: int) -> StrategyConfig:
    lev_min, lev_max = _leverage_range(max_leverage, 0.2, 1.0)
    return StrategyConfig(
        name="ai-autonomous",
        enable_code_level_protection=False,
        stop_loss=StopLossConfig(low=-8.0, mid=-10.0, high=-12.0),
        leverage_min=lev_min,
        leverage_max=lev_max,
    )


def load_strategy_config(
    name: Optional[str] = None,
    *,
    max_leverage: Optional[int] = None,
    mode: Optional[str] = None,
    overrides: Optional[Mapping[str, float]] = None,
) -> StrategyConfig:
    """Resolve the active strategy preset and apply runtime overrides from ``config``.

    The stop-loss mode is parsed into ``StopLossMode`` here, once, so the monitor
    never re-interprets the mode string per tick.
    """
    name = name or config.TRADING_STRATEGY
    max_leverage = int(max_leverage if max_leverage is not None else config.MAX_LEVERAGE)
    mode = mode if mode is not None else config.STOP_LOSS_MODE
    overrides = dict(overrides if overrides is not None else config.STOP_LOSS_OVERRIDE)

    try:
        strategy = get_strategy(name, max_leverage)
    except KeyError as exc:
        raise ConfigurationError(str(exc)) from exc

    stop_loss = strategy.stop_loss
    if stop_loss is None or not (mode or overrides):
        return strategy

    changes: Dict[str, object] = {k: float(v) for k, v in overrides.items() if k in ("low", "mid", "high")}
    if mode:
        changes["mode"] = StopLossMode.parse(mode)
    return replace(strategy, stop_loss=replace(stop_loss, **changes))
