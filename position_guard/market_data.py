from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, Optional, Sequence

import pandas as pd

import config
from indicators import atr, ema, impulse_direction
from position_guard.errors import TransientFetchError
from position_guard.exchange_api import ExchangeAPI
from position_guard.models import MarketSnapshot, TimeframeSnapshot

logger = logging.getLogger(__name__)

TIMEFRAMES: Sequence[str] = ("1m", "5m")
EMA_LEN = 20
ATR_LEN = 14


def _finite_or_none(value: Any) -> Optional[float]:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def candles_to_frame(ohlcv: Iterable[Iterable[Any]]) -> pd.DataFrame:
    df = pd.DataFrame(list(ohlcv), columns=["ts", "open", "high", "low", "close", "volume"])
    df["ts"] = pd.to_datetime(df["ts"], unit="ms", utc=True)
    return df


def summarize_timeframe(df: pd.DataFrame) -> TimeframeSnapshot:
    if df.empty:
        return TimeframeSnapshot()
    df = df.astype({"open": float, "high": float, "low": float, "close": float})
    close = df["close"]
    ema20 = _finite_or_none(ema(close, EMA_LEN).iloc[-1]) if len(close) >= EMA_LEN else None
    atr14 = _finite_or_none(atr(df, ATR_LEN)) if len(df) > ATR_LEN else None
    return TimeframeSnapshot(
        current_price=_finite_or_none(close.iloc[-1]),
        ema20=ema20,
        atr14=atr14,
        impulse_direction=impulse_direction(df),
    )


class MarketSnapshotProvider:
    """Builds per-symbol 1m/5m snapshots (price, EMA20, ATR14, impulse) from exchange candles."""

    def __init__(self, exchange: ExchangeAPI, *, candle_limit: Optional[int] = None) -> None:
        self.exchange = exchange
        self.candle_limit = int(candle_limit or config.CANDLE_LIMIT)

    def fetch(self, symbol: str, price: float) -> MarketSnapshot:
        timeframes: Dict[str, TimeframeSnapshot] = {}
        for tf in TIMEFRAMES:
            ohlcv = self.exchange.fetch_ohlcv(symbol, tf, self.candle_limit)
            try:
                timeframes[tf] = summarize_timeframe(candles_to_frame(ohlcv))
            except (ValueError, KeyError) as exc:
                raise TransientFetchError(f"malformed candles for {symbol} {tf}: {exc}") from exc
        return MarketSnapshot(symbol=symbol, price=float(price), timeframes=timeframes)
