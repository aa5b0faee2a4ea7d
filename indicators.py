import numpy as np
import pandas as pd


def ema(series: pd.Series, span: int) -> pd.Series:
    return series.ewm(span=span, adjust=False).mean()


def atr(df: pd.DataFrame, n=14) -> float:
    h, l, c = df['high'], df['low'], df['close']
    tr1 = (h - l).abs()
    tr2 = (h - c.shift(1)).abs()
    tr3 = (l - c.shift(1)).abs()
    tr = pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)
    return tr.rolling(n).mean().iloc[-1]


def impulse_direction(df: pd.DataFrame, lookback=3) -> int:
    """Sign of the close-to-close move over the last `lookback` bars (+1 / 0 / -1)."""
    close = df['close']
    if len(close) <= lookback:
        return 0
    move = close.iloc[-1] - close.iloc[-1 - lookback]
    if pd.isna(move):
        return 0
    return int(np.sign(move))
