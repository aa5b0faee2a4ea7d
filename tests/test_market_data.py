import pandas as pd
import pytest

from indicators import atr, ema, impulse_direction
from position_guard.errors import TransientFetchError
from position_guard.market_data import MarketSnapshotProvider, candles_to_frame, summarize_timeframe

pytestmark = pytest.mark.unit


def _candles(n, start=100.0, step=0.5):
    out = []
    for i in range(n):
        close = start + i * step
        out.append([1_700_000_000_000 + i * 60_000, close - 0.2, close + 1.0, close - 1.0, close, 10.0])
    return out


class _CandleExchange:
    def __init__(self, by_timeframe):
        self.by_timeframe = by_timeframe
        self.calls = []

    def fetch_ohlcv(self, symbol, timeframe, limit):
        self.calls.append((symbol, timeframe, limit))
        value = self.by_timeframe[timeframe]
        if isinstance(value, Exception):
            raise value
        return value


def test_summarize_full_history():
    snap = summarize_timeframe(candles_to_frame(_candles(30)))
    assert snap.current_price == pytest.approx(114.5)
    assert snap.ema20 is not None and snap.ema20 < snap.current_price
    # steady 0.5 drift with a 2.0 high-low range
    assert snap.atr14 == pytest.approx(2.0)
    assert snap.impulse_direction == 1


def test_summarize_short_history_drops_indicators():
    snap = summarize_timeframe(candles_to_frame(_candles(10)))
    assert snap.current_price == pytest.approx(104.5)
    assert snap.ema20 is None
    assert snap.atr14 is None


def test_summarize_empty_frame():
    snap = summarize_timeframe(candles_to_frame([]))
    assert snap.current_price is None
    assert snap.impulse_direction == 0


def test_impulse_direction_signs():
    down = pd.DataFrame({"close": [5.0, 4.0, 3.0, 2.0]})
    flat = pd.DataFrame({"close": [5.0, 4.0, 6.0, 5.0]})
    assert impulse_direction(down) == -1
    assert impulse_direction(flat) == 0
    assert impulse_direction(down.iloc[:2]) == 0


def test_ema_and_atr_helpers():
    series = pd.Series([1.0] * 25)
    assert ema(series, 20).iloc[-1] == pytest.approx(1.0)
    df = candles_to_frame(_candles(20))
    assert atr(df, 14) == pytest.approx(2.0)


def test_provider_builds_both_timeframes():
    exchange = _CandleExchange({"1m": _candles(30), "5m": _candles(30, start=90.0)})
    provider = MarketSnapshotProvider(exchange, candle_limit=50)

    snapshot = provider.fetch("BTC/USDT:USDT", 114.0)

    assert snapshot.price == 114.0
    assert set(snapshot.timeframes) == {"1m", "5m"}
    assert snapshot.timeframe("5m").current_price == pytest.approx(104.5)
    assert exchange.calls == [("BTC/USDT:USDT", "1m", 50), ("BTC/USDT:USDT", "5m", 50)]


def test_provider_rejects_malformed_candles():
    exchange = _CandleExchange({"1m": [[1, 2, 3]], "5m": _candles(30)})
    with pytest.raises(TransientFetchError):
        MarketSnapshotProvider(exchange).fetch("BTC/USDT:USDT", 100.0)


def test_provider_propagates_fetch_errors():
    exchange = _CandleExchange({"1m": _candles(30), "5m": TransientFetchError("ohlcv 5m: timeout")})
    with pytest.raises(TransientFetchError):
        MarketSnapshotProvider(exchange).fetch("BTC/USDT:USDT", 100.0)
