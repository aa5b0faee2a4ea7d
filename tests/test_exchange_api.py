import ccxt
import pytest

from position_guard.errors import OrderPlacementError, TransientFetchError
from position_guard.exchange_api import ExchangeAPI
from position_guard.models import Side

pytestmark = pytest.mark.unit


class _GateStub:
    """Records calls the way GateUSDT receives them."""

    def __init__(self, **responses):
        self.responses = responses
        self.orders = []
        self.contract_size_calls = 0

    def _answer(self, name):
        value = self.responses.get(name)
        if isinstance(value, Exception):
            raise value
        return value

    def load_markets(self):
        return None

    def fetch_positions(self):
        return self._answer("positions")

    def fetch_ticker(self, symbol):
        return self._answer("ticker")

    def fetch_ohlcv(self, symbol, timeframe, limit=100):
        return self._answer("ohlcv")

    def contract_size(self, symbol):
        self.contract_size_calls += 1
        return self._answer("contract_size")

    def create_reduce_only_market_order(self, symbol, side, qty):
        self.orders.append((symbol, side, qty))
        return self._answer("order")

    def fetch_order(self, order_id, symbol):
        return self._answer("fetched")


def test_positions_are_parsed_and_flat_ones_skipped():
    client = _GateStub(
        positions=[
            {"symbol": "BTC/USDT:USDT", "contracts": 3, "side": "long", "entryPrice": 50000, "markPrice": 49900, "leverage": 10},
            {"symbol": "ETH/USDT:USDT", "contracts": 2, "side": "short", "entryPrice": "3000", "markPrice": "3010", "leverage": "5"},
            {"symbol": "SOL/USDT:USDT", "contracts": 0, "side": "long", "entryPrice": 100, "markPrice": 100, "leverage": 3},
            {"symbol": "XRP/USDT:USDT", "info": {"size": "-7", "entry_price": "0.5", "mark_price": "0.49"}},
        ]
    )
    positions = ExchangeAPI(client=client).fetch_open_positions()

    assert [p.symbol for p in positions] == ["BTC/USDT:USDT", "ETH/USDT:USDT", "XRP/USDT:USDT"]
    btc, eth, xrp = positions
    assert (btc.side, btc.quantity, btc.entry_price, btc.leverage) == (Side.LONG, 3.0, 50000.0, 10.0)
    assert (eth.side, eth.quantity, eth.mark_price) == (Side.SHORT, 2.0, 3010.0)
    assert (xrp.side, xrp.quantity, xrp.entry_price) == (Side.SHORT, 7.0, 0.5)
    # missing leverage defaults to 1x
    assert xrp.leverage == 1.0


def test_missing_prices_become_nan_and_fail_validation():
    client = _GateStub(positions=[{"symbol": "BTC/USDT:USDT", "contracts": 1, "side": "long", "leverage": 5}])
    (position,) = ExchangeAPI(client=client).fetch_open_positions()
    assert position.is_valid() is False


def test_position_fetch_errors_are_transient():
    client = _GateStub(positions=ccxt.NetworkError("connection reset"))
    with pytest.raises(TransientFetchError):
        ExchangeAPI(client=client).fetch_open_positions()


@pytest.mark.parametrize(
    "ticker, expected",
    [
        ({"last": 101.5}, 101.5),
        ({"last": None, "markPrice": 101.0}, 101.0),
        ({"last": 0, "info": {"mark_price": "100.5"}}, 100.5),
        ({"last": None, "info": {}}, 0.0),
    ],
)
def test_ticker_price_fallbacks(ticker, expected):
    assert ExchangeAPI(client=_GateStub(ticker=ticker)).fetch_ticker_price("BTC/USDT:USDT") == expected


def test_ticker_errors_are_transient():
    client = _GateStub(ticker=ccxt.RequestTimeout("timeout"))
    with pytest.raises(TransientFetchError):
        ExchangeAPI(client=client).fetch_ticker_price("BTC/USDT:USDT")


def test_contract_multiplier_is_cached():
    client = _GateStub(contract_size=0.0001)
    api = ExchangeAPI(client=client)
    assert api.contract_multiplier("BTC/USDT:USDT") == 0.0001
    assert api.contract_multiplier("BTC/USDT:USDT") == 0.0001
    assert client.contract_size_calls == 1


def test_contract_multiplier_unavailable():
    client = _GateStub(contract_size=ccxt.ExchangeNotAvailable("maintenance"))
    with pytest.raises(TransientFetchError):
        ExchangeAPI(client=client).contract_multiplier("BTC/USDT:USDT")


@pytest.mark.parametrize("side, order_side", [(Side.LONG, "sell"), (Side.SHORT, "buy")])
def test_close_order_uses_opposite_side(side, order_side):
    client = _GateStub(order={"id": 12345})
    order_id = ExchangeAPI(client=client).place_close_order("BTC/USDT:USDT", side, 2.0)
    assert order_id == "12345"
    assert client.orders == [("BTC/USDT:USDT", order_side, 2.0)]


def test_close_order_rejections():
    api = ExchangeAPI(client=_GateStub(order=ccxt.InsufficientFunds("margin")))
    with pytest.raises(OrderPlacementError):
        api.place_close_order("BTC/USDT:USDT", Side.LONG, 1.0)
    with pytest.raises(OrderPlacementError):
        ExchangeAPI(client=_GateStub(order={})).place_close_order("BTC/USDT:USDT", Side.LONG, 1.0)
    with pytest.raises(OrderPlacementError):
        ExchangeAPI(client=_GateStub()).place_close_order("BTC/USDT:USDT", Side.LONG, 0.0)


def test_order_status_normalizes_ccxt_closed():
    client = _GateStub(fetched={"status": "closed", "average": 105.5, "filled": 2.0})
    status = ExchangeAPI(client=client).fetch_order_status("1", "BTC/USDT:USDT")
    assert status.finished is True
    assert (status.fill_price, status.size) == (105.5, 2.0)


def test_order_status_reads_raw_fields():
    client = _GateStub(fetched={"status": None, "info": {"status": "finished", "fill_price": "99.9", "size": "-3"}})
    status = ExchangeAPI(client=client).fetch_order_status("1", "BTC/USDT:USDT")
    assert status.finished is True
    assert (status.fill_price, status.size) == (99.9, 3.0)


def test_open_order_is_not_finished():
    client = _GateStub(fetched={"status": "open", "average": None, "filled": 0})
    assert ExchangeAPI(client=client).fetch_order_status("1", "BTC/USDT:USDT").finished is False
