import json
import logging
from datetime import datetime, timedelta

import ccxt
import pytest

import config
from position_guard import main as main_mod
from position_guard.models import Side, TradeRecord, TradeStatus, TradeType
from tests.helpers import FakeExchange, make_position

pytestmark = pytest.mark.unit

BTC = "BTC/USDT:USDT"


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture(autouse=True)
def wired(monkeypatch, tmp_path, exchange, store, events, decision_log_path):
    monkeypatch.setattr(config, "LOG_FILE", str(tmp_path / "logs" / "guard.log"))
    monkeypatch.setattr(config, "DECISION_LOG_PATH", decision_log_path)
    monkeypatch.setattr(config, "ORDER_SUBMIT_SETTLE_SEC", 0.0)
    monkeypatch.setattr(config, "ORDER_CONFIRM_INTERVAL_SEC", 0.0)
    real = main_mod.build_components
    monkeypatch.setattr(
        main_mod,
        "build_components",
        lambda **kw: real(exchange=exchange, store=store, events=events, **kw),
    )


def _seed_close(store, close_price=0.0):
    t0 = datetime(2024, 5, 1, 12, 0, 0)
    for trade_type, price, at in ((TradeType.OPEN, 100.0, t0), (TradeType.CLOSE, close_price, t0 + timedelta(minutes=1))):
        store.insert_trade(
            TradeRecord(
                order_id=trade_type.value,
                symbol=BTC,
                side=Side.LONG,
                type=trade_type,
                price=price,
                quantity=2.0,
                leverage=5.0,
                pnl=0.0,
                fee=0.0,
                timestamp=at,
                status=TradeStatus.PENDING,
            )
        )


def test_tick_closes_breached_position(exchange, store):
    exchange.positions = [make_position(BTC, entry=100.0, mark=98.0, leverage=5)]
    exchange.fills = {BTC: 98.0}

    assert main_mod.main(["--strategy", "swing-trend", "tick"]) == 0

    assert exchange.placed == [(BTC, Side.LONG, 1.0)]
    assert store.latest_close(BTC).status is TradeStatus.FILLED


def test_tick_refuses_strategy_without_protection(exchange):
    exchange.positions = [make_position(BTC, entry=100.0, mark=50.0, leverage=5)]

    assert main_mod.main(["--strategy", "ai-autonomous", "tick"]) == 1
    assert exchange.placed == []


def test_unknown_strategy_exits_non_zero():
    assert main_mod.main(["--strategy", "no-such-preset", "tick"]) == 1


def test_reconcile_single_symbol(exchange, store, capsys):
    _seed_close(store)
    exchange.tickers = {BTC: 110.0}

    assert main_mod.main(["reconcile", "--symbol", BTC]) == 0

    assert f"{BTC}: repaired" in capsys.readouterr().out
    assert store.latest_close(BTC).price == pytest.approx(110.0)


def test_reconcile_single_symbol_without_price(exchange, store, capsys):
    _seed_close(store)

    assert main_mod.main(["reconcile", "--symbol", BTC]) == 2
    assert f"{BTC}: no_price" in capsys.readouterr().out


def test_reconcile_sweep_with_nothing_recent(capsys):
    assert main_mod.main(["reconcile"]) == 0
    assert capsys.readouterr().out == ""


def test_exchange_connect_failure_exits_non_zero(monkeypatch, caplog):
    def _unreachable(**_kw):
        raise ccxt.NetworkError("gate: connection reset")

    monkeypatch.setattr(main_mod, "build_components", _unreachable)
    caplog.set_level(logging.ERROR, logger="position_guard.main")

    assert main_mod.main(["tick"]) == 1

    (line,) = [json.loads(r.getMessage()) for r in caplog.records if r.name == "position_guard.main"]
    assert line["event"] == "exchange_unavailable"
    assert line["error_type"] == "NetworkError"
