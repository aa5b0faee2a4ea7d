from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Optional

import ccxt

import config
from broker_gate import GateAuthError
from position_guard.errors import ConfigurationError, TransientFetchError
from position_guard.events import EventBus, bus as default_bus
from position_guard.exchange_api import ExchangeAPI
from position_guard.execution import ExecutionEngine
from position_guard.log import configure_logging, log_json
from position_guard.market_data import MarketSnapshotProvider
from position_guard.metrics import MetricsManager, start_metrics_server
from position_guard.monitor import Monitor
from position_guard.notifier import SlackNotifier
from position_guard.reconciliation import ReconciliationRepairer
from position_guard.storage import TradeRepository, open_repository
from position_guard.strategy_config import load_strategy_config

logger = logging.getLogger(__name__)


@dataclass
class Components:
    exchange: ExchangeAPI
    store: TradeRepository
    execution: ExecutionEngine
    repairer: ReconciliationRepairer
    monitor: Monitor


def build_components(
    *,
    exchange: Optional[ExchangeAPI] = None,
    store: Optional[TradeRepository] = None,
    events: Optional[EventBus] = None,
    metrics: Optional[MetricsManager] = None,
    notifier: Optional[SlackNotifier] = None,
    strategy_name: Optional[str] = None,
) -> Components:
    """Wire exchange, storage, execution, repairer and monitor together."""
    exchange = exchange or ExchangeAPI(auto_connect=True)
    store = store or open_repository()
    events = events or default_bus
    strategy = load_strategy_config(strategy_name)

    execution = ExecutionEngine(exchange, store, events=events, metrics=metrics, notifier=notifier)
    repairer = ReconciliationRepairer(exchange, store, metrics=metrics)
    repairer.subscribe(events)
    if notifier is not None:

        def _on_trigger(sender, *, symbol, pnl_percent, threshold, risk_level, **_kw):
            notifier.notify_stop_triggered(symbol, pnl_percent, threshold, risk_level)

        events.stop_loss_triggered.connect(_on_trigger, weak=False)
    monitor = Monitor(
        exchange,
        execution,
        strategy=strategy,
        snapshots=MarketSnapshotProvider(exchange),
        repairer=repairer,
        metrics=metrics,
    )
    return Components(exchange=exchange, store=store, execution=execution, repairer=repairer, monitor=monitor)


def _metrics(strategy_name: str, port: int) -> Optional[MetricsManager]:
    if port <= 0:
        return None
    return start_metrics_server(port, strategy=strategy_name)


def cmd_run(args: argparse.Namespace) -> int:
    strategy_name = args.strategy or config.TRADING_STRATEGY
    components = build_components(
        metrics=_metrics(strategy_name, args.metrics_port),
        notifier=SlackNotifier(),
        strategy_name=strategy_name,
    )
    monitor = components.monitor
    if not monitor.start():
        return 1

    done = threading.Event()

    def _shutdown(signum, _frame) -> None:
        log_json(logger, logging.INFO, {"event": "shutdown", "signal": signum})
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    while not done.wait(1.0):
        pass
    monitor.stop(wait=True, timeout=max(monitor.interval, 30.0))
    return 0


def cmd_tick(args: argparse.Namespace) -> int:
    components = build_components(strategy_name=args.strategy)
    monitor = components.monitor
    monitor.calculator()
    monitor.tick()
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    components = build_components(strategy_name=args.strategy)
    repairer = components.repairer
    if args.symbol:
        outcome = repairer.repair(args.symbol)
        print(f"{args.symbol}: {outcome.value}")
        return 0 if outcome.fixed else 2
    outcomes = repairer.sweep()
    for symbol, outcome in sorted(outcomes.items()):
        print(f"{symbol}: {outcome.value}")
    return 0


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Position risk monitor and stop-loss engine")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--strategy", default=None, help="Strategy preset (default: config.TRADING_STRATEGY)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the monitor until SIGINT/SIGTERM")
    run.add_argument("--metrics-port", type=int, default=config.METRICS_PORT, help="Prometheus port (0 disables)")
    run.set_defaults(func=cmd_run)

    tick = sub.add_parser("tick", help="Run a single monitor tick")
    tick.set_defaults(func=cmd_tick)

    reconcile = sub.add_parser("reconcile", help="Repair the latest close record(s)")
    reconcile.add_argument("--symbol", default=None, help="Repair one symbol instead of sweeping recent closes")
    reconcile.set_defaults(func=cmd_reconcile)
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.log_level, config.LOG_FILE)
    try:
        return args.func(args)
    except ConfigurationError as exc:
        log_json(logger, logging.ERROR, {"event": "monitor_refused", "error": str(exc)})
        return 1
    except GateAuthError as exc:
        log_json(logger, logging.ERROR, {"event": "exchange_auth_failed", "error": str(exc)})
        return 1
    except (ccxt.BaseError, TransientFetchError) as exc:
        log_json(logger, logging.ERROR, {"event": "exchange_unavailable", "error": str(exc), "error_type": type(exc).__name__})
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
