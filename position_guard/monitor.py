"""Periodic stop-loss monitor.

``Monitor`` owns the per-symbol MonitorRecords and the worker thread. Each tick
reads open positions from the exchange, computes leveraged pnl%, asks the
ThresholdCalculator for the stop line and hands breaches to the
ExecutionEngine. Ticks never overlap.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Iterable, Optional

import config
from position_guard.decision_log import log_decision_conclusion, stop_loss_conclusion
from position_guard.errors import ConfigurationError, InvalidPositionData
from position_guard.exchange_api import ExchangeAPI
from position_guard.execution import ExecutionEngine
from position_guard.log import log_json
from position_guard.market_data import MarketSnapshotProvider
from position_guard.metrics import MetricsManager
from position_guard.models import MarketSnapshot, MonitorRecord, Position, Side
from position_guard.reconciliation import ReconciliationRepairer
from position_guard.strategy_config import StrategyConfig, load_strategy_config
from position_guard.thresholds import ThresholdCalculator

__all__ = ["Monitor", "calculate_pnl_percent", "HEARTBEAT_EVERY"]

logger = logging.getLogger(__name__)

HEARTBEAT_EVERY = 10


def calculate_pnl_percent(entry_price: float, current_price: float, side: Side, leverage: float) -> float:
    """Leveraged pnl in percent of margin: positive is profit for either side."""
    change = (current_price - entry_price) / entry_price * 100
    return change * Side(side).sign * leverage


def _require_valid(position: Position) -> None:
    if not position.is_valid():
        raise InvalidPositionData(
            f"{position.symbol}: entry={position.entry_price!r} mark={position.mark_price!r} leverage={position.leverage!r}"
        )


class Monitor:
    def __init__(
        self,
        exchange: ExchangeAPI,
        execution: ExecutionEngine,
        *,
        strategy: Optional[StrategyConfig] = None,
        snapshots: Optional[MarketSnapshotProvider] = None,
        repairer: Optional[ReconciliationRepairer] = None,
        metrics: Optional[MetricsManager] = None,
        interval: Optional[float] = None,
        sweep_interval: Optional[float] = None,
        decision_log_path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.exchange = exchange
        self.execution = execution
        self.snapshots = snapshots
        self.repairer = repairer
        self.metrics = metrics
        self.interval = float(config.MONITOR_INTERVAL_SEC if interval is None else interval)
        self.sweep_interval = float(config.RECONCILE_SWEEP_INTERVAL_SEC if sweep_interval is None else sweep_interval)
        self.decision_log_path = decision_log_path
        self._clock = clock
        self._strategy = strategy
        self._calculator: Optional[ThresholdCalculator] = None

        self.records: Dict[str, MonitorRecord] = {}
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._refusal_logged = False
        self._last_sweep: Optional[float] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def strategy(self) -> StrategyConfig:
        if self._strategy is None:
            self._strategy = load_strategy_config()
        return self._strategy

    def calculator(self) -> ThresholdCalculator:
        """Build (once) the threshold calculator; raises ConfigurationError when protection is off."""
        if self._calculator is None:
            self._calculator = ThresholdCalculator(self.strategy)
        return self._calculator

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> bool:
        try:
            calculator = self.calculator()
        except ConfigurationError as exc:
            if not self._refusal_logged:
                log_json(logger, logging.ERROR, {"event": "monitor_refused", "error": str(exc)})
                self._refusal_logged = True
            return False
        if self._running:
            logger.warning("Stop-loss monitor already running")
            return False

        previous = self._thread
        if previous is not None and previous is not threading.current_thread():
            # a stopped worker may still be finishing its last tick
            previous.join()
        self._log_banner(calculator)
        self._running = True
        stop_event = threading.Event()
        self._stop_event = stop_event
        self.tick()
        self._maybe_sweep()
        self._thread = threading.Thread(target=self._run, args=(stop_event,), name="stop-loss-monitor", daemon=True)
        self._thread.start()
        return True

    def stop(self, *, wait: bool = False, timeout: Optional[float] = None) -> bool:
        if not self._running:
            logger.warning("Stop-loss monitor is not running")
            return False
        self._running = False
        self._stop_event.set()
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Stop-loss monitor stopped")
        return True

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            self.tick()
            self._maybe_sweep()
        # records belong to the worker; drop them once its last tick is done
        with self._tick_lock:
            self.records.clear()
        if self.metrics is not None:
            self.metrics.set_monitored(0)

    def _log_banner(self, calculator: ThresholdCalculator) -> None:
        strategy = self.strategy
        mode = calculator.stop_loss.mode.value
        logger.info("Stop-loss monitor starting (strategy=%s mode=%s interval=%ss)", strategy.name, mode, self.interval)
        logger.info("  leverage range: %gx-%gx", strategy.leverage_min, strategy.leverage_max)
        for band in calculator.describe_static_bands():
            logger.info("  %-4s leverage %-8s stop %.2f%%", band["level"], band["leverage"], band["threshold"])
        if calculator.is_dynamic:
            logger.info(
                "  dynamic stops from 1m/5m volatility, structure and rhythm (clamped to %.2f%%..%.2f%%), static bands on fallback",
                calculator.min_percent,
                calculator.max_percent,
            )

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------
    def _maybe_sweep(self) -> None:
        if self.repairer is None or self.sweep_interval <= 0:
            return
        now = time.monotonic()
        if self._last_sweep is not None and now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        try:
            self.repairer.sweep()
        except Exception as exc:
            log_json(logger, logging.ERROR, {"event": "reconcile_sweep_failed", "error": str(exc)})

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def tick(self) -> bool:
        """Run one check cycle; returns False when skipped because a tick is in progress."""
        if not self._tick_lock.acquire(blocking=False):
            log_json(logger, logging.WARNING, {"event": "tick_skipped", "reason": "previous tick still running"})
            return False
        started = time.perf_counter()
        try:
            self._tick()
        except Exception as exc:
            log_json(logger, logging.ERROR, {"event": "tick_failed", "error": str(exc), "error_type": type(exc).__name__})
        finally:
            self._tick_lock.release()
            if self.metrics is not None:
                self.metrics.observe_tick_latency((time.perf_counter() - started) * 1000.0)
                self.metrics.set_heartbeat()
        return True

    def _tick(self) -> None:
        calculator = self.calculator()
        positions = self.exchange.fetch_open_positions()
        if not positions:
            self.records.clear()
            if self.metrics is not None:
                self.metrics.set_monitored(0)
            return

        snapshots: Dict[str, MarketSnapshot] = {}
        if calculator.is_dynamic:
            snapshots = self._fetch_snapshots(positions)

        now = self._clock()
        for position in positions:
            try:
                _require_valid(position)
            except InvalidPositionData as exc:
                log_json(logger, logging.WARNING, {"event": "invalid_position_data", "symbol": position.symbol, "error": str(exc)})
                continue
            self._check(position, calculator, snapshots.get(position.symbol), now)

        active = {p.symbol for p in positions}
        for symbol in list(self.records):
            if symbol not in active:
                del self.records[symbol]
                logger.debug("Dropped monitor record for closed position %s", symbol)
        if self.metrics is not None:
            self.metrics.set_monitored(len(self.records))

    def _fetch_snapshots(self, positions: Iterable[Position]) -> Dict[str, MarketSnapshot]:
        snapshots: Dict[str, MarketSnapshot] = {}
        if self.snapshots is None:
            return snapshots
        wanted = {}
        for position in positions:
            wanted.setdefault(position.symbol, position.mark_price)
        for symbol, price in wanted.items():
            try:
                snapshots[symbol] = self.snapshots.fetch(symbol, price)
            except Exception as exc:
                log_json(
                    logger,
                    logging.WARNING,
                    {"event": "snapshot_failed", "symbol": symbol, "error": str(exc), "fallback": "static"},
                )
        logger.debug("Dynamic mode: fetched %d/%d snapshots", len(snapshots), len(wanted))
        return snapshots

    def _check(
        self,
        position: Position,
        calculator: ThresholdCalculator,
        snapshot: Optional[MarketSnapshot],
        now: float,
    ) -> None:
        symbol = position.symbol
        pnl_percent = calculate_pnl_percent(position.entry_price, position.mark_price, position.side, position.leverage)

        record = self.records.get(symbol)
        if record is None:
            record = MonitorRecord(last_check_time=now)
            self.records[symbol] = record
            log_json(logger, logging.INFO, {"event": "monitoring_started", "symbol": symbol, "pnl_percent": round(pnl_percent, 4)})
        record.check_count += 1
        record.last_check_time = now
        if self.metrics is not None:
            self.metrics.inc_check()

        decision = calculator.threshold(symbol, position.leverage, position.side, snapshot)
        if pnl_percent > decision.threshold_percent:
            if record.check_count % HEARTBEAT_EVERY == 0:
                logger.debug(
                    "%s %s watching: %gx leverage, pnl %.2f%%, stop %.2f%%",
                    symbol,
                    decision.risk_level,
                    position.leverage,
                    pnl_percent,
                    decision.threshold_percent,
                )
            return

        log_json(
            logger,
            logging.ERROR,
            {
                "event": "stop_loss_breach",
                "symbol": symbol,
                "side": position.side.value,
                "dynamic": decision.is_dynamic,
                "risk_level": decision.risk_level,
                "description": decision.description,
                "leverage": position.leverage,
                "pnl_percent": round(pnl_percent, 4),
                "threshold": decision.threshold_percent,
            },
        )
        if self.metrics is not None:
            self.metrics.inc_trigger(decision.risk_level)
        self.execution.events.emit(
            self.execution.events.stop_loss_triggered,
            self,
            symbol=symbol,
            pnl_percent=pnl_percent,
            threshold=decision.threshold_percent,
            risk_level=decision.risk_level,
        )
        log_decision_conclusion(
            "hard stop",
            symbol,
            stop_loss_conclusion(
                symbol=symbol,
                side=position.side.value,
                leverage=position.leverage,
                entry_price=position.entry_price,
                current_price=position.mark_price,
                pnl_percent=pnl_percent,
                threshold=decision.threshold_percent,
                risk_level=decision.risk_level,
                description=decision.description,
                is_dynamic=decision.is_dynamic,
            ),
            {
                "type": "hard-stop-loss",
                "trigger": "automatic",
                "risk_level": decision.risk_level,
                "leverage": position.leverage,
                "pnl_percent": f"{pnl_percent:.2f}",
                "threshold": f"{decision.threshold_percent:.2f}",
                "is_dynamic": decision.is_dynamic,
            },
            path=self.decision_log_path,
        )

        closed = self.execution.close_position(
            symbol,
            position.side,
            position.quantity,
            position.entry_price,
            position.mark_price,
            position.leverage,
            pnl_percent,
            decision.threshold_percent,
            f"{decision.risk_level} - {decision.description}",
        )
        if closed:
            self.records.pop(symbol, None)
            logger.info("%s stop-loss close completed", symbol)
