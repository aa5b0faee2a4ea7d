"""Stop-loss close execution.

Submit -> Confirm -> Resolve price -> Compute PnL -> Persist -> Cleanup.

The exit price comes from an ordered list of price sources (confirmed fill,
live ticker, the triggering tick's price); the first positive finite value
wins. Every step after Submit degrades instead of failing, so a submitted
close always leaves a trade record behind.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

import config
from position_guard.errors import GuardError, OrderConfirmationTimeout, TransientFetchError
from position_guard.events import EventBus, bus as default_bus
from position_guard.exchange_api import ExchangeAPI, OrderStatus
from position_guard.log import log_json
from position_guard.metrics import MetricsManager
from position_guard.models import ClosedPosition, DecisionRecord, Side, TradeRecord, TradeStatus, TradeType
from position_guard.storage import TradeRepository, utc_now

__all__ = [
    "ExecutionEngine",
    "PriceSource",
    "compute_realized_pnl",
    "resolve_price",
]

logger = logging.getLogger(__name__)

# (name, fetch) where fetch returns a price or None; exceptions count as "no price"
PriceSource = Tuple[str, Callable[[], Optional[float]]]


def compute_realized_pnl(
    side: Side,
    entry_price: float,
    exit_price: float,
    quantity: float,
    multiplier: float,
    fee_rate: Optional[float] = None,
) -> Tuple[float, float]:
    """Return ``(net_pnl, fee)``; the fee covers both the opening and the closing leg."""
    rate = config.FEE_RATE if fee_rate is None else fee_rate
    gross = (exit_price - entry_price) * quantity * multiplier * Side(side).sign
    fee = (entry_price + exit_price) * quantity * multiplier * rate
    return gross - fee, fee


def _usable(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def resolve_price(sources: Sequence[PriceSource], *, symbol: str = "") -> Tuple[Optional[float], Optional[str]]:
    """Try each source in order; return ``(price, source_name)`` or ``(None, None)``."""
    for name, fetch in sources:
        try:
            value = fetch()
        except GuardError as exc:
            log_json(logger, logging.WARNING, {"event": "price_source_failed", "symbol": symbol, "source": name, "error": str(exc)})
            continue
        if _usable(value):
            return float(value), name
        log_json(logger, logging.WARNING, {"event": "price_source_empty", "symbol": symbol, "source": name, "value": value})
    return None, None


@dataclass
class _Confirmation:
    filled: bool
    fill_price: Optional[float] = None
    fill_size: Optional[float] = None


class ExecutionEngine:
    def __init__(
        self,
        exchange: ExchangeAPI,
        store: TradeRepository,
        *,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsManager] = None,
        notifier=None,
        sleep: Callable[[float], None] = time.sleep,
        confirm_attempts: Optional[int] = None,
        confirm_interval: Optional[float] = None,
        settle_sec: Optional[float] = None,
        fee_rate: Optional[float] = None,
    ) -> None:
        self.exchange = exchange
        self.store = store
        self.events = events or default_bus
        self.metrics = metrics
        self.notifier = notifier
        self._sleep = sleep
        self.confirm_attempts = int(config.ORDER_CONFIRM_ATTEMPTS if confirm_attempts is None else confirm_attempts)
        self.confirm_interval = float(config.ORDER_CONFIRM_INTERVAL_SEC if confirm_interval is None else confirm_interval)
        self.settle_sec = float(config.ORDER_SUBMIT_SETTLE_SEC if settle_sec is None else settle_sec)
        self.fee_rate = float(config.FEE_RATE if fee_rate is None else fee_rate)

    # ------------------------------------------------------------------
    # Confirm
    # ------------------------------------------------------------------
    def _poll_fill(self, order_id: str, symbol: str) -> OrderStatus:
        """Poll until the order is finished with a positive fill price."""
        for attempt in range(1, self.confirm_attempts + 1):
            self._sleep(self.confirm_interval)
            try:
                status = self.exchange.fetch_order_status(order_id, symbol)
            except TransientFetchError as exc:
                log_json(
                    logger,
                    logging.WARNING,
                    {"event": "order_status_failed", "symbol": symbol, "order_id": order_id, "attempt": attempt, "error": str(exc)},
                )
                continue
            if status.finished and _usable(status.fill_price):
                return status
        raise OrderConfirmationTimeout(f"order {order_id} not confirmed after {self.confirm_attempts} polls")

    def _confirm(self, order_id: str, symbol: str) -> _Confirmation:
        if self.settle_sec > 0:
            self._sleep(self.settle_sec)
        try:
            status = self._poll_fill(order_id, symbol)
        except OrderConfirmationTimeout as exc:
            log_json(logger, logging.WARNING, {"event": "order_unconfirmed", "symbol": symbol, "order_id": order_id, "error": str(exc)})
            return _Confirmation(filled=False)
        log_json(logger, logging.INFO, {"event": "order_filled", "symbol": symbol, "order_id": order_id, "price": status.fill_price, "size": status.size})
        return _Confirmation(
            filled=True,
            fill_price=status.fill_price,
            fill_size=status.size if _usable(status.size) else None,
        )

    # ------------------------------------------------------------------
    # Resolve price
    # ------------------------------------------------------------------
    def price_sources(self, symbol: str, confirmation: _Confirmation, current_price: float) -> List[PriceSource]:
        return [
            ("fill", lambda: confirmation.fill_price),
            ("ticker", lambda: self.exchange.fetch_ticker_price(symbol)),
            ("tick", lambda: current_price),
        ]

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def close_position(
        self,
        symbol: str,
        side: Side,
        quantity: float,
        entry_price: float,
        current_price: float,
        leverage: float,
        pnl_percent: float,
        threshold_percent: float,
        risk_label: str,
    ) -> bool:
        side = Side(side)
        log_json(
            logger,
            logging.ERROR,
            {
                "event": "stop_loss_trigger",
                "symbol": symbol,
                "side": side.value,
                "risk_level": risk_label,
                "pnl_percent": round(pnl_percent, 4),
                "threshold": threshold_percent,
                "leverage": leverage,
            },
        )
        try:
            return self._close(
                symbol, side, quantity, entry_price, current_price, leverage, pnl_percent, threshold_percent, risk_label
            )
        except Exception as exc:
            log_json(logger, logging.ERROR, {"event": "close_failed", "symbol": symbol, "error": str(exc), "error_type": type(exc).__name__})
            if self.metrics is not None:
                self.metrics.inc_close_failure(type(exc).__name__)
            if self.notifier is not None:
                self.notifier.notify_close_failed(symbol, str(exc))
            return False

    def _close(
        self,
        symbol: str,
        side: Side,
        quantity: float,
        entry_price: float,
        current_price: float,
        leverage: float,
        pnl_percent: float,
        threshold_percent: float,
        risk_label: str,
    ) -> bool:
        # Submit
        order_id = self.exchange.place_close_order(symbol, side, quantity)
        log_json(logger, logging.INFO, {"event": "close_order_submitted", "symbol": symbol, "order_id": order_id, "quantity": quantity})

        # Confirm
        confirmation = self._confirm(order_id, symbol)
        exit_quantity = confirmation.fill_size or quantity

        # Resolve price
        exit_price, source = resolve_price(self.price_sources(symbol, confirmation, current_price), symbol=symbol)
        if exit_price is None:
            log_json(logger, logging.ERROR, {"event": "exit_price_unresolved", "symbol": symbol, "order_id": order_id})
            exit_price = 0.0
        elif source != "fill":
            log_json(logger, logging.WARNING, {"event": "exit_price_fallback", "symbol": symbol, "source": source, "price": exit_price})

        # Compute PnL
        pnl, fee = 0.0, 0.0
        if exit_price > 0:
            try:
                multiplier = self.exchange.contract_multiplier(symbol)
            except TransientFetchError as exc:
                # left at zero; the repairer recomputes once the multiplier is reachable
                log_json(logger, logging.ERROR, {"event": "pnl_unavailable", "symbol": symbol, "error": str(exc)})
            else:
                pnl, fee = compute_realized_pnl(side, entry_price, exit_price, exit_quantity, multiplier, self.fee_rate)

        # Persist
        now = utc_now()
        self.store.insert_trade(
            TradeRecord(
                order_id=order_id,
                symbol=symbol,
                side=side,
                type=TradeType.CLOSE,
                price=exit_price,
                quantity=exit_quantity,
                leverage=leverage,
                pnl=pnl,
                fee=fee,
                timestamp=now,
                status=TradeStatus.FILLED if confirmation.filled else TradeStatus.PENDING,
            )
        )
        self.store.insert_decision(
            self._decision_record(now, symbol, side, leverage, pnl_percent, threshold_percent, risk_label, exit_price, pnl)
        )
        self.store.delete_position(symbol)
        log_json(
            logger,
            logging.INFO,
            {"event": "close_recorded", "symbol": symbol, "order_id": order_id, "price": exit_price, "pnl": round(pnl, 4), "fee": round(fee, 6), "filled": confirmation.filled},
        )

        # Cleanup: subscribers (reconciliation, notifications) run after the close is on record
        closed = ClosedPosition(
            symbol=symbol,
            side=side,
            order_id=order_id,
            exit_price=exit_price,
            quantity=exit_quantity,
            pnl=pnl,
            fee=fee,
            filled=confirmation.filled,
        )
        self.events.emit(self.events.position_closed, self, closed=closed)
        if self.notifier is not None:
            self.notifier.notify_closed(closed)
        return True

    @staticmethod
    def _decision_record(
        timestamp: datetime,
        symbol: str,
        side: Side,
        leverage: float,
        pnl_percent: float,
        threshold_percent: float,
        risk_label: str,
        exit_price: float,
        pnl: float,
    ) -> DecisionRecord:
        text = "\n".join(
            [
                f"[stop-loss triggered - {risk_label}] {symbol} {side.value}",
                f"risk level: {risk_label}",
                f"leverage: {leverage:g}x",
                f"pnl: {pnl_percent:.2f}%",
                f"stop line: {threshold_percent:.2f}%",
                f"exit price: {exit_price:.2f}",
                f"realized pnl: {pnl:+.2f} USDT",
                "",
                f"trigger: loss {pnl_percent:.2f}% reached the {risk_label} stop line {threshold_percent:.2f}%",
            ]
        )
        return DecisionRecord(
            timestamp=timestamp,
            iteration=0,
            market_analysis={
                "trigger": "stop_loss",
                "symbol": symbol,
                "pnlPercent": pnl_percent,
                "stopLossThreshold": threshold_percent,
                "riskLevel": risk_label,
            },
            decision=text,
            actions_taken=[{"action": "close_position", "symbol": symbol, "reason": "stop_loss"}],
        )
