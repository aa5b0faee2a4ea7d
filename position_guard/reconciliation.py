"""Self-healing of close trade records.

After a stop-loss close the stored exit price may be zero or an estimate. The
repairer recomputes price, pnl and fee for the latest close of a symbol from
its preceding open record and overwrites the row when they drift beyond
tolerance. Repairs are idempotent: a correct row is never written.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

import config
from position_guard.errors import ReconciliationError, TransientFetchError
from position_guard.events import EventBus
from position_guard.exchange_api import ExchangeAPI
from position_guard.execution import compute_realized_pnl
from position_guard.log import log_json
from position_guard.metrics import MetricsManager
from position_guard.models import ClosedPosition
from position_guard.storage import TradeRepository, utc_now

__all__ = ["RepairOutcome", "ReconciliationRepairer"]

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = 0.01
PNL_TOLERANCE = 0.5
FEE_TOLERANCE = 0.1


class RepairOutcome(str, Enum):
    REPAIRED = "repaired"
    ALREADY_CORRECT = "already_correct"
    NO_CLOSE_RECORD = "no_close_record"
    NO_OPEN_RECORD = "no_open_record"
    NO_PRICE = "no_price"
    EXCHANGE_UNAVAILABLE = "exchange_unavailable"

    @property
    def fixed(self) -> bool:
        return self in (RepairOutcome.REPAIRED, RepairOutcome.ALREADY_CORRECT)


class ReconciliationRepairer:
    def __init__(
        self,
        exchange: ExchangeAPI,
        store: TradeRepository,
        *,
        metrics: Optional[MetricsManager] = None,
        fee_rate: Optional[float] = None,
    ) -> None:
        self.exchange = exchange
        self.store = store
        self.metrics = metrics
        self.fee_rate = float(config.FEE_RATE if fee_rate is None else fee_rate)

    def _done(self, symbol: str, outcome: RepairOutcome, level: int = logging.WARNING, **details) -> RepairOutcome:
        payload = {"event": "repair_outcome", "symbol": symbol, "outcome": outcome.value}
        payload.update(details)
        log_json(logger, level, payload)
        if self.metrics is not None:
            self.metrics.inc_repair(outcome.value)
        return outcome

    def repair(self, symbol: str) -> RepairOutcome:
        """Verify the latest close of ``symbol``; never raises for missing data.

        Storage failures surface as ``ReconciliationError``.
        """
        close = self.store.latest_close(symbol)
        if close is None:
            return self._done(symbol, RepairOutcome.NO_CLOSE_RECORD, reason="cannot fix: no close record")
        opened = self.store.open_before(symbol, close.timestamp)
        if opened is None or not (math.isfinite(opened.price) and opened.price > 0):
            return self._done(symbol, RepairOutcome.NO_OPEN_RECORD, reason="cannot fix: no usable open record", close_id=close.id)

        stored_price = close.price
        exit_price = stored_price
        if not (math.isfinite(stored_price) and stored_price > 0):
            try:
                exit_price = self.exchange.fetch_ticker_price(symbol)
            except TransientFetchError as exc:
                return self._done(symbol, RepairOutcome.NO_PRICE, level=logging.ERROR, reason="cannot fix: ticker unavailable", error=str(exc), close_id=close.id)
            if not (math.isfinite(exit_price) and exit_price > 0):
                return self._done(symbol, RepairOutcome.NO_PRICE, level=logging.ERROR, reason="cannot fix: no valid price", close_id=close.id)

        try:
            multiplier = self.exchange.contract_multiplier(symbol)
        except TransientFetchError as exc:
            return self._done(symbol, RepairOutcome.EXCHANGE_UNAVAILABLE, level=logging.ERROR, reason="cannot fix: contract size unavailable", error=str(exc))

        pnl, fee = compute_realized_pnl(close.side, opened.price, exit_price, close.quantity, multiplier, self.fee_rate)

        price_diff = abs(stored_price - exit_price) if math.isfinite(stored_price) else math.inf
        pnl_diff = abs(close.pnl - pnl) if math.isfinite(close.pnl) else math.inf
        fee_diff = abs(close.fee - fee) if math.isfinite(close.fee) else math.inf
        if price_diff <= PRICE_TOLERANCE and pnl_diff <= PNL_TOLERANCE and fee_diff <= FEE_TOLERANCE:
            return self._done(symbol, RepairOutcome.ALREADY_CORRECT, level=logging.DEBUG, close_id=close.id)

        self.store.update_trade_values(close.id, price=exit_price, pnl=pnl, fee=fee)
        return self._done(
            symbol,
            RepairOutcome.REPAIRED,
            close_id=close.id,
            side=close.side.value,
            open_price=opened.price,
            price_before=stored_price,
            price_after=exit_price,
            pnl_before=close.pnl,
            pnl_after=round(pnl, 6),
            fee_before=close.fee,
            fee_after=round(fee, 6),
        )

    def sweep(self, since: Optional[datetime] = None) -> Dict[str, RepairOutcome]:
        """Repair every symbol with a close newer than ``since`` (default: the configured lookback)."""
        if since is None:
            since = utc_now() - timedelta(hours=float(config.RECONCILE_LOOKBACK_HOURS))
        outcomes: Dict[str, RepairOutcome] = {}
        for symbol in self.store.symbols_closed_since(since):
            try:
                outcomes[symbol] = self.repair(symbol)
            except ReconciliationError as exc:
                log_json(logger, logging.ERROR, {"event": "repair_failed", "symbol": symbol, "error": str(exc)})
        log_json(
            logger,
            logging.INFO,
            {"event": "reconcile_sweep", "since": since.isoformat(), "symbols": len(outcomes), "repaired": sum(1 for o in outcomes.values() if o is RepairOutcome.REPAIRED)},
        )
        return outcomes

    # --- event wiring ------------------------------------------------------
    def on_position_closed(self, sender, closed: ClosedPosition, **_kw) -> RepairOutcome:
        return self.repair(closed.symbol)

    def subscribe(self, events: EventBus) -> None:
        # receivers are weakly referenced by default
        events.position_closed.connect(self.on_position_closed, weak=False)
