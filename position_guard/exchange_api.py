"""Exchange API helpers.

Developer tip:
    python -c "from position_guard.exchange_api import ExchangeAPI; print(ExchangeAPI(auto_connect=True).fetch_open_positions())"
logs a POS_RAW line per position for inspection.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import ccxt  # type: ignore

from broker_gate import GateUSDT
from position_guard.errors import OrderPlacementError, TransientFetchError
from position_guard.models import Position, Side

__all__ = [
    "ExchangeAPI",
    "OrderStatus",
    "POSITION_EPS",
]

logger = logging.getLogger(__name__)


POSITION_EPS = 1e-8
FINISHED = "finished"

# ccxt unifies order states as open/closed/canceled; "closed" means fully filled.
_FINISHED_STATES = {"closed", "finished", "filled"}


@dataclass(frozen=True)
class OrderStatus:
    order_id: str
    status: str
    fill_price: float
    size: float

    @property
    def finished(self) -> bool:
        return self.status == FINISHED


def _float(value: Any, default: float = 0.0) -> float:
    if value in (None, "", b""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class ExchangeAPI:
    """Adapter around Gate.io USDT perpetuals; feeds the monitor, execution engine and repairer."""

    def __init__(
        self,
        client: Optional[GateUSDT] = None,
        auto_connect: bool = False,
    ) -> None:
        self.client = client or GateUSDT.from_config()
        self._multipliers: Dict[str, float] = {}
        if auto_connect:
            self.connect()

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------
    def connect(self) -> None:
        self.client.load_markets()

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------
    def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int) -> Iterable[Iterable[Any]]:
        try:
            return self.client.fetch_ohlcv(symbol, timeframe, limit=limit)
        except ccxt.BaseError as exc:
            raise TransientFetchError(f"ohlcv {symbol} {timeframe}: {exc}") from exc

    def fetch_ticker_price(self, symbol: str) -> float:
        """Last traded price, falling back to mark price; 0.0 when neither is usable."""
        try:
            ticker = self.client.fetch_ticker(symbol) or {}
        except ccxt.BaseError as exc:
            raise TransientFetchError(f"ticker {symbol}: {exc}") from exc
        info = ticker.get("info") or {}
        for value in (
            ticker.get("last"),
            ticker.get("markPrice"),
            info.get("mark_price"),
            info.get("markPrice"),
        ):
            price = _float(value)
            if math.isfinite(price) and price > 0:
                return price
        return 0.0

    def contract_multiplier(self, symbol: str) -> float:
        cached = self._multipliers.get(symbol)
        if cached is not None:
            return cached
        try:
            value = float(self.client.contract_size(symbol))
        except (ccxt.BaseError, KeyError) as exc:
            raise TransientFetchError(f"contract size {symbol}: {exc}") from exc
        if not math.isfinite(value) or value <= 0:
            value = 1.0
        self._multipliers[symbol] = value
        return value

    # ------------------------------------------------------------------
    # Account state
    # ------------------------------------------------------------------
    @staticmethod
    def _extract_position_amount(position: Dict[str, Any]) -> float:
        if not position:
            return 0.0
        contracts = position.get("contracts")
        if contracts not in (None, ""):
            amount = abs(_float(contracts))
            side = (position.get("side") or "").lower()
            return -amount if side == "short" else amount
        info = position.get("info") or {}
        for key in ("size", "positionAmt", "amount"):
            value = info.get(key, position.get(key))
            if value in (None, ""):
                continue
            try:
                return float(value)
            except (TypeError, ValueError):
                continue
        return 0.0

    def fetch_open_positions(self) -> List[Position]:
        try:
            raw_positions = self.client.fetch_positions() or []
        except ccxt.BaseError as exc:
            raise TransientFetchError(f"positions: {exc}") from exc

        positions: List[Position] = []
        for raw in raw_positions:
            size = self._extract_position_amount(raw)
            if not math.isfinite(size) or abs(size) <= POSITION_EPS:
                continue
            info = raw.get("info") or {}
            position = Position(
                symbol=str(raw.get("symbol") or info.get("contract") or ""),
                side=Side.from_size(size),
                quantity=abs(size),
                entry_price=_float(raw.get("entryPrice", info.get("entry_price")), float("nan")),
                mark_price=_float(raw.get("markPrice", info.get("mark_price")), float("nan")),
                leverage=_float(raw.get("leverage", info.get("leverage")), 1.0),
            )
            logger.debug(
                json.dumps(
                    {
                        "type": "POS_RAW",
                        "symbol": position.symbol,
                        "side": position.side.value,
                        "quantity": position.quantity,
                        "entry_price": position.entry_price,
                        "mark_price": position.mark_price,
                        "leverage": position.leverage,
                    },
                    sort_keys=True,
                )
            )
            positions.append(position)
        return positions

    # ------------------------------------------------------------------
    # Order helpers
    # ------------------------------------------------------------------
    def place_close_order(self, symbol: str, side: Side, quantity: float) -> str:
        """Submit a reduce-only market order that flattens ``side``; returns the order id."""
        if quantity <= 0 or not math.isfinite(quantity):
            raise OrderPlacementError(f"Invalid close quantity for {symbol}: {quantity!r}")
        try:
            order = self.client.create_reduce_only_market_order(symbol, side.exit_order_side, quantity)
        except ccxt.BaseError as exc:
            raise OrderPlacementError(f"close order {symbol}: {exc}") from exc
        order_id = str((order or {}).get("id") or "")
        if not order_id:
            raise OrderPlacementError(f"close order {symbol}: exchange returned no order id")
        return order_id

    def fetch_order_status(self, order_id: str, symbol: str) -> OrderStatus:
        try:
            order = self.client.fetch_order(order_id, symbol) or {}
        except ccxt.BaseError as exc:
            raise TransientFetchError(f"order {order_id}: {exc}") from exc
        info = order.get("info") or {}
        raw_status = str(order.get("status") or info.get("status") or "").lower()
        status = FINISHED if raw_status in _FINISHED_STATES else raw_status
        fill_price = _float(order.get("average")) or _float(info.get("fill_price")) or _float(order.get("price"))
        size = abs(_float(order.get("filled"))) or abs(_float(info.get("size"))) or abs(_float(order.get("amount")))
        return OrderStatus(order_id=order_id, status=status, fill_price=fill_price, size=size)
