"""Gate.io USDT perpetual client adapter backed by ccxt.

This module provides a thin wrapper used by ``position_guard.ExchangeAPI`` so the
rest of the codebase does not depend directly on ccxt.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import ccxt  # type: ignore

logger = logging.getLogger(__name__)


class GateAuthError(Exception):
    """Raised when the exchange rejects the API credentials."""


class GateUSDT:
    """ccxt-backed adapter exposing methods required by ExchangeAPI."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        testnet: bool = True,
        timeout_ms: int = 10000,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.testnet = bool(testnet)
        self.exchange = ccxt.gate(
            {
                "apiKey": api_key,
                "secret": api_secret,
                "enableRateLimit": True,
                "timeout": int(timeout_ms),
                "options": {"defaultType": "swap"},
            }
        )
        if self.testnet:
            try:
                self.exchange.set_sandbox_mode(True)
            except Exception as exc:  # pragma: no cover - best effort only
                logger.warning("Failed to enable sandbox mode: %s", exc)

    @classmethod
    def from_config(cls) -> "GateUSDT":
        import config

        return cls(
            api_key=config.GATE_KEY or None,
            api_secret=config.GATE_SECRET or None,
            testnet=config.TESTNET,
            timeout_ms=config.EXCHANGE_TIMEOUT_MS,
        )

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------
    def load_markets(self) -> None:  # pragma: no cover - ccxt handles caching
        try:
            self.exchange.load_markets()
        except ccxt.AuthenticationError as exc:
            raise GateAuthError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Market data helpers
    # ------------------------------------------------------------------
    def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int = 100) -> Iterable[Iterable[Any]]:
        return self.exchange.fetch_ohlcv(symbol, timeframe=timeframe, limit=limit)

    def fetch_ticker(self, symbol: str) -> Dict[str, Any]:
        return self.exchange.fetch_ticker(symbol)

    def contract_size(self, symbol: str) -> float:
        market = self.exchange.market(symbol)
        value = market.get("contractSize")
        return float(value) if value else 1.0

    # ------------------------------------------------------------------
    # Account state
    # ------------------------------------------------------------------
    def fetch_positions(self) -> List[Dict[str, Any]]:
        return self.exchange.fetch_positions()

    # ------------------------------------------------------------------
    # Order helpers
    # ------------------------------------------------------------------
    def create_reduce_only_market_order(self, symbol: str, side: str, qty: float) -> Dict[str, Any]:
        params = {"reduceOnly": True}
        return self.exchange.create_order(symbol, "market", side.lower(), qty, None, params)

    def fetch_order(self, order_id: str, symbol: str) -> Dict[str, Any]:
        return self.exchange.fetch_order(order_id, symbol)
