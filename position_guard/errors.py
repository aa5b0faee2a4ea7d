from __future__ import annotations

__all__ = [
    "GuardError",
    "TransientFetchError",
    "InvalidPositionData",
    "OrderPlacementError",
    "OrderConfirmationTimeout",
    "ReconciliationError",
    "ConfigurationError",
]


class GuardError(Exception):
    """Base class for failures raised inside the position guard."""


class TransientFetchError(GuardError):
    """Raised when positions, candles, tickers or order status cannot be fetched."""


class InvalidPositionData(GuardError):
    """Raised when a position carries a zero or non-finite entry/mark/leverage."""


class OrderPlacementError(GuardError):
    """Raised when the exchange rejects or never acknowledges a closing order."""


class OrderConfirmationTimeout(GuardError):
    """Raised when order status polling exhausts its retry budget."""


class ReconciliationError(GuardError):
    """Raised when stored trade records cannot be read or rewritten."""


class ConfigurationError(GuardError):
    """Raised when stop-loss protection is disabled or misconfigured."""
