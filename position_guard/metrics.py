from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
from typing import Any, Dict, Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

__all__ = [
    "start_metrics_server",
    "get_metrics_manager",
    "dump_current_metrics",
    "MetricsManager",
]


_logger = logging.getLogger(__name__)
_DEBUG_VALUES = {"1", "true", "yes", "on"}


def _debug_enabled() -> bool:
    return os.getenv("GUARD_DEBUG_METRICS", "").strip().lower() in _DEBUG_VALUES


def _safe_value(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _log_metrics_update(name: str, labels: Dict[str, Any], value: Any) -> None:
    if not _debug_enabled():
        return
    payload = {
        "name": name,
        "labels": labels,
        "value": _safe_value(value),
        "ts": time.time(),
    }
    _logger.info("METRICS_UPDATE %s", json.dumps(payload, sort_keys=True, default=str))


_guard_checks_total = Counter("guard_checks_total", "Position checks performed", ["strategy"])
_guard_triggers_total = Counter("guard_stop_triggers_total", "Stop-loss triggers", ["strategy", "risk_level"])
_guard_close_failures_total = Counter("guard_close_failures_total", "Failed close attempts", ["strategy", "reason"])
_guard_repairs_total = Counter("guard_repairs_total", "Reconciliation outcomes", ["outcome"])
_guard_monitored_positions = Gauge("guard_monitored_positions", "Positions tracked by the monitor", ["strategy"])
_guard_heartbeat_ts = Gauge("guard_heartbeat_ts", "Last completed tick epoch seconds")
_guard_tick_latency_ms = Histogram(
    "guard_tick_latency_ms",
    "Monitor tick latency in milliseconds",
    buckets=(10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)


class MetricsManager:
    """Coordinates Prometheus metrics and keeps a readable snapshot of the counters."""

    def __init__(self, strategy: str) -> None:
        self.strategy = strategy
        self._checks = _guard_checks_total.labels(strategy=strategy)
        self._monitored = _guard_monitored_positions.labels(strategy=strategy)
        self._lock = threading.Lock()
        self._state: Dict[str, Any] = {
            "checks": 0,
            "triggers": {},
            "close_failures": {},
            "repairs": {},
            "monitored": 0,
            "heartbeat_ts": None,
        }

    def _bump(self, key: str, label: str) -> float:
        with self._lock:
            totals = dict(self._state[key])
            totals[label] = totals.get(label, 0) + 1
            self._state[key] = totals
            return totals[label]

    def inc_check(self) -> None:
        self._checks.inc()
        with self._lock:
            self._state["checks"] += 1
            total = self._state["checks"]
        _log_metrics_update("guard_checks_total", {"strategy": self.strategy}, total)

    def inc_trigger(self, risk_level: str) -> None:
        _guard_triggers_total.labels(strategy=self.strategy, risk_level=risk_level).inc()
        total = self._bump("triggers", risk_level)
        _log_metrics_update("guard_stop_triggers_total", {"strategy": self.strategy, "risk_level": risk_level}, total)

    def inc_close_failure(self, reason: str) -> None:
        _guard_close_failures_total.labels(strategy=self.strategy, reason=reason).inc()
        total = self._bump("close_failures", reason)
        _log_metrics_update("guard_close_failures_total", {"strategy": self.strategy, "reason": reason}, total)

    def inc_repair(self, outcome: str) -> None:
        _guard_repairs_total.labels(outcome=outcome).inc()
        total = self._bump("repairs", outcome)
        _log_metrics_update("guard_repairs_total", {"outcome": outcome}, total)

    def set_monitored(self, count: int) -> None:
        self._monitored.set(count)
        with self._lock:
            self._state["monitored"] = int(count)

    def observe_tick_latency(self, latency_ms: float) -> None:
        _guard_tick_latency_ms.observe(latency_ms)

    def set_heartbeat(self, timestamp: Optional[float] = None) -> None:
        if timestamp is None:
            timestamp = time.time()
        _guard_heartbeat_ts.set(timestamp)
        with self._lock:
            self._state["heartbeat_ts"] = float(timestamp)

    def get_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "checks": self._state["checks"],
                "triggers": dict(self._state["triggers"]),
                "close_failures": dict(self._state["close_failures"]),
                "repairs": dict(self._state["repairs"]),
                "monitored": self._state["monitored"],
                "heartbeat_ts": self._state["heartbeat_ts"],
            }


_MANAGER: Optional[MetricsManager] = None
_SERVER_STARTED = False


def start_metrics_server(port: int = 9108, strategy: str = "default", *, serve: bool = True) -> MetricsManager:
    """Start the Prometheus exporter (once) and return the shared manager."""

    global _MANAGER, _SERVER_STARTED
    if _MANAGER is None:
        _MANAGER = MetricsManager(strategy)
    if serve and not _SERVER_STARTED:
        start_http_server(port)
        _SERVER_STARTED = True
    return _MANAGER


def get_metrics_manager() -> Optional[MetricsManager]:
    return _MANAGER


def dump_current_metrics() -> Dict[str, Any]:
    mgr = get_metrics_manager()
    if mgr is None:
        return {}
    snapshot = mgr.get_snapshot()
    snapshot["strategy"] = mgr.strategy
    return snapshot
