"""position_guard package.

Convenience exports for commonly used classes/functions.
"""

__all__: list[str] = []


def __getattr__(name: str):
    if name == "Monitor":
        from .monitor import Monitor

        return Monitor
    if name == "ExecutionEngine":
        from .execution import ExecutionEngine

        return ExecutionEngine
    if name in ("ReconciliationRepairer", "RepairOutcome"):
        from .reconciliation import ReconciliationRepairer, RepairOutcome

        return {
            "ReconciliationRepairer": ReconciliationRepairer,
            "RepairOutcome": RepairOutcome,
        }[name]
    if name == "ThresholdCalculator":
        from .thresholds import ThresholdCalculator

        return ThresholdCalculator
    if name == "ExchangeAPI":
        from .exchange_api import ExchangeAPI

        return ExchangeAPI
    if name in ("start_metrics_server", "get_metrics_manager"):
        from .metrics import start_metrics_server, get_metrics_manager

        return {
            "start_metrics_server": start_metrics_server,
            "get_metrics_manager": get_metrics_manager,
        }[name]
    raise AttributeError(f"module 'position_guard' has no attribute {name!r}")
