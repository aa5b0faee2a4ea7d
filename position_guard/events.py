"""In-process event bus for position lifecycle signals.

Usage:
    from position_guard.events import bus

    bus.position_closed.connect(handler)      # handler(sender, closed=ClosedPosition)
    bus.position_closed.send(engine, closed=closed)

Subscribers run synchronously in the emitting thread. ``emit`` isolates them:
a subscriber that raises is logged and the remaining receivers still run.
"""
from __future__ import annotations

import logging
from typing import Any, List, Tuple

from blinker import NamedSignal

from position_guard.log import log_json

logger = logging.getLogger(__name__)


class EventBus:
    def __init__(self) -> None:
        self.position_closed = NamedSignal("position_closed")
        self.stop_loss_triggered = NamedSignal("stop_loss_triggered")

    def emit(self, signal: NamedSignal, sender: Any, **payload: Any) -> List[Tuple[Any, Any]]:
        results: List[Tuple[Any, Any]] = []
        for receiver in list(signal.receivers_for(sender)):
            try:
                results.append((receiver, receiver(sender, **payload)))
            except Exception as exc:
                log_json(
                    logger,
                    logging.ERROR,
                    {
                        "event": "subscriber_failed",
                        "signal": signal.name,
                        "receiver": getattr(receiver, "__qualname__", repr(receiver)),
                        "error": str(exc),
                    },
                )
        return results


bus = EventBus()
