from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import requests

from position_guard.models import ClosedPosition


class SlackNotifier:
    """Minimal Slack webhook adapter (dry-run friendly)."""

    def __init__(self, *, webhook_url: Optional[str] = None, logger_name: str = __name__, timeout: float = 10.0) -> None:
        self._logger = logging.getLogger(logger_name)
        self._url = webhook_url if webhook_url is not None else os.environ.get("SLACK_WEBHOOK_URL")
        dry_env = os.environ.get("SLACK_DRY_RUN", "false").strip().lower()
        self._dry = dry_env == "true" or not self._url
        self._timeout = timeout

    @property
    def dry_run(self) -> bool:
        return self._dry

    def _dispatch(self, payload: Dict[str, Any]) -> bool:
        if self._dry:
            self._logger.info(json.dumps({"type": "SLACK_DRY_RUN", "payload": payload}, sort_keys=True))
            return True
        try:
            resp = requests.post(self._url, json=payload, timeout=self._timeout)
            resp.raise_for_status()
            return True
        except requests.RequestException as exc:
            self._logger.warning("Slack webhook failed: %s", exc)
            return False

    def send(self, text: str, *, blocks: Optional[list] = None) -> bool:
        payload: Dict[str, Any] = {"text": text}
        if blocks:
            payload["blocks"] = blocks
        return self._dispatch(payload)

    # --- guard-specific messages -----------------------------------------
    def notify_stop_triggered(self, symbol: str, pnl_percent: float, threshold: float, risk_level: str) -> bool:
        return self.send(
            f":rotating_light: Stop-loss triggered {symbol}: pnl {pnl_percent:.2f}% <= {threshold:.2f}% ({risk_level})"
        )

    def notify_closed(self, closed: ClosedPosition) -> bool:
        status = "filled" if closed.filled else "estimated"
        return self.send(
            f":white_check_mark: Closed {closed.side.value} {closed.symbol} @ {closed.exit_price:.6g} "
            f"({status}) pnl {closed.pnl:.2f} fee {closed.fee:.4f}"
        )

    def notify_close_failed(self, symbol: str, reason: str) -> bool:
        return self.send(f":x: Failed to close {symbol}: {reason}")
