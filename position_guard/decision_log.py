"""Human-readable decision conclusions, appended to a text file next to the main log."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

import config

logger = logging.getLogger(__name__)

_RULE = "=" * 80


def format_conclusion(
    kind: str,
    symbol: str,
    text: str,
    info: Optional[Mapping[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%S %Z").strip()
    lines = [f"=== {stamp} - {kind} - {symbol} ==="]
    if info:
        lines.append("info: " + json.dumps(dict(info), indent=2, ensure_ascii=False, default=str))
    lines.append("conclusion:")
    lines.append(text)
    return "\n".join(lines) + "\n\n" + _RULE + "\n\n"


def log_decision_conclusion(
    kind: str,
    symbol: str,
    text: str,
    info: Optional[Mapping[str, Any]] = None,
    *,
    path: Optional[str] = None,
) -> bool:
    """Append one conclusion block; returns False (and logs) when the file cannot be written."""
    target = Path(path or config.DECISION_LOG_PATH)
    block = format_conclusion(kind, symbol, text, info)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as fh:
            fh.write(block)
    except OSError as exc:
        logger.warning("Decision log write failed (%s): %s", target, exc)
        return False
    return True


def stop_loss_conclusion(
    *,
    symbol: str,
    side: str,
    leverage: float,
    entry_price: float,
    current_price: float,
    pnl_percent: float,
    threshold: float,
    risk_level: str,
    description: str,
    is_dynamic: bool,
) -> str:
    kind = "dynamic stop" if is_dynamic else "static stop"
    basis = (
        "threshold derived from volatility, structure strength and micro rhythm"
        if is_dynamic
        else "threshold taken from the leverage band"
    )
    return "\n".join(
        [
            f"[hard stop triggered - {kind}] {symbol} {side}",
            "",
            f"risk level:     {risk_level}",
            f"description:    {description}",
            f"leverage:       {leverage:g}x",
            f"entry price:    {entry_price:.2f}",
            f"current price:  {current_price:.2f}",
            f"pnl:            {pnl_percent:.2f}%",
            f"stop line:      {threshold:.2f}%",
            "",
            f"loss {pnl_percent:.2f}% reached the {risk_level} stop line {threshold:.2f}% ({basis})",
            "closing at market",
        ]
    )
