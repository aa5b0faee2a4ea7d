from __future__ import annotations

import json
import logging
from logging import Logger
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def log_json(logger_obj: Logger, level: int, payload: Dict[str, Any], *, extra_fields: Optional[Dict[str, Any]] = None) -> None:
    data = dict(payload)
    if extra_fields:
        data.update(extra_fields)
    logger_obj.log(level, json.dumps(data, sort_keys=True, default=str))


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if root.handlers:
        return root
    fmt = logging.Formatter(_FORMAT)
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    root.addHandler(ch)
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
            fh.setFormatter(fmt)
            root.addHandler(fh)
        except OSError as exc:
            root.warning("File logging disabled (%s): %s", log_file, exc)
    return root
