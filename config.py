import os
import json
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

def _coerce_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)

def _coerce_float(value, name):
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise RuntimeError(f"Invalid value for {name}: {value!r}") from exc


# API / environment
GATE_KEY = os.getenv("GATE_KEY", "")
GATE_SECRET = os.getenv("GATE_SECRET", "")
TESTNET = os.getenv("TESTNET", "True").lower() == "true"
EXCHANGE_TIMEOUT_MS = int(os.getenv("EXCHANGE_TIMEOUT_MS", "10000"))

# Strategy selection
TRADING_STRATEGY = os.getenv("TRADING_STRATEGY", "swing-trend")
MAX_LEVERAGE = int(os.getenv("MAX_LEVERAGE", "15"))
# Optional override of the preset's stop-loss mode ("static" | "dynamic")
STOP_LOSS_MODE = os.getenv("STOP_LOSS_MODE", "").strip().lower() or None
# Optional override of the preset's thresholds: {"mode", "low", "mid", "high"}
STOP_LOSS_OVERRIDE = {}

# Monitor loop
MONITOR_INTERVAL_SEC = float(os.getenv("MONITOR_INTERVAL_SEC", "15"))
ORDER_CONFIRM_ATTEMPTS = int(os.getenv("ORDER_CONFIRM_ATTEMPTS", "5"))
ORDER_CONFIRM_INTERVAL_SEC = float(os.getenv("ORDER_CONFIRM_INTERVAL_SEC", "0.5"))
ORDER_SUBMIT_SETTLE_SEC = float(os.getenv("ORDER_SUBMIT_SETTLE_SEC", "1.0"))

# Fees / pnl
FEE_RATE = 0.0005  # taker fee, charged on both legs

# Dynamic stop-loss
DEFAULT_VOLATILITY_PCT = 1.5
DYNAMIC_MIN_PERCENT = -50.0
DYNAMIC_MAX_PERCENT = -0.1
CANDLE_LIMIT = 100

# Persistence
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/trading.db")

# Reconciliation sweep (0 disables the periodic sweep)
RECONCILE_SWEEP_INTERVAL_SEC = float(os.getenv("RECONCILE_SWEEP_INTERVAL_SEC", "300"))
RECONCILE_LOOKBACK_HOURS = float(os.getenv("RECONCILE_LOOKBACK_HOURS", "24"))

# Logs
LOG_FILE = os.getenv("LOG_FILE", "logs/position_guard.log")
DECISION_LOG_PATH = os.getenv("DECISION_LOG_PATH", "logs/decision_conclusions.txt")

# Prometheus exporter (0 disables)
METRICS_PORT = int(os.getenv("METRICS_PORT", "9108"))

CONFIG_JSON_PATH = Path(os.getenv("GUARD_CONFIG_JSON", "config.json"))

if CONFIG_JSON_PATH.exists():
    try:
        _json_config = json.loads(CONFIG_JSON_PATH.read_text(encoding="utf-8"))
    except Exception as exc:
        raise RuntimeError(f"Failed to parse {CONFIG_JSON_PATH}: {exc}") from exc

    if 'gate_key' in _json_config:
        GATE_KEY = str(_json_config['gate_key'])
    if 'gate_secret' in _json_config:
        GATE_SECRET = str(_json_config['gate_secret'])
    if 'testnet' in _json_config:
        TESTNET = _coerce_bool(_json_config['testnet'])
    if 'exchange_timeout_ms' in _json_config:
        EXCHANGE_TIMEOUT_MS = int(_json_config['exchange_timeout_ms'])
    if 'trading_strategy' in _json_config:
        TRADING_STRATEGY = str(_json_config['trading_strategy'])
    if 'max_leverage' in _json_config:
        MAX_LEVERAGE = int(_json_config['max_leverage'])
    if 'monitor_interval_sec' in _json_config:
        MONITOR_INTERVAL_SEC = _coerce_float(_json_config['monitor_interval_sec'], 'monitor_interval_sec')
    if 'order_confirm_attempts' in _json_config:
        ORDER_CONFIRM_ATTEMPTS = int(_json_config['order_confirm_attempts'])
    if 'order_confirm_interval_sec' in _json_config:
        ORDER_CONFIRM_INTERVAL_SEC = _coerce_float(_json_config['order_confirm_interval_sec'], 'order_confirm_interval_sec')
    if 'order_submit_settle_sec' in _json_config:
        ORDER_SUBMIT_SETTLE_SEC = _coerce_float(_json_config['order_submit_settle_sec'], 'order_submit_settle_sec')
    if 'fee_rate' in _json_config:
        FEE_RATE = _coerce_float(_json_config['fee_rate'], 'fee_rate')
    if 'default_volatility_pct' in _json_config:
        DEFAULT_VOLATILITY_PCT = _coerce_float(_json_config['default_volatility_pct'], 'default_volatility_pct')
    if 'dynamic_min_percent' in _json_config:
        DYNAMIC_MIN_PERCENT = _coerce_float(_json_config['dynamic_min_percent'], 'dynamic_min_percent')
    if 'dynamic_max_percent' in _json_config:
        DYNAMIC_MAX_PERCENT = _coerce_float(_json_config['dynamic_max_percent'], 'dynamic_max_percent')
    if 'candle_limit' in _json_config:
        CANDLE_LIMIT = int(_json_config['candle_limit'])
    if 'database_url' in _json_config:
        DATABASE_URL = str(_json_config['database_url'])
    if 'reconcile_sweep_interval_sec' in _json_config:
        RECONCILE_SWEEP_INTERVAL_SEC = _coerce_float(_json_config['reconcile_sweep_interval_sec'], 'reconcile_sweep_interval_sec')
    if 'reconcile_lookback_hours' in _json_config:
        RECONCILE_LOOKBACK_HOURS = _coerce_float(_json_config['reconcile_lookback_hours'], 'reconcile_lookback_hours')
    if 'log_file' in _json_config:
        LOG_FILE = str(_json_config['log_file'])
    if 'decision_log_path' in _json_config:
        DECISION_LOG_PATH = str(_json_config['decision_log_path'])
    if 'metrics_port' in _json_config:
        METRICS_PORT = int(_json_config['metrics_port'])
    if 'stop_loss' in _json_config:
        sl = _json_config['stop_loss'] or {}
        if 'mode' in sl:
            STOP_LOSS_MODE = str(sl['mode']).strip().lower()
        for key in ('low', 'mid', 'high'):
            if key in sl:
                STOP_LOSS_OVERRIDE[key] = _coerce_float(sl[key], f'stop_loss.{key}')

    del _json_config
