"""Application configuration."""

import os
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_SCANNER_ENV_FILE = os.getenv("SCANNER_ENV_FILE", "").strip()
if _SCANNER_ENV_FILE:
    _scanner_env_path = Path(_SCANNER_ENV_FILE).expanduser()
    if not _scanner_env_path.is_absolute():
        _scanner_env_path = (Path.cwd() / _scanner_env_path).resolve()
    if not _scanner_env_path.exists():
        raise FileNotFoundError(f"SCANNER_ENV_FILE does not exist: {_scanner_env_path}")
    if not _scanner_env_path.is_file():
        raise IsADirectoryError(f"SCANNER_ENV_FILE is not a file: {_scanner_env_path}")
    try:
        _load_dotenv_safe(str(_scanner_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load SCANNER_ENV_FILE '{_scanner_env_path}': {exc}") from exc


_TRUE_VALUES = ("1", "true", "yes", "y", "on")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except Exception:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except Exception:
            continue
    return out


# Runtime identity
TRADING_MODE = os.getenv("TRADING_MODE", "paper").strip().lower() or "paper"
if TRADING_MODE not in ("paper", "testnet", "mainnet"):
    TRADING_MODE = "paper"
SCANNER_INSTANCE_ID = os.getenv("SCANNER_INSTANCE_ID", "").strip()
SCANNER_GROUP = os.getenv("SCANNER_GROUP", "default").strip() or "default"
QUOTE_ASSET = os.getenv("QUOTE_ASSET", "USDT").strip().upper() or "USDT"

# Storage
DATA_DIR = os.getenv("DATA_DIR", "data")
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(DATA_DIR, 'scanner.db')}")
SCANNER_STATE_KEY = os.getenv("SCANNER_STATE_KEY", "scanner_state").strip() or "scanner_state"
SCANNER_STATE_FILE = os.getenv("SCANNER_STATE_FILE", os.path.join(DATA_DIR, f"{SCANNER_STATE_KEY}.json"))
STATE_FILE_LOCK_TIMEOUT_SECONDS = max(0.1, float(os.getenv("STATE_FILE_LOCK_TIMEOUT_SECONDS", "2.0")))
ALERTS_FILE = os.getenv("ALERTS_FILE", os.path.join(DATA_DIR, "alerts.jsonl"))
ARCHIVE_RETENTION_DAYS = max(1, int(os.getenv("ARCHIVE_RETENTION_DAYS", "30")))
ARCHIVE_MAX_RECORDS = max(10, int(os.getenv("ARCHIVE_MAX_RECORDS", "1000")))
ARCHIVE_PRUNE_EVERY_CYCLES = max(1, int(os.getenv("ARCHIVE_PRUNE_EVERY_CYCLES", "15")))

# Leadership lease
ARBITER_MODE = os.getenv("ARBITER_MODE", "sql").strip().lower() or "sql"
ARBITER_URL = os.getenv("ARBITER_URL", "http://127.0.0.1:8090/api/scanner-session").strip()
ARBITER_SHARED_SECRET = os.getenv("ARBITER_SHARED_SECRET", "")
ARBITER_HOST = os.getenv("ARBITER_HOST", "127.0.0.1")
ARBITER_PORT = int(os.getenv("ARBITER_PORT", "8090"))
ARBITER_PATH = os.getenv("ARBITER_PATH", "/api/scanner-session")
LEASE_TTL_SECONDS = max(5.0, float(os.getenv("LEASE_TTL_SECONDS", "60")))
LEASE_RENEW_INTERVAL_SECONDS = max(1.0, float(os.getenv("LEASE_RENEW_INTERVAL_SECONDS", "25")))
LEASE_RENEW_TIMEOUT_SECONDS = max(1.0, float(os.getenv("LEASE_RENEW_TIMEOUT_SECONDS", "45")))
LEASE_RENEW_FAILURES_BEFORE_VERIFY = max(1, int(os.getenv("LEASE_RENEW_FAILURES_BEFORE_VERIFY", "3")))
LEADERSHIP_VERIFY_INTERVAL_SECONDS = max(1.0, float(os.getenv("LEADERSHIP_VERIFY_INTERVAL_SECONDS", "60")))
LEADERSHIP_RECHECK_BEFORE_OPEN = _env_bool("LEADERSHIP_RECHECK_BEFORE_OPEN", "true")
LEASE_CLAIM_MAX_ATTEMPTS = max(1, int(os.getenv("LEASE_CLAIM_MAX_ATTEMPTS", "3")))
LEASE_CLAIM_RETRY_BASE_SECONDS = max(0.0, float(os.getenv("LEASE_CLAIM_RETRY_BASE_SECONDS", "0.5")))
LEASE_TEARDOWN_RELEASE_TIMEOUT_SECONDS = max(0.2, float(os.getenv("LEASE_TEARDOWN_RELEASE_TIMEOUT_SECONDS", "2.0")))

# Scan loop
SCAN_INTERVAL_MS = max(1000, int(os.getenv("SCAN_INTERVAL_MS", "60000")))
SCAN_COUNTDOWN_TICK_SECONDS = max(0.01, float(os.getenv("SCAN_COUNTDOWN_TICK_SECONDS", "1.0")))
CYCLE_DURATION_SMOOTHING = max(0.01, min(1.0, float(os.getenv("CYCLE_DURATION_SMOOTHING", "0.2"))))
NETWORK_CALL_TIMEOUT_SECONDS = max(1.0, float(os.getenv("NETWORK_CALL_TIMEOUT_SECONDS", "30")))
AGGREGATE_CALL_TIMEOUT_SECONDS = max(1.0, float(os.getenv("AGGREGATE_CALL_TIMEOUT_SECONDS", "90")))
WALLET_RECONCILE_EVERY_CYCLES = max(1, int(os.getenv("WALLET_RECONCILE_EVERY_CYCLES", "20")))
PHASE_IO_RETRY_ATTEMPTS = max(1, int(os.getenv("PHASE_IO_RETRY_ATTEMPTS", "2")))
PHASE_IO_RETRY_BASE_SECONDS = max(0.0, float(os.getenv("PHASE_IO_RETRY_BASE_SECONDS", "1.0")))
SCAN_SYMBOLS = [
    x.strip().upper()
    for x in os.getenv("SCAN_SYMBOLS", "BTCUSDT,ETHUSDT,SOLUSDT").split(",")
    if x.strip()
]

# Strategy and capital gates
MIN_COMBINED_STRENGTH = max(0.0, float(os.getenv("MIN_COMBINED_STRENGTH", "225")))
MIN_REGIME_CONFIDENCE = max(0.0, min(100.0, float(os.getenv("MIN_REGIME_CONFIDENCE", "50"))))
MIN_TRADE_VALUE = max(0.0, float(os.getenv("MIN_TRADE_VALUE", "10")))
MAX_POSITIONS_PER_STRATEGY = max(1, int(os.getenv("MAX_POSITIONS_PER_STRATEGY", "1")))
MAX_BALANCE_PERCENT_RISK = max(5.0, min(100.0, float(os.getenv("MAX_BALANCE_PERCENT_RISK", "100"))))
MAX_BALANCE_INVEST_CAP_USDT = max(0.0, float(os.getenv("MAX_BALANCE_INVEST_CAP_USDT", "0")))
BLOCK_TRADING_IN_DOWNTREND = _env_bool("BLOCK_TRADING_IN_DOWNTREND", "false")
POSITION_SIZING_STRATEGY = os.getenv("POSITION_SIZING_STRATEGY", "volatility_adjusted").strip().lower()
if POSITION_SIZING_STRATEGY not in ("volatility_adjusted", "fixed_conviction"):
    POSITION_SIZING_STRATEGY = "volatility_adjusted"
DEFAULT_POSITION_SIZE = max(0.0, float(os.getenv("DEFAULT_POSITION_SIZE", "100")))
RISK_PER_TRADE_PERCENT = max(0.0, float(os.getenv("RISK_PER_TRADE_PERCENT", "2")))
STOP_LOSS_ATR_MULTIPLIER = max(0.1, float(os.getenv("STOP_LOSS_ATR_MULTIPLIER", "2.5")))

# Composite risk score
RISK_SCORE_INTERVAL_SECONDS = max(0.0, float(os.getenv("RISK_SCORE_INTERVAL_SECONDS", "30")))
RISK_SCORE_WEIGHTS = _parse_source_float_map(
    os.getenv(
        "RISK_SCORE_WEIGHTS",
        "unrealized_pnl:0.30,realized_pnl:0.40,regime:0.0,volatility:0.10,"
        "opportunity:0.0,sentiment:0.10,signal_quality:0.10",
    )
)
RISK_THRESHOLD_EXCELLENT = float(os.getenv("RISK_THRESHOLD_EXCELLENT", "80"))
RISK_THRESHOLD_GOOD = float(os.getenv("RISK_THRESHOLD_GOOD", "50"))
RISK_THRESHOLD_POOR = float(os.getenv("RISK_THRESHOLD_POOR", "30"))
RISK_BAND_GOOD_FLOOR_FRACTION = max(0.0, min(1.0, float(os.getenv("RISK_BAND_GOOD_FLOOR_FRACTION", "0.5"))))
RISK_BAND_POOR_FLOOR_FRACTION = max(0.0, min(1.0, float(os.getenv("RISK_BAND_POOR_FLOOR_FRACTION", "0.1"))))
RISK_MULTIPLIER_FLOOR_PERCENT = max(0.0, float(os.getenv("RISK_MULTIPLIER_FLOOR_PERCENT", "5")))
RISK_REALIZED_MIN_TRADES = max(1, int(os.getenv("RISK_REALIZED_MIN_TRADES", "5")))
RISK_REALIZED_DECAY_HOURS = max(1.0, float(os.getenv("RISK_REALIZED_DECAY_HOURS", "24")))

# Market data
REGIME_SYMBOL = os.getenv("REGIME_SYMBOL", "BTCUSDT").strip().upper() or "BTCUSDT"
REGIME_TIMEFRAME = os.getenv("REGIME_TIMEFRAME", "4h").strip() or "4h"
REGIME_CACHE_SECONDS = max(0, int(os.getenv("REGIME_CACHE_SECONDS", "3600")))
REGIME_CONFIRMATION_THRESHOLD = max(1, int(os.getenv("REGIME_CONFIRMATION_THRESHOLD", "3")))
REGIME_HISTORY_MAX = max(1, int(os.getenv("REGIME_HISTORY_MAX", "10")))
SENTIMENT_REFRESH_SECONDS = max(0, int(os.getenv("SENTIMENT_REFRESH_SECONDS", "300")))
MARKET_DATA_URL = os.getenv("MARKET_DATA_URL", "https://api.binance.com/api/v3").rstrip("/")
REGIME_API_URL = os.getenv("REGIME_API_URL", "http://127.0.0.1:8091/regime").strip()
SENTIMENT_API_URL = os.getenv("SENTIMENT_API_URL", "https://api.alternative.me/fng/").strip()
EXCHANGE_GATEWAY_URL = os.getenv("EXCHANGE_GATEWAY_URL", "http://127.0.0.1:8092").rstrip("/")
STRATEGY_ENGINE_URL = os.getenv("STRATEGY_ENGINE_URL", "http://127.0.0.1:8093").rstrip("/")
PAPER_STARTING_BALANCE = max(0.0, float(os.getenv("PAPER_STARTING_BALANCE", "1000")))

# HTTP resilience
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.5")))
HTTP_BACKOFF_MAX_SECONDS = max(0.1, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.0")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "2.0")))
HTTP_429_COOLDOWN_SECONDS = max(0.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "60")))
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv("HTTP_SOURCE_RATE_LIMITS", "binance:20/1,sentiment:10/60,arbiter:30/10")
)
HTTP_SOURCE_429_COOLDOWNS = _parse_source_float_map(
    os.getenv("HTTP_SOURCE_429_COOLDOWNS", "binance:60,sentiment:120")
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
