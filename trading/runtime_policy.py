"""Error-severity classification and entry gates for the scan cycle."""

from __future__ import annotations

import asyncio

import aiohttp
from sqlalchemy.exc import SQLAlchemyError

from trading.errors import (
    CriticalScannerError,
    ExchangeRejectionError,
    NetworkError,
    OptionalDataError,
)
from trading.models import RegimeSnapshot, TradeCandidate
from utils.state_file import StateFileError

SEVERITY_CRITICAL = "critical"
SEVERITY_NON_CRITICAL = "non_critical"

_CRITICAL_KEYWORDS = ("database", "initialization", "configuration")
_BALANCE_MARKERS = ("insufficient balance", "insufficient_balance")


def _mentions_balance(message: str) -> bool:
    return any(marker in message for marker in _BALANCE_MARKERS)


def classify_error(exc: BaseException) -> tuple[str, str]:
    """Return (severity, reason) for an exception escaping a cycle phase."""
    message = str(exc).lower()
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return SEVERITY_NON_CRITICAL, "timeout"
    if isinstance(exc, ExchangeRejectionError):
        return SEVERITY_NON_CRITICAL, "exchange_rejected"
    if isinstance(exc, OptionalDataError):
        return SEVERITY_NON_CRITICAL, "optional_data_unavailable"

    network = (
        isinstance(exc, (NetworkError, aiohttp.ClientConnectionError, ConnectionError))
        or "network" in message
    )
    if network:
        if _mentions_balance(message):
            return SEVERITY_NON_CRITICAL, "insufficient_balance"
        return SEVERITY_CRITICAL, "network"

    if isinstance(exc, CriticalScannerError):
        return SEVERITY_CRITICAL, str(exc.code).lower()
    if isinstance(exc, (SQLAlchemyError, StateFileError)):
        return SEVERITY_CRITICAL, "persistence"
    for keyword in _CRITICAL_KEYWORDS:
        if keyword in message:
            return SEVERITY_CRITICAL, keyword
    return SEVERITY_NON_CRITICAL, type(exc).__name__.lower()


def is_critical(exc: BaseException) -> bool:
    return classify_error(exc)[0] == SEVERITY_CRITICAL


def capital_gate(
    *,
    available_funds: float,
    allocated_capital: float,
    min_trade_value: float,
    invest_cap: float,
) -> tuple[str, str]:
    """('OPEN', reason) when new positions may be sized, ('SKIP', reason) otherwise."""
    if available_funds < min_trade_value:
        return "SKIP", "funds_below_minimum"
    if invest_cap > 0 and allocated_capital >= invest_cap:
        return "SKIP", "invest_cap_reached"
    return "OPEN", "capital_ok"


def regime_gate(
    regime: RegimeSnapshot | None,
    *,
    min_confidence_percent: float,
    block_downtrend: bool,
) -> tuple[str, str]:
    if regime is None:
        return "OPEN", "regime_unknown"
    if regime.confidence * 100.0 < min_confidence_percent:
        return "SKIP", "regime_confidence_low"
    if block_downtrend and regime.label == "downtrend":
        return "SKIP", "downtrend_blocked"
    return "OPEN", "regime_ok"


def candidate_block_reason(
    candidate: TradeCandidate,
    *,
    min_combined_strength: float,
    open_by_strategy: dict[str, int],
    max_positions_per_strategy: int,
) -> str:
    if candidate.combined_strength < min_combined_strength:
        return "below_min_strength"
    if open_by_strategy.get(candidate.strategy, 0) >= max_positions_per_strategy:
        return "max_positions_per_strategy"
    return ""
