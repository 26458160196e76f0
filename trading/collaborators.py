"""Interfaces the scanner engine consumes; concrete adapters live in monitor/ and database/."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from trading.models import (
    AccountSnapshot,
    ClaimResult,
    CloseInstruction,
    ClosedTrade,
    MarketVolatility,
    Position,
    RegimeSnapshot,
    SentimentIndex,
    SessionStatus,
    SymbolFilters,
    TradeCandidate,
)
from trading.scanner_state import PersistedScannerState
from trading.settings import ScannerSettings


class Arbiter(Protocol):
    async def claim_session(self, session_id: str, force: bool = False) -> ClaimResult: ...

    async def release_session(self, session_id: str) -> bool: ...

    async def get_session_status(self) -> SessionStatus: ...

    def release_session_blocking(self, session_id: str, timeout_seconds: float) -> bool:
        """Release without an event loop; used from signal/atexit teardown."""
        ...


class MarketDataProvider(Protocol):
    async def get_prices(self, symbols: list[str]) -> dict[str, float]: ...

    async def get_regime(self, symbol: str, timeframe: str) -> RegimeSnapshot: ...

    async def get_volatility(self, symbol: str, timeframe: str) -> MarketVolatility: ...

    async def get_sentiment_index(self) -> SentimentIndex: ...


class ExchangeGateway(Protocol):
    async def get_account_snapshot(self) -> AccountSnapshot: ...

    async def get_symbol_filters(self, symbols: list[str]) -> dict[str, SymbolFilters]: ...


class PersistenceFacade(Protocol):
    def load_config(self) -> ScannerSettings: ...

    def save_cycle_state(self, state: PersistedScannerState) -> None: ...

    def load_cycle_state(self) -> PersistedScannerState | None: ...

    def append_archive(self, records: list[dict[str, Any]]) -> int: ...

    def save_wallet_summary(self, summary: dict[str, Any]) -> None: ...

    def recent_closed_trades(self, limit: int) -> list[ClosedTrade]: ...

    def prune_archive(self, *, now: float) -> int: ...


@dataclass
class StrategyContext:
    cycle: int
    prices: dict[str, float]
    regime: RegimeSnapshot
    positions: list[Position] = field(default_factory=list)
    risk_multiplier: float = 100.0


class StrategyEngine(Protocol):
    async def evaluate(self, context: StrategyContext) -> list[TradeCandidate]: ...

    async def review_positions(self, positions: list[Position], prices: dict[str, float]) -> list[CloseInstruction]: ...


class TradeExecutor(Protocol):
    async def open_position(self, candidate: TradeCandidate, notional: float) -> Position | None: ...

    async def close_position(self, instruction: CloseInstruction, price: float | None) -> ClosedTrade | None: ...


class StatusSink(Protocol):
    async def send_event(self, event: dict[str, Any]) -> int: ...
