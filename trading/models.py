"""Value objects exchanged between the scanner engine and its collaborators."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any

REGIME_LABELS = ("uptrend", "downtrend", "ranging", "neutral")


def _float(value: Any, default: float = 0.0) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return float(default)
    if math.isnan(out) or math.isinf(out):
        return float(default)
    return out


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


@dataclass
class LeaseRecord:
    holder_id: str
    claimed_at: float
    last_renewed_at: float
    forced: bool = False

    def is_stale(self, now: float, ttl_seconds: float) -> bool:
        return (float(now) - float(self.last_renewed_at)) > float(ttl_seconds)


@dataclass
class ClaimResult:
    granted: bool
    reason: str = ""
    active_id: str = ""


@dataclass
class SessionStatus:
    is_active: bool
    active_id: str = ""
    last_renewed_at: float = 0.0


@dataclass
class RegimeSnapshot:
    label: str = "neutral"
    confidence: float = 0.5
    is_confirmed: bool = False
    consecutive_periods: int = 0
    confirmation_threshold: int = 3
    history: list[str] = field(default_factory=list)
    updated_at: float = 0.0

    def advance(self, label: str, confidence: float, *, now: float, history_max: int = 10) -> "RegimeSnapshot":
        """Next snapshot when the detector reports `label` without its own streak data."""
        label = label if label in REGIME_LABELS else "neutral"
        periods = self.consecutive_periods + 1 if label == self.label else 1
        history = (list(self.history) + [label])[-max(1, int(history_max)):]
        return RegimeSnapshot(
            label=label,
            confidence=max(0.0, min(1.0, float(confidence))),
            is_confirmed=periods >= self.confirmation_threshold,
            consecutive_periods=periods,
            confirmation_threshold=self.confirmation_threshold,
            history=history,
            updated_at=float(now),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None, *, confirmation_threshold: int = 3) -> "RegimeSnapshot":
        payload = payload or {}
        label = str(payload.get("label", "neutral") or "neutral").lower()
        return cls(
            label=label if label in REGIME_LABELS else "neutral",
            confidence=max(0.0, min(1.0, _float(payload.get("confidence"), 0.5))),
            is_confirmed=bool(payload.get("is_confirmed", False)),
            consecutive_periods=max(0, _int(payload.get("consecutive_periods"), 0)),
            confirmation_threshold=max(1, _int(payload.get("confirmation_threshold"), confirmation_threshold)),
            history=[str(x) for x in (payload.get("history") or []) if str(x) in REGIME_LABELS],
            updated_at=_float(payload.get("updated_at"), 0.0),
        )


@dataclass
class CycleState:
    phase: str = "idle"
    started_at: float = 0.0
    last_completed_at: float = 0.0
    total_cycles: int = 0
    last_cycle_duration_ms: float = 0.0
    rolling_avg_duration_ms: float = 0.0
    next_scheduled_at: float = 0.0
    phase_durations_ms: dict[str, float] = field(default_factory=dict)

    def record_duration(self, duration_ms: float, *, alpha: float) -> None:
        duration_ms = max(0.0, float(duration_ms))
        self.last_cycle_duration_ms = duration_ms
        if self.rolling_avg_duration_ms <= 0:
            self.rolling_avg_duration_ms = duration_ms
        else:
            self.rolling_avg_duration_ms = self.rolling_avg_duration_ms * (1.0 - alpha) + duration_ms * alpha

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "CycleState":
        payload = payload or {}
        phases = payload.get("phase_durations_ms") or {}
        return cls(
            phase=str(payload.get("phase", "idle") or "idle"),
            started_at=_float(payload.get("started_at")),
            last_completed_at=_float(payload.get("last_completed_at")),
            total_cycles=max(0, _int(payload.get("total_cycles"))),
            last_cycle_duration_ms=max(0.0, _float(payload.get("last_cycle_duration_ms"))),
            rolling_avg_duration_ms=max(0.0, _float(payload.get("rolling_avg_duration_ms"))),
            next_scheduled_at=_float(payload.get("next_scheduled_at")),
            phase_durations_ms={str(k): _float(v) for k, v in phases.items()} if isinstance(phases, dict) else {},
        )


@dataclass
class SentimentIndex:
    value: int | None = None
    classification: str = "unknown"
    fetched_at: float = 0.0


@dataclass
class MarketVolatility:
    adx: float | None = None
    bbw: float | None = None


@dataclass
class Balance:
    asset: str
    free: float
    locked: float = 0.0


@dataclass
class Position:
    position_id: str
    symbol: str
    strategy: str
    quantity: float
    entry_price: float
    opened_at: float = 0.0

    @property
    def cost_basis(self) -> float:
        return self.quantity * self.entry_price

    def market_value(self, price: float | None) -> float:
        if price is None or price <= 0:
            return self.cost_basis
        return self.quantity * float(price)


@dataclass
class AccountSnapshot:
    balances: list[Balance] = field(default_factory=list)
    positions: list[Position] = field(default_factory=list)
    fetched_at: float = 0.0

    def available(self, asset: str) -> float:
        asset = asset.upper()
        return sum(b.free for b in self.balances if b.asset.upper() == asset)


@dataclass
class SymbolFilters:
    symbol: str
    min_notional: float = 0.0
    step_size: float = 0.0


@dataclass
class TradeCandidate:
    candidate_id: str
    symbol: str
    strategy: str
    combined_strength: float = 0.0
    conviction: float | None = None
    price: float = 0.0
    atr: float | None = None


@dataclass
class CloseInstruction:
    position_id: str
    symbol: str
    reason: str = ""


@dataclass
class ClosedTrade:
    symbol: str
    strategy: str
    pnl_usd: float
    pnl_percent: float
    closed_at: float


@dataclass
class PositionSizingRequest:
    available_funds: float
    proposed_notional: float
    instrument_min_notional: float = 0.0
    instrument_step_size: float = 0.0
    risk_multiplier: float = 100.0
    price: float | None = None


@dataclass
class PositionSizingResult:
    accepted: bool
    reason: str = ""
    adjusted_notional: float | None = None
