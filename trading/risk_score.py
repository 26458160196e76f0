"""Composite risk score and the risk multiplier derived from it.

Every sub-score lives on a 0..100 scale where 50 means "neutral / unknown", so a
missing input never drags the composite up or down on its own.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import config
from trading.errors import ConfigurationError
from trading.models import ClosedTrade, MarketVolatility, Position, RegimeSnapshot, SentimentIndex

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50.0
COMPONENT_NAMES = (
    "unrealized_pnl",
    "realized_pnl",
    "regime",
    "volatility",
    "opportunity",
    "sentiment",
    "signal_quality",
)
_WEIGHT_TOLERANCE = 1e-6


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, float(value)))


@dataclass
class RiskInputs:
    positions: list[Position] = field(default_factory=list)
    prices: dict[str, float] = field(default_factory=dict)
    closed_trades: list[ClosedTrade] = field(default_factory=list)
    regime: RegimeSnapshot | None = None
    volatility: MarketVolatility | None = None
    signal_history: list[int] = field(default_factory=list)
    sentiment: SentimentIndex | None = None
    avg_signal_strength: float | None = None
    now: float = 0.0


@dataclass
class RiskComponent:
    score: float
    weight: float
    details: str = ""


@dataclass
class RiskScoreBreakdown:
    components: dict[str, RiskComponent]
    final_score: float
    risk_multiplier: float
    computed_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "components": {
                name: {"score": round(c.score, 2), "weight": c.weight, "details": c.details}
                for name, c in self.components.items()
            },
            "final_score": round(self.final_score, 2),
            "risk_multiplier": round(self.risk_multiplier, 2),
            "computed_at": self.computed_at,
        }


@dataclass(frozen=True)
class RiskThresholds:
    excellent: float = 80.0
    good: float = 50.0
    poor: float = 30.0
    good_floor_fraction: float = 0.5
    poor_floor_fraction: float = 0.1
    floor_percent: float = 5.0

    @classmethod
    def from_config(cls) -> "RiskThresholds":
        return cls(
            excellent=float(getattr(config, "RISK_THRESHOLD_EXCELLENT", 80.0)),
            good=float(getattr(config, "RISK_THRESHOLD_GOOD", 50.0)),
            poor=float(getattr(config, "RISK_THRESHOLD_POOR", 30.0)),
            good_floor_fraction=float(getattr(config, "RISK_BAND_GOOD_FLOOR_FRACTION", 0.5)),
            poor_floor_fraction=float(getattr(config, "RISK_BAND_POOR_FLOOR_FRACTION", 0.1)),
            floor_percent=float(getattr(config, "RISK_MULTIPLIER_FLOOR_PERCENT", 5.0)),
        ).validated()

    def validated(self) -> "RiskThresholds":
        if not (0.0 <= self.poor < self.good < self.excellent <= 100.0):
            raise ConfigurationError(
                f"risk thresholds must satisfy poor<good<excellent poor={self.poor} good={self.good} "
                f"excellent={self.excellent}"
            )
        if not (0.0 <= self.poor_floor_fraction <= self.good_floor_fraction <= 1.0):
            raise ConfigurationError("risk band fractions must satisfy 0<=poor<=good<=1")
        if self.floor_percent < 0:
            raise ConfigurationError("risk multiplier floor must be >= 0")
        return self


def validate_weights(weights: dict[str, float]) -> dict[str, float]:
    unknown = sorted(set(weights) - set(COMPONENT_NAMES))
    if unknown:
        raise ConfigurationError(f"unknown risk weight components: {','.join(unknown)}")
    out = {name: float(weights.get(name, 0.0)) for name in COMPONENT_NAMES}
    if any(w < 0 or not math.isfinite(w) for w in out.values()):
        raise ConfigurationError("risk weights must be finite and non-negative")
    total = sum(out.values())
    if abs(total - 1.0) > _WEIGHT_TOLERANCE:
        raise ConfigurationError(f"risk weights must sum to 1.0 (got {total:.6f})")
    return out


def unrealized_pnl_score(positions: list[Position], prices: dict[str, float]) -> tuple[float, str]:
    invested = 0.0
    pnl = 0.0
    priced = 0
    for pos in positions:
        price = prices.get(pos.symbol)
        if not price or price <= 0 or pos.cost_basis <= 0:
            continue
        pnl += (float(price) - pos.entry_price) * pos.quantity
        invested += pos.cost_basis
        priced += 1
    if priced == 0 or invested <= 0:
        return NEUTRAL_SCORE, "no priced positions"
    pnl_percent = pnl / invested * 100.0
    # Gains are log-damped, losses stay linear.
    scaled = math.log1p(pnl_percent) if pnl_percent > 0 else pnl_percent
    count_factor = min(1.0, priced / 3.0)
    return _clamp(NEUTRAL_SCORE + scaled * 5.0 * count_factor), f"{pnl:+.2f} ({pnl_percent:+.1f}%)"


def realized_pnl_score(
    trades: list[ClosedTrade],
    *,
    now: float,
    min_trades: int = 5,
    decay_hours: float = 24.0,
) -> tuple[float, str]:
    if len(trades) < max(1, min_trades):
        return NEUTRAL_SCORE, f"{len(trades)} trades (need {min_trades})"
    weighted = 0.0
    wins = 0
    for trade in trades:
        age_hours = max(0.0, (now - trade.closed_at) / 3600.0)
        weighted += trade.pnl_percent * math.exp(-age_hours / decay_hours)
        if trade.pnl_percent > 0:
            wins += 1
    count = len(trades)
    weighted_avg = weighted / count
    win_rate = wins / count * 100.0
    score = NEUTRAL_SCORE + weighted_avg * 4.0 * min(1.0, count / 20.0) + (win_rate - 50.0) * 0.2
    return _clamp(score), f"{count} trades, win rate {win_rate:.0f}%"


def regime_score(regime: RegimeSnapshot | None) -> tuple[float, str]:
    if regime is None or regime.confidence <= 0:
        return NEUTRAL_SCORE, "no regime"
    confidence_pct = regime.confidence * 100.0
    strong = confidence_pct >= 70 and regime.is_confirmed
    base = NEUTRAL_SCORE
    if regime.label in ("uptrend", "downtrend"):
        if strong:
            base = 75.0
        elif confidence_pct >= 60:
            base = 65.0
        elif confidence_pct >= 50:
            base = 55.0
    elif regime.label == "ranging":
        if strong:
            base = 50.0
        elif confidence_pct >= 50:
            base = 45.0
        else:
            base = 40.0
    score = NEUTRAL_SCORE + (base - NEUTRAL_SCORE) * regime.confidence
    return _clamp(score), f"{regime.label} {confidence_pct:.0f}%{' confirmed' if regime.is_confirmed else ''}"


def volatility_score(volatility: MarketVolatility | None) -> tuple[float, str]:
    if volatility is None or volatility.adx is None or volatility.bbw is None:
        return NEUTRAL_SCORE, "no volatility data"
    adx = float(volatility.adx)
    bbw = float(volatility.bbw)
    if adx < 20:
        adx_score = adx / 20.0 * 50.0
    elif adx <= 40:
        adx_score = 50.0 + (adx - 20.0) / 20.0 * 50.0
    else:
        adx_score = 100.0 - (adx - 40.0) / 60.0 * 50.0
    bbw_score = _clamp(bbw / 0.05 * 50.0)
    return _clamp(_clamp(adx_score) * 0.4 + bbw_score * 0.6), f"ADX {adx:.1f}, BBW {bbw:.3f}"


def opportunity_score(signal_history: list[int]) -> tuple[float, str]:
    if not signal_history:
        return NEUTRAL_SCORE, "no scan history"
    recent = signal_history[-5:]
    avg = sum(max(0, int(x)) for x in recent) / len(recent)
    return _clamp(avg * 5.0), f"{avg:.1f} signals/scan"


def sentiment_score(sentiment: SentimentIndex | None) -> tuple[float, str]:
    if sentiment is None or sentiment.value is None:
        return NEUTRAL_SCORE, "no sentiment"
    # Contrarian: extreme fear scores high.
    return _clamp(100.0 - float(sentiment.value)), f"{sentiment.value} ({sentiment.classification})"


def signal_quality_score(avg_strength: float | None) -> tuple[float, str]:
    if avg_strength is None or avg_strength <= 0:
        return NEUTRAL_SCORE, "no signals"
    return _clamp(avg_strength / 3.5), f"avg strength {avg_strength:.0f}"


def component_scores(
    inputs: RiskInputs,
    *,
    min_trades: int = 5,
    decay_hours: float = 24.0,
) -> dict[str, tuple[float, str]]:
    return {
        "unrealized_pnl": unrealized_pnl_score(inputs.positions, inputs.prices),
        "realized_pnl": realized_pnl_score(
            inputs.closed_trades,
            now=inputs.now,
            min_trades=min_trades,
            decay_hours=decay_hours,
        ),
        "regime": regime_score(inputs.regime),
        "volatility": volatility_score(inputs.volatility),
        "opportunity": opportunity_score(inputs.signal_history),
        "sentiment": sentiment_score(inputs.sentiment),
        "signal_quality": signal_quality_score(inputs.avg_signal_strength),
    }


def weighted_score(scores: dict[str, float], weights: dict[str, float]) -> float:
    total = 0.0
    for name, weight in weights.items():
        score = scores.get(name)
        total += (NEUTRAL_SCORE if score is None else _clamp(score)) * weight
    return _clamp(total)


def risk_multiplier(final_score: float, max_percent: float, thresholds: RiskThresholds) -> float:
    """Map a composite score to the percentage of configured max risk to use, in whole percent."""
    final_score = round(_clamp(final_score))
    top = max(thresholds.floor_percent, float(max_percent))
    if final_score >= thresholds.excellent:
        value = top
    elif final_score >= thresholds.good:
        frac = (final_score - thresholds.good) / (thresholds.excellent - thresholds.good)
        value = top * (thresholds.good_floor_fraction + (1.0 - thresholds.good_floor_fraction) * frac)
    elif final_score >= thresholds.poor:
        frac = (final_score - thresholds.poor) / (thresholds.good - thresholds.poor)
        span = thresholds.good_floor_fraction - thresholds.poor_floor_fraction
        value = top * (thresholds.poor_floor_fraction + span * frac)
    else:
        value = max(thresholds.floor_percent, thresholds.poor_floor_fraction * top)
    return float(max(thresholds.floor_percent, min(top, round(value))))


class RiskScoreAggregator:
    def __init__(
        self,
        *,
        max_percent_risk: float | None = None,
        weights: dict[str, float] | None = None,
        thresholds: RiskThresholds | None = None,
        interval_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        raw_weights = weights if weights is not None else getattr(config, "RISK_SCORE_WEIGHTS", {})
        self.weights = validate_weights(dict(raw_weights or {}))
        self.thresholds = (thresholds or RiskThresholds.from_config()).validated()
        if max_percent_risk is None:
            max_percent_risk = float(getattr(config, "MAX_BALANCE_PERCENT_RISK", 100.0))
        self.max_percent_risk = max(self.thresholds.floor_percent, float(max_percent_risk))
        if interval_seconds is None:
            interval_seconds = float(getattr(config, "RISK_SCORE_INTERVAL_SECONDS", 30.0))
        self.interval_seconds = max(0.0, float(interval_seconds))
        self._clock = clock
        self._last: RiskScoreBreakdown | None = None
        self._last_at = 0.0

    @property
    def last(self) -> RiskScoreBreakdown | None:
        return self._last

    def invalidate(self) -> None:
        self._last = None
        self._last_at = 0.0

    def compute(self, inputs: RiskInputs, *, force: bool = False) -> RiskScoreBreakdown:
        now = float(self._clock())
        if not force and self._last is not None and (now - self._last_at) < self.interval_seconds:
            return self._last

        if not inputs.now:
            inputs.now = now
        raw = component_scores(
            inputs,
            min_trades=int(getattr(config, "RISK_REALIZED_MIN_TRADES", 5)),
            decay_hours=float(getattr(config, "RISK_REALIZED_DECAY_HOURS", 24.0)),
        )
        components = {
            name: RiskComponent(score=score, weight=self.weights[name], details=details)
            for name, (score, details) in raw.items()
        }
        final = float(round(weighted_score({name: c.score for name, c in components.items()}, self.weights)))
        multiplier = risk_multiplier(final, self.max_percent_risk, self.thresholds)
        breakdown = RiskScoreBreakdown(
            components=components,
            final_score=final,
            risk_multiplier=multiplier,
            computed_at=now,
        )
        self._last = breakdown
        self._last_at = now
        logger.info(
            "RISK_SCORE final=%.1f multiplier=%.1f%% max=%.1f%% %s",
            final,
            multiplier,
            self.max_percent_risk,
            " ".join(f"{name}={c.score:.0f}" for name, c in components.items()),
        )
        return breakdown
