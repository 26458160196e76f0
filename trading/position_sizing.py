"""Position sizing strategies and the stateless gate every candidate passes through."""

from __future__ import annotations

import logging
import math

from trading.models import PositionSizingRequest, PositionSizingResult, SymbolFilters, TradeCandidate
from trading.settings import ScannerSettings

logger = logging.getLogger(__name__)

REASON_INVALID_NUMBER = "invalid_number"
REASON_BELOW_MINIMUM = "below_minimum"
REASON_INSUFFICIENT_BALANCE = "insufficient_balance"
REASON_EXCHANGE_MIN_NOTIONAL = "exchange_min_notional"
REASON_CALCULATION_ERROR = "calculation_error"


def _finite(value: float | None) -> bool:
    return value is not None and isinstance(value, (int, float)) and math.isfinite(value)


def floor_to_step(quantity: float, step: float) -> float:
    if step <= 0:
        return quantity
    steps = math.floor(quantity / step + 1e-9)
    decimals = max(0, -int(math.floor(math.log10(step)))) if step < 1 else 0
    return round(steps * step, decimals + 2)


def volatility_adjusted_notional(
    *,
    balance: float,
    risk_percent: float,
    atr: float | None,
    stop_multiplier: float,
    price: float,
) -> float | None:
    """(risk fraction x balance) / (ATR x stop multiplier) x price, or None when inputs are unusable."""
    if not all(_finite(x) for x in (balance, risk_percent, atr, stop_multiplier, price)):
        return None
    if balance <= 0 or risk_percent <= 0 or atr <= 0 or stop_multiplier <= 0 or price <= 0:
        return None
    risk_fraction = risk_percent / 100.0 if risk_percent > 1 else risk_percent
    quantity = (balance * risk_fraction) / (atr * stop_multiplier)
    return quantity * price


def scale_by_risk(notional: float, risk_multiplier: float) -> float:
    """Apply a risk multiplier given in percent (clamped to 0..100) to a notional."""
    return float(notional) * max(0.0, min(100.0, float(risk_multiplier))) / 100.0


def fixed_conviction_notional(*, base_size: float, conviction: float | None) -> float | None:
    if conviction is None:
        conviction = 1.0
    if not _finite(base_size) or not _finite(conviction) or base_size <= 0:
        return None
    return base_size * max(0.0, min(1.0, float(conviction)))


class PositionSizeGate:
    def __init__(
        self,
        *,
        min_trade_value: float,
        strategy: str = "volatility_adjusted",
        base_position_size: float = 100.0,
        risk_per_trade_percent: float = 2.0,
        stop_loss_atr_multiplier: float = 2.5,
    ) -> None:
        self.min_trade_value = max(0.0, float(min_trade_value))
        self.strategy = strategy
        self.base_position_size = float(base_position_size)
        self.risk_per_trade_percent = float(risk_per_trade_percent)
        self.stop_loss_atr_multiplier = float(stop_loss_atr_multiplier)

    @classmethod
    def from_settings(cls, settings: ScannerSettings) -> "PositionSizeGate":
        return cls(
            min_trade_value=settings.min_trade_value,
            strategy=settings.position_sizing_strategy,
            base_position_size=settings.default_position_size,
            risk_per_trade_percent=settings.risk_per_trade_percent,
            stop_loss_atr_multiplier=settings.stop_loss_atr_multiplier,
        )

    def evaluate(self, request: PositionSizingRequest) -> PositionSizingResult:
        """Scale the strategy notional by the risk multiplier, then run the rejection checks on it."""
        if not _finite(request.proposed_notional) or request.proposed_notional <= 0:
            return PositionSizingResult(accepted=False, reason=REASON_INVALID_NUMBER)
        if not _finite(request.risk_multiplier):
            return PositionSizingResult(accepted=False, reason=REASON_INVALID_NUMBER)
        proposed = scale_by_risk(request.proposed_notional, request.risk_multiplier)
        if proposed < self.min_trade_value:
            return PositionSizingResult(accepted=False, reason=REASON_BELOW_MINIMUM)

        available = request.available_funds if _finite(request.available_funds) else 0.0
        if proposed > max(0.0, available):
            return PositionSizingResult(accepted=False, reason=REASON_INSUFFICIENT_BALANCE)

        min_notional = request.instrument_min_notional if _finite(request.instrument_min_notional) else 0.0
        if proposed < min_notional:
            return PositionSizingResult(accepted=False, reason=REASON_EXCHANGE_MIN_NOTIONAL)

        adjusted = float(proposed)
        price = request.price
        step = request.instrument_step_size
        if _finite(price) and price > 0 and _finite(step) and step > 0:
            adjusted = floor_to_step(adjusted / price, step) * price
            if adjusted < self.min_trade_value:
                return PositionSizingResult(accepted=False, reason=REASON_BELOW_MINIMUM)
            if adjusted < min_notional or adjusted <= 0:
                return PositionSizingResult(accepted=False, reason=REASON_EXCHANGE_MIN_NOTIONAL)
        return PositionSizingResult(accepted=True, adjusted_notional=adjusted)

    def propose_notional(self, candidate: TradeCandidate, *, balance: float) -> float | None:
        if self.strategy == "fixed_conviction":
            return fixed_conviction_notional(base_size=self.base_position_size, conviction=candidate.conviction)
        return volatility_adjusted_notional(
            balance=balance,
            risk_percent=self.risk_per_trade_percent,
            atr=candidate.atr,
            stop_multiplier=self.stop_loss_atr_multiplier,
            price=candidate.price,
        )

    def size_candidate(
        self,
        candidate: TradeCandidate,
        *,
        available_funds: float,
        risk_multiplier: float,
        filters: SymbolFilters | None = None,
    ) -> tuple[PositionSizingRequest | None, PositionSizingResult]:
        """Run the configured sizing strategy for one candidate, then the gate."""
        proposed = self.propose_notional(candidate, balance=available_funds)
        if proposed is None:
            logger.debug(
                "SIZING_CALC_ERROR candidate=%s strategy=%s price=%s atr=%s conviction=%s",
                candidate.candidate_id,
                self.strategy,
                candidate.price,
                candidate.atr,
                candidate.conviction,
            )
            return None, PositionSizingResult(accepted=False, reason=REASON_CALCULATION_ERROR)
        request = PositionSizingRequest(
            available_funds=available_funds,
            proposed_notional=proposed,
            instrument_min_notional=filters.min_notional if filters else 0.0,
            instrument_step_size=filters.step_size if filters else 0.0,
            risk_multiplier=risk_multiplier,
            price=candidate.price if candidate.price > 0 else None,
        )
        return request, self.evaluate(request)
