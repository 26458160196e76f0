"""Typed view of the operator-facing scanner configuration surface."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, fields, replace
from typing import Any

import config
from trading.errors import ConfigurationError

logger = logging.getLogger(__name__)

SIZING_STRATEGIES = ("volatility_adjusted", "fixed_conviction")
TRADING_MODES = ("paper", "testnet", "mainnet")


@dataclass(frozen=True)
class ScannerSettings:
    scan_interval_ms: int = 60000
    min_combined_strength: float = 225.0
    min_regime_confidence: float = 50.0
    min_trade_value: float = 10.0
    max_positions_per_strategy: int = 1
    max_balance_percent_risk: float = 100.0
    max_balance_invest_cap: float = 0.0
    block_trading_in_downtrend: bool = False
    position_sizing_strategy: str = "volatility_adjusted"
    default_position_size: float = 100.0
    risk_per_trade_percent: float = 2.0
    stop_loss_atr_multiplier: float = 2.5
    trading_mode: str = "paper"

    @classmethod
    def from_config(cls) -> "ScannerSettings":
        return cls(
            scan_interval_ms=int(getattr(config, "SCAN_INTERVAL_MS", 60000)),
            min_combined_strength=float(getattr(config, "MIN_COMBINED_STRENGTH", 225.0)),
            min_regime_confidence=float(getattr(config, "MIN_REGIME_CONFIDENCE", 50.0)),
            min_trade_value=float(getattr(config, "MIN_TRADE_VALUE", 10.0)),
            max_positions_per_strategy=int(getattr(config, "MAX_POSITIONS_PER_STRATEGY", 1)),
            max_balance_percent_risk=float(getattr(config, "MAX_BALANCE_PERCENT_RISK", 100.0)),
            max_balance_invest_cap=float(getattr(config, "MAX_BALANCE_INVEST_CAP_USDT", 0.0)),
            block_trading_in_downtrend=bool(getattr(config, "BLOCK_TRADING_IN_DOWNTREND", False)),
            position_sizing_strategy=str(getattr(config, "POSITION_SIZING_STRATEGY", "volatility_adjusted")),
            default_position_size=float(getattr(config, "DEFAULT_POSITION_SIZE", 100.0)),
            risk_per_trade_percent=float(getattr(config, "RISK_PER_TRADE_PERCENT", 2.0)),
            stop_loss_atr_multiplier=float(getattr(config, "STOP_LOSS_ATR_MULTIPLIER", 2.5)),
            trading_mode=str(getattr(config, "TRADING_MODE", "paper")),
        ).validated()

    def with_overrides(self, overrides: dict[str, Any] | None) -> "ScannerSettings":
        """Apply stored operator overrides; unknown keys are ignored with a warning."""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("SETTINGS_OVERRIDE_UNKNOWN key=%s", key)
                continue
            current = getattr(self, key)
            try:
                if isinstance(current, bool):
                    changes[key] = value if isinstance(value, bool) else str(value).strip().lower() in ("1", "true", "yes", "on")
                elif isinstance(current, int):
                    changes[key] = int(value)
                elif isinstance(current, float):
                    changes[key] = float(value)
                else:
                    changes[key] = str(value).strip().lower()
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"invalid override {key}={value!r}") from exc
        return replace(self, **changes).validated()

    def validated(self) -> "ScannerSettings":
        problems: list[str] = []
        if self.scan_interval_ms <= 0:
            problems.append("scan_interval_ms<=0")
        for name in ("min_combined_strength", "min_trade_value", "max_balance_invest_cap", "default_position_size"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                problems.append(f"{name}<0")
        if not 0 <= self.min_regime_confidence <= 100:
            problems.append("min_regime_confidence_out_of_range")
        if not 0 < self.max_balance_percent_risk <= 100:
            problems.append("max_balance_percent_risk_out_of_range")
        if self.max_positions_per_strategy < 1:
            problems.append("max_positions_per_strategy<1")
        if self.position_sizing_strategy not in SIZING_STRATEGIES:
            problems.append(f"unknown_sizing_strategy:{self.position_sizing_strategy}")
        if self.trading_mode not in TRADING_MODES:
            problems.append(f"unknown_trading_mode:{self.trading_mode}")
        if problems:
            raise ConfigurationError("invalid scanner settings: " + ",".join(problems))
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
