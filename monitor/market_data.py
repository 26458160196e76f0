"""Market data over HTTP: spot prices, regime detector output and the Fear & Greed index."""

from __future__ import annotations

import logging
import time
from typing import Any

import config
from trading.errors import ExchangeRejectionError, NetworkError, OptionalDataError
from trading.models import MarketVolatility, RegimeSnapshot, SentimentIndex
from utils.http_client import HttpResult, ResilientHttpClient

logger = logging.getLogger(__name__)

_LABEL_ALIASES = {
    "uptrend": "uptrend",
    "up": "uptrend",
    "trending_up": "uptrend",
    "bull": "uptrend",
    "bullish": "uptrend",
    "downtrend": "downtrend",
    "down": "downtrend",
    "trending_down": "downtrend",
    "bear": "downtrend",
    "bearish": "downtrend",
    "ranging": "ranging",
    "range": "ranging",
    "sideways": "ranging",
    "consolidation": "ranging",
    "neutral": "neutral",
}


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_regime_label(value: Any) -> str:
    if isinstance(value, dict):
        value = _first(value, "regime", "label", "state", "name")
    text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    return _LABEL_ALIASES.get(text, "neutral")


def normalize_regime_payload(payload: Any, *, confirmation_threshold: int = 3) -> RegimeSnapshot:
    """Collapse the detector's loosely-shaped payload into a RegimeSnapshot.

    `consecutive_periods == 0` in the result means the detector reported no streak.
    """
    if not isinstance(payload, dict):
        raise OptionalDataError(f"regime payload is not an object: {type(payload).__name__}")
    body = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    raw_label = _first(body, "regime", "label", "state", "marketRegime", "market_regime")
    if raw_label is None:
        raise OptionalDataError("regime payload has no label")

    confidence = _as_float(_first(body, "confidence", "confidencePct", "confidence_pct", "score"))
    if confidence is None:
        confidence = 0.5
    if confidence > 1.0:
        confidence = confidence / 100.0

    history_raw = _first(body, "regimeHistory", "regime_history", "history") or []
    history = [normalize_regime_label(item) for item in history_raw if item is not None]
    threshold = _as_float(_first(body, "confirmationThreshold", "confirmation_threshold"))
    periods = _as_float(_first(body, "consecutivePeriods", "consecutive_periods", "streak", "periods"))
    confirmed = _first(body, "isConfirmed", "is_confirmed", "confirmed")
    threshold_int = int(threshold) if threshold and threshold > 0 else int(confirmation_threshold)
    periods_int = max(0, int(periods or 0))
    return RegimeSnapshot(
        label=normalize_regime_label(raw_label),
        confidence=max(0.0, min(1.0, confidence)),
        is_confirmed=bool(confirmed) if confirmed is not None else periods_int >= threshold_int,
        consecutive_periods=periods_int,
        confirmation_threshold=threshold_int,
        history=history[-int(getattr(config, "REGIME_HISTORY_MAX", 10)):],
        updated_at=time.time(),
    )


def normalize_volatility_payload(payload: Any) -> MarketVolatility:
    if not isinstance(payload, dict):
        return MarketVolatility()
    body = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    nested = body.get("volatility") if isinstance(body.get("volatility"), dict) else body
    return MarketVolatility(
        adx=_as_float(_first(nested, "adx", "ADX")),
        bbw=_as_float(_first(nested, "bbw", "bbWidth", "bb_width")),
    )


def _raise_for(result: HttpResult, what: str, *, optional: bool) -> None:
    if result.ok:
        return
    if optional:
        raise OptionalDataError(f"{what} unavailable: {result.error}")
    if result.transport_failure:
        raise NetworkError(f"{what} network failure: {result.error}")
    raise ExchangeRejectionError(f"{what} rejected: {result.error}")


class HttpMarketDataProvider:
    def __init__(self, client: ResilientHttpClient | None = None) -> None:
        timeout = float(getattr(config, "NETWORK_CALL_TIMEOUT_SECONDS", 30.0))
        self._client = client or ResilientHttpClient(timeout_seconds=timeout)
        self._last_volatility: MarketVolatility | None = None

    async def close(self) -> None:
        await self._client.close()

    async def get_prices(self, symbols: list[str]) -> dict[str, float]:
        if not symbols:
            return {}
        base = str(getattr(config, "MARKET_DATA_URL", "https://api.binance.com/api/v3"))
        encoded = "[" + ",".join(f'"{s.upper()}"' for s in symbols) + "]"
        result = await self._client.get_json(f"{base}/ticker/price", source="binance", params={"symbols": encoded})
        _raise_for(result, "prices", optional=False)
        prices: dict[str, float] = {}
        for row in result.data or []:
            price = _as_float((row or {}).get("price"))
            symbol = str((row or {}).get("symbol", "") or "").upper()
            if symbol and price and price > 0:
                prices[symbol] = price
        return prices

    async def get_regime(self, symbol: str, timeframe: str) -> RegimeSnapshot:
        url = str(getattr(config, "REGIME_API_URL", ""))
        result = await self._client.get_json(url, source="regime", params={"symbol": symbol, "timeframe": timeframe})
        _raise_for(result, "regime", optional=True)
        self._last_volatility = normalize_volatility_payload(result.data)
        return normalize_regime_payload(
            result.data,
            confirmation_threshold=int(getattr(config, "REGIME_CONFIRMATION_THRESHOLD", 3)),
        )

    async def get_volatility(self, symbol: str, timeframe: str) -> MarketVolatility:
        if self._last_volatility is None:
            await self.get_regime(symbol, timeframe)
        return self._last_volatility or MarketVolatility()

    async def get_sentiment_index(self) -> SentimentIndex:
        url = str(getattr(config, "SENTIMENT_API_URL", "https://api.alternative.me/fng/"))
        result = await self._client.get_json(url, source="sentiment", params={"limit": 1})
        _raise_for(result, "sentiment", optional=True)
        rows = (result.data or {}).get("data") if isinstance(result.data, dict) else None
        if not rows:
            raise OptionalDataError("sentiment payload empty")
        row = rows[0] or {}
        value = _as_float(row.get("value"))
        if value is None:
            raise OptionalDataError(f"sentiment value missing: {row}")
        return SentimentIndex(
            value=int(max(0, min(100, value))),
            classification=str(row.get("value_classification", "unknown") or "unknown"),
            fetched_at=time.time(),
        )
