"""Strategy engine over HTTP: entry candidates for a cycle and exit reviews for open positions."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

import config
from trading.collaborators import StrategyContext
from trading.errors import ExchangeRejectionError, NetworkError
from trading.models import CloseInstruction, Position, TradeCandidate, _float
from utils.http_client import HttpResult, ResilientHttpClient

logger = logging.getLogger(__name__)


def _check(result: HttpResult, what: str) -> None:
    if result.ok:
        return
    if result.transport_failure:
        raise NetworkError(f"strategy engine {what} network failure: {result.error}")
    raise ExchangeRejectionError(f"strategy engine {what} rejected: {result.error}")


def parse_candidates(payload: Any) -> list[TradeCandidate]:
    rows = payload.get("candidates") if isinstance(payload, dict) else payload
    out: list[TradeCandidate] = []
    for idx, row in enumerate(rows or []):
        if not isinstance(row, dict) or not row.get("symbol"):
            continue
        conviction = row.get("conviction")
        atr = row.get("atr")
        out.append(
            TradeCandidate(
                candidate_id=str(row.get("id", "") or f"cand-{idx}"),
                symbol=str(row["symbol"]).upper(),
                strategy=str(row.get("strategy", "") or "default"),
                combined_strength=_float(row.get("combinedStrength", row.get("combined_strength"))),
                conviction=_float(conviction) if conviction is not None else None,
                price=_float(row.get("price")),
                atr=_float(atr) if atr is not None else None,
            )
        )
    return out


def parse_close_instructions(payload: Any) -> list[CloseInstruction]:
    rows = payload.get("close") if isinstance(payload, dict) else payload
    return [
        CloseInstruction(
            position_id=str(row.get("positionId", row.get("position_id", "")) or ""),
            symbol=str(row.get("symbol", "") or "").upper(),
            reason=str(row.get("reason", "") or ""),
        )
        for row in rows or []
        if isinstance(row, dict)
    ]


class HttpStrategyEngine:
    def __init__(self, base_url: str | None = None, client: ResilientHttpClient | None = None) -> None:
        self.base_url = (base_url or str(getattr(config, "STRATEGY_ENGINE_URL", ""))).rstrip("/")
        timeout = float(getattr(config, "AGGREGATE_CALL_TIMEOUT_SECONDS", 90.0))
        self._client = client or ResilientHttpClient(timeout_seconds=timeout)

    async def close(self) -> None:
        await self._client.close()

    async def evaluate(self, context: StrategyContext) -> list[TradeCandidate]:
        payload = {
            "cycle": context.cycle,
            "prices": context.prices,
            "regime": context.regime.to_dict(),
            "positions": [asdict(p) for p in context.positions],
            "riskMultiplier": context.risk_multiplier,
        }
        result = await self._client.post_json(f"{self.base_url}/evaluate", payload, source="strategy")
        _check(result, "evaluate")
        candidates = parse_candidates(result.data)
        logger.debug("STRATEGY_CANDIDATES cycle=%s count=%s", context.cycle, len(candidates))
        return candidates

    async def review_positions(self, positions: list[Position], prices: dict[str, float]) -> list[CloseInstruction]:
        if not positions:
            return []
        payload = {"positions": [asdict(p) for p in positions], "prices": prices}
        result = await self._client.post_json(f"{self.base_url}/review", payload, source="strategy")
        _check(result, "review")
        return parse_close_instructions(result.data)
