"""Exchange gateway over HTTP: balances, positions, symbol filters and order forwarding."""

from __future__ import annotations

import logging
import time
from typing import Any

import config
from trading.errors import ExchangeRejectionError, NetworkError
from trading.models import (
    AccountSnapshot,
    Balance,
    CloseInstruction,
    ClosedTrade,
    Position,
    SymbolFilters,
    TradeCandidate,
    _float,
)
from utils.http_client import HttpResult, ResilientHttpClient

logger = logging.getLogger(__name__)


def _check(result: HttpResult, what: str) -> None:
    if result.ok:
        return
    if result.transport_failure:
        raise NetworkError(f"{what} network failure: {result.error}")
    raise ExchangeRejectionError(f"{what} rejected: {result.error}")


def parse_account_payload(payload: Any) -> AccountSnapshot:
    body = payload if isinstance(payload, dict) else {}
    balances = [
        Balance(
            asset=str(row.get("asset", "") or "").upper(),
            free=max(0.0, _float(row.get("free"))),
            locked=max(0.0, _float(row.get("locked"))),
        )
        for row in body.get("balances") or []
        if isinstance(row, dict) and row.get("asset")
    ]
    positions: list[Position] = []
    for row in body.get("positions") or []:
        if not isinstance(row, dict):
            continue
        qty = _float(row.get("quantity", row.get("qty")))
        if qty <= 0:
            continue
        positions.append(
            Position(
                position_id=str(row.get("id", row.get("positionId", "")) or ""),
                symbol=str(row.get("symbol", "") or "").upper(),
                strategy=str(row.get("strategy", "") or ""),
                quantity=qty,
                entry_price=_float(row.get("entryPrice", row.get("entry_price"))),
                opened_at=_float(row.get("openedAt", row.get("opened_at"))),
            )
        )
    return AccountSnapshot(balances=balances, positions=positions, fetched_at=time.time())


def parse_symbol_filters(payload: Any) -> dict[str, SymbolFilters]:
    """Read exchangeInfo-style `symbols[].filters` into SymbolFilters."""
    out: dict[str, SymbolFilters] = {}
    rows = payload.get("symbols") if isinstance(payload, dict) else None
    for row in rows or []:
        symbol = str((row or {}).get("symbol", "") or "").upper()
        if not symbol:
            continue
        filters = SymbolFilters(symbol=symbol)
        for item in row.get("filters") or []:
            kind = str(item.get("filterType", "") or "").upper()
            if kind in ("NOTIONAL", "MIN_NOTIONAL"):
                filters.min_notional = max(filters.min_notional, _float(item.get("minNotional")))
            elif kind == "LOT_SIZE":
                filters.step_size = max(0.0, _float(item.get("stepSize")))
        out[symbol] = filters
    return out


class HttpExchangeGateway:
    def __init__(self, base_url: str | None = None, client: ResilientHttpClient | None = None) -> None:
        self.base_url = (base_url or str(getattr(config, "EXCHANGE_GATEWAY_URL", ""))).rstrip("/")
        timeout = float(getattr(config, "NETWORK_CALL_TIMEOUT_SECONDS", 30.0))
        self._client = client or ResilientHttpClient(timeout_seconds=timeout)

    async def close(self) -> None:
        await self._client.close()

    async def get_account_snapshot(self) -> AccountSnapshot:
        result = await self._client.get_json(f"{self.base_url}/account", source="exchange")
        _check(result, "account")
        return parse_account_payload(result.data)

    async def get_symbol_filters(self, symbols: list[str]) -> dict[str, SymbolFilters]:
        if not symbols:
            return {}
        result = await self._client.get_json(
            f"{self.base_url}/exchangeInfo",
            source="exchange",
            params={"symbols": ",".join(s.upper() for s in symbols)},
        )
        _check(result, "exchange_info")
        filters = parse_symbol_filters(result.data)
        missing = [s for s in symbols if s.upper() not in filters]
        if missing:
            logger.warning("SYMBOL_FILTERS_MISSING symbols=%s", ",".join(missing))
        return filters


class HttpTradeExecutor:
    """Forwards open/close instructions to the gateway's order endpoints."""

    def __init__(self, base_url: str | None = None, client: ResilientHttpClient | None = None) -> None:
        self.base_url = (base_url or str(getattr(config, "EXCHANGE_GATEWAY_URL", ""))).rstrip("/")
        timeout = float(getattr(config, "NETWORK_CALL_TIMEOUT_SECONDS", 30.0))
        self._client = client or ResilientHttpClient(timeout_seconds=timeout)

    async def close(self) -> None:
        await self._client.close()

    async def open_position(self, candidate: TradeCandidate, notional: float) -> Position | None:
        payload = {
            "symbol": candidate.symbol,
            "side": "BUY",
            "quoteOrderQty": round(float(notional), 8),
            "strategy": candidate.strategy,
            "clientOrderId": candidate.candidate_id,
        }
        result = await self._client.post_json(f"{self.base_url}/orders", payload, source="exchange", max_attempts=1)
        _check(result, "open_order")
        body = result.data if isinstance(result.data, dict) else {}
        qty = _float(body.get("quantity", body.get("executedQty")))
        if qty <= 0:
            logger.warning("ORDER_NOT_FILLED symbol=%s body=%s", candidate.symbol, body)
            return None
        return Position(
            position_id=str(body.get("positionId", body.get("orderId", "")) or candidate.candidate_id),
            symbol=candidate.symbol,
            strategy=candidate.strategy,
            quantity=qty,
            entry_price=_float(body.get("price"), candidate.price),
            opened_at=_float(body.get("transactTime"), time.time() * 1000.0) / 1000.0,
        )

    async def close_position(self, instruction: CloseInstruction, price: float | None) -> ClosedTrade | None:
        payload = {"positionId": instruction.position_id, "symbol": instruction.symbol, "reason": instruction.reason}
        result = await self._client.post_json(f"{self.base_url}/orders/close", payload, source="exchange", max_attempts=1)
        _check(result, "close_order")
        body = result.data if isinstance(result.data, dict) else {}
        if not body.get("closed", True):
            return None
        return ClosedTrade(
            symbol=instruction.symbol,
            strategy=str(body.get("strategy", "") or ""),
            pnl_usd=_float(body.get("pnlUsd")),
            pnl_percent=_float(body.get("pnlPercent")),
            closed_at=time.time(),
        )
