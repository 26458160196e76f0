"""Wallet view for the scan cycle: balances, open positions and the capital they tie up."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import config
from trading.collaborators import ExchangeGateway, PersistenceFacade
from trading.models import AccountSnapshot, Position

logger = logging.getLogger(__name__)


class WalletReconciliationFacade:
    """Read-only over the exchange; the only write is the published summary."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        persistence: PersistenceFacade,
        *,
        quote_asset: str | None = None,
        trading_mode: str | None = None,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gateway = gateway
        self.persistence = persistence
        self.quote_asset = (quote_asset or str(getattr(config, "QUOTE_ASSET", "USDT"))).upper()
        self.trading_mode = trading_mode or str(getattr(config, "TRADING_MODE", "paper"))
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else getattr(config, "NETWORK_CALL_TIMEOUT_SECONDS", 30.0)
        )
        self._clock = clock
        self.snapshot: AccountSnapshot | None = None

    async def refresh(self) -> AccountSnapshot:
        self.snapshot = await asyncio.wait_for(self.gateway.get_account_snapshot(), timeout=self.timeout_seconds)
        return self.snapshot

    @property
    def positions(self) -> list[Position]:
        return list(self.snapshot.positions) if self.snapshot else []

    def available_funds(self) -> float:
        return self.snapshot.available(self.quote_asset) if self.snapshot else 0.0

    def allocated_capital(self, prices: dict[str, float] | None = None) -> float:
        prices = prices or {}
        return sum(p.market_value(prices.get(p.symbol)) for p in self.positions)

    def open_by_strategy(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for position in self.positions:
            counts[position.strategy] = counts.get(position.strategy, 0) + 1
        return counts

    def summary(self, prices: dict[str, float] | None = None) -> dict[str, Any]:
        available = self.available_funds()
        allocated = self.allocated_capital(prices)
        return {
            "trading_mode": self.trading_mode,
            "quote_asset": self.quote_asset,
            "available": round(available, 8),
            "allocated": round(allocated, 8),
            "total_equity": round(available + allocated, 8),
            "open_positions": len(self.positions),
            "ts": self._clock(),
        }

    async def publish_summary(self, prices: dict[str, float] | None = None) -> dict[str, Any]:
        summary = self.summary(prices)
        await asyncio.to_thread(self.persistence.save_wallet_summary, summary)
        return summary

    async def reconcile(self, prices: dict[str, float] | None = None) -> dict[str, Any]:
        """Re-read the account, report position drift against the last snapshot and publish a summary."""
        before = {p.position_id for p in self.positions}
        await self.refresh()
        after = {p.position_id for p in self.positions}
        appeared = sorted(after - before)
        vanished = sorted(before - after)
        if before and (appeared or vanished):
            logger.warning(
                "WALLET_DRIFT appeared=%s vanished=%s",
                ",".join(appeared) or "-",
                ",".join(vanished) or "-",
            )
        summary = await self.publish_summary(prices)
        logger.info(
            "WALLET_RECONCILED mode=%s available=%.2f allocated=%.2f positions=%s",
            self.trading_mode,
            summary["available"],
            summary["allocated"],
            summary["open_positions"],
        )
        return summary
