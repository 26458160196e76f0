"""Paper trading: a simulated quote balance that doubles as the exchange gateway in paper mode."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable

import config
from trading.errors import ExchangeRejectionError
from trading.models import AccountSnapshot, Balance, CloseInstruction, ClosedTrade, Position, SymbolFilters, TradeCandidate

logger = logging.getLogger(__name__)


class PaperTradeExecutor:
    def __init__(
        self,
        *,
        starting_balance: float | None = None,
        quote_asset: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.quote_asset = (quote_asset or str(getattr(config, "QUOTE_ASSET", "USDT"))).upper()
        self.balance = float(
            starting_balance if starting_balance is not None else getattr(config, "PAPER_STARTING_BALANCE", 1000.0)
        )
        self.open_positions: dict[str, Position] = {}
        self.closed_trades: list[ClosedTrade] = []
        self._clock = clock

    def account_snapshot(self) -> AccountSnapshot:
        return AccountSnapshot(
            balances=[Balance(asset=self.quote_asset, free=round(self.balance, 8))],
            positions=list(self.open_positions.values()),
            fetched_at=self._clock(),
        )

    async def get_account_snapshot(self) -> AccountSnapshot:
        return self.account_snapshot()

    async def get_symbol_filters(self, symbols: list[str]) -> dict[str, SymbolFilters]:
        return {s.upper(): SymbolFilters(symbol=s.upper()) for s in symbols}

    async def open_position(self, candidate: TradeCandidate, notional: float) -> Position | None:
        if candidate.price <= 0:
            raise ExchangeRejectionError(f"no price for {candidate.symbol}")
        if notional > self.balance + 1e-9:
            raise ExchangeRejectionError(
                f"insufficient balance for {candidate.symbol}: need {notional:.2f} have {self.balance:.2f}"
            )
        position = Position(
            position_id=f"paper-{uuid.uuid4().hex[:12]}",
            symbol=candidate.symbol,
            strategy=candidate.strategy,
            quantity=notional / candidate.price,
            entry_price=candidate.price,
            opened_at=self._clock(),
        )
        self.open_positions[position.position_id] = position
        self.balance -= notional
        logger.info(
            "PAPER_BUY symbol=%s strategy=%s entry=%.8f size=$%.2f balance=$%.2f",
            position.symbol,
            position.strategy,
            position.entry_price,
            notional,
            self.balance,
        )
        return position

    async def close_position(self, instruction: CloseInstruction, price: float | None) -> ClosedTrade | None:
        position = self.open_positions.get(instruction.position_id)
        if position is None:
            logger.warning("PAPER_SELL_UNKNOWN position=%s symbol=%s", instruction.position_id, instruction.symbol)
            return None
        exit_value = position.market_value(price)
        pnl_usd = exit_value - position.cost_basis
        pnl_percent = (pnl_usd / position.cost_basis * 100.0) if position.cost_basis > 0 else 0.0
        self.open_positions.pop(position.position_id, None)
        self.balance += exit_value
        trade = ClosedTrade(
            symbol=position.symbol,
            strategy=position.strategy,
            pnl_usd=pnl_usd,
            pnl_percent=pnl_percent,
            closed_at=self._clock(),
        )
        self.closed_trades.append(trade)
        logger.info(
            "PAPER_SELL symbol=%s reason=%s pnl=%.2f%% ($%.2f) balance=$%.2f",
            position.symbol,
            instruction.reason,
            pnl_percent,
            pnl_usd,
            self.balance,
        )
        return trade
