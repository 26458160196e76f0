"""Persistence facade used by the scanner: state file for resumable counters, SQL for everything else."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

import config
from database import db
from trading.errors import PersistenceError
from trading.models import ClosedTrade
from trading.scanner_state import PersistedScannerState, load_state, save_state
from trading.settings import ScannerSettings

logger = logging.getLogger(__name__)


class LocalPersistence:
    def __init__(self, *, state_file: str | None = None, trading_mode: str | None = None) -> None:
        self.state_file = state_file or str(getattr(config, "SCANNER_STATE_FILE", "data/scanner_state.json"))
        self.trading_mode = trading_mode or str(getattr(config, "TRADING_MODE", "paper"))

    def load_config(self) -> ScannerSettings:
        settings = ScannerSettings.from_config()
        try:
            overrides = db.get_settings_overrides()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"database error loading settings overrides: {exc}") from exc
        if overrides:
            logger.info("SETTINGS_OVERRIDES keys=%s", ",".join(sorted(overrides)))
        return settings.with_overrides(overrides)

    def save_cycle_state(self, state: PersistedScannerState) -> None:
        save_state(state, self.state_file)

    def load_cycle_state(self) -> PersistedScannerState | None:
        return load_state(self.state_file)

    def append_archive(self, records: list[dict[str, Any]]) -> int:
        try:
            return db.append_archive_records(records)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"database error appending archive: {exc}") from exc

    def save_wallet_summary(self, summary: dict[str, Any]) -> None:
        try:
            db.save_wallet_summary(summary)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"database error saving wallet summary: {exc}") from exc

    def recent_closed_trades(self, limit: int) -> list[ClosedTrade]:
        try:
            rows = db.recent_archive_records("trade_close", limit)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"database error reading closed trades: {exc}") from exc
        trades: list[ClosedTrade] = []
        for row in rows:
            if str(row.get("trading_mode", self.trading_mode)) != self.trading_mode:
                continue
            try:
                trades.append(
                    ClosedTrade(
                        symbol=str(row.get("symbol", "")),
                        strategy=str(row.get("strategy", "")),
                        pnl_usd=float(row.get("pnl_usd", 0.0) or 0.0),
                        pnl_percent=float(row.get("pnl_percent", 0.0) or 0.0),
                        closed_at=float(row.get("ts", 0.0) or 0.0),
                    )
                )
            except (TypeError, ValueError):
                logger.debug("ARCHIVE_TRADE_SKIP row=%s", row)
        return trades

    def prune_archive(self, *, now: float) -> int:
        retention_days = int(getattr(config, "ARCHIVE_RETENTION_DAYS", 30))
        max_records = int(getattr(config, "ARCHIVE_MAX_RECORDS", 1000))
        try:
            removed = db.prune_archive(older_than_ts=now - retention_days * 86400.0, max_records=max_records)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"database error pruning archive: {exc}") from exc
        if removed:
            logger.info("ARCHIVE_PRUNED removed=%s retention_days=%s max_records=%s", removed, retention_days, max_records)
        return removed
