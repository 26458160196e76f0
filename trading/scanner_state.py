"""Persisted scanner state: `{is_running, trading_mode, regime_state, cycle_stats}`."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import config
from trading.errors import PersistenceError
from trading.models import CycleState, RegimeSnapshot
from utils.state_file import StateFileCorruptError, StateFileError, read_json_locked, write_json_atomic_locked

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1


@dataclass
class PersistedScannerState:
    is_running: bool = False
    trading_mode: str = "paper"
    regime_state: RegimeSnapshot = field(default_factory=RegimeSnapshot)
    cycle_stats: CycleState = field(default_factory=CycleState)

    def to_payload(self, storage_key: str) -> dict[str, Any]:
        return {
            "storage_key": storage_key,
            "schema_version": STATE_SCHEMA_VERSION,
            "is_running": bool(self.is_running),
            "trading_mode": self.trading_mode,
            "regime_state": self.regime_state.to_dict(),
            "cycle_stats": self.cycle_stats.to_dict(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PersistedScannerState":
        threshold = int(getattr(config, "REGIME_CONFIRMATION_THRESHOLD", 3))
        return cls(
            is_running=bool(payload.get("is_running", False)),
            trading_mode=str(payload.get("trading_mode", "paper") or "paper"),
            regime_state=RegimeSnapshot.from_dict(payload.get("regime_state"), confirmation_threshold=threshold),
            cycle_stats=CycleState.from_dict(payload.get("cycle_stats")),
        )


def _state_path(path: str | None) -> str:
    return path or str(getattr(config, "SCANNER_STATE_FILE", "data/scanner_state.json"))


def _storage_key() -> str:
    return str(getattr(config, "SCANNER_STATE_KEY", "scanner_state"))


def save_state(state: PersistedScannerState, path: str | None = None) -> None:
    target = _state_path(path)
    try:
        write_json_atomic_locked(target, state.to_payload(_storage_key()))
    except (OSError, StateFileError) as exc:
        raise PersistenceError(f"failed to persist scanner state path={target}: {exc}") from exc


def load_state(path: str | None = None) -> PersistedScannerState | None:
    """Last persisted state, or None when nothing usable exists on disk."""
    target = _state_path(path)
    try:
        payload = read_json_locked(target, default=None)
    except StateFileCorruptError as exc:
        logger.warning("SCANNER_STATE_CORRUPT path=%s err=%s", target, exc)
        return None
    except (OSError, StateFileError) as exc:
        raise PersistenceError(f"failed to read scanner state path={target}: {exc}") from exc
    if not isinstance(payload, dict):
        return None
    key = str(payload.get("storage_key", "") or "")
    if key and key != _storage_key():
        logger.warning("SCANNER_STATE_KEY_MISMATCH path=%s stored=%s expected=%s", target, key, _storage_key())
        return None
    return PersistedScannerState.from_payload(payload)
