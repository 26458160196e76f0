"""Stable log contracts shared across runtime writers."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_GATE_DECISION = "gate_decision.v1"
SCHEMA_CYCLE_SUMMARY = "cycle_summary.v1"
SCHEMA_STATUS_EVENT = "status_event.v1"

_STAGE_PREFIX: dict[str, str] = {
    "leadership": "LEADER",
    "regime_gate": "REGIME",
    "capital_gate": "CAPITAL",
    "candidate_filter": "FILTER",
    "position_gate": "GATE",
    "trade_open": "EXEC",
    "trade_close": "EXIT",
    "cycle": "CYCLE",
    "status": "STATUS",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "invalid_number": "GATE_INVALID_NUMBER",
    "below_minimum": "GATE_BELOW_MINIMUM",
    "insufficient_balance": "GATE_INSUFFICIENT_BALANCE",
    "exchange_min_notional": "GATE_EXCHANGE_MIN_NOTIONAL",
    "calculation_error": "GATE_CALCULATION_ERROR",
    "below_min_strength": "FILTER_BELOW_MIN_STRENGTH",
    "max_positions_per_strategy": "FILTER_MAX_POSITIONS",
    "regime_confidence_low": "REGIME_CONFIDENCE_LOW",
    "downtrend_blocked": "REGIME_DOWNTREND_BLOCKED",
    "funds_below_minimum": "CAPITAL_FUNDS_BELOW_MINIMUM",
    "invest_cap_reached": "CAPITAL_INVEST_CAP_REACHED",
    "already_claimed": "LEADER_ALREADY_CLAIMED",
    "leadership_lost": "LEADER_LOST",
    "critical_error": "CYCLE_CRITICAL_ERROR",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "GATE_INVALID_NUMBER": {"severity": "WARN", "category": "gate", "title": "Proposed notional is not a number"},
    "GATE_BELOW_MINIMUM": {"severity": "INFO", "category": "gate", "title": "Notional below minimum trade value"},
    "GATE_INSUFFICIENT_BALANCE": {"severity": "INFO", "category": "gate", "title": "Notional above usable funds"},
    "GATE_EXCHANGE_MIN_NOTIONAL": {"severity": "INFO", "category": "gate", "title": "Below exchange min notional"},
    "GATE_CALCULATION_ERROR": {"severity": "WARN", "category": "gate", "title": "Sizing inputs unusable"},
    "FILTER_BELOW_MIN_STRENGTH": {"severity": "INFO", "category": "filter", "title": "Signal strength below minimum"},
    "FILTER_MAX_POSITIONS": {"severity": "INFO", "category": "filter", "title": "Strategy position limit reached"},
    "REGIME_CONFIDENCE_LOW": {"severity": "INFO", "category": "regime", "title": "Regime confidence below minimum"},
    "REGIME_DOWNTREND_BLOCKED": {"severity": "INFO", "category": "regime", "title": "Trading blocked in downtrend"},
    "CAPITAL_FUNDS_BELOW_MINIMUM": {"severity": "INFO", "category": "capital", "title": "Funds below minimum"},
    "CAPITAL_INVEST_CAP_REACHED": {"severity": "INFO", "category": "capital", "title": "Invest cap reached"},
    "LEADER_ALREADY_CLAIMED": {"severity": "WARN", "category": "leadership", "title": "Another instance leads"},
    "LEADER_LOST": {"severity": "WARN", "category": "leadership", "title": "Leadership lost"},
    "CYCLE_CRITICAL_ERROR": {"severity": "ERROR", "category": "cycle", "title": "Scanner stopped on critical error"},
}


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except Exception:
        return float(default)


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return int(default)


def _as_ts(value: Any) -> float:
    if value is None or value == "":
        return datetime.now(timezone.utc).timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return datetime.now(timezone.utc).timestamp()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except Exception:
        return datetime.now(timezone.utc).timestamp()


def _iso_from_ts(ts: float) -> str:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()
    except Exception:
        return datetime.now(timezone.utc).isoformat()


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def _stage_prefix(value: Any) -> str:
    stage = _normalize_reason_text(value) or "unknown"
    return _STAGE_PREFIX.get(stage, "UNKNOWN")


def reason_code_for_event(
    *,
    reason: Any,
    decision_stage: Any = "",
    decision: Any = "",
) -> str:
    normalized_reason = _normalize_reason_text(reason)
    if not normalized_reason:
        normalized_decision = _normalize_reason_text(decision)
        if normalized_decision:
            return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_decision)}"
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized_reason)
    if override:
        return override
    return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def _event_id(payload: dict[str, Any], *, run_tag: str) -> str:
    raw = str(payload.get("event_id", "") or "").strip()
    if raw:
        return raw
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    return (
        "evt_"
        + _digest_seed(
            run_tag,
            payload.get("session_id", ""),
            payload.get("cycle", ""),
            payload.get("decision_stage", ""),
            payload.get("decision", ""),
            payload.get("reason", ""),
            payload.get("symbol", ""),
            f"{ts:.6f}",
        )[:20]
    )


def stamp_event(
    event: dict[str, Any],
    *,
    schema_name: str,
    event_type: str,
    run_tag: str = "",
) -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = float(ts)
    payload["timestamp"] = str(payload.get("timestamp", "") or _iso_from_ts(ts))
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    payload.setdefault("event_type", str(event_type or "event"))
    if run_tag:
        payload.setdefault("run_tag", str(run_tag))
    payload["event_id"] = _event_id(payload, run_tag=str(payload.get("run_tag", run_tag or "")))
    return payload


def _apply_reason_code(payload: dict[str, Any]) -> dict[str, Any]:
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(
            reason=payload.get("reason", ""),
            decision_stage=payload.get("decision_stage", ""),
            decision=payload.get("decision", ""),
        )
    ).strip().upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = str(payload.get("reason_severity", meta.get("severity", "INFO")) or "INFO")
    payload["reason_category"] = str(payload.get("reason_category", meta.get("category", "unknown")) or "unknown")
    return payload


def gate_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_GATE_DECISION,
        event_type=str((event or {}).get("event_type", "gate_decision")),
        run_tag=run_tag,
    )
    payload.setdefault("candidate_id", "")
    payload.setdefault("strategy", "")
    payload.setdefault("decision_stage", "position_gate")
    payload.setdefault("decision", "unknown")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["symbol"] = str(payload.get("symbol", "N/A") or "N/A")
    payload["cycle"] = _safe_int(payload.get("cycle", 0), 0)
    payload["proposed_notional"] = _safe_float(payload.get("proposed_notional", 0.0), 0.0)
    payload["adjusted_notional"] = _safe_float(payload.get("adjusted_notional", 0.0), 0.0)
    payload["risk_multiplier"] = _safe_float(payload.get("risk_multiplier", 0.0), 0.0)
    return _apply_reason_code(payload)


def cycle_summary_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_CYCLE_SUMMARY,
        event_type=str((event or {}).get("event_type", "cycle_summary")),
        run_tag=run_tag,
    )
    payload["decision_stage"] = "cycle"
    payload.setdefault("decision", "completed")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["cycle"] = _safe_int(payload.get("cycle", 0), 0)
    payload["duration_ms"] = round(_safe_float(payload.get("duration_ms", 0.0), 0.0), 2)
    payload["rolling_avg_duration_ms"] = round(_safe_float(payload.get("rolling_avg_duration_ms", 0.0), 0.0), 2)
    payload.setdefault("phase_durations_ms", {})
    payload.setdefault("errors", [])
    payload["opened"] = max(0, _safe_int(payload.get("opened", 0), 0))
    payload["closed"] = max(0, _safe_int(payload.get("closed", 0), 0))
    payload["rejected"] = max(0, _safe_int(payload.get("rejected", 0), 0))
    return _apply_reason_code(payload)


def status_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_STATUS_EVENT,
        event_type=str((event or {}).get("event_type", "status")),
        run_tag=run_tag,
    )
    payload["name"] = str(payload.get("name", "SCANNER") or "SCANNER")
    payload["decision_stage"] = str(payload.get("decision_stage", "status") or "status")
    payload["decision"] = str(payload.get("decision", "emit") or "emit")
    payload["state"] = str(payload.get("state", "") or "")
    payload["message"] = str(payload.get("message", "") or "")
    payload["reason"] = str(payload.get("reason", "") or "").strip()
    if not payload["reason"]:
        payload["reason"] = f"state_{payload['state'].lower() or 'unknown'}"
    payload = _apply_reason_code(payload)
    payload["level"] = str(payload.get("level", payload["reason_severity"]) or "INFO").upper()
    return payload
