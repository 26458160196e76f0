"""Local status sink: appends scanner events to a JSONL file."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

import config
from utils.log_contracts import status_event

logger = logging.getLogger(__name__)

_LEVELS = {"ERROR": logging.ERROR, "WARN": logging.WARNING, "WARNING": logging.WARNING}


class LocalAlerter:
    def __init__(self, alerts_file: str | None = None, *, run_tag: str = "") -> None:
        self.alerts_file = alerts_file or str(getattr(config, "ALERTS_FILE", os.path.join("data", "alerts.jsonl")))
        self.run_tag = run_tag
        parent = os.path.dirname(self.alerts_file)
        if parent:
            os.makedirs(parent, exist_ok=True)

    def _run_tag(self) -> str:
        if self.run_tag:
            return self.run_tag
        return str(getattr(config, "SCANNER_INSTANCE_ID", "") or os.getenv("RUN_TAG", "") or "").strip()

    async def close(self) -> None:
        return None

    async def send_event(self, event: dict[str, Any]) -> int:
        """Write one event; anything not already stamped with a schema becomes a status event."""
        payload = dict(event or {})
        if not payload.get("schema_name"):
            payload = status_event(payload, run_tag=self._run_tag())
        with open(self.alerts_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")

        level = _LEVELS.get(str(payload.get("level", payload.get("reason_severity", "INFO"))).upper(), logging.INFO)
        logger.log(
            level,
            "STATUS_EVENT schema=%s code=%s state=%s message=%s",
            payload.get("schema_name", ""),
            payload.get("reason_code", ""),
            payload.get("state", ""),
            payload.get("message", ""),
        )
        return 1
