"""Arbiter adapters: direct SQL lease table, or the HTTP lease service in arbiter/server.py."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import urllib.error
import urllib.request
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

import config
from database import db
from trading.errors import NetworkError
from trading.models import ClaimResult, SessionStatus
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

ACTION_CLAIM = "claimSession"
ACTION_RELEASE = "releaseSession"
ACTION_STATUS = "getSessionStatus"


class SqlArbiter:
    """Uses the shared database as the lease authority (single host or shared DB server)."""

    def __init__(
        self,
        group_key: str | None = None,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.group_key = group_key or str(getattr(config, "SCANNER_GROUP", "default"))
        self.ttl_seconds = float(ttl_seconds if ttl_seconds is not None else getattr(config, "LEASE_TTL_SECONDS", 60.0))
        self._clock = clock

    async def claim_session(self, session_id: str, force: bool = False) -> ClaimResult:
        try:
            granted, reason, record = await asyncio.to_thread(
                db.claim_lease,
                self.group_key,
                session_id,
                force=force,
                ttl_seconds=self.ttl_seconds,
                now=self._clock(),
            )
        except SQLAlchemyError as exc:
            raise NetworkError(f"lease store unreachable: {exc}") from exc
        return ClaimResult(granted=granted, reason=reason, active_id=record.holder_id if record else "")

    async def release_session(self, session_id: str) -> bool:
        try:
            return await asyncio.to_thread(db.release_lease, self.group_key, session_id)
        except SQLAlchemyError as exc:
            raise NetworkError(f"lease store unreachable: {exc}") from exc

    async def get_session_status(self) -> SessionStatus:
        try:
            record = await asyncio.to_thread(db.get_lease, self.group_key)
        except SQLAlchemyError as exc:
            raise NetworkError(f"lease store unreachable: {exc}") from exc
        if record is None or record.is_stale(self._clock(), self.ttl_seconds):
            return SessionStatus(is_active=False, active_id="")
        return SessionStatus(is_active=True, active_id=record.holder_id, last_renewed_at=record.last_renewed_at)

    def release_session_blocking(self, session_id: str, timeout_seconds: float) -> bool:
        try:
            return db.release_lease(self.group_key, session_id, timeout_seconds=timeout_seconds)
        except SQLAlchemyError as exc:
            logger.warning("LEASE_TEARDOWN_RELEASE_FAILED session=%s err=%s", session_id, exc)
            return False


class HttpArbiter:
    def __init__(
        self,
        url: str | None = None,
        *,
        shared_secret: str | None = None,
        client: ResilientHttpClient | None = None,
    ) -> None:
        self.url = url or str(getattr(config, "ARBITER_URL", ""))
        self.shared_secret = shared_secret if shared_secret is not None else str(getattr(config, "ARBITER_SHARED_SECRET", ""))
        timeout = float(getattr(config, "NETWORK_CALL_TIMEOUT_SECONDS", 30.0))
        self._client = client or ResilientHttpClient(timeout_seconds=timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.shared_secret:
            headers["X-Arbiter-Secret"] = self.shared_secret
        return headers

    async def close(self) -> None:
        await self._client.close()

    async def _call(self, payload: dict[str, Any]) -> dict[str, Any]:
        result = await self._client.post_json(self.url, payload, source="arbiter", headers=self._headers())
        body = result.data if isinstance(result.data, dict) else {}
        if result.ok or result.status == 409:
            return body
        raise NetworkError(f"arbiter request failed action={payload.get('action')} error={result.error}")

    async def claim_session(self, session_id: str, force: bool = False) -> ClaimResult:
        body = await self._call({"action": ACTION_CLAIM, "sessionId": session_id, "force": bool(force)})
        return ClaimResult(
            granted=bool(body.get("granted", False)),
            reason=str(body.get("reason", "") or ""),
            active_id=str(body.get("activeSessionId", "") or ""),
        )

    async def release_session(self, session_id: str) -> bool:
        body = await self._call({"action": ACTION_RELEASE, "sessionId": session_id})
        return bool(body.get("released", False))

    async def get_session_status(self) -> SessionStatus:
        body = await self._call({"action": ACTION_STATUS})
        return SessionStatus(
            is_active=bool(body.get("isActive", False)),
            active_id=str(body.get("activeSessionId", "") or ""),
            last_renewed_at=float(body.get("lastRenewedAt", 0.0) or 0.0),
        )

    def release_session_blocking(self, session_id: str, timeout_seconds: float) -> bool:
        data = json.dumps({"action": ACTION_RELEASE, "sessionId": session_id}).encode("utf-8")
        req = urllib.request.Request(self.url, data=data, headers=self._headers(), method="POST")
        try:
            with urllib.request.urlopen(req, timeout=max(0.2, float(timeout_seconds))) as r:
                body = json.loads(r.read().decode("utf-8") or "{}")
        except (urllib.error.URLError, OSError, ValueError) as exc:
            logger.warning("LEASE_TEARDOWN_RELEASE_FAILED session=%s err=%s", session_id, exc)
            return False
        return bool(body.get("released", False))


def build_arbiter() -> SqlArbiter | HttpArbiter:
    mode = str(getattr(config, "ARBITER_MODE", "sql")).lower()
    if mode == "http":
        return HttpArbiter()
    return SqlArbiter()
