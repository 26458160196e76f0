"""Lease arbiter HTTP service for scanners running on different hosts."""

from __future__ import annotations

import hmac
import logging

from aiohttp import web

import config
from monitor.arbiter_client import ACTION_CLAIM, ACTION_RELEASE, ACTION_STATUS, SqlArbiter

logger = logging.getLogger(__name__)


class LeaseArbiterServer:
    def __init__(
        self,
        store: SqlArbiter,
        *,
        host: str | None = None,
        port: int | None = None,
        path: str | None = None,
        shared_secret: str | None = None,
    ) -> None:
        self.store = store
        self.host = host or str(getattr(config, "ARBITER_HOST", "127.0.0.1"))
        self.port = int(port if port is not None else getattr(config, "ARBITER_PORT", 8090))
        self.path = path or str(getattr(config, "ARBITER_PATH", "/api/scanner-session"))
        self.shared_secret = shared_secret if shared_secret is not None else str(getattr(config, "ARBITER_SHARED_SECRET", ""))
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(self.path, self._handle)
        return app

    async def start(self) -> None:
        self.runner = web.AppRunner(self.build_app())
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        logger.info(
            "ARBITER_LISTEN host=%s port=%s path=%s group=%s ttl=%.0fs",
            self.host,
            self.port,
            self.path,
            self.store.group_key,
            self.store.ttl_seconds,
        )

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()
            self.runner = None

    def _authorized(self, request: web.Request) -> bool:
        if not self.shared_secret:
            return True
        return hmac.compare_digest(request.headers.get("X-Arbiter-Secret", ""), self.shared_secret)

    async def _handle(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return web.json_response({"success": False, "error": "unauthorized"}, status=401)
        try:
            payload = await request.json()
        except ValueError:
            return web.json_response({"success": False, "error": "invalid_json"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"success": False, "error": "invalid_payload"}, status=400)

        action = str(payload.get("action", "") or "")
        session_id = str(payload.get("sessionId", "") or "").strip()
        if action == ACTION_STATUS:
            status = await self.store.get_session_status()
            return web.json_response(
                {
                    "success": True,
                    "isActive": status.is_active,
                    "activeSessionId": status.active_id,
                    "lastRenewedAt": status.last_renewed_at,
                }
            )
        if not session_id:
            return web.json_response({"success": False, "error": "session_id_required"}, status=400)
        if action == ACTION_CLAIM:
            result = await self.store.claim_session(session_id, force=bool(payload.get("force", False)))
            logger.info(
                "ARBITER_CLAIM session=%s force=%s granted=%s reason=%s",
                session_id,
                bool(payload.get("force", False)),
                result.granted,
                result.reason,
            )
            return web.json_response(
                {
                    "success": result.granted,
                    "granted": result.granted,
                    "reason": result.reason,
                    "activeSessionId": result.active_id,
                },
                status=200 if result.granted else 409,
            )
        if action == ACTION_RELEASE:
            released = await self.store.release_session(session_id)
            logger.info("ARBITER_RELEASE session=%s released=%s", session_id, released)
            return web.json_response({"success": True, "released": released})
        return web.json_response({"success": False, "error": f"unknown_action:{action}"}, status=400)
