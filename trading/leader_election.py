"""Single-leader coordination over a time-bounded lease held by the arbiter."""

from __future__ import annotations

import asyncio
import atexit
import inspect
import logging
import random
import string
import time
from typing import Any, Awaitable, Callable, Union

import config
from trading.collaborators import Arbiter
from trading.models import ClaimResult
from utils.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

STATE_UNCLAIMED = "UNCLAIMED"
STATE_LEADING = "LEADING"
STATE_RENEWING = "RENEWING"
STATE_LOST = "LOST"
STATE_HELD_BY_OTHER = "HELD_BY_OTHER"

REASON_ALREADY_CLAIMED = "already_claimed"
REASON_ARBITER_UNREACHABLE = "arbiter_unreachable"

Listener = Callable[[str, str], Union[None, Awaitable[None]]]

_ALPHABET = string.ascii_lowercase + string.digits


def new_session_id(now: float | None = None) -> str:
    ms = int((time.time() if now is None else now) * 1000)
    rand4 = "".join(random.choices(_ALPHABET, k=4))
    rand5 = "".join(random.choices(_ALPHABET, k=5))
    return f"session_{ms}-{rand4}-{rand5}"


def resolve_session_id() -> str:
    configured = str(getattr(config, "SCANNER_INSTANCE_ID", "") or "").strip()
    return configured or new_session_id()


class LeaderElectionCoordinator:
    def __init__(
        self,
        arbiter: Arbiter,
        *,
        session_id: str | None = None,
        ttl_seconds: float | None = None,
        renew_interval_seconds: float | None = None,
        renew_timeout_seconds: float | None = None,
        failures_before_verify: int | None = None,
        verify_interval_seconds: float | None = None,
        claim_policy: RetryPolicy | None = None,
        call_timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.arbiter = arbiter
        self.session_id = session_id or resolve_session_id()
        self.ttl_seconds = float(ttl_seconds if ttl_seconds is not None else getattr(config, "LEASE_TTL_SECONDS", 60.0))
        self.renew_interval_seconds = float(
            renew_interval_seconds
            if renew_interval_seconds is not None
            else getattr(config, "LEASE_RENEW_INTERVAL_SECONDS", 25.0)
        )
        self.renew_timeout_seconds = float(
            renew_timeout_seconds
            if renew_timeout_seconds is not None
            else getattr(config, "LEASE_RENEW_TIMEOUT_SECONDS", 45.0)
        )
        self.failures_before_verify = max(
            1,
            int(
                failures_before_verify
                if failures_before_verify is not None
                else getattr(config, "LEASE_RENEW_FAILURES_BEFORE_VERIFY", 3)
            ),
        )
        self.verify_interval_seconds = float(
            verify_interval_seconds
            if verify_interval_seconds is not None
            else getattr(config, "LEADERSHIP_VERIFY_INTERVAL_SECONDS", 60.0)
        )
        self.call_timeout_seconds = float(
            call_timeout_seconds
            if call_timeout_seconds is not None
            else getattr(config, "NETWORK_CALL_TIMEOUT_SECONDS", 30.0)
        )
        self.claim_policy = claim_policy or RetryPolicy.for_lease_claim()
        self._clock = clock
        self._sleep = sleep

        self.state = STATE_UNCLAIMED
        self.active_id = ""
        self.last_renewed_at = 0.0
        self.consecutive_renew_failures = 0
        self._renew_in_flight = False
        self._listeners: list[Listener] = []
        self._tasks: list[asyncio.Task] = []
        self._teardown_installed = False

    @property
    def is_leader(self) -> bool:
        return self.state in (STATE_LEADING, STATE_RENEWING)

    def add_listener(self, listener: Listener) -> None:
        """`listener(state, reason)` runs on every state change; coroutines are awaited."""
        self._listeners.append(listener)

    async def _set_state(self, state: str, reason: str = "") -> None:
        if state == self.state:
            return
        previous = self.state
        self.state = state
        logger.info("LEADER_STATE session=%s from=%s to=%s reason=%s", self.session_id, previous, state, reason or "-")
        for listener in list(self._listeners):
            outcome = listener(state, reason)
            if inspect.isawaitable(outcome):
                await outcome

    async def _call(self, awaitable: Awaitable[Any], timeout: float) -> Any:
        return await asyncio.wait_for(awaitable, timeout=max(0.1, float(timeout)))

    async def claim(self, force: bool = False) -> ClaimResult:
        """Try to become leader.

        A live holder other than us ends the attempt with `already_claimed`; other
        failures are retried by the claim policy, checking the arbiter before each retry.
        """
        other_holder = {"id": ""}

        async def attempt() -> ClaimResult:
            return await self._call(self.arbiter.claim_session(self.session_id, force=force), self.call_timeout_seconds)

        def should_retry(result: ClaimResult) -> bool:
            return not result.granted and result.reason != REASON_ALREADY_CLAIMED

        async def before_retry(next_attempt: int) -> bool:
            try:
                status = await self._call(self.arbiter.get_session_status(), self.call_timeout_seconds)
            except Exception as exc:
                logger.info("LEADER_CLAIM_STATUS_CHECK_FAILED attempt=%s err=%s", next_attempt, exc)
                return True
            if status.is_active and status.active_id and status.active_id != self.session_id:
                other_holder["id"] = status.active_id
                return False
            return True

        policy = self.claim_policy
        if force:
            policy = RetryPolicy(max_attempts=1)
        try:
            result = await retry_async(
                attempt,
                policy,
                retry_result=should_retry,
                before_retry=before_retry,
                sleep=self._sleep,
                label="lease_claim",
            )
        except Exception as exc:
            if other_holder["id"]:
                result = ClaimResult(granted=False, reason=REASON_ALREADY_CLAIMED, active_id=other_holder["id"])
            else:
                logger.warning("LEADER_CLAIM_FAILED session=%s force=%s err=%s", self.session_id, force, exc)
                return ClaimResult(granted=False, reason=REASON_ARBITER_UNREACHABLE)
        if not result.granted and other_holder["id"]:
            result = ClaimResult(granted=False, reason=REASON_ALREADY_CLAIMED, active_id=other_holder["id"])

        logger.info(
            "LEADER_CLAIM session=%s force=%s granted=%s reason=%s active=%s",
            self.session_id,
            force,
            result.granted,
            result.reason or "-",
            result.active_id or "-",
        )
        if result.granted:
            self.active_id = self.session_id
            self.last_renewed_at = self._clock()
            self.consecutive_renew_failures = 0
            await self._set_state(STATE_LEADING, result.reason or "claimed")
        elif result.reason == REASON_ALREADY_CLAIMED:
            self.active_id = result.active_id
            await self._set_state(STATE_HELD_BY_OTHER, REASON_ALREADY_CLAIMED)
        return result

    async def renew(self) -> bool:
        if not self.is_leader:
            return False
        if self._renew_in_flight:
            logger.debug("LEADER_RENEW_SKIPPED session=%s in_flight=1", self.session_id)
            return False
        self._renew_in_flight = True
        self.state = STATE_RENEWING
        try:
            result = await self._call(
                self.arbiter.claim_session(self.session_id, force=False),
                self.renew_timeout_seconds,
            )
        except Exception as exc:
            result = None
            error = str(exc) or type(exc).__name__
        finally:
            self._renew_in_flight = False
            if self.state == STATE_RENEWING:
                self.state = STATE_LEADING

        if result is not None and result.granted:
            self.last_renewed_at = self._clock()
            self.consecutive_renew_failures = 0
            return True
        if result is not None and result.reason == REASON_ALREADY_CLAIMED:
            self.active_id = result.active_id
            await self.stand_down("leadership_lost")
            return False

        if result is not None:
            error = result.reason or "not_granted"
        self.consecutive_renew_failures += 1
        logger.warning(
            "LEADER_RENEW_FAILED session=%s failures=%s err=%s",
            self.session_id,
            self.consecutive_renew_failures,
            error,
        )
        if self.consecutive_renew_failures >= self.failures_before_verify:
            await self.verify()
        return False

    async def verify(self) -> bool:
        """Reconcile local belief with the arbiter; a mismatch forces a stand-down."""
        if not self.is_leader:
            return False
        try:
            status = await self._call(self.arbiter.get_session_status(), self.call_timeout_seconds)
        except Exception as exc:
            stale_for = self._clock() - self.last_renewed_at
            logger.warning("LEADER_VERIFY_FAILED session=%s unrenewed=%.1fs err=%s", self.session_id, stale_for, exc)
            if stale_for > self.ttl_seconds:
                await self.stand_down("lease_expired")
                return False
            return True
        if status.is_active and status.active_id == self.session_id:
            return True
        self.active_id = status.active_id
        logger.warning(
            "LEADER_MISMATCH session=%s arbiter_active=%s arbiter_holder=%s",
            self.session_id,
            status.is_active,
            status.active_id or "-",
        )
        await self.stand_down("leadership_lost")
        return False

    async def stand_down(self, reason: str) -> None:
        if not self.is_leader:
            return
        await self._set_state(STATE_LOST, reason)
        await self._set_state(STATE_UNCLAIMED, reason)

    async def release(self) -> bool:
        await self.stop_background()
        was_leader = self.is_leader
        try:
            released = await self._call(self.arbiter.release_session(self.session_id), self.call_timeout_seconds)
        except Exception as exc:
            logger.warning("LEADER_RELEASE_FAILED session=%s err=%s", self.session_id, exc)
            released = False
        if was_leader:
            self.active_id = ""
        await self._set_state(STATE_UNCLAIMED, "released")
        logger.info("LEADER_RELEASE session=%s released=%s", self.session_id, released)
        return bool(released)

    def release_blocking(self) -> bool:
        """Synchronous best-effort release for signal/atexit teardown."""
        if not self.is_leader:
            return False
        timeout = float(getattr(config, "LEASE_TEARDOWN_RELEASE_TIMEOUT_SECONDS", 2.0))
        released = self.arbiter.release_session_blocking(self.session_id, timeout)
        self.state = STATE_UNCLAIMED
        logger.info("LEADER_TEARDOWN_RELEASE session=%s released=%s", self.session_id, released)
        return bool(released)

    def install_teardown_hook(self) -> None:
        if self._teardown_installed:
            return
        atexit.register(self.release_blocking)
        self._teardown_installed = True

    async def _heartbeat_loop(self) -> None:
        while self.is_leader:
            await self._sleep(self.renew_interval_seconds)
            if not self.is_leader:
                break
            await self.renew()

    async def _verify_loop(self) -> None:
        while self.is_leader:
            await self._sleep(self.verify_interval_seconds)
            if not self.is_leader:
                break
            await self.verify()

    def start_background(self) -> None:
        if any(not t.done() for t in self._tasks):
            return
        self._tasks = [
            asyncio.create_task(self._heartbeat_loop(), name=f"lease-heartbeat-{self.session_id}"),
            asyncio.create_task(self._verify_loop(), name=f"lease-verify-{self.session_id}"),
        ]

    async def stop_background(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state,
            "is_leader": self.is_leader,
            "active_id": self.active_id,
            "last_renewed_at": self.last_renewed_at,
            "consecutive_renew_failures": self.consecutive_renew_failures,
        }
