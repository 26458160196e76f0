from __future__ import annotations

import re
import unittest

from trading.leader_election import (
    STATE_HELD_BY_OTHER,
    STATE_LEADING,
    STATE_LOST,
    STATE_UNCLAIMED,
    LeaderElectionCoordinator,
    new_session_id,
)
from trading.errors import NetworkError
from trading.models import ClaimResult, SessionStatus
from utils.retry import RetryPolicy


class FakeArbiter:
    """In-memory arbiter; `fail_claims` makes the next N claims raise NetworkError."""

    def __init__(self) -> None:
        self.holder = ""
        self.fail_claims = 0
        self.fail_status = False
        self.claim_calls = 0
        self.status_calls = 0
        self.released: list[str] = []
        self.blocking_released: list[str] = []

    async def claim_session(self, session_id: str, force: bool = False) -> ClaimResult:
        self.claim_calls += 1
        if self.fail_claims > 0:
            self.fail_claims -= 1
            raise NetworkError("arbiter unreachable")
        if force or not self.holder or self.holder == session_id:
            self.holder = session_id
            return ClaimResult(granted=True, reason="forced" if force else "claimed", active_id=session_id)
        return ClaimResult(granted=False, reason="already_claimed", active_id=self.holder)

    async def release_session(self, session_id: str) -> bool:
        self.released.append(session_id)
        if self.holder == session_id:
            self.holder = ""
            return True
        return False

    async def get_session_status(self) -> SessionStatus:
        self.status_calls += 1
        if self.fail_status:
            raise NetworkError("arbiter unreachable")
        return SessionStatus(is_active=bool(self.holder), active_id=self.holder)

    def release_session_blocking(self, session_id: str, timeout_seconds: float) -> bool:
        self.blocking_released.append(session_id)
        if self.holder == session_id:
            self.holder = ""
            return True
        return False


async def no_sleep(_: float) -> None:
    return None


class LeaderElectionTests(unittest.IsolatedAsyncioTestCase):
    def _coordinator(self, arbiter: FakeArbiter, session_id: str = "me", **kwargs) -> LeaderElectionCoordinator:
        kwargs.setdefault("claim_policy", RetryPolicy(max_attempts=3, base_delay_seconds=0.5))
        return LeaderElectionCoordinator(arbiter, session_id=session_id, sleep=no_sleep, ttl_seconds=60, **kwargs)

    async def test_claim_grants_leadership(self) -> None:
        arbiter = FakeArbiter()
        coord = self._coordinator(arbiter)
        result = await coord.claim()
        self.assertTrue(result.granted)
        self.assertEqual(coord.state, STATE_LEADING)
        self.assertTrue(coord.is_leader)

    async def test_already_claimed_is_not_retried(self) -> None:
        arbiter = FakeArbiter()
        arbiter.holder = "other"
        coord = self._coordinator(arbiter)
        result = await coord.claim()
        self.assertFalse(result.granted)
        self.assertEqual(result.reason, "already_claimed")
        self.assertEqual(result.active_id, "other")
        self.assertEqual(arbiter.claim_calls, 1)
        self.assertEqual(coord.state, STATE_HELD_BY_OTHER)

    async def test_arbiter_errors_are_retried_then_succeed(self) -> None:
        arbiter = FakeArbiter()
        arbiter.fail_claims = 2
        coord = self._coordinator(arbiter)
        result = await coord.claim()
        self.assertTrue(result.granted)
        self.assertEqual(arbiter.claim_calls, 3)
        self.assertEqual(arbiter.status_calls, 2)

    async def test_retry_stops_when_another_holder_appears(self) -> None:
        arbiter = FakeArbiter()
        arbiter.fail_claims = 1
        coord = self._coordinator(arbiter)

        original_status = arbiter.get_session_status

        async def status_with_new_holder() -> SessionStatus:
            arbiter.holder = "other"
            return await original_status()

        arbiter.get_session_status = status_with_new_holder
        result = await coord.claim()
        self.assertFalse(result.granted)
        self.assertEqual(result.reason, "already_claimed")
        self.assertEqual(result.active_id, "other")
        self.assertEqual(arbiter.claim_calls, 1)

    async def test_unreachable_arbiter_is_non_fatal(self) -> None:
        arbiter = FakeArbiter()
        arbiter.fail_claims = 10
        coord = self._coordinator(arbiter)
        result = await coord.claim()
        self.assertFalse(result.granted)
        self.assertEqual(result.reason, "arbiter_unreachable")
        self.assertEqual(coord.state, STATE_UNCLAIMED)
        self.assertEqual(arbiter.claim_calls, 3)

    async def test_force_claim_takes_over(self) -> None:
        arbiter = FakeArbiter()
        arbiter.holder = "other"
        coord = self._coordinator(arbiter)
        result = await coord.claim(force=True)
        self.assertTrue(result.granted)
        self.assertEqual(arbiter.holder, "me")
        self.assertEqual(arbiter.claim_calls, 1)

    async def test_renew_failures_trigger_verify(self) -> None:
        arbiter = FakeArbiter()
        coord = self._coordinator(arbiter, failures_before_verify=3)
        await coord.claim()
        arbiter.fail_claims = 3
        self.assertFalse(await coord.renew())
        self.assertFalse(await coord.renew())
        self.assertEqual(arbiter.status_calls, 0)
        self.assertFalse(await coord.renew())
        self.assertEqual(arbiter.status_calls, 1)
        self.assertTrue(coord.is_leader)
        self.assertTrue(await coord.renew())
        self.assertEqual(coord.consecutive_renew_failures, 0)

    async def test_verify_mismatch_stands_down_and_notifies(self) -> None:
        arbiter = FakeArbiter()
        coord = self._coordinator(arbiter)
        seen: list[tuple[str, str]] = []

        async def listener(state: str, reason: str) -> None:
            seen.append((state, reason))

        coord.add_listener(listener)
        await coord.claim()
        arbiter.holder = "other"
        self.assertFalse(await coord.verify())
        self.assertEqual(coord.state, STATE_UNCLAIMED)
        self.assertIn((STATE_LOST, "leadership_lost"), seen)
        self.assertEqual(seen[-1], (STATE_UNCLAIMED, "leadership_lost"))

    async def test_verify_keeps_leadership_while_lease_fresh(self) -> None:
        now = {"t": 1000.0}
        arbiter = FakeArbiter()
        coord = self._coordinator(arbiter, clock=lambda: now["t"])
        await coord.claim()
        arbiter.fail_status = True
        now["t"] += 30
        self.assertTrue(await coord.verify())
        self.assertTrue(coord.is_leader)
        now["t"] += 40
        self.assertFalse(await coord.verify())
        self.assertEqual(coord.state, STATE_UNCLAIMED)

    async def test_release_and_blocking_release(self) -> None:
        arbiter = FakeArbiter()
        coord = self._coordinator(arbiter)
        await coord.claim()
        self.assertTrue(await coord.release())
        self.assertEqual(coord.state, STATE_UNCLAIMED)
        self.assertEqual(arbiter.holder, "")

        await coord.claim()
        self.assertTrue(coord.release_blocking())
        self.assertEqual(arbiter.blocking_released, ["me"])
        self.assertFalse(coord.release_blocking())

    def test_session_id_format(self) -> None:
        self.assertRegex(new_session_id(1_700_000_000.0), re.compile(r"^session_1700000000000-[a-z0-9]{4}-[a-z0-9]{5}$"))


if __name__ == "__main__":
    unittest.main()
