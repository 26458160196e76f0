from __future__ import annotations

import os
import sqlite3
import tempfile
import time
import unittest
from unittest import mock

from aiohttp.test_utils import TestClient, TestServer

import config
from arbiter.server import LeaseArbiterServer
from database import db
from database.persistence import LocalPersistence
from monitor.arbiter_client import SqlArbiter


class SqliteMixin:
    def setUp(self) -> None:
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        db.configure_engine(f"sqlite:///{os.path.join(self._tmp.name, 'scanner.db')}")
        db.init_db()

    def tearDown(self) -> None:
        db.get_engine().dispose()
        self._tmp.cleanup()
        super().tearDown()


class LeaseStoreTests(SqliteMixin, unittest.TestCase):
    def test_first_claim_creates_row(self) -> None:
        granted, reason, record = db.claim_lease("g", "a", force=False, ttl_seconds=60, now=100.0)
        self.assertTrue(granted)
        self.assertEqual(reason, "claimed")
        self.assertEqual(record.holder_id, "a")
        self.assertEqual(db.get_lease("g").last_renewed_at, 100.0)

    def test_live_holder_blocks_other_claimers(self) -> None:
        db.claim_lease("g", "a", force=False, ttl_seconds=60, now=100.0)
        granted, reason, record = db.claim_lease("g", "b", force=False, ttl_seconds=60, now=130.0)
        self.assertFalse(granted)
        self.assertEqual(reason, "already_claimed")
        self.assertEqual(record.holder_id, "a")

    def test_renew_keeps_claimed_at(self) -> None:
        db.claim_lease("g", "a", force=False, ttl_seconds=60, now=100.0)
        granted, _, record = db.claim_lease("g", "a", force=False, ttl_seconds=60, now=125.0)
        self.assertTrue(granted)
        self.assertEqual(record.claimed_at, 100.0)
        self.assertEqual(record.last_renewed_at, 125.0)

    def test_stale_lease_can_be_taken(self) -> None:
        db.claim_lease("g", "a", force=False, ttl_seconds=60, now=100.0)
        granted, _, record = db.claim_lease("g", "b", force=False, ttl_seconds=60, now=161.0)
        self.assertTrue(granted)
        self.assertEqual(record.holder_id, "b")
        self.assertFalse(record.forced)

    def test_force_overwrites_live_holder(self) -> None:
        db.claim_lease("g", "a", force=False, ttl_seconds=60, now=100.0)
        granted, reason, record = db.claim_lease("g", "b", force=True, ttl_seconds=60, now=101.0)
        self.assertTrue(granted)
        self.assertEqual(reason, "forced")
        self.assertEqual(record.holder_id, "b")
        self.assertTrue(record.forced)

    def test_release_only_by_holder(self) -> None:
        db.claim_lease("g", "a", force=False, ttl_seconds=60, now=100.0)
        self.assertFalse(db.release_lease("g", "b"))
        self.assertTrue(db.release_lease("g", "a"))
        self.assertIsNone(db.get_lease("g"))
        granted, _, _ = db.claim_lease("g", "b", force=False, ttl_seconds=60, now=101.0)
        self.assertTrue(granted)


class LocalPersistenceTests(SqliteMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.persistence = LocalPersistence(
            state_file=os.path.join(self._tmp.name, "scanner_state.json"),
            trading_mode="paper",
        )

    def test_overrides_overlay_config(self) -> None:
        db.set_setting_override("min_trade_value", "25")
        db.set_setting_override("block_trading_in_downtrend", True)
        settings = self.persistence.load_config()
        self.assertEqual(settings.min_trade_value, 25.0)
        self.assertTrue(settings.block_trading_in_downtrend)

    def test_closed_trades_come_from_archive_for_current_mode(self) -> None:
        self.persistence.append_archive(
            [
                {"kind": "trade_close", "symbol": "BTCUSDT", "pnl_usd": 4.0, "pnl_percent": 2.0, "ts": 10.0, "trading_mode": "paper"},
                {"kind": "trade_close", "symbol": "ETHUSDT", "pnl_usd": -1.0, "pnl_percent": -1.0, "ts": 11.0, "trading_mode": "mainnet"},
                {"kind": "cycle", "cycle": 1, "ts": 12.0},
            ]
        )
        trades = self.persistence.recent_closed_trades(10)
        self.assertEqual([t.symbol for t in trades], ["BTCUSDT"])
        self.assertEqual(trades[0].pnl_usd, 4.0)

    def test_prune_drops_old_then_trims(self) -> None:
        day = 86400.0
        records = [{"kind": "cycle", "cycle": i, "ts": 100 * day + i} for i in range(5)]
        records.append({"kind": "cycle", "cycle": 99, "ts": 1.0})
        self.persistence.append_archive(records)
        with mock.patch.object(config, "ARCHIVE_MAX_RECORDS", 3), mock.patch.object(config, "ARCHIVE_RETENTION_DAYS", 30):
            removed = self.persistence.prune_archive(now=100 * day + 10)
        self.assertEqual(removed, 3)
        self.assertEqual(db.count_archive_records("cycle"), 3)

    def test_wallet_summary_round_trip(self) -> None:
        summary = {"trading_mode": "paper", "quote_asset": "USDT", "available": 90.0, "allocated": 10.0, "total_equity": 100.0, "open_positions": 1, "ts": 5.0}
        self.persistence.save_wallet_summary(summary)
        self.assertEqual(db.latest_wallet_summary("paper")["total_equity"], 100.0)
        self.assertIsNone(db.latest_wallet_summary("mainnet"))


class SqlArbiterTests(SqliteMixin, unittest.IsolatedAsyncioTestCase):
    async def test_status_reflects_staleness(self) -> None:
        now = {"t": 100.0}
        arbiter = SqlArbiter("g", ttl_seconds=60, clock=lambda: now["t"])
        result = await arbiter.claim_session("a")
        self.assertTrue(result.granted)
        status = await arbiter.get_session_status()
        self.assertTrue(status.is_active)
        self.assertEqual(status.active_id, "a")

        now["t"] = 200.0
        status = await arbiter.get_session_status()
        self.assertFalse(status.is_active)

    async def test_conflict_reports_active_holder(self) -> None:
        arbiter = SqlArbiter("g", ttl_seconds=60)
        await arbiter.claim_session("a")
        result = await arbiter.claim_session("b")
        self.assertFalse(result.granted)
        self.assertEqual(result.reason, "already_claimed")
        self.assertEqual(result.active_id, "a")
        self.assertTrue(arbiter.release_session_blocking("a", 1.0))

    async def test_teardown_release_gives_up_quickly_on_locked_database(self) -> None:
        arbiter = SqlArbiter("g", ttl_seconds=60)
        await arbiter.claim_session("a")
        blocker = sqlite3.connect(os.path.join(self._tmp.name, "scanner.db"), timeout=0)
        blocker.execute("BEGIN EXCLUSIVE")
        try:
            started = time.monotonic()
            with self.assertLogs("monitor.arbiter_client", level="WARNING"):
                released = arbiter.release_session_blocking("a", 0.2)
            elapsed = time.monotonic() - started
        finally:
            blocker.rollback()
            blocker.close()

        self.assertFalse(released)
        self.assertLess(elapsed, 5.0)
        self.assertTrue(arbiter.release_session_blocking("a", 1.0))


class ArbiterServerTests(SqliteMixin, unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        server = LeaseArbiterServer(SqlArbiter("g", ttl_seconds=60), path="/lease", shared_secret="s3cret")
        self.client = TestClient(TestServer(server.build_app()))
        await self.client.start_server()

    async def asyncTearDown(self) -> None:
        await self.client.close()

    async def _post(self, payload: dict, secret: str = "s3cret"):
        return await self.client.post("/lease", json=payload, headers={"X-Arbiter-Secret": secret})

    async def test_rejects_wrong_secret(self) -> None:
        resp = await self._post({"action": "getSessionStatus"}, secret="nope")
        self.assertEqual(resp.status, 401)

    async def test_claim_conflict_and_release(self) -> None:
        resp = await self._post({"action": "claimSession", "sessionId": "a"})
        self.assertEqual(resp.status, 200)
        self.assertTrue((await resp.json())["granted"])

        resp = await self._post({"action": "claimSession", "sessionId": "b"})
        self.assertEqual(resp.status, 409)
        body = await resp.json()
        self.assertEqual(body["reason"], "already_claimed")
        self.assertEqual(body["activeSessionId"], "a")

        resp = await self._post({"action": "getSessionStatus"})
        body = await resp.json()
        self.assertTrue(body["isActive"])
        self.assertEqual(body["activeSessionId"], "a")

        resp = await self._post({"action": "releaseSession", "sessionId": "a"})
        self.assertTrue((await resp.json())["released"])

    async def test_requires_session_id_and_known_action(self) -> None:
        resp = await self._post({"action": "claimSession"})
        self.assertEqual(resp.status, 400)
        resp = await self._post({"action": "dance", "sessionId": "a"})
        self.assertEqual(resp.status, 400)


if __name__ == "__main__":
    unittest.main()
