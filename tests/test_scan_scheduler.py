from __future__ import annotations

import asyncio
import unittest
from typing import Any

import config
from trading.collaborators import StrategyContext
from trading.errors import NetworkError, OptionalDataError, PersistenceError
from trading.leader_election import LeaderElectionCoordinator
from trading.models import (
    ClaimResult,
    CloseInstruction,
    CycleState,
    RegimeSnapshot,
    SentimentIndex,
    SessionStatus,
    SymbolFilters,
    TradeCandidate,
)
from trading.paper_executor import PaperTradeExecutor
from trading.risk_score import RiskScoreAggregator
from trading.scan_scheduler import STATE_IDLE, STATE_STOPPED, ScanCycleScheduler
from trading.scanner_state import PersistedScannerState
from trading.settings import ScannerSettings


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class FakeArbiter:
    def __init__(self) -> None:
        self.holder = ""

    async def claim_session(self, session_id: str, force: bool = False) -> ClaimResult:
        if force or not self.holder or self.holder == session_id:
            self.holder = session_id
            return ClaimResult(granted=True, reason="claimed", active_id=session_id)
        return ClaimResult(granted=False, reason="already_claimed", active_id=self.holder)

    async def release_session(self, session_id: str) -> bool:
        if self.holder == session_id:
            self.holder = ""
            return True
        return False

    async def get_session_status(self) -> SessionStatus:
        return SessionStatus(is_active=bool(self.holder), active_id=self.holder)

    def release_session_blocking(self, session_id: str, timeout_seconds: float) -> bool:
        if self.holder == session_id:
            self.holder = ""
            return True
        return False


class FakeMarket:
    def __init__(self) -> None:
        self.prices = {"BTCUSDT": 100.0, "ETHUSDT": 10.0}
        self.regime = RegimeSnapshot(label="uptrend", confidence=0.8)
        self.regime_error: Exception | None = None
        self.price_error: Exception | None = None

    async def get_prices(self, symbols: list[str]) -> dict[str, float]:
        if self.price_error is not None:
            raise self.price_error
        return {s: p for s, p in self.prices.items() if s in symbols}

    async def get_regime(self, symbol: str, timeframe: str) -> RegimeSnapshot:
        if self.regime_error is not None:
            raise self.regime_error
        return RegimeSnapshot(label=self.regime.label, confidence=self.regime.confidence)

    async def get_volatility(self, symbol: str, timeframe: str):
        raise OptionalDataError("no volatility feed")

    async def get_sentiment_index(self) -> SentimentIndex:
        return SentimentIndex(value=50, classification="Neutral")


class FakeStrategy:
    def __init__(self) -> None:
        self.candidates: list[TradeCandidate] = []
        self.closes: list[CloseInstruction] = []
        self.evaluate_calls = 0
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def evaluate(self, context: StrategyContext) -> list[TradeCandidate]:
        self.evaluate_calls += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        return [
            TradeCandidate(
                candidate_id=c.candidate_id,
                symbol=c.symbol,
                strategy=c.strategy,
                combined_strength=c.combined_strength,
                conviction=c.conviction,
            )
            for c in self.candidates
        ]

    async def review_positions(self, positions, prices) -> list[CloseInstruction]:
        closes, self.closes = self.closes, []
        return closes


class FakePersistence:
    def __init__(self, settings: ScannerSettings, persisted: PersistedScannerState | None = None) -> None:
        self.settings = settings
        self.persisted = persisted
        self.saved: list[dict[str, Any]] = []
        self.archive: list[dict[str, Any]] = []
        self.wallet_summaries: list[dict[str, Any]] = []
        self.append_error: Exception | None = None

    def load_config(self) -> ScannerSettings:
        return self.settings

    def save_cycle_state(self, state: PersistedScannerState) -> None:
        self.persisted = state
        self.saved.append(state.to_payload("test"))

    def load_cycle_state(self) -> PersistedScannerState | None:
        return self.persisted

    def append_archive(self, records: list[dict[str, Any]]) -> int:
        if self.append_error is not None:
            raise self.append_error
        self.archive.extend(records)
        return len(records)

    def save_wallet_summary(self, summary: dict[str, Any]) -> None:
        self.wallet_summaries.append(summary)

    def recent_closed_trades(self, limit: int):
        return []

    def prune_archive(self, *, now: float) -> int:
        return 0


class FakeSink:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def send_event(self, event: dict[str, Any]) -> int:
        self.events.append(event)
        return 1

    def codes(self) -> list[str]:
        return [e.get("reason_code", "") for e in self.events]

    def summaries(self) -> list[dict[str, Any]]:
        return [e for e in self.events if e.get("schema_name") == "cycle_summary.v1"]


class ManualClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)


WEIGHTS = {
    "unrealized_pnl": 0.30,
    "realized_pnl": 0.40,
    "regime": 0.0,
    "volatility": 0.10,
    "opportunity": 0.0,
    "sentiment": 0.10,
    "signal_quality": 0.10,
}


class ScanCycleSchedulerTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(PHASE_IO_RETRY_ATTEMPTS=1, LEADERSHIP_RECHECK_BEFORE_OPEN=True)

    def _build(
        self,
        *,
        balance: float = 1000.0,
        persisted: PersistedScannerState | None = None,
        clock: Any = None,
        **settings_overrides: Any,
    ) -> ScanCycleScheduler:
        settings = ScannerSettings(
            scan_interval_ms=3_600_000,
            min_combined_strength=100.0,
            min_trade_value=10.0,
            position_sizing_strategy="fixed_conviction",
            default_position_size=100.0,
        )
        if settings_overrides:
            settings = settings.with_overrides(settings_overrides)
        self.arbiter = FakeArbiter()
        self.market = FakeMarket()
        self.strategy = FakeStrategy()
        self.paper = PaperTradeExecutor(starting_balance=balance, quote_asset="USDT")
        self.persistence = FakePersistence(settings, persisted)
        self.sink = FakeSink()
        coordinator = LeaderElectionCoordinator(self.arbiter, session_id="me", ttl_seconds=60)
        self.scheduler = ScanCycleScheduler(
            coordinator=coordinator,
            market=self.market,
            gateway=self.paper,
            strategy=self.strategy,
            executor=self.paper,
            persistence=self.persistence,
            status_sink=self.sink,
            aggregator=RiskScoreAggregator(max_percent_risk=100.0, weights=WEIGHTS, interval_seconds=0.0),
            symbols=["BTCUSDT", "ETHUSDT"],
            **({"clock": clock, "sleep": clock.sleep} if clock is not None else {}),
        )
        return self.scheduler

    async def asyncTearDown(self) -> None:
        scheduler = getattr(self, "scheduler", None)
        if scheduler is not None:
            await scheduler.stop(reason="test_teardown")

    def _candidate(self, cid: str = "c1", symbol: str = "BTCUSDT", strength: float = 300.0) -> TradeCandidate:
        return TradeCandidate(candidate_id=cid, symbol=symbol, strategy="trend", combined_strength=strength, conviction=1.0)

    async def test_start_runs_first_cycle_and_opens_through_gate(self) -> None:
        scheduler = self._build()
        self.strategy.candidates = [self._candidate()]
        await scheduler.initialize()
        result = await scheduler.start()

        self.assertTrue(result.granted)
        self.assertEqual(scheduler.state, STATE_IDLE)
        self.assertEqual(scheduler.cycle_state.total_cycles, 1)
        self.assertEqual(len(self.paper.open_positions), 1)
        self.assertAlmostEqual(self.paper.balance, 950.0)
        self.assertTrue(self.persistence.persisted.is_running)
        self.assertGreater(scheduler.seconds_until_next(), 0)
        kinds = [r["kind"] for r in self.persistence.archive]
        self.assertIn("trade_open", kinds)
        self.assertIn("cycle", kinds)
        summary = self.sink.summaries()[-1]
        self.assertEqual(summary["opened"], 1)
        self.assertEqual(
            list(summary["phase_durations_ms"]),
            ["leadership", "market_context", "prices", "positions", "capital", "strategies", "archive"],
        )

        await scheduler.stop()
        self.assertEqual(scheduler.state, STATE_STOPPED)
        self.assertEqual(self.arbiter.holder, "")
        self.assertFalse(self.persistence.persisted.is_running)

    async def _wait_for_summaries(self, count: int) -> None:
        while len(self.sink.summaries()) < count:
            await asyncio.sleep(0.01)

    async def test_countdown_starts_next_cycle_once_interval_elapses(self) -> None:
        self.patch_cfg(SCAN_COUNTDOWN_TICK_SECONDS=1.0)
        clock = ManualClock()
        scheduler = self._build(clock=clock)
        await scheduler.initialize()
        await scheduler.start()

        self.assertEqual(scheduler.cycle_state.total_cycles, 1)
        self.assertAlmostEqual(scheduler.cycle_state.next_scheduled_at, clock.now + 3600.0)
        for _ in range(20):
            await asyncio.sleep(0)
        self.assertEqual(scheduler.cycle_state.total_cycles, 1)
        self.assertTrue(clock.sleeps)
        self.assertTrue(all(0 < s <= 1.0 for s in clock.sleeps))

        clock.now += 3600.5
        await asyncio.wait_for(self._wait_for_summaries(2), timeout=5)

        self.assertEqual(scheduler.cycle_state.total_cycles, 2)
        self.assertEqual(self.strategy.evaluate_calls, 2)
        self.assertEqual(len(self.sink.summaries()), 2)
        self.assertAlmostEqual(scheduler.cycle_state.next_scheduled_at, clock.now + 3600.0)

    async def test_candidate_filters_and_gate_rejections_do_not_stop_cycle(self) -> None:
        scheduler = self._build()
        self.strategy.candidates = [
            self._candidate("weak", strength=50.0),
            self._candidate("ok1"),
            self._candidate("dup"),
            TradeCandidate(
                candidate_id="eth",
                symbol="ETHUSDT",
                strategy="meanrev",
                combined_strength=300.0,
                conviction=1.0,
            ),
        ]
        await scheduler.initialize()
        scheduler.filters["ETHUSDT"] = SymbolFilters(symbol="ETHUSDT", min_notional=500.0)
        await scheduler.start()

        codes = self.sink.codes()
        self.assertIn("FILTER_BELOW_MIN_STRENGTH", codes)
        self.assertIn("FILTER_MAX_POSITIONS", codes)
        self.assertIn("GATE_EXCHANGE_MIN_NOTIONAL", codes)
        summary = self.sink.summaries()[-1]
        self.assertEqual((summary["opened"], summary["rejected"]), (1, 3))
        self.assertEqual(scheduler.state, STATE_IDLE)

    async def test_low_funds_skip_strategies_but_still_archive(self) -> None:
        scheduler = self._build(balance=5.0)
        self.strategy.candidates = [self._candidate()]
        await scheduler.initialize()
        await scheduler.start()

        self.assertEqual(self.strategy.evaluate_calls, 0)
        self.assertIn("CAPITAL_FUNDS_BELOW_MINIMUM", self.sink.codes())
        self.assertIn("cycle", [r["kind"] for r in self.persistence.archive])
        summary = self.sink.summaries()[-1]
        self.assertEqual(summary["reason"], "funds_below_minimum")
        self.assertEqual(scheduler.cycle_state.total_cycles, 1)

    async def test_critical_persistence_error_stops_and_releases(self) -> None:
        scheduler = self._build()
        await scheduler.initialize()
        await scheduler.start()
        self.persistence.append_error = PersistenceError("database is locked")

        self.assertIsNone(await scheduler.run_cycle())
        self.assertEqual(scheduler.state, STATE_STOPPED)
        self.assertEqual(self.arbiter.holder, "")
        self.assertIsNone(scheduler._countdown_task)
        self.assertIn("CYCLE_CRITICAL_ERROR", self.sink.codes())
        self.assertIn("PersistenceError", scheduler.last_error)
        self.assertEqual(scheduler.cycle_state.total_cycles, 1)
        self.assertIsNone(await scheduler.run_cycle())

    async def test_network_failure_on_prices_is_critical(self) -> None:
        scheduler = self._build()
        await scheduler.initialize()
        await scheduler.start()
        self.market.price_error = NetworkError("prices network failure: connection reset")
        await scheduler.run_cycle()
        self.assertEqual(scheduler.state, STATE_STOPPED)

    async def test_optional_data_failure_is_logged_and_cycle_continues(self) -> None:
        scheduler = self._build()
        self.market.regime_error = OptionalDataError("regime unavailable")
        await scheduler.initialize()
        await scheduler.start()

        self.assertEqual(scheduler.state, STATE_IDLE)
        self.assertEqual(scheduler.cycle_state.total_cycles, 1)
        errors = self.sink.summaries()[-1]["errors"]
        self.assertEqual(errors[0]["phase"], "market_context")
        self.assertEqual(errors[0]["reason"], "optional_data_unavailable")

    async def test_second_run_cycle_while_in_flight_is_noop(self) -> None:
        scheduler = self._build()
        await scheduler.initialize()
        await scheduler.start()
        self.strategy.gate = asyncio.Event()
        self.strategy.entered.clear()

        first = asyncio.create_task(scheduler.run_cycle())
        await asyncio.wait_for(self.strategy.entered.wait(), timeout=5)
        self.assertIsNone(await scheduler.run_cycle())
        self.strategy.gate.set()
        await first

        self.assertEqual(scheduler.cycle_state.total_cycles, 2)
        self.assertEqual(self.strategy.evaluate_calls, 2)
        self.assertEqual(len(self.sink.summaries()), 2)

    async def test_leadership_loss_aborts_cycle(self) -> None:
        scheduler = self._build()
        await scheduler.initialize()
        await scheduler.start()
        self.arbiter.holder = "other"

        self.assertIsNone(await scheduler.run_cycle())
        self.assertEqual(scheduler.state, STATE_STOPPED)
        self.assertEqual(self.strategy.evaluate_calls, 1)
        self.assertEqual(scheduler.cycle_state.total_cycles, 1)
        self.assertEqual(self.arbiter.holder, "other")

    async def test_conflict_needs_force(self) -> None:
        scheduler = self._build()
        self.arbiter.holder = "other"
        await scheduler.initialize()

        result = await scheduler.start()
        self.assertFalse(result.granted)
        self.assertEqual(result.reason, "already_claimed")
        self.assertEqual(scheduler.state, STATE_STOPPED)
        self.assertIn("LEADER_ALREADY_CLAIMED", self.sink.codes())

        result = await scheduler.start(force=True)
        self.assertTrue(result.granted)
        self.assertEqual(self.arbiter.holder, "me")
        self.assertEqual(scheduler.cycle_state.total_cycles, 1)

    async def test_closes_are_executed_and_archived(self) -> None:
        scheduler = self._build()
        self.strategy.candidates = [self._candidate()]
        await scheduler.initialize()
        await scheduler.start()
        position_id = next(iter(self.paper.open_positions))

        self.strategy.candidates = []
        self.strategy.closes = [CloseInstruction(position_id=position_id, symbol="BTCUSDT", reason="take_profit")]
        self.market.prices["BTCUSDT"] = 110.0
        await scheduler.run_cycle()

        closes = [r for r in self.persistence.archive if r["kind"] == "trade_close"]
        self.assertEqual(len(closes), 1)
        self.assertAlmostEqual(closes[0]["pnl_usd"], 5.0)
        self.assertEqual(self.paper.open_positions, {})
        self.assertEqual(self.sink.summaries()[-1]["closed"], 1)

    async def test_initialize_resumes_previous_run(self) -> None:
        persisted = PersistedScannerState(
            is_running=True,
            trading_mode="paper",
            regime_state=RegimeSnapshot(label="uptrend", confidence=0.7, consecutive_periods=2, history=["uptrend"] * 2),
            cycle_stats=CycleState(total_cycles=41, rolling_avg_duration_ms=1000.0),
        )
        scheduler = self._build(persisted=persisted)
        await scheduler.initialize()

        self.assertEqual(scheduler.state, STATE_IDLE)
        self.assertEqual(scheduler.cycle_state.total_cycles, 42)
        self.assertEqual(scheduler.regime.consecutive_periods, 3)
        self.assertTrue(scheduler.regime.is_confirmed)
        self.assertEqual(self.persistence.persisted.cycle_stats.total_cycles, 42)

    async def test_initialize_without_running_flag_stays_stopped(self) -> None:
        persisted = PersistedScannerState(is_running=False, cycle_stats=CycleState(total_cycles=7))
        scheduler = self._build(persisted=persisted)
        await scheduler.initialize()
        self.assertEqual(scheduler.state, STATE_STOPPED)
        self.assertEqual(scheduler.cycle_state.total_cycles, 7)
        self.assertEqual(self.arbiter.holder, "")

    async def test_stop_is_idempotent(self) -> None:
        scheduler = self._build()
        await scheduler.initialize()
        await scheduler.start()
        await scheduler.stop()
        stopped_events = len(self.sink.events)
        await scheduler.stop()
        await scheduler.stop()
        self.assertEqual(len(self.sink.events), stopped_events)
        self.assertEqual(scheduler.state, STATE_STOPPED)

    async def test_status_snapshot(self) -> None:
        scheduler = self._build()
        await scheduler.initialize()
        await scheduler.start()
        snapshot = scheduler.status()
        self.assertEqual(snapshot["state"], STATE_IDLE)
        self.assertTrue(snapshot["leadership"]["is_leader"])
        self.assertEqual(snapshot["cycle"]["total_cycles"], 1)
        self.assertEqual(snapshot["regime"]["label"], "uptrend")
        self.assertAlmostEqual(snapshot["risk"]["risk_multiplier"], 50.0)


if __name__ == "__main__":
    unittest.main()
