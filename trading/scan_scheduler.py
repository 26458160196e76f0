"""Scan-cycle state machine: runs phased cycles while this instance holds the lease.

States: STOPPED -> INITIALIZING -> STOPPED -> IDLE <-> SCANNING -> STOPPED.
Errors escaping a phase are classified; non-critical ones are logged and the
cycle moves on, critical ones stop the scheduler, publish an alert and release
the lease.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import config
from trading.collaborators import (
    ExchangeGateway,
    MarketDataProvider,
    PersistenceFacade,
    StatusSink,
    StrategyContext,
    StrategyEngine,
    TradeExecutor,
)
from trading.errors import InitializationError, LeadershipLostError
from trading.leader_election import REASON_ALREADY_CLAIMED, STATE_LOST, LeaderElectionCoordinator
from trading.models import ClaimResult, CycleState, MarketVolatility, RegimeSnapshot, SentimentIndex, SymbolFilters
from trading.position_sizing import PositionSizeGate
from trading.risk_score import RiskInputs, RiskScoreAggregator, RiskScoreBreakdown
from trading.runtime_policy import (
    SEVERITY_CRITICAL,
    candidate_block_reason,
    capital_gate,
    classify_error,
    regime_gate,
)
from trading.scanner_state import PersistedScannerState
from trading.settings import ScannerSettings
from trading.wallet_facade import WalletReconciliationFacade
from utils.log_contracts import cycle_summary_event, gate_decision_event, status_event
from utils.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

STATE_STOPPED = "STOPPED"
STATE_INITIALIZING = "INITIALIZING"
STATE_IDLE = "IDLE"
STATE_SCANNING = "SCANNING"

PHASE_LEADERSHIP = "leadership"
PHASE_MARKET_CONTEXT = "market_context"
PHASE_PRICES = "prices"
PHASE_POSITIONS = "positions"
PHASE_CAPITAL = "capital"
PHASE_STRATEGIES = "strategies"
PHASE_ARCHIVE = "archive"

SIGNAL_HISTORY_MAX = 50
CLOSED_TRADES_LOOKBACK = 100


@dataclass
class CycleRun:
    cycle: int
    started_at: float
    prices: dict[str, float] = field(default_factory=dict)
    breakdown: RiskScoreBreakdown | None = None
    skip_reason: str = ""
    opened: int = 0
    closed: int = 0
    rejected: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    archive: list[dict[str, Any]] = field(default_factory=list)
    phase_durations_ms: dict[str, float] = field(default_factory=dict)


class ScanCycleScheduler:
    def __init__(
        self,
        *,
        coordinator: LeaderElectionCoordinator,
        market: MarketDataProvider,
        gateway: ExchangeGateway,
        strategy: StrategyEngine,
        executor: TradeExecutor,
        persistence: PersistenceFacade,
        status_sink: StatusSink,
        aggregator: RiskScoreAggregator | None = None,
        wallet: WalletReconciliationFacade | None = None,
        symbols: list[str] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.coordinator = coordinator
        self.market = market
        self.gateway = gateway
        self.strategy = strategy
        self.executor = executor
        self.persistence = persistence
        self.status_sink = status_sink
        self.aggregator = aggregator
        self.wallet = wallet or WalletReconciliationFacade(gateway, persistence, clock=clock)
        self.symbols = [s.upper() for s in (symbols if symbols is not None else getattr(config, "SCAN_SYMBOLS", []))]
        self._clock = clock
        self._sleep = sleep

        self.state = STATE_STOPPED
        self.settings: ScannerSettings | None = None
        self.gate: PositionSizeGate | None = None
        self.cycle_state = CycleState()
        self.regime = RegimeSnapshot(
            confirmation_threshold=int(getattr(config, "REGIME_CONFIRMATION_THRESHOLD", 3)),
        )
        self.volatility: MarketVolatility | None = None
        self.sentiment: SentimentIndex | None = None
        self.filters: dict[str, SymbolFilters] = {}
        self.last_prices: dict[str, float] = {}
        self.last_error = ""
        self.signal_history: list[int] = []
        self.avg_signal_strength: float | None = None
        self.initialized = False

        self._regime_fetched_at = 0.0
        self._sentiment_fetched_at = 0.0
        self._cycle_in_flight = False
        self._countdown_task: asyncio.Task | None = None
        self._phase_policy = RetryPolicy.for_phase_io()
        self.coordinator.add_listener(self._on_leadership_change)

    # ---- lifecycle -----------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.state in (STATE_IDLE, STATE_SCANNING)

    @property
    def trading_mode(self) -> str:
        if self.settings is not None:
            return self.settings.trading_mode
        return str(getattr(config, "TRADING_MODE", "paper"))

    def _network_timeout(self) -> float:
        return float(getattr(config, "NETWORK_CALL_TIMEOUT_SECONDS", 30.0))

    def _aggregate_timeout(self) -> float:
        return float(getattr(config, "AGGREGATE_CALL_TIMEOUT_SECONDS", 90.0))

    async def initialize(self, *, resume: bool = True) -> None:
        """Load settings, persisted state, symbol filters and a first wallet snapshot."""
        self.state = STATE_INITIALIZING
        logger.info("SCANNER_INIT session=%s symbols=%s", self.coordinator.session_id, ",".join(self.symbols))
        try:
            settings = await asyncio.to_thread(self.persistence.load_config)
            self.settings = settings.validated()
            self.gate = PositionSizeGate.from_settings(self.settings)
            if self.aggregator is None:
                self.aggregator = RiskScoreAggregator(max_percent_risk=self.settings.max_balance_percent_risk)
            persisted = await asyncio.to_thread(self.persistence.load_cycle_state)
        except Exception as exc:
            self.state = STATE_STOPPED
            await self._alert_critical(exc, stage="initialize")
            if classify_error(exc)[0] == SEVERITY_CRITICAL:
                raise
            raise InitializationError(f"scanner initialization failed: {exc}") from exc

        was_running = False
        if persisted is not None:
            if persisted.trading_mode != self.settings.trading_mode:
                logger.warning(
                    "SCANNER_STATE_MODE_MISMATCH persisted=%s configured=%s action=ignore",
                    persisted.trading_mode,
                    self.settings.trading_mode,
                )
            else:
                self.cycle_state = persisted.cycle_stats
                self.cycle_state.phase = "idle"
                self.cycle_state.next_scheduled_at = 0.0
                self.regime = persisted.regime_state
                was_running = persisted.is_running
                logger.info(
                    "SCANNER_STATE_RESTORED cycles=%s avg_ms=%.0f regime=%s streak=%s was_running=%s",
                    self.cycle_state.total_cycles,
                    self.cycle_state.rolling_avg_duration_ms,
                    self.regime.label,
                    self.regime.consecutive_periods,
                    was_running,
                )

        for label, step in (("symbol_filters", self._load_filters), ("wallet", self.wallet.refresh)):
            try:
                await step()
            except Exception as exc:
                severity, reason = classify_error(exc)
                if severity == SEVERITY_CRITICAL:
                    self.state = STATE_STOPPED
                    await self._alert_critical(exc, stage="initialize")
                    raise InitializationError(f"scanner initialization failed at {label}: {exc}") from exc
                logger.warning("SCANNER_INIT_PARTIAL step=%s reason=%s err=%s", label, reason, exc)

        self.state = STATE_STOPPED
        self.initialized = True
        await self._emit_status("initialized", message="scanner initialized")
        if resume and was_running:
            logger.info("SCANNER_RESUME session=%s", self.coordinator.session_id)
            await self.start()

    async def _load_filters(self) -> None:
        self.filters = await asyncio.wait_for(
            self.gateway.get_symbol_filters(self.symbols),
            timeout=self._network_timeout(),
        )

    async def start(self, force: bool = False) -> ClaimResult:
        if not self.initialized:
            await self.initialize(resume=False)
        if self.is_running:
            return ClaimResult(granted=True, reason="already_running", active_id=self.coordinator.session_id)

        result = await self.coordinator.claim(force=force)
        if not result.granted:
            if result.reason == REASON_ALREADY_CLAIMED:
                await self._emit_status(
                    "held_by_other",
                    reason=REASON_ALREADY_CLAIMED,
                    message=f"another scanner is active ({result.active_id}); start with force to take over",
                    active_id=result.active_id,
                )
            else:
                await self._emit_status(
                    "stopped",
                    reason=result.reason or "claim_failed",
                    message="leadership claim failed; will retry on next start",
                    level="WARN",
                )
            return result

        self.state = STATE_IDLE
        self.last_error = ""
        self.coordinator.start_background()
        self.coordinator.install_teardown_hook()
        await self._persist(is_running=True)
        await self._emit_status("leading", reason="claimed", message=f"scanner started (force={force})")
        await self.run_cycle()
        return result

    async def stop(self, reason: str = "stopped") -> None:
        """Clear the countdown, background tasks and leadership; safe to call repeatedly."""
        if self.state == STATE_STOPPED and self._countdown_task is None and not self.coordinator.is_leader:
            return
        self.state = STATE_STOPPED
        self.cycle_state.next_scheduled_at = 0.0
        self._cancel_countdown()
        if self.coordinator.is_leader:
            await self.coordinator.release()
        else:
            await self.coordinator.stop_background()
        try:
            await self._persist(is_running=False)
        except Exception as exc:
            logger.error("SCANNER_STOP_PERSIST_FAILED err=%s", exc)
        logger.info("SCANNER_STOPPED reason=%s cycles=%s", reason, self.cycle_state.total_cycles)
        await self._emit_status("stopped", reason=reason, message=f"scanner stopped: {reason}")

    def _cancel_countdown(self) -> None:
        task = self._countdown_task
        self._countdown_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _on_leadership_change(self, state: str, reason: str) -> None:
        if state != STATE_LOST or self.state == STATE_STOPPED:
            return
        logger.warning("SCANNER_LEADERSHIP_LOST reason=%s", reason)
        await self.stop(reason="leadership_lost")

    # ---- scheduling ----------------------------------------------------

    def seconds_until_next(self) -> float:
        if not self.cycle_state.next_scheduled_at:
            return 0.0
        return max(0.0, self.cycle_state.next_scheduled_at - self._clock())

    def _schedule_next(self) -> None:
        assert self.settings is not None
        now = self._clock()
        self.cycle_state.next_scheduled_at = now + self.settings.scan_interval_ms / 1000.0
        self._cancel_countdown()
        self._countdown_task = asyncio.create_task(self._countdown(), name="scan-countdown")

    async def _countdown(self) -> None:
        tick = float(getattr(config, "SCAN_COUNTDOWN_TICK_SECONDS", 1.0))
        while self.state == STATE_IDLE:
            remaining = self.seconds_until_next()
            if remaining <= 0:
                break
            await self._sleep(min(tick, remaining))
        if self.state == STATE_IDLE:
            await self.run_cycle()

    # ---- cycle ---------------------------------------------------------

    async def run_cycle(self) -> dict[str, Any] | None:
        if self._cycle_in_flight:
            logger.debug("CYCLE_SKIPPED reason=in_flight")
            return None
        if self.state != STATE_IDLE:
            logger.debug("CYCLE_SKIPPED reason=state_%s", self.state.lower())
            return None

        self._cycle_in_flight = True
        self.state = STATE_SCANNING
        started = self._clock()
        started_perf = time.perf_counter()
        run = CycleRun(cycle=self.cycle_state.total_cycles + 1, started_at=started)
        self.cycle_state.started_at = started
        phases = (
            (PHASE_LEADERSHIP, self._phase_leadership),
            (PHASE_MARKET_CONTEXT, self._phase_market_context),
            (PHASE_PRICES, self._phase_prices),
            (PHASE_POSITIONS, self._phase_positions),
            (PHASE_CAPITAL, self._phase_capital),
            (PHASE_STRATEGIES, self._phase_strategies),
            (PHASE_ARCHIVE, self._phase_archive),
        )
        try:
            for name, phase in phases:
                if self.state != STATE_SCANNING:
                    logger.info("CYCLE_ABORTED cycle=%s before=%s state=%s", run.cycle, name, self.state)
                    return None
                self.cycle_state.phase = name
                phase_started = time.perf_counter()
                try:
                    await phase(run)
                except LeadershipLostError:
                    raise
                except Exception as exc:
                    self._absorb(run, name, exc)
                finally:
                    run.phase_durations_ms[name] = round((time.perf_counter() - phase_started) * 1000.0, 2)

            duration_ms = (time.perf_counter() - started_perf) * 1000.0
            self.cycle_state.record_duration(
                duration_ms,
                alpha=float(getattr(config, "CYCLE_DURATION_SMOOTHING", 0.2)),
            )
            self.cycle_state.total_cycles = run.cycle
            self.cycle_state.last_completed_at = self._clock()
            self.cycle_state.phase_durations_ms = dict(run.phase_durations_ms)
            self.cycle_state.phase = "idle"
            await self._persist(is_running=True)

            summary = cycle_summary_event(
                {
                    "session_id": self.coordinator.session_id,
                    "cycle": run.cycle,
                    "decision": "skipped_strategies" if run.skip_reason else "completed",
                    "reason": run.skip_reason,
                    "duration_ms": duration_ms,
                    "rolling_avg_duration_ms": self.cycle_state.rolling_avg_duration_ms,
                    "phase_durations_ms": run.phase_durations_ms,
                    "errors": run.errors,
                    "opened": run.opened,
                    "closed": run.closed,
                    "rejected": run.rejected,
                    "final_score": run.breakdown.final_score if run.breakdown else None,
                    "risk_multiplier": run.breakdown.risk_multiplier if run.breakdown else None,
                },
                run_tag=self.coordinator.session_id,
            )
            logger.info(
                "CYCLE_DONE cycle=%s duration=%.0fms avg=%.0fms opened=%s closed=%s rejected=%s errors=%s skip=%s",
                run.cycle,
                duration_ms,
                self.cycle_state.rolling_avg_duration_ms,
                run.opened,
                run.closed,
                run.rejected,
                len(run.errors),
                run.skip_reason or "-",
            )
            await self._emit(summary)
            if self.state == STATE_SCANNING:
                self.state = STATE_IDLE
                self._schedule_next()
            return summary
        except LeadershipLostError as exc:
            logger.warning("CYCLE_LEADERSHIP_LOST cycle=%s err=%s", run.cycle, exc)
            await self.stop(reason="leadership_lost")
            return None
        except Exception as exc:
            logger.exception("CYCLE_CRITICAL cycle=%s phase=%s", run.cycle, self.cycle_state.phase)
            await self._alert_critical(exc, stage=self.cycle_state.phase, cycle=run.cycle)
            await self.stop(reason="critical_error")
            return None
        finally:
            self._cycle_in_flight = False

    def _absorb(self, run: CycleRun, phase: str, exc: BaseException) -> None:
        """Record a non-critical failure; critical ones propagate to the cycle."""
        severity, reason = classify_error(exc)
        if severity == SEVERITY_CRITICAL:
            raise exc
        run.errors.append({"phase": phase, "reason": reason, "error": str(exc) or type(exc).__name__})
        logger.warning("CYCLE_PHASE_ERROR cycle=%s phase=%s reason=%s err=%s", run.cycle, phase, reason, exc)

    async def _fetch(self, label: str, factory: Callable[[], Awaitable[Any]], timeout: float) -> Any:
        async def attempt() -> Any:
            return await asyncio.wait_for(factory(), timeout=timeout)

        return await retry_async(attempt, self._phase_policy, sleep=self._sleep, label=label)

    async def _phase_leadership(self, run: CycleRun) -> None:
        if not self.coordinator.is_leader or not await self.coordinator.verify():
            raise LeadershipLostError(f"session {self.coordinator.session_id} no longer holds the lease")

    async def _phase_market_context(self, run: CycleRun) -> None:
        now = self._clock()
        regime_ttl = float(getattr(config, "REGIME_CACHE_SECONDS", 3600))
        if not self._regime_fetched_at or now - self._regime_fetched_at >= regime_ttl:
            try:
                await self._refresh_regime(now)
            except Exception as exc:
                self._absorb(run, PHASE_MARKET_CONTEXT, exc)

        sentiment_ttl = float(getattr(config, "SENTIMENT_REFRESH_SECONDS", 300))
        if not self._sentiment_fetched_at or now - self._sentiment_fetched_at >= sentiment_ttl:
            try:
                self.sentiment = await asyncio.wait_for(
                    self.market.get_sentiment_index(),
                    timeout=self._network_timeout(),
                )
                self._sentiment_fetched_at = now
            except Exception as exc:
                self._absorb(run, PHASE_MARKET_CONTEXT, exc)

    async def _refresh_regime(self, now: float) -> None:
        symbol = str(getattr(config, "REGIME_SYMBOL", "BTCUSDT"))
        timeframe = str(getattr(config, "REGIME_TIMEFRAME", "4h"))
        history_max = int(getattr(config, "REGIME_HISTORY_MAX", 10))
        fresh = await asyncio.wait_for(self.market.get_regime(symbol, timeframe), timeout=self._network_timeout())
        if fresh.consecutive_periods <= 0:
            self.regime = self.regime.advance(fresh.label, fresh.confidence, now=now, history_max=history_max)
        else:
            if not fresh.history:
                fresh.history = (list(self.regime.history) + [fresh.label])[-history_max:]
            fresh.updated_at = now
            self.regime = fresh
        self._regime_fetched_at = now
        try:
            self.volatility = await asyncio.wait_for(
                self.market.get_volatility(symbol, timeframe),
                timeout=self._network_timeout(),
            )
        except Exception as exc:
            logger.info("REGIME_VOLATILITY_UNAVAILABLE err=%s", exc)
            if classify_error(exc)[0] == SEVERITY_CRITICAL:
                raise
        logger.info(
            "REGIME label=%s confidence=%.0f%% confirmed=%s streak=%s/%s",
            self.regime.label,
            self.regime.confidence * 100.0,
            self.regime.is_confirmed,
            self.regime.consecutive_periods,
            self.regime.confirmation_threshold,
        )

    async def _phase_prices(self, run: CycleRun) -> None:
        symbols = sorted(set(self.symbols) | {p.symbol for p in self.wallet.positions})
        prices = await self._fetch("prices", lambda: self.market.get_prices(symbols), self._network_timeout())
        run.prices = dict(prices)
        self.last_prices = dict(prices)

    async def _phase_positions(self, run: CycleRun) -> None:
        every = int(getattr(config, "WALLET_RECONCILE_EVERY_CYCLES", 20))
        if run.cycle % max(1, every) == 0:
            await self.wallet.reconcile(run.prices)
        else:
            await self._fetch("account", self.wallet.refresh, self._network_timeout())

        positions = self.wallet.positions
        if not positions:
            return
        closes = await asyncio.wait_for(
            self.strategy.review_positions(positions, run.prices),
            timeout=self._aggregate_timeout(),
        )
        by_id = {p.position_id: p for p in positions}
        for instruction in closes:
            try:
                trade = await asyncio.wait_for(
                    self.executor.close_position(instruction, run.prices.get(instruction.symbol)),
                    timeout=self._network_timeout(),
                )
            except Exception as exc:
                self._absorb(run, PHASE_POSITIONS, exc)
                continue
            if trade is None:
                continue
            run.closed += 1
            position = by_id.get(instruction.position_id)
            run.archive.append(
                {
                    "kind": "trade_close",
                    "session_id": self.coordinator.session_id,
                    "cycle": run.cycle,
                    "symbol": trade.symbol,
                    "strategy": trade.strategy or (position.strategy if position else ""),
                    "reason": instruction.reason,
                    "pnl_usd": round(trade.pnl_usd, 8),
                    "pnl_percent": round(trade.pnl_percent, 4),
                    "ts": trade.closed_at,
                    "trading_mode": self.trading_mode,
                }
            )
        if run.closed:
            await self.wallet.refresh()

    async def _phase_capital(self, run: CycleRun) -> None:
        assert self.settings is not None and self.aggregator is not None
        closed_trades = await asyncio.to_thread(self.persistence.recent_closed_trades, CLOSED_TRADES_LOOKBACK)
        run.breakdown = self.aggregator.compute(
            RiskInputs(
                positions=self.wallet.positions,
                prices=run.prices,
                closed_trades=closed_trades,
                regime=self.regime,
                volatility=self.volatility,
                signal_history=list(self.signal_history),
                sentiment=self.sentiment,
                avg_signal_strength=self.avg_signal_strength,
                now=self._clock(),
            )
        )
        decision, reason = capital_gate(
            available_funds=self.wallet.available_funds(),
            allocated_capital=self.wallet.allocated_capital(run.prices),
            min_trade_value=self.settings.min_trade_value,
            invest_cap=self.settings.max_balance_invest_cap,
        )
        if decision == "SKIP":
            run.skip_reason = reason
            logger.info(
                "CAPITAL_GATE cycle=%s decision=SKIP reason=%s available=%.2f allocated=%.2f",
                run.cycle,
                reason,
                self.wallet.available_funds(),
                self.wallet.allocated_capital(run.prices),
            )
            await self._emit_gate(run, stage="capital_gate", decision="skip", reason=reason)

    async def _phase_strategies(self, run: CycleRun) -> None:
        assert self.settings is not None and self.gate is not None
        if run.skip_reason:
            return
        decision, reason = regime_gate(
            self.regime,
            min_confidence_percent=self.settings.min_regime_confidence,
            block_downtrend=self.settings.block_trading_in_downtrend,
        )
        if decision == "SKIP":
            run.skip_reason = reason
            logger.info("REGIME_GATE cycle=%s decision=SKIP reason=%s regime=%s", run.cycle, reason, self.regime.label)
            await self._emit_gate(run, stage="regime_gate", decision="skip", reason=reason)
            return

        if getattr(config, "LEADERSHIP_RECHECK_BEFORE_OPEN", True) and not await self.coordinator.verify():
            raise LeadershipLostError("lease lost before opening positions")

        multiplier = run.breakdown.risk_multiplier if run.breakdown else 100.0
        candidates = await asyncio.wait_for(
            self.strategy.evaluate(
                StrategyContext(
                    cycle=run.cycle,
                    prices=run.prices,
                    regime=self.regime,
                    positions=self.wallet.positions,
                    risk_multiplier=multiplier,
                )
            ),
            timeout=self._aggregate_timeout(),
        )
        self.signal_history = (self.signal_history + [len(candidates)])[-SIGNAL_HISTORY_MAX:]
        if candidates:
            self.avg_signal_strength = sum(c.combined_strength for c in candidates) / len(candidates)

        open_by_strategy = self.wallet.open_by_strategy()
        available = self.wallet.available_funds()
        for candidate in candidates:
            if candidate.price <= 0 and candidate.symbol in run.prices:
                candidate.price = run.prices[candidate.symbol]
            block = candidate_block_reason(
                candidate,
                min_combined_strength=self.settings.min_combined_strength,
                open_by_strategy=open_by_strategy,
                max_positions_per_strategy=self.settings.max_positions_per_strategy,
            )
            if block:
                run.rejected += 1
                await self._emit_gate(run, stage="candidate_filter", decision="skip", reason=block, candidate=candidate)
                continue

            request, result = self.gate.size_candidate(
                candidate,
                available_funds=available,
                risk_multiplier=multiplier,
                filters=self.filters.get(candidate.symbol),
            )
            if not result.accepted or result.adjusted_notional is None:
                run.rejected += 1
                await self._emit_gate(
                    run,
                    stage="position_gate",
                    decision="reject",
                    reason=result.reason,
                    candidate=candidate,
                    proposed=request.proposed_notional if request else 0.0,
                    multiplier=multiplier,
                )
                continue

            if self.state != STATE_SCANNING:
                return
            try:
                position = await asyncio.wait_for(
                    self.executor.open_position(candidate, result.adjusted_notional),
                    timeout=self._network_timeout(),
                )
            except Exception as exc:
                run.rejected += 1
                self._absorb(run, PHASE_STRATEGIES, exc)
                continue
            if position is None:
                continue
            run.opened += 1
            available = max(0.0, available - result.adjusted_notional)
            open_by_strategy[candidate.strategy] = open_by_strategy.get(candidate.strategy, 0) + 1
            await self._emit_gate(
                run,
                stage="trade_open",
                decision="open",
                reason="accepted",
                candidate=candidate,
                proposed=request.proposed_notional if request else 0.0,
                adjusted=result.adjusted_notional,
                multiplier=multiplier,
            )
            run.archive.append(
                {
                    "kind": "trade_open",
                    "session_id": self.coordinator.session_id,
                    "cycle": run.cycle,
                    "symbol": position.symbol,
                    "strategy": position.strategy,
                    "position_id": position.position_id,
                    "notional": round(result.adjusted_notional, 8),
                    "entry_price": position.entry_price,
                    "risk_multiplier": round(multiplier, 4),
                    "ts": position.opened_at or self._clock(),
                    "trading_mode": self.trading_mode,
                }
            )

    async def _phase_archive(self, run: CycleRun) -> None:
        record = {
            "kind": "cycle",
            "session_id": self.coordinator.session_id,
            "cycle": run.cycle,
            "ts": self._clock(),
            "trading_mode": self.trading_mode,
            "regime": self.regime.label,
            "final_score": run.breakdown.final_score if run.breakdown else None,
            "risk_multiplier": run.breakdown.risk_multiplier if run.breakdown else None,
            "opened": run.opened,
            "closed": run.closed,
            "rejected": run.rejected,
            "skip_reason": run.skip_reason,
            "wallet": self.wallet.summary(run.prices),
        }
        await asyncio.to_thread(self.persistence.append_archive, run.archive + [record])
        every = int(getattr(config, "ARCHIVE_PRUNE_EVERY_CYCLES", 15))
        if run.cycle % max(1, every) == 0:
            await asyncio.to_thread(self.persistence.prune_archive, now=self._clock())

    # ---- persistence and status ---------------------------------------

    async def _persist(self, *, is_running: bool) -> None:
        state = PersistedScannerState(
            is_running=is_running,
            trading_mode=self.trading_mode,
            regime_state=self.regime,
            cycle_stats=self.cycle_state,
        )
        await asyncio.to_thread(self.persistence.save_cycle_state, state)

    async def _emit(self, event: dict[str, Any]) -> None:
        try:
            await self.status_sink.send_event(event)
        except OSError as exc:
            logger.error("STATUS_SINK_FAILED schema=%s err=%s", event.get("schema_name", ""), exc)

    async def _emit_gate(
        self,
        run: CycleRun,
        *,
        stage: str,
        decision: str,
        reason: str,
        candidate: Any = None,
        proposed: float = 0.0,
        adjusted: float = 0.0,
        multiplier: float = 0.0,
    ) -> None:
        await self._emit(
            gate_decision_event(
                {
                    "session_id": self.coordinator.session_id,
                    "cycle": run.cycle,
                    "decision_stage": stage,
                    "decision": decision,
                    "reason": reason,
                    "candidate_id": candidate.candidate_id if candidate else "",
                    "symbol": candidate.symbol if candidate else "N/A",
                    "strategy": candidate.strategy if candidate else "",
                    "proposed_notional": proposed,
                    "adjusted_notional": adjusted,
                    "risk_multiplier": multiplier,
                },
                run_tag=self.coordinator.session_id,
            )
        )

    async def _emit_status(self, state: str, *, reason: str = "", message: str = "", **extra: Any) -> None:
        payload = {
            "session_id": self.coordinator.session_id,
            "state": state,
            "reason": reason,
            "message": message,
            "scheduler_state": self.state,
            "leadership_state": self.coordinator.state,
        }
        payload.update(extra)
        await self._emit(status_event(payload, run_tag=self.coordinator.session_id))

    async def _alert_critical(self, exc: BaseException, *, stage: str, cycle: int = 0) -> None:
        severity, reason = classify_error(exc)
        self.last_error = f"{type(exc).__name__}: {exc}"
        logger.error("SCANNER_CRITICAL stage=%s severity=%s reason=%s err=%s", stage, severity, reason, exc)
        await self._emit_status(
            "error",
            reason="critical_error",
            message=f"scanner stopped at {stage}: {self.last_error}",
            level="ERROR",
            error_reason=reason,
            cycle=cycle,
        )

    def status(self) -> dict[str, Any]:
        """Read-only snapshot of the scheduler for the status channel and CLI."""
        breakdown = self.aggregator.last if self.aggregator else None
        return {
            "state": self.state,
            "session_id": self.coordinator.session_id,
            "trading_mode": self.trading_mode,
            "leadership": self.coordinator.snapshot(),
            "cycle": self.cycle_state.to_dict(),
            "seconds_until_next": round(self.seconds_until_next(), 1),
            "regime": self.regime.to_dict(),
            "sentiment": {
                "value": self.sentiment.value,
                "classification": self.sentiment.classification,
            }
            if self.sentiment
            else None,
            "risk": breakdown.to_dict() if breakdown else None,
            "wallet": self.wallet.summary(self.last_prices) if self.wallet.snapshot else None,
            "last_error": self.last_error,
        }

    async def publish_status(self) -> dict[str, Any]:
        snapshot = self.status()
        await self._emit_status(self.state.lower(), message="status snapshot", snapshot=snapshot)
        return snapshot
