"""Entry point for the scanner: run, status, release and the lease arbiter service."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import Any

import config
from arbiter.server import LeaseArbiterServer
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from database import db
from database.persistence import LocalPersistence
from monitor.arbiter_client import SqlArbiter, build_arbiter
from monitor.exchange_gateway import HttpExchangeGateway, HttpTradeExecutor
from monitor.local_alerter import LocalAlerter
from monitor.market_data import HttpMarketDataProvider
from monitor.strategy_feed import HttpStrategyEngine
from trading.errors import ScannerError
from trading.leader_election import LeaderElectionCoordinator
from trading.paper_executor import PaperTradeExecutor
from trading.scan_scheduler import STATE_STOPPED, ScanCycleScheduler
from trading.scanner_state import load_state
from trading.settings import ScannerSettings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CRITICAL = 1
EXIT_CONFLICT = 3


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def build_scheduler() -> tuple[ScanCycleScheduler, list[Any]]:
    """Wire the scheduler to its collaborators; returns it with the objects needing close()."""
    trading_mode = str(getattr(config, "TRADING_MODE", "paper"))
    persistence = LocalPersistence(trading_mode=trading_mode)
    arbiter = build_arbiter()
    coordinator = LeaderElectionCoordinator(arbiter)
    market = HttpMarketDataProvider()
    strategy = HttpStrategyEngine()
    alerter = LocalAlerter(run_tag=coordinator.session_id)
    closables: list[Any] = [market, strategy, alerter]
    if hasattr(arbiter, "close"):
        closables.append(arbiter)

    if trading_mode == "paper":
        paper = PaperTradeExecutor()
        gateway: Any = paper
        executor: Any = paper
    else:
        gateway = HttpExchangeGateway()
        executor = HttpTradeExecutor()
        closables.extend([gateway, executor])

    scheduler = ScanCycleScheduler(
        coordinator=coordinator,
        market=market,
        gateway=gateway,
        strategy=strategy,
        executor=executor,
        persistence=persistence,
        status_sink=alerter,
    )
    return scheduler, closables


async def _close_all(closables: list[Any]) -> None:
    for item in closables:
        try:
            await item.close()
        except Exception:
            logger.exception("CLOSE_FAILED component=%s", type(item).__name__)


def _install_stop_signals(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_scanner(*, force: bool = False) -> int:
    db.init_db()
    scheduler, closables = build_scheduler()
    stop_event = asyncio.Event()
    _install_stop_signals(stop_event)
    exit_code = EXIT_OK
    try:
        await scheduler.initialize()
        if not scheduler.is_running:
            result = await scheduler.start(force=force)
            if not result.granted:
                logger.warning("SCANNER_NOT_STARTED reason=%s active=%s", result.reason, result.active_id or "-")
                return EXIT_CONFLICT
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
            if scheduler.state == STATE_STOPPED:
                exit_code = EXIT_CRITICAL if scheduler.last_error else EXIT_OK
                break
        logger.info("SCANNER_SHUTDOWN signal=%s", stop_event.is_set())
    except ScannerError as exc:
        logger.error("SCANNER_FAILED err=%s", exc)
        exit_code = EXIT_CRITICAL
    finally:
        await scheduler.stop(reason="shutdown")
        await _close_all(closables)
    return exit_code


def show_status() -> int:
    """Print the last-known persisted state; never touches the lease."""
    state = load_state()
    lease = db.get_lease(str(getattr(config, "SCANNER_GROUP", "default")))
    payload = {
        "state_file": str(getattr(config, "SCANNER_STATE_FILE", "")),
        "scanner": state.to_payload(str(getattr(config, "SCANNER_STATE_KEY", ""))) if state else None,
        "lease": {
            "holder_id": lease.holder_id,
            "claimed_at": lease.claimed_at,
            "last_renewed_at": lease.last_renewed_at,
            "forced": lease.forced,
        }
        if lease
        else None,
        "wallet": db.latest_wallet_summary(str(getattr(config, "TRADING_MODE", "paper"))),
    }
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return EXIT_OK


def set_setting(key: str, value: str) -> int:
    """Store an operator override after checking it against the current settings."""
    if key not in ScannerSettings().to_dict():
        print(f"unknown setting: {key}", file=sys.stderr)
        return EXIT_CRITICAL
    ScannerSettings.from_config().with_overrides({key: value})
    db.set_setting_override(key, value)
    print(f"override stored {key}={value}")
    return EXIT_OK


def release_session(session_id: str) -> int:
    timeout = float(getattr(config, "LEASE_TEARDOWN_RELEASE_TIMEOUT_SECONDS", 2.0))
    released = build_arbiter().release_session_blocking(session_id, timeout)
    print(f"released={released} session={session_id}")
    return EXIT_OK if released else EXIT_CONFLICT


async def serve_arbiter() -> int:
    db.init_db()
    server = LeaseArbiterServer(SqlArbiter())
    stop_event = asyncio.Event()
    _install_stop_signals(stop_event)
    await server.start()
    try:
        await stop_event.wait()
    finally:
        await server.stop()
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Single-leader market scanner with risk-gated position sizing.")
    sub = parser.add_subparsers(dest="command")
    run_parser = sub.add_parser("run", help="Run the scanner (default)")
    run_parser.add_argument("--force", action="store_true", help="Take over the lease from another active instance")
    sub.add_parser("status", help="Print last-known scanner state and lease holder")
    release_parser = sub.add_parser("release", help="Release the lease held by a session")
    release_parser.add_argument("session_id", nargs="?", default="", help="Session id (default: SCANNER_INSTANCE_ID)")
    set_parser = sub.add_parser("set", help="Store an operator override for a scanner setting")
    set_parser.add_argument("key")
    set_parser.add_argument("value")
    sub.add_parser("serve-arbiter", help="Serve the lease arbiter over HTTP")
    args = parser.parse_args(argv)

    configure_logging()
    command = args.command or "run"
    if command == "status":
        db.init_db()
        return show_status()
    if command == "release":
        session_id = args.session_id or str(getattr(config, "SCANNER_INSTANCE_ID", "") or "")
        if not session_id:
            parser.error("release needs a session id when SCANNER_INSTANCE_ID is not set")
        db.init_db()
        return release_session(session_id)
    if command == "set":
        db.init_db()
        return set_setting(args.key, args.value)
    if command == "serve-arbiter":
        return asyncio.run(serve_arbiter())
    return asyncio.run(run_scanner(force=bool(getattr(args, "force", False))))


if __name__ == "__main__":
    sys.exit(main())
