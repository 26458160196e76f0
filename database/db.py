"""Database helpers: lease arbitration, settings overrides, wallet summaries and the cycle archive."""

import logging
import os
import time
from typing import Any, Optional

from sqlalchemy import and_, case, create_engine, or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

import config
from database.models import ArchiveRecord, Base, ScannerLease, ScannerSetting, WalletSummary
from trading.models import LeaseRecord

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autoflush=False, autocommit=False, future=True)


def _make_engine(url: str, timeout_seconds: float = 15.0) -> Engine:
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        db_path = url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)) or ".", exist_ok=True)
        connect_args = {"timeout": timeout_seconds, "check_same_thread": False}
    elif url.startswith("postgresql"):
        connect_args = {"connect_timeout": max(1, int(timeout_seconds))}
    return create_engine(url, future=True, connect_args=connect_args)


def configure_engine(url: Optional[str] = None) -> Engine:
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = _make_engine(url or str(getattr(config, "DATABASE_URL", "sqlite:///scanner.db")))
    SessionLocal.configure(bind=_engine)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        return configure_engine()
    return _engine


def init_db() -> None:
    Base.metadata.create_all(bind=get_engine())


def get_db() -> Session:
    get_engine()
    return SessionLocal()


def _lease_record(row: Any) -> Optional[LeaseRecord]:
    if row is None or not row.holder_id:
        return None
    return LeaseRecord(
        holder_id=str(row.holder_id),
        claimed_at=float(row.claimed_at or 0.0),
        last_renewed_at=float(row.last_renewed_at or 0.0),
        forced=bool(row.forced),
    )


def get_lease(group_key: str) -> Optional[LeaseRecord]:
    db = get_db()
    try:
        row = db.query(ScannerLease).filter(ScannerLease.group_key == group_key).first()
        return _lease_record(row)
    finally:
        db.close()


def claim_lease(
    group_key: str,
    holder_id: str,
    *,
    force: bool,
    ttl_seconds: float,
    now: Optional[float] = None,
) -> tuple[bool, str, Optional[LeaseRecord]]:
    """Claim or renew the group's lease in one conditional UPDATE.

    Returns (granted, reason, current_record). Without `force` the row only moves
    when it is empty, already ours, or stale.
    """
    now = time.time() if now is None else float(now)
    table = ScannerLease.__table__
    same_holder = table.c.holder_id == holder_id
    stmt = update(table).where(table.c.group_key == group_key)
    if force:
        stmt = stmt.values(holder_id=holder_id, claimed_at=now, last_renewed_at=now, forced=True)
    else:
        claimable = or_(
            table.c.holder_id.is_(None),
            same_holder,
            table.c.last_renewed_at < (now - float(ttl_seconds)),
        )
        stmt = stmt.where(claimable).values(
            holder_id=holder_id,
            claimed_at=case((same_holder, table.c.claimed_at), else_=now),
            forced=case((same_holder, table.c.forced), else_=False),
            last_renewed_at=now,
        )

    db = get_db()
    try:
        result = db.execute(stmt)
        if result.rowcount:
            db.commit()
            row = db.query(ScannerLease).filter(ScannerLease.group_key == group_key).first()
            return True, "forced" if force else "claimed", _lease_record(row)

        row = db.query(ScannerLease).filter(ScannerLease.group_key == group_key).first()
        if row is not None:
            db.rollback()
            return False, "already_claimed", _lease_record(row)

        db.add(
            ScannerLease(
                group_key=group_key,
                holder_id=holder_id,
                claimed_at=now,
                last_renewed_at=now,
                forced=bool(force),
            )
        )
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("LEASE_INSERT_RACE group=%s holder=%s", group_key, holder_id)
            row = db.query(ScannerLease).filter(ScannerLease.group_key == group_key).first()
            return False, "already_claimed", _lease_record(row)
        return True, "forced" if force else "claimed", LeaseRecord(holder_id, now, now, bool(force))
    finally:
        db.close()


def release_lease(group_key: str, holder_id: str, *, timeout_seconds: Optional[float] = None) -> bool:
    """Clear the lease if holder_id owns it; with a timeout, a short-lived engine is used for teardown."""
    table = ScannerLease.__table__
    stmt = (
        update(table)
        .where(and_(table.c.group_key == group_key, table.c.holder_id == holder_id))
        .values(holder_id=None, forced=False)
    )
    if timeout_seconds is None:
        db = get_db()
        try:
            result = db.execute(stmt)
            db.commit()
            return bool(result.rowcount)
        finally:
            db.close()

    engine = _make_engine(get_engine().url.render_as_string(hide_password=False), timeout_seconds=max(0.05, timeout_seconds))
    db = Session(bind=engine)
    try:
        result = db.execute(stmt)
        db.commit()
        return bool(result.rowcount)
    finally:
        db.close()
        engine.dispose()


def get_settings_overrides() -> dict[str, Any]:
    db = get_db()
    try:
        return {row.key: row.value for row in db.query(ScannerSetting).all()}
    finally:
        db.close()


def set_setting_override(key: str, value: Any) -> None:
    db = get_db()
    try:
        row = db.query(ScannerSetting).filter(ScannerSetting.key == key).first()
        if row is None:
            db.add(ScannerSetting(key=key, value=value))
        else:
            row.value = value
        db.commit()
    finally:
        db.close()


def save_wallet_summary(summary: dict[str, Any]) -> None:
    db = get_db()
    try:
        db.add(
            WalletSummary(
                trading_mode=str(summary.get("trading_mode", "paper")),
                quote_asset=str(summary.get("quote_asset", "USDT")),
                available=float(summary.get("available", 0.0) or 0.0),
                allocated=float(summary.get("allocated", 0.0) or 0.0),
                total_equity=float(summary.get("total_equity", 0.0) or 0.0),
                open_positions=int(summary.get("open_positions", 0) or 0),
                payload=summary,
                created_ts=float(summary.get("ts", time.time())),
            )
        )
        db.commit()
    finally:
        db.close()


def latest_wallet_summary(trading_mode: str) -> Optional[dict[str, Any]]:
    db = get_db()
    try:
        row = (
            db.query(WalletSummary)
            .filter(WalletSummary.trading_mode == trading_mode)
            .order_by(WalletSummary.created_ts.desc(), WalletSummary.id.desc())
            .first()
        )
        return dict(row.payload or {}) if row is not None else None
    finally:
        db.close()


def append_archive_records(records: list[dict[str, Any]]) -> int:
    if not records:
        return 0
    db = get_db()
    try:
        for record in records:
            db.add(
                ArchiveRecord(
                    kind=str(record.get("kind", "cycle")),
                    session_id=str(record.get("session_id", "") or ""),
                    cycle=int(record.get("cycle", 0) or 0),
                    symbol=str(record.get("symbol", "") or "") or None,
                    payload=record,
                    created_ts=float(record.get("ts", time.time())),
                )
            )
        db.commit()
        return len(records)
    finally:
        db.close()


def count_archive_records(kind: Optional[str] = None) -> int:
    db = get_db()
    try:
        query = db.query(ArchiveRecord)
        if kind:
            query = query.filter(ArchiveRecord.kind == kind)
        return int(query.count())
    finally:
        db.close()


def prune_archive(*, older_than_ts: float, max_records: int) -> int:
    """Drop records older than the cutoff, then trim to the newest `max_records`."""
    db = get_db()
    try:
        removed = db.query(ArchiveRecord).filter(ArchiveRecord.created_ts < older_than_ts).delete(
            synchronize_session=False
        )
        keep_ids = [
            row_id
            for (row_id,) in db.query(ArchiveRecord.id)
            .order_by(ArchiveRecord.created_ts.desc(), ArchiveRecord.id.desc())
            .limit(max(1, int(max_records)))
            .all()
        ]
        if keep_ids:
            removed += db.query(ArchiveRecord).filter(ArchiveRecord.id.notin_(keep_ids)).delete(
                synchronize_session=False
            )
        db.commit()
        return int(removed)
    finally:
        db.close()


def recent_archive_records(kind: str, limit: int) -> list[dict[str, Any]]:
    db = get_db()
    try:
        rows = (
            db.query(ArchiveRecord)
            .filter(ArchiveRecord.kind == kind)
            .order_by(ArchiveRecord.created_ts.desc(), ArchiveRecord.id.desc())
            .limit(max(1, int(limit)))
            .all()
        )
        return [dict(row.payload or {}) for row in rows]
    finally:
        db.close()
