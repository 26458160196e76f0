"""SQLAlchemy models."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ScannerLease(Base):
    __tablename__ = "scanner_leases"

    id = Column(Integer, primary_key=True)
    group_key = Column(String, unique=True, nullable=False, index=True)
    holder_id = Column(String, nullable=True)
    claimed_at = Column(Float, default=0.0, nullable=False)
    last_renewed_at = Column(Float, default=0.0, nullable=False)
    forced = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


class ScannerSetting(Base):
    __tablename__ = "scanner_settings"

    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, nullable=False, index=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


class WalletSummary(Base):
    __tablename__ = "wallet_summaries"

    id = Column(Integer, primary_key=True)
    trading_mode = Column(String, nullable=False, index=True)
    quote_asset = Column(String, nullable=False)
    available = Column(Float, default=0.0, nullable=False)
    allocated = Column(Float, default=0.0, nullable=False)
    total_equity = Column(Float, default=0.0, nullable=False)
    open_positions = Column(Integer, default=0, nullable=False)
    payload = Column(JSON, nullable=True)
    created_ts = Column(Float, nullable=False, index=True)


class ArchiveRecord(Base):
    __tablename__ = "cycle_archive"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=True)
    cycle = Column(Integer, default=0, nullable=False)
    symbol = Column(String, nullable=True)
    payload = Column(JSON, nullable=True)
    created_ts = Column(Float, nullable=False, index=True)
