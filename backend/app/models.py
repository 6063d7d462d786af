from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from .db import Base


class MarketStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class EventStatus(str, Enum):
    APPLIED = "applied"
    HELD = "held"
    RECORDED = "recorded"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC so they compare."""

    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class BigIntText(TypeDecorator):
    """Arbitrary-precision integer (token smallest unit) stored as decimal text."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class Market(Base):
    __tablename__ = "markets"

    market_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False, default="General")
    image: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)
    end_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    creation_fee: Mapped[int] = mapped_column(BigIntText, nullable=False, default=0)
    total_pool: Mapped[int] = mapped_column(BigIntText, nullable=False, default=0)
    total_yes: Mapped[int] = mapped_column(BigIntText, nullable=False, default=0)
    total_no: Mapped[int] = mapped_column(BigIntText, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default=MarketStatus.ACTIVE.value)
    outcome: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    creator: Mapped[str] = mapped_column(String(42), nullable=False)
    resolver: Mapped[str | None] = mapped_column(String(42), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_event_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_event_log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("ix_markets_status", "status"),)


class Participant(Base):
    """One wallet's position in one market.

    ``(market_id, address)`` is a logical key without a unique index: rows
    inherited from earlier sync scripts may contain duplicates, which the
    reconciliation job merges.
    """

    __tablename__ = "market_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    market_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    yes_shares: Mapped[int] = mapped_column(BigIntText, nullable=False, default=0)
    no_shares: Mapped[int] = mapped_column(BigIntText, nullable=False, default=0)
    total_investment: Mapped[int] = mapped_column(BigIntText, nullable=False, default=0)
    first_purchase_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_purchase_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_tx_hashes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    frozen_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_market_participants_key", "market_id", "address"),)


class ChainEvent(Base):
    """Immutable record of every decoded log the ledger has seen."""

    __tablename__ = "chain_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    market_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    side: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    amount: Mapped[int | None] = mapped_column(BigIntText, nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=EventStatus.APPLIED.value)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_chain_events_tx_log"),
        Index("ix_chain_events_key", "market_id", "address"),
        Index("ix_chain_events_kind", "kind"),
    )


class SyncCursor(Base):
    __tablename__ = "sync_cursor"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class QuarantinedLog(Base):
    """Tracked-signature log that failed to decode, kept for replay."""

    __tablename__ = "quarantined_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    event_name: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    raw_log: Mapped[dict] = mapped_column(JSON, nullable=False)
    quarantined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    replayed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("tx_hash", "log_index", name="uq_quarantined_logs_tx_log"),)
