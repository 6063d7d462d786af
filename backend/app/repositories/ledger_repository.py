"""Sync cursor, raw event log, and quarantine persistence."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import fields
from typing import Any

from sqlalchemy import asc, func, select
from sqlalchemy.orm import Session

from app.domain import (
    LedgerEvent,
    Malformed,
    SharesBought,
    WinningsClaimed,
    event_actor,
)
from app.models import ChainEvent, EventStatus, QuarantinedLog, SyncCursor, utcnow

CURSOR_ROW_ID = 1


def _event_payload(event: LedgerEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for field in fields(event):
        if field.name == "position":
            continue
        value = getattr(event, field.name)
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        payload[field.name] = value
    return payload


class LedgerRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Cursor

    def read_cursor(self) -> int | None:
        cursor = self._session.get(SyncCursor, CURSOR_ROW_ID)
        return None if cursor is None else int(cursor.last_processed_block)

    def write_cursor(self, block_number: int) -> None:
        cursor = self._session.get(SyncCursor, CURSOR_ROW_ID)
        if cursor is None:
            self._session.add(SyncCursor(id=CURSOR_ROW_ID, last_processed_block=block_number))
            return
        cursor.last_processed_block = block_number

    def cursor_row(self) -> SyncCursor | None:
        return self._session.get(SyncCursor, CURSOR_ROW_ID)

    # ------------------------------------------------------------------
    # Raw events

    def get_event(self, tx_hash: str, log_index: int) -> ChainEvent | None:
        query = select(ChainEvent).where(
            ChainEvent.tx_hash == tx_hash.lower(), ChainEvent.log_index == log_index
        )
        return self._session.execute(query).scalar_one_or_none()

    def record_event(self, event: LedgerEvent, status: EventStatus) -> ChainEvent:
        """Insert the immutable event row; a redelivered event returns the stored one."""

        position = event.position
        existing = self.get_event(position.tx_hash, position.log_index)
        if existing is not None:
            return existing
        record = ChainEvent(
            kind=type(event).__name__,
            contract_address=event.contract_address,
            market_id=event.market_id,
            address=event_actor(event),
            side=event.side if isinstance(event, SharesBought) else None,
            amount=getattr(event, "amount", None),
            block_number=position.block_number,
            block_timestamp=position.block_timestamp,
            tx_hash=position.tx_hash,
            log_index=position.log_index,
            payload=_event_payload(event),
            status=status.value,
        )
        self._session.add(record)
        return record

    def set_event_status(self, record: ChainEvent, status: EventStatus) -> None:
        record.status = status.value

    def events_by_key(self, event_keys: Iterable[str]) -> dict[str, ChainEvent]:
        """Look up stored events by ``"<tx_hash>:<log_index>"`` identifiers."""

        wanted: dict[str, tuple[str, int]] = {}
        for key in event_keys:
            tx_hash, _, log_index = key.rpartition(":")
            if not tx_hash or not log_index.isdigit():
                continue
            wanted[key] = (tx_hash.lower(), int(log_index))
        if not wanted:
            return {}
        tx_hashes = {tx_hash for tx_hash, _ in wanted.values()}
        query = select(ChainEvent).where(ChainEvent.tx_hash.in_(tx_hashes))
        stored = {(row.tx_hash, row.log_index): row for row in self._session.execute(query).scalars()}
        return {key: stored[ident] for key, ident in wanted.items() if ident in stored}

    def held_purchases(self, market_id: int | None = None, address: str | None = None) -> list[ChainEvent]:
        query = select(ChainEvent).where(
            ChainEvent.kind == SharesBought.__name__,
            ChainEvent.status == EventStatus.HELD.value,
        )
        if market_id is not None:
            query = query.where(ChainEvent.market_id == market_id)
        if address is not None:
            query = query.where(ChainEvent.address == address.lower())
        query = query.order_by(asc(ChainEvent.block_number), asc(ChainEvent.log_index))
        return list(self._session.execute(query).scalars())

    def purchase_count(self, market_id: int) -> int:
        query = select(func.count(ChainEvent.id)).where(
            ChainEvent.market_id == market_id, ChainEvent.kind == SharesBought.__name__
        )
        return int(self._session.execute(query).scalar_one())

    def claimed_total(self, market_id: int) -> int:
        query = select(ChainEvent.amount).where(
            ChainEvent.market_id == market_id, ChainEvent.kind == WinningsClaimed.__name__
        )
        return sum(int(amount or 0) for amount in self._session.execute(query).scalars())

    def count_events(self) -> int:
        return int(self._session.execute(select(func.count(ChainEvent.id))).scalar_one())

    # ------------------------------------------------------------------
    # Quarantine

    def quarantine(self, malformed: Malformed) -> QuarantinedLog:
        position = malformed.position
        query = select(QuarantinedLog).where(
            QuarantinedLog.tx_hash == position.tx_hash,
            QuarantinedLog.log_index == position.log_index,
        )
        existing = self._session.execute(query).scalar_one_or_none()
        if existing is not None:
            existing.reason = malformed.reason
            return existing
        record = QuarantinedLog(
            tx_hash=position.tx_hash,
            log_index=position.log_index,
            block_number=position.block_number,
            contract_address=malformed.contract_address,
            event_name=malformed.event_name,
            reason=malformed.reason,
            raw_log=malformed.raw.to_dict(),
        )
        self._session.add(record)
        return record

    def pending_quarantine(self, limit: int | None = None) -> list[QuarantinedLog]:
        query = (
            select(QuarantinedLog)
            .where(QuarantinedLog.replayed_at.is_(None))
            .order_by(asc(QuarantinedLog.block_number), asc(QuarantinedLog.log_index))
        )
        if limit:
            query = query.limit(limit)
        return list(self._session.execute(query).scalars())

    def count_pending_quarantine(self) -> int:
        query = select(func.count(QuarantinedLog.id)).where(QuarantinedLog.replayed_at.is_(None))
        return int(self._session.execute(query).scalar_one())

    def mark_replayed(self, record: QuarantinedLog) -> None:
        record.replayed_at = utcnow()


__all__ = ["CURSOR_ROW_ID", "LedgerRepository"]
