"""Apply a batch of decoded events to the ledger inside one session."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, fields
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from app.domain import (
    ApplyOutcome,
    CreatorFeeClaimed,
    DecodedEvent,
    LedgerEvent,
    LogPosition,
    Malformed,
    MarketCreated,
    MarketResolved,
    SharesBought,
    Unrecognized,
    WinningsClaimed,
)
from app.models import ChainEvent, EventStatus, ensure_utc
from app.repositories import LedgerRepository

from .aggregator import ParticipantAggregator
from .projector import MarketStateProjector

_EVENT_CLASSES: dict[str, type] = {
    cls.__name__: cls
    for cls in (MarketCreated, SharesBought, MarketResolved, WinningsClaimed, CreatorFeeClaimed)
}

_STATUS_BY_OUTCOME = {
    ApplyOutcome.APPLIED: EventStatus.APPLIED,
    ApplyOutcome.HELD: EventStatus.HELD,
    ApplyOutcome.DUPLICATE: EventStatus.APPLIED,
}


@dataclass(slots=True)
class BatchResult:
    applied: int = 0
    duplicates: int = 0
    held: int = 0
    recorded: int = 0
    unrecognized: int = 0
    malformed: int = 0
    markets_touched: set[int] = field(default_factory=set)

    def merge(self, other: "BatchResult") -> None:
        self.applied += other.applied
        self.duplicates += other.duplicates
        self.held += other.held
        self.recorded += other.recorded
        self.unrecognized += other.unrecognized
        self.malformed += other.malformed
        self.markets_touched |= other.markets_touched

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "duplicates": self.duplicates,
            "held": self.held,
            "recorded": self.recorded,
            "unrecognized": self.unrecognized,
            "malformed": self.malformed,
            "markets_touched": sorted(self.markets_touched),
        }


def event_from_record(record: ChainEvent) -> LedgerEvent:
    """Rebuild the typed event stored in a ``chain_events`` row."""

    cls = _EVENT_CLASSES.get(record.kind)
    if cls is None:
        raise ValueError(f"Unknown stored event kind {record.kind!r}")
    payload = dict(record.payload or {})
    kwargs: dict[str, Any] = {}
    for item in fields(cls):
        if item.name == "position":
            continue
        value = payload.get(item.name)
        if item.type == "int":
            value = int(value)
        elif item.type == "bool":
            value = bool(value)
        kwargs[item.name] = value
    position = LogPosition(
        block_number=int(record.block_number),
        log_index=int(record.log_index),
        tx_hash=record.tx_hash,
        block_timestamp=ensure_utc(record.block_timestamp),
    )
    return cls(position=position, **kwargs)


class EventApplier:
    """Route decoded events to the aggregator and projector.

    The caller owns the transaction and must hold the participant key locks
    for every ``SharesBought`` in the batch.
    """

    def __init__(self, session: Session) -> None:
        self._ledger = LedgerRepository(session)
        self._aggregator = ParticipantAggregator(session)
        self._projector = MarketStateProjector(session)

    def apply_batch(self, events: Sequence[DecodedEvent]) -> BatchResult:
        result = BatchResult()
        purchases_by_market: set[int] = set()

        for event in sorted(events, key=lambda item: item.position.ordering):
            if isinstance(event, Unrecognized):
                result.unrecognized += 1
                continue
            if isinstance(event, Malformed):
                self._ledger.quarantine(event)
                result.malformed += 1
                continue

            outcome = self._dispatch(event)
            record = self._ledger.record_event(
                event, _STATUS_BY_OUTCOME.get(outcome, EventStatus.RECORDED)
            )
            if outcome is not None:
                self._ledger.set_event_status(record, _STATUS_BY_OUTCOME[outcome])

            if outcome is ApplyOutcome.APPLIED:
                result.applied += 1
                result.markets_touched.add(event.market_id)
            elif outcome is ApplyOutcome.DUPLICATE:
                result.duplicates += 1
            elif outcome is ApplyOutcome.HELD:
                result.held += 1
            else:
                result.recorded += 1

            if isinstance(event, SharesBought):
                purchases_by_market.add(event.market_id)

        for market_id in sorted(result.markets_touched | purchases_by_market):
            self._projector.refresh_totals(market_id)
        return result

    def _dispatch(self, event: LedgerEvent) -> ApplyOutcome | None:
        if isinstance(event, SharesBought):
            return self._aggregator.apply(event)
        if isinstance(event, (MarketCreated, MarketResolved)):
            return self._projector.apply(event)
        # Claims only feed the raw event log (claimed totals, user history).
        logger.debug("Recorded {} {}", type(event).__name__, event.position.event_key)
        return None

    def replay_held(self, records: Sequence[ChainEvent]) -> BatchResult:
        return self.apply_batch([event_from_record(record) for record in records])


__all__ = ["BatchResult", "EventApplier", "event_from_record"]
