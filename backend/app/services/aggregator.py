"""Fold ``SharesBought`` events into per-wallet participant positions."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from loguru import logger
from sqlalchemy.orm import Session

from app.core.errors import InvariantViolation
from app.domain import ApplyOutcome, DecodedEvent, SharesBought
from app.models import Participant, ensure_utc
from app.repositories import ParticipantRepository

ParticipantKey = tuple[int, str]


def participant_key(event: SharesBought) -> ParticipantKey:
    return (event.market_id, event.buyer.lower())


def purchase_keys(events: Iterable[DecodedEvent]) -> list[ParticipantKey]:
    """Sorted, de-duplicated participant keys touched by a batch."""

    return sorted({participant_key(event) for event in events if isinstance(event, SharesBought)})


class KeyLockRegistry:
    """In-process mutex per ``(market_id, address)``.

    Keys are always acquired in sorted order so a batch holding many keys can
    never deadlock against reconciliation holding one.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[ParticipantKey, threading.Lock] = {}

    def lock_for(self, key: ParticipantKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, keys: Iterable[ParticipantKey]) -> Iterator[None]:
        acquired: list[threading.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self.lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


participant_locks = KeyLockRegistry()


def verify_position(row: Participant) -> None:
    """Raise ``InvariantViolation`` when a stored row is internally inconsistent."""

    yes_shares = int(row.yes_shares or 0)
    no_shares = int(row.no_shares or 0)
    total = int(row.total_investment or 0)
    if yes_shares < 0 or no_shares < 0 or total < 0:
        raise InvariantViolation(row.market_id, row.address, "negative share balance")
    if total != yes_shares + no_shares:
        raise InvariantViolation(
            row.market_id,
            row.address,
            f"total_investment {total} != yes_shares {yes_shares} + no_shares {no_shares}",
        )
    hashes = list(row.processed_tx_hashes or [])
    if len(hashes) != len(set(hashes)):
        raise InvariantViolation(row.market_id, row.address, "processed_tx_hashes contains duplicates")


class ParticipantAggregator:
    """Sole writer of participant rows.

    Callers must hold the key lock (``participant_locks``) for the duration of
    the surrounding transaction.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._participants = ParticipantRepository(session)

    def apply(self, event: SharesBought) -> ApplyOutcome:
        market_id, address = participant_key(event)
        rows = self._participants.rows_for_key(market_id, address, for_update=True)

        frozen = next((row for row in rows if row.frozen_reason), None)
        if frozen is not None:
            logger.warning(
                "Holding purchase {} for frozen participant {}/{}: {}",
                event.position.event_key,
                market_id,
                address,
                frozen.frozen_reason,
            )
            return ApplyOutcome.HELD

        event_key = event.position.event_key
        if any(event_key in (row.processed_tx_hashes or []) for row in rows):
            return ApplyOutcome.DUPLICATE

        block_time = ensure_utc(event.position.block_timestamp)
        if rows:
            row = rows[0]
            try:
                verify_position(row)
            except InvariantViolation as exc:
                self.freeze(rows, str(exc))
                return ApplyOutcome.HELD
        else:
            row = self._participants.create(market_id, address, first_purchase_at=block_time)

        amount = int(event.amount)
        if event.side:
            row.yes_shares = int(row.yes_shares) + amount
        else:
            row.no_shares = int(row.no_shares) + amount
        row.total_investment = int(row.total_investment) + amount

        if block_time is not None:
            first = ensure_utc(row.first_purchase_at)
            last = ensure_utc(row.last_purchase_at)
            row.first_purchase_at = block_time if first is None else min(first, block_time)
            row.last_purchase_at = block_time if last is None else max(last, block_time)

        # JSON columns only persist on reassignment.
        row.processed_tx_hashes = [*(row.processed_tx_hashes or []), event_key]
        return ApplyOutcome.APPLIED

    def freeze(self, rows: list[Participant], reason: str) -> None:
        for row in rows:
            row.frozen_reason = reason
        if rows:
            logger.critical(
                "Participant {}/{} frozen, writes halted until operator review: {}",
                rows[0].market_id,
                rows[0].address,
                reason,
            )


__all__ = [
    "KeyLockRegistry",
    "ParticipantAggregator",
    "ParticipantKey",
    "participant_key",
    "participant_locks",
    "purchase_keys",
    "verify_position",
]
