from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.errors import PersistenceConflict
from app.db import SessionLocal
from app.domain import DecodedEvent, RawLog, Unrecognized, with_block_timestamp
from app.services.aggregator import KeyLockRegistry, participant_locks, purchase_keys
from app.services.event_applier import BatchResult, EventApplier

from .client import ChainRpcClient
from .decoder import EventDecoder


@contextmanager
def session_scope(session_factory: sessionmaker[Session] | None = None) -> Session:
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def stamp_block_times(events: Sequence[DecodedEvent], client: ChainRpcClient) -> list[DecodedEvent]:
    """Attach block timestamps (fetched once per block) and sort by chain position."""

    stamped: list[DecodedEvent] = []
    for event in events:
        if event.position.block_timestamp is None and not isinstance(event, Unrecognized):
            event = with_block_timestamp(event, client.get_block_datetime(event.position.block_number))
        stamped.append(event)
    stamped.sort(key=lambda item: item.position.ordering)
    return stamped


def apply_events(
    events: Sequence[DecodedEvent],
    *,
    session_factory: sessionmaker[Session] | None = None,
    locks: KeyLockRegistry | None = None,
    attempts: int | None = None,
    after_apply: Callable[[Session], None] | None = None,
) -> BatchResult:
    """Apply a batch in one transaction while holding every touched participant lock.

    ``after_apply`` runs inside the same transaction (the poller advances its
    cursor there), so either everything commits or nothing does.
    """

    locks = locks or participant_locks
    attempts = attempts or settings.persistence_retry_attempts
    keys = purchase_keys(events)

    with locks.hold(keys):
        attempt = 0
        while True:
            attempt += 1
            try:
                with session_scope(session_factory) as session:
                    result = EventApplier(session).apply_batch(events)
                    if after_apply is not None:
                        after_apply(session)
                return result
            except (OperationalError, IntegrityError) as exc:
                if attempt >= attempts:
                    raise PersistenceConflict(
                        f"Batch of {len(events)} events failed after {attempt} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "Ledger write conflict attempt={} keys={}: {}", attempt, len(keys), exc
                )
                time.sleep(0.05 * attempt)


@dataclass(slots=True)
class TransactionIngestResult:
    tx_hash: str
    found: bool
    logs_seen: int = 0
    block_number: int | None = None
    pending_confirmation: bool = False
    result: BatchResult = field(default_factory=BatchResult)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "found": self.found,
            "block_number": self.block_number,
            "pending_confirmation": self.pending_confirmation,
            "logs_seen": self.logs_seen,
            **self.result.to_dict(),
        }


def _receipt_block(receipt: dict[str, Any]) -> int:
    value = receipt["blockNumber"]
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def ingest_transaction(
    tx_hash: str,
    *,
    client: ChainRpcClient,
    decoder: EventDecoder | None = None,
    session_factory: sessionmaker[Session] | None = None,
    locks: KeyLockRegistry | None = None,
    confirmation_lag: int | None = None,
) -> TransactionIngestResult:
    """Apply the tracked logs of one mined transaction ahead of the poller.

    Only receipts at or below the confirmed head are applied; anything newer
    could still be reorged to another log index and is left to the poller,
    which re-delivers applied logs as duplicates.
    """

    decoder = decoder or EventDecoder(settings.tracked_contracts)
    lag = settings.confirmation_lag if confirmation_lag is None else confirmation_lag
    tx_hash = tx_hash.lower()
    receipt = client.get_transaction_receipt(tx_hash)
    if not receipt:
        logger.info("Transaction {} has no receipt yet", tx_hash)
        return TransactionIngestResult(tx_hash=tx_hash, found=False)

    raw_logs = [RawLog.from_rpc(entry) for entry in receipt.get("logs") or []]
    block_number = _receipt_block(receipt)
    confirmed_head = client.get_block_number() - lag
    if block_number > confirmed_head:
        logger.info(
            "Transaction {} in block {} is above confirmed head {}; leaving it to the poller",
            tx_hash,
            block_number,
            confirmed_head,
        )
        return TransactionIngestResult(
            tx_hash=tx_hash,
            found=True,
            logs_seen=len(raw_logs),
            block_number=block_number,
            pending_confirmation=True,
        )

    decoded = stamp_block_times(decoder.decode_many(raw_logs), client)
    result = apply_events(decoded, session_factory=session_factory, locks=locks)
    logger.info(
        "Ingested transaction {}: logs={} applied={} duplicates={}",
        tx_hash,
        len(raw_logs),
        result.applied,
        result.duplicates,
    )
    return TransactionIngestResult(
        tx_hash=tx_hash,
        found=True,
        logs_seen=len(raw_logs),
        block_number=block_number,
        result=result,
    )
