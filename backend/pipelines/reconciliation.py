"""Merge duplicate participant rows and audit position invariants."""

from __future__ import annotations

import argparse
import json
import threading
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.core.errors import InvariantViolation
from app.db import init_db
from app.models import Participant, ensure_utc
from app.repositories import LedgerRepository, ParticipantRepository
from app.services.aggregator import (
    KeyLockRegistry,
    ParticipantAggregator,
    ParticipantKey,
    participant_locks,
    verify_position,
)
from app.services.projector import MarketStateProjector
from ingestion.service import session_scope


@dataclass(slots=True)
class MergedPosition:
    yes_shares: int
    no_shares: int
    total_investment: int
    processed_tx_hashes: list[str]
    first_purchase_at: datetime | None
    last_purchase_at: datetime | None


@dataclass(slots=True)
class ReconciliationSummary:
    keys_examined: int = 0
    keys_merged: int = 0
    rows_deleted: int = 0
    keys_frozen: int = 0
    inconsistent_rows: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "keys_examined": self.keys_examined,
            "keys_merged": self.keys_merged,
            "rows_deleted": self.rows_deleted,
            "keys_frozen": self.keys_frozen,
            "inconsistent_rows": self.inconsistent_rows,
            "failures": self.failures,
        }


def merge_positions(
    rows: Sequence[Participant],
    known_purchases: Mapping[str, tuple[bool, int]],
) -> MergedPosition:
    """Fold duplicate rows for one key into a single position.

    ``rows`` must be canonical-first. Numeric fields are summed; an event id
    present in several rows was counted more than once, so its extra copies are
    subtracted using ``known_purchases`` (event id -> (side, amount)). An
    overlapping id missing from ``known_purchases`` cannot be corrected safely
    and raises ``InvariantViolation``.
    """

    if not rows:
        raise ValueError("merge_positions requires at least one row")
    market_id, address = rows[0].market_id, rows[0].address

    for row in rows:
        verify_position(row)

    yes_shares = sum(int(row.yes_shares or 0) for row in rows)
    no_shares = sum(int(row.no_shares or 0) for row in rows)

    occurrences: Counter[str] = Counter()
    merged_hashes: list[str] = []
    for row in rows:
        for event_key in row.processed_tx_hashes or []:
            if occurrences[event_key] == 0:
                merged_hashes.append(event_key)
            occurrences[event_key] += 1

    for event_key, count in occurrences.items():
        if count < 2:
            continue
        purchase = known_purchases.get(event_key)
        if purchase is None:
            raise InvariantViolation(
                market_id,
                address,
                f"event {event_key} counted in {count} duplicate rows but has no recorded amount",
            )
        side, amount = purchase
        extra = (count - 1) * int(amount)
        if side:
            yes_shares -= extra
        else:
            no_shares -= extra

    if yes_shares < 0 or no_shares < 0:
        raise InvariantViolation(market_id, address, "merge produced a negative balance")

    firsts = [ensure_utc(row.first_purchase_at) for row in rows if row.first_purchase_at is not None]
    lasts = [ensure_utc(row.last_purchase_at) for row in rows if row.last_purchase_at is not None]
    return MergedPosition(
        yes_shares=yes_shares,
        no_shares=no_shares,
        total_investment=yes_shares + no_shares,
        processed_tx_hashes=merged_hashes,
        first_purchase_at=min(firsts) if firsts else None,
        last_purchase_at=max(lasts) if lasts else None,
    )


class ReconciliationJob:
    """Collapse duplicate ``(market_id, address)`` rows onto the earliest row.

    A merge also recomputes the market's pool totals, which were summed over
    the duplicates.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: sessionmaker[Session] | None = None,
        locks: KeyLockRegistry | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._locks = locks or participant_locks

    def run(self, stop_event: threading.Event | None = None) -> ReconciliationSummary:
        summary = ReconciliationSummary()
        with session_scope(self._session_factory) as session:
            keys = ParticipantRepository(session).duplicate_keys()

        if keys:
            logger.info("Reconciliation found {} participant keys with duplicate rows", len(keys))
        for key in keys:
            if stop_event is not None and stop_event.is_set():
                logger.info("Stop requested; reconciliation halted after {} keys", summary.keys_examined)
                return summary
            summary.keys_examined += 1
            try:
                self._reconcile_key(key, summary)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to reconcile participant {}/{}", *key)
                summary.failures.append({"market_id": key[0], "address": key[1], "error": str(exc)})

        self._audit_positions(summary)
        logger.info(
            "Reconciliation finished: examined={}, merged={}, deleted={}, frozen={}, inconsistent={}",
            summary.keys_examined,
            summary.keys_merged,
            summary.rows_deleted,
            summary.keys_frozen,
            summary.inconsistent_rows,
        )
        return summary

    def _reconcile_key(self, key: ParticipantKey, summary: ReconciliationSummary) -> None:
        market_id, address = key
        with self._locks.hold([key]):
            with session_scope(self._session_factory) as session:
                participants = ParticipantRepository(session)
                rows = participants.rows_for_key(market_id, address, for_update=True)
                if len(rows) < 2:
                    return
                if any(row.frozen_reason for row in rows):
                    logger.warning("Skipping frozen participant {}/{}", market_id, address)
                    return

                known = self._known_purchases(session, rows)
                try:
                    merged = merge_positions(rows, known)
                except InvariantViolation as exc:
                    ParticipantAggregator(session).freeze(rows, str(exc))
                    summary.keys_frozen += 1
                    return

                canonical, extras = rows[0], rows[1:]
                canonical.yes_shares = merged.yes_shares
                canonical.no_shares = merged.no_shares
                canonical.total_investment = merged.total_investment
                canonical.processed_tx_hashes = list(merged.processed_tx_hashes)
                canonical.first_purchase_at = merged.first_purchase_at
                canonical.last_purchase_at = merged.last_purchase_at
                deleted = participants.delete_rows([row.id for row in extras])
                MarketStateProjector(session).refresh_totals(market_id)
                canonical_id = canonical.id

        summary.keys_merged += 1
        summary.rows_deleted += deleted
        logger.info(
            "Merged {} duplicate rows into participant {} for {}/{}",
            deleted,
            canonical_id,
            market_id,
            address,
        )

    @staticmethod
    def _known_purchases(session: Session, rows: Sequence[Participant]) -> dict[str, tuple[bool, int]]:
        event_keys = {event_key for row in rows for event_key in row.processed_tx_hashes or []}
        stored = LedgerRepository(session).events_by_key(event_keys)
        return {
            event_key: (bool(record.side), int(record.amount or 0))
            for event_key, record in stored.items()
            if record.amount is not None and record.side is not None
        }

    def _audit_positions(self, summary: ReconciliationSummary) -> None:
        violations: dict[ParticipantKey, str] = {}
        with session_scope(self._session_factory) as session:
            for row in ParticipantRepository(session).iter_all():
                if row.frozen_reason:
                    continue
                try:
                    verify_position(row)
                except InvariantViolation as exc:
                    violations.setdefault((row.market_id, row.address), str(exc))
                    summary.inconsistent_rows += 1

        for key, reason in sorted(violations.items()):
            with self._locks.hold([key]):
                with session_scope(self._session_factory) as session:
                    rows = ParticipantRepository(session).rows_for_key(*key, for_update=True)
                    ParticipantAggregator(session).freeze(rows, reason)
            summary.keys_frozen += 1


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Merge duplicate participant rows and freeze inconsistent positions",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def _write_summary(summary: ReconciliationSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
    logger.info("Reconciliation summary written to {}", path)


def main() -> ReconciliationSummary:
    args = _parse_args()
    init_db()
    summary = ReconciliationJob(get_settings()).run()
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    main()
