"""Operator job: re-decode quarantined logs and release held purchases."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.db import init_db
from app.domain import Malformed, RawLog, Unrecognized
from app.models import QuarantinedLog
from app.repositories import LedgerRepository, ParticipantRepository
from app.services.aggregator import KeyLockRegistry, participant_locks
from app.services.event_applier import EventApplier
from ingestion.client import ChainRpcClient
from ingestion.decoder import EventDecoder
from ingestion.service import apply_events, session_scope, stamp_block_times


@dataclass(slots=True)
class ReplaySummary:
    examined: int = 0
    replayed: int = 0
    still_malformed: int = 0
    dropped: int = 0
    held_released: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "examined": self.examined,
            "replayed": self.replayed,
            "still_malformed": self.still_malformed,
            "dropped": self.dropped,
            "held_released": self.held_released,
            "failures": self.failures,
        }


class QuarantineReplayer:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: ChainRpcClient | None = None,
        decoder: EventDecoder | None = None,
        session_factory: sessionmaker[Session] | None = None,
        locks: KeyLockRegistry | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client
        self.decoder = decoder or EventDecoder(self.settings.tracked_contracts)
        self._session_factory = session_factory
        self._locks = locks or participant_locks

    def replay_quarantine(self, *, limit: int | None = None) -> ReplaySummary:
        summary = ReplaySummary()
        with session_scope(self._session_factory) as session:
            pending = [
                (record.id, dict(record.raw_log))
                for record in LedgerRepository(session).pending_quarantine(limit)
            ]

        for record_id, raw_payload in pending:
            summary.examined += 1
            raw = RawLog.from_rpc(raw_payload)
            event = self.decoder.decode(raw)
            if isinstance(event, Malformed):
                summary.still_malformed += 1
                continue
            try:
                if isinstance(event, Unrecognized):
                    events = []
                    summary.dropped += 1
                else:
                    events = [event]
                    if self.client is not None:
                        events = stamp_block_times(events, self.client)
                apply_events(
                    events,
                    session_factory=self._session_factory,
                    locks=self._locks,
                    after_apply=lambda session, rid=record_id: LedgerRepository(session).mark_replayed(
                        session.get(QuarantinedLog, rid)
                    ),
                )
                if events:
                    summary.replayed += 1
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to replay quarantined log {}", raw.transaction_hash)
                summary.failures.append({"tx_hash": raw.transaction_hash, "error": str(exc)})

        logger.info(
            "Quarantine replay finished: examined={}, replayed={}, still_malformed={}",
            summary.examined,
            summary.replayed,
            summary.still_malformed,
        )
        return summary

    def release_held(self, market_id: int, address: str, summary: ReplaySummary | None = None) -> ReplaySummary:
        """Unfreeze a participant and apply the purchases held while it was frozen."""

        summary = summary or ReplaySummary()
        key = (market_id, address.lower())
        with self._locks.hold([key]):
            with session_scope(self._session_factory) as session:
                ParticipantRepository(session).unfreeze_key(*key)
                held = LedgerRepository(session).held_purchases(*key)
                result = EventApplier(session).replay_held(held)
        summary.held_released += result.applied
        logger.info(
            "Released participant {}/{}: {} held purchases applied, {} still held",
            market_id,
            key[1],
            result.applied,
            result.held,
        )
        return summary


def _parse_key(value: str) -> tuple[int, str]:
    market_id, _, address = value.partition(":")
    if not market_id.isdigit() or not address.startswith("0x"):
        raise argparse.ArgumentTypeError("Expected MARKET_ID:0xADDRESS")
    return int(market_id), address.lower()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay quarantined logs after a decoder fix, or release frozen participants",
    )
    parser.add_argument("--limit", type=int, default=None, help="Maximum quarantined logs to replay")
    parser.add_argument(
        "--release",
        dest="release_keys",
        type=_parse_key,
        action="append",
        default=None,
        metavar="MARKET_ID:ADDRESS",
        help="Unfreeze a participant and apply its held purchases (repeatable)",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def main() -> ReplaySummary:
    args = _parse_args()
    settings = get_settings()
    init_db()
    with ChainRpcClient() as client:
        replayer = QuarantineReplayer(settings, client=client)
        summary = replayer.replay_quarantine(limit=args.limit)
        for market_id, address in args.release_keys or []:
            replayer.release_held(market_id, address, summary)

    if args.summary_path:
        args.summary_path.parent.mkdir(parents=True, exist_ok=True)
        args.summary_path.write_text(json.dumps(summary.to_dict(), default=str, indent=2))
        logger.info("Replay summary written to {}", args.summary_path)
    return summary


if __name__ == "__main__":
    main()
