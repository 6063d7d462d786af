from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import InvariantViolation
from app.models import ChainEvent, EventStatus, Market, Participant
from app.repositories import MarketRepository, ParticipantRepository
from app.services.aggregator import KeyLockRegistry
from app.services.projector import MarketStateProjector
from chain_fixtures import ALICE, BOB, CORE
from pipelines.reconciliation import ReconciliationJob, merge_positions

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _row(market_id, address, yes, no, hashes, *, offset=0, first=None, last=None) -> Participant:
    return Participant(
        market_id=market_id,
        address=address,
        yes_shares=yes,
        no_shares=no,
        total_investment=yes + no,
        processed_tx_hashes=list(hashes),
        first_purchase_at=first,
        last_purchase_at=last,
        created_at=T0 + timedelta(seconds=offset),
    )


def _purchase_record(tx_hash: str, side: bool, amount: int, *, market_id=7, address=ALICE) -> ChainEvent:
    return ChainEvent(
        kind="SharesBought",
        contract_address=CORE,
        market_id=market_id,
        address=address,
        side=side,
        amount=amount,
        block_number=100,
        tx_hash=tx_hash,
        log_index=0,
        payload={},
        status=EventStatus.APPLIED.value,
    )


@pytest.fixture
def job(test_settings, session_factory):
    return ReconciliationJob(test_settings, session_factory=session_factory, locks=KeyLockRegistry())


def test_disjoint_duplicates_merge_into_canonical_row(job, session):
    session.add_all(
        [
            _row(7, ALICE, 100, 0, ["0x1:0"], offset=0, first=T0, last=T0),
            _row(7, ALICE, 0, 50, ["0x2:0"], offset=1, first=T0 + timedelta(hours=1), last=T0 + timedelta(hours=1)),
        ]
    )
    session.commit()

    summary = job.run()

    assert (summary.keys_examined, summary.keys_merged, summary.rows_deleted) == (1, 1, 1)
    session.expire_all()
    rows = ParticipantRepository(session).rows_for_key(7, ALICE)
    assert len(rows) == 1
    row = rows[0]
    assert (row.yes_shares, row.no_shares, row.total_investment) == (100, 50, 150)
    assert row.processed_tx_hashes == ["0x1:0", "0x2:0"]
    assert row.first_purchase_at.replace(tzinfo=None) == T0.replace(tzinfo=None)
    assert row.last_purchase_at.replace(tzinfo=None) == (T0 + timedelta(hours=1)).replace(tzinfo=None)


def test_overlapping_event_is_counted_once(job, session):
    session.add_all(
        [
            _row(7, ALICE, 100, 0, ["0x1:0"], offset=0),
            _row(7, ALICE, 100, 20, ["0x1:0", "0x2:0"], offset=1),
            _purchase_record("0x1", True, 100),
        ]
    )
    session.commit()

    summary = job.run()

    assert summary.keys_merged == 1
    session.expire_all()
    row = ParticipantRepository(session).rows_for_key(7, ALICE)[0]
    assert (row.yes_shares, row.no_shares, row.total_investment) == (100, 20, 120)
    assert row.processed_tx_hashes == ["0x1:0", "0x2:0"]


def test_merge_recomputes_market_pool_totals(job, session):
    session.add_all(
        [
            Market(market_id=7, question="Will it rain?", end_time=1_800_000_000, creator=BOB),
            _row(7, ALICE, 100, 0, ["0x1:0"], offset=0),
            _row(7, ALICE, 100, 20, ["0x1:0", "0x2:0"], offset=1),
            _row(7, BOB, 0, 30, ["0x3:0"], offset=2),
            _purchase_record("0x1", True, 100),
        ]
    )
    session.flush()
    MarketStateProjector(session).refresh_totals(7)
    session.commit()
    market = MarketRepository(session).get(7)
    assert (market.total_yes, market.total_no, market.total_pool) == (200, 50, 250)

    job.run()

    session.expire_all()
    market = MarketRepository(session).get(7)
    assert (market.total_yes, market.total_no, market.total_pool) == (100, 50, 150)


def test_unresolvable_overlap_freezes_instead_of_guessing(job, session):
    session.add_all(
        [
            _row(7, BOB, 30, 0, ["0x9:0"], offset=0),
            _row(7, BOB, 30, 0, ["0x9:0"], offset=1),
        ]
    )
    session.commit()

    summary = job.run()

    assert summary.keys_frozen == 1
    assert summary.rows_deleted == 0
    session.expire_all()
    rows = ParticipantRepository(session).rows_for_key(7, BOB)
    assert len(rows) == 2
    assert all(row.frozen_reason for row in rows)
    assert [key[:2] for key in ParticipantRepository(session).frozen_keys()] == [(7, BOB)]


def test_audit_freezes_internally_inconsistent_row(job, session):
    broken = _row(3, ALICE, 10, 0, ["0x1:0"])
    broken.total_investment = 11
    session.add_all([broken, _row(3, BOB, 5, 5, ["0x2:0", "0x3:0"])])
    session.commit()

    summary = job.run()

    assert summary.keys_examined == 0
    assert summary.inconsistent_rows == 1
    assert summary.keys_frozen == 1
    session.expire_all()
    assert "total_investment" in ParticipantRepository(session).rows_for_key(3, ALICE)[0].frozen_reason
    assert ParticipantRepository(session).rows_for_key(3, BOB)[0].frozen_reason is None


def test_stop_request_halts_before_merging(job, session):
    session.add_all([_row(1, ALICE, 1, 0, ["0x1:0"], offset=0), _row(1, ALICE, 2, 0, ["0x2:0"], offset=1)])
    session.commit()
    stop = threading.Event()
    stop.set()

    summary = job.run(stop)

    assert summary.keys_examined == 0
    assert len(ParticipantRepository(session).rows_for_key(1, ALICE)) == 2


def test_merge_positions_rejects_negative_result():
    rows = [_row(1, ALICE, 5, 0, ["0x1:0"]), _row(1, ALICE, 5, 0, ["0x1:0"])]
    with pytest.raises(InvariantViolation):
        merge_positions(rows, {"0x1:0": (True, 50)})
