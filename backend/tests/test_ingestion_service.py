from __future__ import annotations

from dataclasses import replace

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.errors import PersistenceConflict
from app.domain import LogPosition, Malformed, RawLog
from app.models import ChainEvent, EventStatus, QuarantinedLog
from app.repositories import LedgerRepository, MarketRepository, ParticipantRepository
from app.services.aggregator import KeyLockRegistry
from app.services.event_applier import event_from_record
from chain_fixtures import (
    ALICE,
    BOB,
    CONTRACTS,
    FakeLogSource,
    market_created_log,
    shares_bought_log,
    tx,
    winnings_claimed_log,
)
from ingestion.decoder import EventDecoder
from ingestion.service import apply_events, ingest_transaction, stamp_block_times
from pipelines.replay_quarantine import QuarantineReplayer


def _market_logs() -> list[RawLog]:
    bought = shares_bought_log(7, BOB, False, 50, block=121, tx_hash=tx(3), log_index=1)
    truncated = shares_bought_log(7, BOB, True, 5, block=123, tx_hash=tx(5))
    unknown = shares_bought_log(7, BOB, True, 5, block=124, tx_hash=tx(6))
    return [
        market_created_log(7, ALICE, block=120, tx_hash=tx(1)),
        shares_bought_log(7, ALICE, True, 100, block=121, tx_hash=tx(2)),
        bought,
        winnings_claimed_log(7, ALICE, 150, block=122, tx_hash=tx(4)),
        replace(truncated, data=truncated.data[:-64]),
        replace(unknown, topics=("0x" + "ab" * 32,) + unknown.topics[1:]),
    ]


def _decoded(logs: list[RawLog]):
    source = FakeLogSource(logs)
    return stamp_block_times(EventDecoder(CONTRACTS).decode_many(logs), source)


def test_batch_routes_every_event_kind(session_factory, session):
    result = apply_events(_decoded(_market_logs()), session_factory=session_factory, locks=KeyLockRegistry())

    assert (result.applied, result.recorded, result.malformed, result.unrecognized) == (3, 1, 1, 1)
    assert result.markets_touched == {7}

    market = MarketRepository(session).get(7)
    assert (market.total_yes, market.total_no, market.total_pool) == (100, 50, 150)

    ledger = LedgerRepository(session)
    assert ledger.count_events() == 4
    assert ledger.get_event(tx(4), 0).status == EventStatus.RECORDED.value
    assert ledger.get_event(tx(2), 0).status == EventStatus.APPLIED.value
    assert ledger.claimed_total(7) == 150
    assert ledger.purchase_count(7) == 2
    assert ledger.count_pending_quarantine() == 1


def test_redelivered_batch_is_idempotent(session_factory, session):
    events = _decoded(_market_logs())
    apply_events(events, session_factory=session_factory, locks=KeyLockRegistry())
    again = apply_events(events, session_factory=session_factory, locks=KeyLockRegistry())

    assert again.applied == 0
    assert again.duplicates == 3

    market = MarketRepository(session).get(7)
    assert market.total_pool == 150
    assert LedgerRepository(session).count_events() == 4
    assert session.execute(select(QuarantinedLog)).scalars().all()[0].event_name == "SharesBought"
    assert LedgerRepository(session).count_pending_quarantine() == 1


def test_stored_event_rebuilds_typed_event(session_factory, session):
    events = _decoded(_market_logs())
    apply_events(events, session_factory=session_factory, locks=KeyLockRegistry())

    record = LedgerRepository(session).get_event(tx(3), 1)
    rebuilt = event_from_record(record)
    original = next(event for event in events if event.position.event_key == f"{tx(3)}:1")
    assert rebuilt == original


def test_conflicting_writes_are_retried_then_surface(session_factory, monkeypatch):
    calls = []

    class ExplodingApplier:
        def __init__(self, session):
            pass

        def apply_batch(self, events):
            calls.append(len(events))
            raise OperationalError("INSERT INTO market_participants", {}, Exception("database is locked"))

    monkeypatch.setattr("ingestion.service.EventApplier", ExplodingApplier)

    with pytest.raises(PersistenceConflict):
        apply_events(_decoded(_market_logs()), session_factory=session_factory, attempts=2)
    assert len(calls) == 2


def test_held_purchase_is_released_after_unfreeze(test_settings, session_factory, session):
    locks = KeyLockRegistry()
    first = _decoded([shares_bought_log(9, ALICE, True, 10, block=130, tx_hash=tx(1))])
    apply_events(first, session_factory=session_factory, locks=locks)

    with session_factory() as frozen_session:
        ParticipantRepository(frozen_session).freeze_key(9, ALICE, "operator review")
        frozen_session.commit()

    second = _decoded([shares_bought_log(9, ALICE, False, 7, block=131, tx_hash=tx(2))])
    result = apply_events(second, session_factory=session_factory, locks=locks)
    assert result.held == 1
    assert LedgerRepository(session).get_event(tx(2), 0).status == EventStatus.HELD.value

    summary = QuarantineReplayer(test_settings, session_factory=session_factory, locks=locks).release_held(9, ALICE)
    assert summary.held_released == 1

    session.expire_all()
    row = ParticipantRepository(session).rows_for_key(9, ALICE)[0]
    assert row.frozen_reason is None
    assert (row.yes_shares, row.no_shares, row.total_investment) == (10, 7, 17)
    assert LedgerRepository(session).held_purchases() == []


def test_quarantined_log_replays_after_decoder_fix(test_settings, session_factory, session):
    valid = shares_bought_log(4, BOB, True, 42, block=150, tx_hash=tx(8))
    broken = shares_bought_log(4, BOB, True, 1, block=151, tx_hash=tx(9))
    broken = replace(broken, data=broken.data[:-64])
    with session_factory() as setup:
        ledger = LedgerRepository(setup)
        for raw, reason in ((valid, "decoder rejected payload"), (broken, "truncated payload")):
            ledger.quarantine(
                Malformed(
                    position=LogPosition(
                        block_number=raw.block_number, log_index=raw.log_index, tx_hash=raw.transaction_hash
                    ),
                    contract_address=raw.address,
                    event_name="SharesBought",
                    reason=reason,
                    raw=raw,
                )
            )
        setup.commit()

    replayer = QuarantineReplayer(
        test_settings,
        client=FakeLogSource(),
        session_factory=session_factory,
        locks=KeyLockRegistry(),
    )
    summary = replayer.replay_quarantine()

    assert (summary.examined, summary.replayed, summary.still_malformed) == (2, 1, 1)
    assert ParticipantRepository(session).rows_for_key(4, BOB)[0].yes_shares == 42
    assert LedgerRepository(session).count_pending_quarantine() == 1


def test_ingest_transaction_applies_receipt_logs(session_factory, session):
    logs = [
        market_created_log(3, ALICE, block=200, tx_hash=tx(20)),
        shares_bought_log(3, ALICE, True, 25, block=201, tx_hash=tx(21)),
    ]
    source = FakeLogSource(logs, head=210)
    decoder = EventDecoder(CONTRACTS)

    outcome = ingest_transaction(
        tx(21).upper().replace("0X", "0x"),
        client=source,
        decoder=decoder,
        session_factory=session_factory,
        locks=KeyLockRegistry(),
        confirmation_lag=3,
    )
    assert outcome.found is True
    assert outcome.result.applied == 1
    assert ParticipantRepository(session).rows_for_key(3, ALICE)[0].yes_shares == 25

    repeat = ingest_transaction(
        tx(21), client=source, decoder=decoder, session_factory=session_factory, confirmation_lag=3
    )
    assert repeat.result.duplicates == 1

    missing = ingest_transaction(
        tx(99), client=source, decoder=decoder, session_factory=session_factory, confirmation_lag=3
    )
    assert missing.found is False
    assert session.execute(select(ChainEvent)).scalars().all()[0].tx_hash == tx(21)


def test_ingest_transaction_defers_unconfirmed_receipts(session_factory, session):
    """A receipt near the head can be reorged to a new log index; only the poller applies it."""

    pending = shares_bought_log(3, ALICE, True, 25, block=201, tx_hash=tx(21))
    source = FakeLogSource([pending], head=201)

    outcome = ingest_transaction(
        tx(21),
        client=source,
        decoder=EventDecoder(CONTRACTS),
        session_factory=session_factory,
        locks=KeyLockRegistry(),
        confirmation_lag=3,
    )
    assert outcome.found is True
    assert outcome.pending_confirmation is True
    assert outcome.block_number == 201
    assert outcome.result.applied == 0
    assert ParticipantRepository(session).rows_for_key(3, ALICE) == []

    reorged = replace(pending, block_number=203, log_index=4)
    apply_events(_decoded([reorged]), session_factory=session_factory, locks=KeyLockRegistry())

    row = ParticipantRepository(session).rows_for_key(3, ALICE)[0]
    assert row.yes_shares == 25
    assert row.processed_tx_hashes == [f"{tx(21)}:4"]
