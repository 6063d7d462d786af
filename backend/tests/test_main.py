from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.core.errors import PersistenceConflict, TransientSourceError
from app.main import _ledger_service, _runtime_status, _transaction_ingestor, app
from app.services.aggregator import KeyLockRegistry
from app.services.ledger_service import LedgerService
from chain_fixtures import (
    ALICE,
    BOB,
    CAROL,
    CONTRACTS,
    FakeLogSource,
    market_created_log,
    market_resolved_log,
    shares_bought_log,
    tx,
)
from ingestion.decoder import EventDecoder
from ingestion.service import ingest_transaction
from pipelines.run_ingestion import build_runtime


@pytest.fixture
def chain() -> FakeLogSource:
    return FakeLogSource(
        [
            market_created_log(7, ALICE, block=110, tx_hash=tx(1), question="Will CELO flip $1?"),
            market_created_log(8, BOB, block=111, tx_hash=tx(2), question="Rain in Lagos?", end_time=1_750_000_000),
            shares_bought_log(7, BOB, True, 300, block=112, tx_hash=tx(3)),
            shares_bought_log(7, CAROL, False, 2**90, block=113, tx_hash=tx(4)),
            shares_bought_log(8, BOB, False, 5, block=114, tx_hash=tx(5)),
            market_resolved_log(8, BOB, False, block=120, tx_hash=tx(6)),
            shares_bought_log(7, BOB, False, 1, block=140, tx_hash=tx(7)),
        ],
        head=130,
    )


@pytest.fixture
def client(test_settings, session_factory, chain):
    """Test client backed by a temporary ledger synced from the fake chain."""
    runtime = build_runtime(test_settings, session_factory=session_factory, client=chain)
    runtime.poller.poll()

    def _service():
        db = session_factory()
        try:
            yield LedgerService(db)
        finally:
            db.close()

    def _ingestor():
        return lambda tx_hash: ingest_transaction(
            tx_hash,
            client=chain,
            decoder=EventDecoder(CONTRACTS),
            session_factory=session_factory,
            locks=KeyLockRegistry(),
            confirmation_lag=test_settings.confirmation_lag,
        )

    app.dependency_overrides[_ledger_service] = _service
    app.dependency_overrides[_runtime_status] = runtime.status
    app.dependency_overrides[_transaction_ingestor] = _ingestor
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthcheck(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_markets_filters_and_sorts(client):
    """Verify listing, status filtering, and volume ordering over big-integer pools."""
    response = client.get("/markets")
    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 2
    assert [item["market_id"] for item in payload["items"]] == [8, 7]

    active = client.get("/markets", params={"status": "active"}).json()
    assert [item["market_id"] for item in active["items"]] == [7]
    assert active["items"][0]["total_pool"] == str(300 + 2**90)

    by_volume = client.get("/markets", params={"sort": "volume", "limit": 1}).json()
    assert by_volume["total"] == 2
    assert by_volume["limit"] == 1
    assert by_volume["items"][0]["market_id"] == 7

    found = client.get("/markets", params={"search": "lagos"}).json()
    assert [item["market_id"] for item in found["items"]] == [8]

    assert client.get("/markets", params={"sort": "random"}).status_code == 422


def test_get_market_and_not_found(client):
    response = client.get("/markets/8")
    assert response.status_code == 200
    market = response.json()
    assert market["status"] == "resolved"
    assert market["outcome"] is False
    assert market["total_no"] == "5"

    assert client.get("/markets/999").status_code == 404
    assert client.get("/markets/999/stats").status_code == 404


def test_participants_are_ordered_by_investment(client):
    response = client.get("/markets/7/participants")
    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 2
    assert [item["address"] for item in payload["items"]] == [CAROL, BOB]
    assert payload["items"][0]["no_shares"] == str(2**90)
    assert payload["items"][1]["processed_tx_hashes"] == [f"{tx(3)}:0"]


def test_market_stats(client):
    stats = client.get("/markets/7/stats").json()
    assert stats["participant_count"] == 2
    assert stats["purchase_count"] == 2
    assert stats["claimed_total"] == "0"
    assert stats["total_yes"] == "300"


def test_user_positions(client):
    response = client.get(f"/users/{BOB.upper().replace('0X', '0x')}/positions")
    assert response.status_code == 200
    payload = response.json()
    assert payload["address"] == BOB
    assert payload["market_count"] == 2
    assert payload["total_investment"] == "305"
    by_market = {item["market_id"]: item for item in payload["items"]}
    assert by_market[8]["market_status"] == "resolved"
    assert by_market[7]["market_question"] == "Will CELO flip $1?"

    assert client.get("/users/0x1234/positions").status_code == 422


def test_sync_status_reports_cursor_and_poller_health(client):
    payload = client.get("/sync/status").json()
    assert payload["last_processed_block"] == 130
    assert payload["chain_head"] == 130
    assert payload["healthy"] is True
    assert payload["events_recorded"] == 6
    assert payload["quarantined_pending"] == 0
    assert {worker["name"] for worker in payload["workers"]} == {
        "event-poller",
        "participant-reconciliation",
    }


def test_ingest_transaction_ahead_of_poller(client, chain):
    chain.head = 140
    response = client.post(f"/transactions/{tx(7)}/ingest")
    assert response.status_code == 200
    payload = response.json()
    assert payload["found"] is True
    assert payload["applied"] == 1
    assert payload["markets_touched"] == [7]

    positions = client.get(f"/users/{BOB}/positions").json()
    assert positions["total_investment"] == "306"

    assert client.post(f"/transactions/{tx(7)}/ingest").json()["duplicates"] == 1
    assert client.post(f"/transactions/{tx(99)}/ingest").status_code == 404
    assert client.post("/transactions/0xnothex/ingest").status_code == 422


@pytest.mark.parametrize(
    ("error", "status_code"),
    [(TransientSourceError("HTTP 503"), 503), (PersistenceConflict("locked"), 409)],
)
def test_ingest_transaction_error_mapping(client, error, status_code):
    def _failing(tx_hash):
        raise error

    app.dependency_overrides[_transaction_ingestor] = lambda: _failing
    response = client.post(f"/transactions/{tx(7)}/ingest")
    assert response.status_code == status_code


def test_ingest_transaction_above_confirmed_head_is_deferred(client, chain):
    chain.head = 139
    response = client.post(f"/transactions/{tx(7)}/ingest")
    assert response.status_code == 202
    payload = response.json()
    assert payload["pending_confirmation"] is True
    assert payload["block_number"] == 140
    assert payload["applied"] == 0

    assert client.get(f"/users/{BOB}/positions").json()["total_investment"] == "305"
