from __future__ import annotations

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest

from app.core.config import Settings
from app.db import _build_db_components, init_db
from chain_fixtures import CLAIMS, CORE


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'ledger.db'}",
        core_contract_address=CORE,
        claims_contract_address=CLAIMS,
        start_block=100,
        confirmation_lag=0,
        max_block_range=50,
        rpc_retry_attempts=3,
        rpc_retry_backoff_seconds="0.01,0.02",
        persistence_retry_attempts=2,
        unhealthy_after_failures=2,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def db_components(tmp_path):
    engine, session_factory = _build_db_components(f"sqlite:///{tmp_path/'ledger.db'}")
    init_db(engine)
    yield engine, session_factory
    engine.dispose()


@pytest.fixture
def session_factory(db_components):
    return db_components[1]


@pytest.fixture
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
