from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request, Response
from loguru import logger

from . import schemas
from .core.config import settings
from .core.errors import PersistenceConflict, TransientSourceError
from .db import get_db, init_db
from .services.ledger_service import LedgerService, MarketQuery
from ingestion.client import ChainRpcClient
from ingestion.service import ingest_transaction
from pipelines.run_ingestion import build_runtime

app = FastAPI(title="CELO Market Ledger API", version="0.1.0", debug=settings.debug)

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"
TX_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"


@app.on_event("startup")
def on_startup() -> None:
    """Create tables and, when enabled, start the poller and reconciliation workers."""

    init_db()
    app.state.runtime = None
    if settings.enable_background_workers:
        runtime = build_runtime(settings)
        runtime.start()
        app.state.runtime = runtime
        logger.info("Background ledger workers started")


@app.on_event("shutdown")
def on_shutdown() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        runtime.stop()
        app.state.runtime = None


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _market_query(
    *,
    status: Annotated[
        str | None,
        Query(description="Market status filter", pattern="^(active|resolved|cancelled)$"),
    ] = None,
    category: Annotated[str | None, Query(description="Category filter")] = None,
    creator: Annotated[str | None, Query(description="Creator address", pattern=ADDRESS_PATTERN)] = None,
    search: Annotated[str | None, Query(description="Case-insensitive question/description search")] = None,
    sort: Annotated[
        str,
        Query(description="Sort order", pattern="^(newest|oldest|volume|ending)$"),
    ] = "newest",
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> MarketQuery:
    """Normalize shared market listing query parameters."""

    return MarketQuery(
        status=status,
        category=category,
        creator=creator,
        search=search,
        sort=sort,
        page=page,
        limit=limit,
    )


def _ledger_service(db=Depends(get_db)) -> LedgerService:
    """Provide the ledger read service wired with a SQLAlchemy session."""

    return LedgerService(db)


def _runtime_status(request: Request) -> dict[str, Any]:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return {"poller": None, "workers": []}
    return runtime.status()


def _transaction_ingestor() -> Iterator[Callable[[str], Any]]:
    client = ChainRpcClient()
    try:
        yield lambda tx_hash: ingest_transaction(tx_hash, client=client)
    finally:
        client.close()


@app.get("/markets", response_model=schemas.MarketList, tags=["markets"])
def list_markets(
    *,
    query: MarketQuery = Depends(_market_query),
    service: LedgerService = Depends(_ledger_service),
):
    """List markets with pagination, filtering, and sort controls."""

    result = service.list_markets(query)
    return schemas.MarketList(
        total=result.total, page=result.page, limit=result.limit, items=list(result.markets)
    )


@app.get("/markets/{market_id}", response_model=schemas.Market, tags=["markets"])
def get_market(market_id: int, service: LedgerService = Depends(_ledger_service)):
    """Retrieve a single market by its on-chain identifier."""

    market = service.get_market(market_id)
    if not market:
        raise HTTPException(status_code=404, detail="Market not found")
    return market


@app.get(
    "/markets/{market_id}/participants",
    response_model=schemas.ParticipantList,
    tags=["markets"],
)
def list_participants(market_id: int, service: LedgerService = Depends(_ledger_service)):
    """Participants of a market ordered by total investment, largest first."""

    items = service.list_participants(market_id)
    return schemas.ParticipantList(market_id=market_id, total=len(items), items=items)


@app.get("/markets/{market_id}/stats", response_model=schemas.MarketStats, tags=["markets"])
def market_stats(market_id: int, service: LedgerService = Depends(_ledger_service)):
    stats = service.market_stats(market_id)
    if not stats:
        raise HTTPException(status_code=404, detail="Market not found")
    return stats


@app.get("/users/{address}/positions", response_model=schemas.UserPositions, tags=["users"])
def user_positions(
    address: Annotated[str, Path(pattern=ADDRESS_PATTERN)],
    service: LedgerService = Depends(_ledger_service),
):
    """Every market position held by a wallet."""

    return service.user_positions(address)


@app.get("/sync/status", response_model=schemas.SyncStatus, tags=["system"])
def sync_status(
    service: LedgerService = Depends(_ledger_service),
    runtime_status: dict[str, Any] = Depends(_runtime_status),
):
    """Committed cursor position plus poller health when workers run in-process."""

    return service.sync_status(
        poller_health=runtime_status.get("poller"),
        workers=runtime_status.get("workers") or [],
    )


@app.post(
    "/transactions/{tx_hash}/ingest",
    response_model=schemas.TransactionIngest,
    tags=["ingestion"],
)
def ingest_transaction_route(
    tx_hash: Annotated[str, Path(pattern=TX_HASH_PATTERN)],
    response: Response,
    ingest: Callable[[str], Any] = Depends(_transaction_ingestor),
):
    """Apply a confirmed transaction without waiting for the next poll cycle.

    Receipts above the confirmed head answer 202 and are left to the poller.
    """

    try:
        result = ingest(tx_hash)
    except TransientSourceError as exc:
        raise HTTPException(status_code=503, detail=f"Chain RPC unavailable: {exc}") from exc
    except PersistenceConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not result.found:
        raise HTTPException(status_code=404, detail="Transaction receipt not found")
    if result.pending_confirmation:
        response.status_code = 202
    return schemas.TransactionIngest(**result.to_dict())
