"""Read-only facade over the ledger used by the API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from sqlalchemy.orm import Session

from app import schemas
from app.models import Market as MarketRecord
from app.models import Participant as ParticipantRecord
from app.repositories import LedgerRepository, MarketRepository, ParticipantRepository


@dataclass(slots=True)
class MarketQuery:
    status: str | None = None
    category: str | None = None
    creator: str | None = None
    search: str | None = None
    sort: str = "newest"
    page: int = 1
    limit: int = 20

    def to_repository_kwargs(self) -> dict[str, Any]:
        """Serialize the query so repository functions receive consistent kwargs."""

        return {
            "status": self.status,
            "category": self.category,
            "creator": self.creator,
            "search": self.search,
            "sort": self.sort,
            "limit": self.limit,
            "offset": (max(self.page, 1) - 1) * self.limit,
        }


@dataclass(slots=True)
class MarketQueryResult:
    total: int
    page: int
    limit: int
    markets: Sequence[schemas.Market]


def _participant_schema(row: ParticipantRecord) -> schemas.Participant:
    return schemas.Participant(
        market_id=row.market_id,
        address=row.address,
        yes_shares=row.yes_shares,
        no_shares=row.no_shares,
        total_investment=row.total_investment,
        first_purchase_at=row.first_purchase_at,
        last_purchase_at=row.last_purchase_at,
        processed_tx_hashes=list(row.processed_tx_hashes or []),
        frozen=bool(row.frozen_reason),
    )


class LedgerService:
    def __init__(self, session: Session):
        self._session = session
        self._markets = MarketRepository(session)
        self._participants = ParticipantRepository(session)
        self._ledger = LedgerRepository(session)

    def list_markets(self, query: MarketQuery) -> MarketQueryResult:
        records, total = self._markets.list_markets(**query.to_repository_kwargs())
        markets = [schemas.Market.model_validate(record) for record in records]
        return MarketQueryResult(total=total, page=query.page, limit=query.limit, markets=markets)

    def get_market(self, market_id: int) -> schemas.Market | None:
        record = self._markets.get(market_id)
        if record is None:
            return None
        return schemas.Market.model_validate(record)

    def list_participants(self, market_id: int) -> list[schemas.Participant]:
        return [_participant_schema(row) for row in self._participants.list_for_market(market_id)]

    def market_stats(self, market_id: int) -> schemas.MarketStats | None:
        record = self._markets.get(market_id)
        if record is None:
            return None
        _, _, participant_count = self._participants.market_totals(market_id)
        return schemas.MarketStats(
            market_id=market_id,
            total_pool=record.total_pool,
            total_yes=record.total_yes,
            total_no=record.total_no,
            participant_count=participant_count,
            purchase_count=self._ledger.purchase_count(market_id),
            claimed_total=self._ledger.claimed_total(market_id),
        )

    def user_positions(self, address: str) -> schemas.UserPositions:
        rows = self._participants.list_for_address(address)
        markets: dict[int, MarketRecord | None] = {}
        items: list[schemas.UserPosition] = []
        for row in rows:
            if row.market_id not in markets:
                markets[row.market_id] = self._markets.get(row.market_id)
            market = markets[row.market_id]
            base = _participant_schema(row).model_dump()
            items.append(
                schemas.UserPosition(
                    **base,
                    market_question=market.question if market else None,
                    market_status=market.status if market else None,
                    market_outcome=market.outcome if market else None,
                )
            )
        total_investment = sum(int(row.total_investment or 0) for row in rows)
        return schemas.UserPositions(
            address=address.lower(),
            total_investment=str(total_investment),
            market_count=len({row.market_id for row in rows}),
            items=items,
        )

    def sync_status(
        self,
        *,
        poller_health: dict[str, Any] | None = None,
        workers: Sequence[dict[str, Any]] = (),
    ) -> schemas.SyncStatus:
        cursor = self._ledger.cursor_row()
        health = poller_health or {}
        return schemas.SyncStatus(
            last_processed_block=cursor.last_processed_block if cursor else None,
            cursor_updated_at=cursor.updated_at if cursor else None,
            chain_head=health.get("chain_head"),
            healthy=bool(health.get("healthy", True)),
            consecutive_failures=int(health.get("consecutive_failures", 0)),
            last_error=health.get("last_error"),
            last_success_at=health.get("last_success_at"),
            events_recorded=self._ledger.count_events(),
            quarantined_pending=self._ledger.count_pending_quarantine(),
            frozen_participants=len(self._participants.frozen_keys()),
            workers=[schemas.WorkerStatus(**worker) for worker in workers],
        )


__all__ = ["LedgerService", "MarketQuery", "MarketQueryResult"]
