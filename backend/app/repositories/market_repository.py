"""Market-focused data access helpers."""

from __future__ import annotations

from typing import Any

from sqlalchemy import asc, desc, func, or_, select
from sqlalchemy.orm import Session

from app.models import Market


def _numeric_text_order(column, *, descending: bool) -> list[Any]:
    # Decimal strings without leading zeros order numerically by (length, text).
    if descending:
        return [desc(func.length(column)), desc(column)]
    return [asc(func.length(column)), asc(column)]


class MarketRepository:
    """Encapsulate market persistence; only the projector mutates rows."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def get_or_new(self, market_id: int) -> tuple[Market, bool]:
        existing = self.get(market_id, for_update=True)
        if existing is not None:
            return existing, False
        market = Market(market_id=market_id)
        self._session.add(market)
        return market, True

    def set_totals(self, market: Market, *, total_yes: int, total_no: int) -> bool:
        total_pool = total_yes + total_no
        changed = (
            market.total_yes != total_yes
            or market.total_no != total_no
            or market.total_pool != total_pool
        )
        market.total_yes = total_yes
        market.total_no = total_no
        market.total_pool = total_pool
        return changed

    # ------------------------------------------------------------------
    # Queries

    def get(self, market_id: int, *, for_update: bool = False) -> Market | None:
        query = select(Market).where(Market.market_id == market_id)
        if for_update:
            query = query.with_for_update()
        return self._session.execute(query).scalar_one_or_none()

    def list_markets(
        self,
        *,
        status: str | None = None,
        category: str | None = None,
        creator: str | None = None,
        search: str | None = None,
        sort: str = "newest",
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Market], int]:
        filters: list[Any] = []
        if status:
            filters.append(Market.status == status)
        if category:
            filters.append(Market.category == category)
        if creator:
            filters.append(Market.creator == creator.lower())
        if search:
            pattern = f"%{search.lower()}%"
            filters.append(
                or_(
                    func.lower(Market.question).like(pattern),
                    func.lower(Market.description).like(pattern),
                )
            )

        query = select(Market)
        count_query = select(func.count()).select_from(Market)
        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        if sort == "oldest":
            ordering = [asc(Market.market_id)]
        elif sort == "volume":
            ordering = _numeric_text_order(Market.total_pool, descending=True) + [desc(Market.market_id)]
        elif sort == "ending":
            ordering = [asc(Market.end_time), asc(Market.market_id)]
        else:
            ordering = [desc(Market.market_id)]

        query = query.order_by(*ordering).offset(offset).limit(limit)
        items = list(self._session.execute(query).scalars())
        total = int(self._session.execute(count_query).scalar_one())
        return items, total


__all__ = ["MarketRepository"]
