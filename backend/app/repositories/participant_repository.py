"""Participant position persistence."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime

from sqlalchemy import asc, delete, desc, func, select
from sqlalchemy.orm import Session

from app.models import Participant


class ParticipantRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def create(self, market_id: int, address: str, *, first_purchase_at: datetime | None) -> Participant:
        participant = Participant(
            market_id=market_id,
            address=address.lower(),
            yes_shares=0,
            no_shares=0,
            total_investment=0,
            first_purchase_at=first_purchase_at,
            last_purchase_at=first_purchase_at,
            processed_tx_hashes=[],
        )
        self._session.add(participant)
        self._session.flush()
        return participant

    def delete_rows(self, row_ids: list[int]) -> int:
        if not row_ids:
            return 0
        result = self._session.execute(delete(Participant).where(Participant.id.in_(row_ids)))
        return int(result.rowcount or 0)

    def freeze_key(self, market_id: int, address: str, reason: str) -> int:
        rows = self.rows_for_key(market_id, address, for_update=True)
        for row in rows:
            row.frozen_reason = reason
        return len(rows)

    def unfreeze_key(self, market_id: int, address: str) -> int:
        rows = self.rows_for_key(market_id, address, for_update=True)
        for row in rows:
            row.frozen_reason = None
        return len(rows)

    # ------------------------------------------------------------------
    # Queries

    def rows_for_key(
        self, market_id: int, address: str, *, for_update: bool = False
    ) -> list[Participant]:
        """All rows stored for a key, canonical (earliest) first."""

        query = (
            select(Participant)
            .where(Participant.market_id == market_id, Participant.address == address.lower())
            .order_by(asc(Participant.created_at), asc(Participant.id))
        )
        if for_update:
            query = query.with_for_update()
        return list(self._session.execute(query).scalars())

    def list_for_market(self, market_id: int) -> list[Participant]:
        query = (
            select(Participant)
            .where(Participant.market_id == market_id)
            .order_by(
                desc(func.length(Participant.total_investment)),
                desc(Participant.total_investment),
                asc(Participant.id),
            )
        )
        return list(self._session.execute(query).scalars())

    def list_for_address(self, address: str) -> list[Participant]:
        query = (
            select(Participant)
            .where(Participant.address == address.lower())
            .order_by(desc(Participant.market_id), asc(Participant.id))
        )
        return list(self._session.execute(query).scalars())

    def duplicate_keys(self) -> list[tuple[int, str]]:
        query = (
            select(Participant.market_id, Participant.address)
            .group_by(Participant.market_id, Participant.address)
            .having(func.count(Participant.id) > 1)
            .order_by(Participant.market_id, Participant.address)
        )
        return [(int(market_id), address) for market_id, address in self._session.execute(query)]

    def iter_all(self, batch_size: int = 500) -> Iterator[Participant]:
        query = select(Participant).order_by(Participant.id).execution_options(yield_per=batch_size)
        yield from self._session.execute(query).scalars()

    def frozen_keys(self) -> list[tuple[int, str, str]]:
        query = (
            select(Participant.market_id, Participant.address, Participant.frozen_reason)
            .where(Participant.frozen_reason.is_not(None))
            .distinct()
        )
        return [(int(market_id), address, reason) for market_id, address, reason in self._session.execute(query)]

    def market_totals(self, market_id: int) -> tuple[int, int, int]:
        """Return ``(yes, no, participant_count)`` summed across the market's rows."""

        query = select(Participant.yes_shares, Participant.no_shares, Participant.address).where(
            Participant.market_id == market_id
        )
        total_yes = 0
        total_no = 0
        addresses: set[str] = set()
        for yes_shares, no_shares, address in self._session.execute(query):
            total_yes += int(yes_shares or 0)
            total_no += int(no_shares or 0)
            addresses.add(address)
        return total_yes, total_no, len(addresses)


__all__ = ["ParticipantRepository"]
