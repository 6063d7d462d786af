"""Project market lifecycle events onto the ``markets`` table."""

from __future__ import annotations

from loguru import logger
from sqlalchemy.orm import Session

from app.domain import ApplyOutcome, LogPosition, MarketCreated, MarketResolved
from app.models import Market, MarketStatus
from app.repositories import MarketRepository, ParticipantRepository

DEFAULT_CATEGORY = "General"


def _is_stale(market: Market, position: LogPosition) -> bool:
    stamp = (int(market.last_event_block or 0), int(market.last_event_log_index or 0))
    return stamp > position.ordering


def _stamp(market: Market, position: LogPosition) -> None:
    market.last_event_block = position.block_number
    market.last_event_log_index = position.log_index


class MarketStateProjector:
    """Every write is a pure assignment, so replays converge."""

    def __init__(self, session: Session) -> None:
        self._markets = MarketRepository(session)
        self._participants = ParticipantRepository(session)

    def apply(self, event: MarketCreated | MarketResolved) -> ApplyOutcome:
        if isinstance(event, MarketCreated):
            return self._apply_created(event)
        if isinstance(event, MarketResolved):
            return self._apply_resolved(event)
        raise TypeError(f"MarketStateProjector cannot apply {type(event).__name__}")

    def _apply_created(self, event: MarketCreated) -> ApplyOutcome:
        market, is_new = self._markets.get_or_new(event.market_id)
        if not is_new and _is_stale(market, event.position):
            logger.debug("Skipping stale MarketCreated for market {}", event.market_id)
            return ApplyOutcome.DUPLICATE

        market.question = event.question
        market.description = event.description
        market.source = event.source
        market.category = market.category or DEFAULT_CATEGORY
        market.end_time = int(event.end_time)
        market.creation_fee = int(event.creation_fee)
        market.creator = event.creator.lower()
        market.status = MarketStatus.ACTIVE.value
        market.outcome = None
        market.resolver = None
        market.resolved_at = None
        market.created_at = event.position.block_timestamp
        if is_new:
            market.total_yes = 0
            market.total_no = 0
            market.total_pool = 0
        _stamp(market, event.position)
        if is_new:
            logger.info("Market {} created by {}", event.market_id, market.creator)
        return ApplyOutcome.APPLIED

    def _apply_resolved(self, event: MarketResolved) -> ApplyOutcome:
        market = self._markets.get(event.market_id, for_update=True)
        if market is None:
            logger.warning(
                "MarketResolved for unknown market {} ({}); holding event",
                event.market_id,
                event.position.event_key,
            )
            return ApplyOutcome.HELD
        if _is_stale(market, event.position):
            return ApplyOutcome.DUPLICATE

        market.status = MarketStatus.RESOLVED.value
        market.outcome = bool(event.outcome)
        market.resolver = event.resolver.lower()
        market.resolved_at = event.position.block_timestamp
        _stamp(market, event.position)
        logger.info("Market {} resolved outcome={}", event.market_id, "YES" if event.outcome else "NO")
        return ApplyOutcome.APPLIED

    def refresh_totals(self, market_id: int) -> bool:
        """Recompute pool totals from participant rows; returns True when they changed."""

        market = self._markets.get(market_id, for_update=True)
        if market is None:
            return False
        total_yes, total_no, _ = self._participants.market_totals(market_id)
        return self._markets.set_totals(market, total_yes=total_yes, total_no=total_no)


__all__ = ["DEFAULT_CATEGORY", "MarketStateProjector"]
