"""Repository abstractions for database interactions."""

from .ledger_repository import LedgerRepository
from .market_repository import MarketRepository
from .participant_repository import ParticipantRepository

__all__ = [
    "LedgerRepository",
    "MarketRepository",
    "ParticipantRepository",
]
