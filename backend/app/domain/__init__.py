"""Domain models representing decoded chain events."""

from .models import (
    ApplyOutcome,
    CreatorFeeClaimed,
    DecodedEvent,
    LedgerEvent,
    LogPosition,
    Malformed,
    MarketCreated,
    MarketResolved,
    RawLog,
    SharesBought,
    Unrecognized,
    WinningsClaimed,
    event_actor,
    with_block_timestamp,
)

__all__ = [
    "ApplyOutcome",
    "CreatorFeeClaimed",
    "DecodedEvent",
    "LedgerEvent",
    "LogPosition",
    "Malformed",
    "MarketCreated",
    "MarketResolved",
    "RawLog",
    "SharesBought",
    "Unrecognized",
    "WinningsClaimed",
    "event_actor",
    "with_block_timestamp",
]
