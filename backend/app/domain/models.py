"""Typed domain representations shared by ingestion, persistence, and APIs."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Union


@dataclass(frozen=True, slots=True)
class RawLog:
    """Undecoded ``eth_getLogs`` entry as returned by the log source."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    transaction_hash: str
    log_index: int

    @classmethod
    def from_rpc(cls, payload: dict[str, Any]) -> "RawLog":
        return cls(
            address=str(payload["address"]).lower(),
            topics=tuple(str(topic).lower() for topic in payload.get("topics") or ()),
            data=str(payload.get("data") or "0x"),
            block_number=_to_int(payload["blockNumber"]),
            transaction_hash=str(payload["transactionHash"]).lower(),
            log_index=_to_int(payload["logIndex"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "topics": list(self.topics),
            "data": self.data,
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "logIndex": self.log_index,
        }


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text, 16) if text.lower().startswith("0x") else int(text)


@dataclass(frozen=True, slots=True)
class LogPosition:
    """Where an event sits on chain; ``block_timestamp`` is filled after decoding."""

    block_number: int
    log_index: int
    tx_hash: str
    block_timestamp: datetime | None = None

    @property
    def event_key(self) -> str:
        return f"{self.tx_hash}:{self.log_index}"

    @property
    def ordering(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True, slots=True)
class MarketCreated:
    position: LogPosition
    contract_address: str
    market_id: int
    creator: str
    question: str
    description: str
    source: str
    end_time: int
    creation_fee: int


@dataclass(frozen=True, slots=True)
class SharesBought:
    position: LogPosition
    contract_address: str
    market_id: int
    buyer: str
    side: bool
    amount: int


@dataclass(frozen=True, slots=True)
class MarketResolved:
    position: LogPosition
    contract_address: str
    market_id: int
    resolver: str
    outcome: bool


@dataclass(frozen=True, slots=True)
class WinningsClaimed:
    position: LogPosition
    contract_address: str
    market_id: int
    claimant: str
    amount: int


@dataclass(frozen=True, slots=True)
class CreatorFeeClaimed:
    position: LogPosition
    contract_address: str
    market_id: int
    creator: str
    amount: int


@dataclass(frozen=True, slots=True)
class Unrecognized:
    position: LogPosition
    contract_address: str
    topic0: str | None


@dataclass(frozen=True, slots=True)
class Malformed:
    position: LogPosition
    contract_address: str
    event_name: str
    reason: str
    raw: RawLog


LedgerEvent = Union[MarketCreated, SharesBought, MarketResolved, WinningsClaimed, CreatorFeeClaimed]
DecodedEvent = Union[
    MarketCreated,
    SharesBought,
    MarketResolved,
    WinningsClaimed,
    CreatorFeeClaimed,
    Unrecognized,
    Malformed,
]


def with_block_timestamp(event: DecodedEvent, timestamp: datetime) -> DecodedEvent:
    return replace(event, position=replace(event.position, block_timestamp=timestamp))


def event_actor(event: LedgerEvent) -> str:
    """Address the event is attributed to (buyer, creator, resolver or claimant)."""

    if isinstance(event, SharesBought):
        return event.buyer
    if isinstance(event, MarketResolved):
        return event.resolver
    if isinstance(event, WinningsClaimed):
        return event.claimant
    return event.creator


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    HELD = "held"
