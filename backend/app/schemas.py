from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _amount_to_str(value: Any) -> str:
    if value is None:
        return "0"
    if isinstance(value, bool):
        raise ValueError("Amounts must be integers")
    return str(int(value))


class MarketBase(BaseModel):
    market_id: int
    question: str
    description: str | None = None
    category: str
    image: str | None = None
    source: str | None = None
    end_time: int
    status: str
    outcome: bool | None = None
    creator: str
    created_at: datetime | None = None


class Market(MarketBase):
    """Amounts are decimal strings in the token's smallest unit."""

    total_pool: str
    total_yes: str
    total_no: str
    creation_fee: str = "0"
    resolver: str | None = None
    resolved_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("total_pool", "total_yes", "total_no", "creation_fee", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> str:
        return _amount_to_str(value)


class MarketList(BaseModel):
    total: int
    page: int
    limit: int
    items: list[Market]


class Participant(BaseModel):
    market_id: int
    address: str
    yes_shares: str
    no_shares: str
    total_investment: str
    first_purchase_at: datetime | None = None
    last_purchase_at: datetime | None = None
    processed_tx_hashes: list[str] = Field(default_factory=list)
    frozen: bool = False

    model_config = {"from_attributes": True}

    @field_validator("yes_shares", "no_shares", "total_investment", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> str:
        return _amount_to_str(value)


class ParticipantList(BaseModel):
    market_id: int
    total: int
    items: list[Participant]


class MarketStats(BaseModel):
    market_id: int
    total_pool: str
    total_yes: str
    total_no: str
    participant_count: int
    purchase_count: int
    claimed_total: str

    @field_validator("total_pool", "total_yes", "total_no", "claimed_total", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> str:
        return _amount_to_str(value)


class UserPosition(Participant):
    market_question: str | None = None
    market_status: str | None = None
    market_outcome: bool | None = None


class UserPositions(BaseModel):
    address: str
    total_investment: str
    market_count: int
    items: list[UserPosition]


class WorkerStatus(BaseModel):
    name: str
    running: bool
    runs: int
    last_error: str | None = None


class SyncStatus(BaseModel):
    last_processed_block: int | None = None
    cursor_updated_at: datetime | None = None
    chain_head: int | None = None
    healthy: bool
    consecutive_failures: int = 0
    last_error: str | None = None
    last_success_at: datetime | None = None
    events_recorded: int = 0
    quarantined_pending: int = 0
    frozen_participants: int = 0
    workers: list[WorkerStatus] = Field(default_factory=list)


class TransactionIngest(BaseModel):
    tx_hash: str
    found: bool
    block_number: int | None = None
    pending_confirmation: bool = False
    logs_seen: int = 0
    applied: int = 0
    duplicates: int = 0
    held: int = 0
    recorded: int = 0
    unrecognized: int = 0
    malformed: int = 0
    markets_touched: list[int] = Field(default_factory=list)
