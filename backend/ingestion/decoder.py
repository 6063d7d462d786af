"""Decode raw prediction-market logs into typed ledger events.

Decoding is pure: the same ``RawLog`` always yields the same event. Unknown
signatures come back as ``Unrecognized`` and logs that match a tracked
signature but cannot be parsed come back as ``Malformed``, so a single bad log
never aborts a batch.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from loguru import logger
from web3 import Web3

from app.core.errors import MalformedEvent
from app.domain import (
    CreatorFeeClaimed,
    DecodedEvent,
    LogPosition,
    Malformed,
    MarketCreated,
    MarketResolved,
    RawLog,
    SharesBought,
    Unrecognized,
    WinningsClaimed,
)

_DYNAMIC_TYPES = {"string", "bytes"}


@dataclass(frozen=True, slots=True)
class EventSpec:
    name: str
    contract: str
    indexed: tuple[str, ...]
    data: tuple[str, ...]
    build: Callable[..., Any]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.indexed + self.data)})"

    @property
    def topic0(self) -> str:
        return "0x" + bytes(Web3.keccak(text=self.signature)).hex()

    @property
    def is_static(self) -> bool:
        return not any(kind in _DYNAMIC_TYPES for kind in self.data)


def _build_market_created(position, contract, indexed, data):
    market_id, creator = indexed
    question, description, source, end_time, creation_fee = data
    return MarketCreated(
        position=position,
        contract_address=contract,
        market_id=market_id,
        creator=creator,
        question=question,
        description=description,
        source=source,
        end_time=end_time,
        creation_fee=creation_fee,
    )


def _build_shares_bought(position, contract, indexed, data):
    market_id, buyer = indexed
    side, amount = data
    return SharesBought(
        position=position,
        contract_address=contract,
        market_id=market_id,
        buyer=buyer,
        side=bool(side),
        amount=amount,
    )


def _build_market_resolved(position, contract, indexed, data):
    market_id, resolver = indexed
    (outcome,) = data
    return MarketResolved(
        position=position,
        contract_address=contract,
        market_id=market_id,
        resolver=resolver,
        outcome=bool(outcome),
    )


def _build_winnings_claimed(position, contract, indexed, data):
    market_id, claimant = indexed
    (amount,) = data
    return WinningsClaimed(
        position=position,
        contract_address=contract,
        market_id=market_id,
        claimant=claimant,
        amount=amount,
    )


def _build_creator_fee_claimed(position, contract, indexed, data):
    market_id, creator = indexed
    (amount,) = data
    return CreatorFeeClaimed(
        position=position,
        contract_address=contract,
        market_id=market_id,
        creator=creator,
        amount=amount,
    )


EVENT_SPECS: tuple[EventSpec, ...] = (
    EventSpec(
        name="MarketCreated",
        contract="core",
        indexed=("uint256", "address"),
        data=("string", "string", "string", "uint256", "uint256"),
        build=_build_market_created,
    ),
    EventSpec(
        name="SharesBought",
        contract="core",
        indexed=("uint256", "address"),
        data=("bool", "uint256"),
        build=_build_shares_bought,
    ),
    EventSpec(
        name="MarketResolved",
        contract="core",
        indexed=("uint256", "address"),
        data=("bool",),
        build=_build_market_resolved,
    ),
    EventSpec(
        name="WinningsClaimed",
        contract="claims",
        indexed=("uint256", "address"),
        data=("uint256",),
        build=_build_winnings_claimed,
    ),
    EventSpec(
        name="CreatorFeeClaimed",
        contract="claims",
        indexed=("uint256", "address"),
        data=("uint256",),
        build=_build_creator_fee_claimed,
    ),
)

SPECS_BY_TOPIC: dict[str, EventSpec] = {spec.topic0: spec for spec in EVENT_SPECS}
SPECS_BY_NAME: dict[str, EventSpec] = {spec.name: spec for spec in EVENT_SPECS}


def _decode_topic(topic: str, kind: str) -> Any:
    if not isinstance(topic, str) or not topic.startswith("0x") or len(topic) != 66:
        raise MalformedEvent(f"Indexed topic is not a 32-byte word: {topic!r}")
    try:
        word = int(topic[2:], 16)
    except ValueError as exc:
        raise MalformedEvent(f"Indexed topic is not hexadecimal: {topic!r}") from exc
    if kind == "address":
        if word >> 160:
            raise MalformedEvent(f"Address topic has non-zero padding: {topic}")
        return "0x" + topic[-40:].lower()
    if kind == "uint256":
        return word
    raise MalformedEvent(f"Unsupported indexed type {kind}")


def _decode_payload(spec: EventSpec, data: str) -> tuple[Any, ...]:
    hex_body = data[2:] if data.startswith("0x") else data
    try:
        payload = bytes.fromhex(hex_body)
    except ValueError as exc:
        raise MalformedEvent("Log data is not valid hex") from exc
    if spec.is_static and len(payload) != 32 * len(spec.data):
        raise MalformedEvent(
            f"{spec.name} expects {32 * len(spec.data)} data bytes, got {len(payload)}"
        )
    try:
        return tuple(abi_decode(list(spec.data), payload))
    except (DecodingError, ValueError, OverflowError) as exc:
        raise MalformedEvent(f"{spec.name} payload rejected: {exc}") from exc


class EventDecoder:
    """Turn ``RawLog`` entries into ledger events for the tracked contracts."""

    def __init__(self, contracts: Mapping[str, str] | None = None) -> None:
        # role -> lowercase address; ``None`` accepts every emitter
        self._contracts = (
            {role: address.lower() for role, address in contracts.items()}
            if contracts is not None
            else None
        )

    def tracked_filters(self) -> list[tuple[str, str, str]]:
        """Return ``(contract address, topic0, event name)`` for every tracked event."""

        if self._contracts is None:
            return []
        filters: list[tuple[str, str, str]] = []
        for spec in EVENT_SPECS:
            address = self._contracts.get(spec.contract)
            if address:
                filters.append((address, spec.topic0, spec.name))
        return filters

    def _emitter_allowed(self, spec: EventSpec, address: str) -> bool:
        if self._contracts is None:
            return True
        return self._contracts.get(spec.contract) == address.lower()

    def decode(self, raw: RawLog) -> DecodedEvent:
        position = LogPosition(
            block_number=raw.block_number,
            log_index=raw.log_index,
            tx_hash=raw.transaction_hash.lower(),
        )
        contract = raw.address.lower()
        topic0 = raw.topics[0].lower() if raw.topics else None
        spec = SPECS_BY_TOPIC.get(topic0) if topic0 else None

        if spec is None or not self._emitter_allowed(spec, contract):
            logger.debug(
                "Ignoring unrecognized log {}:{} topic0={}",
                position.tx_hash,
                position.log_index,
                topic0,
            )
            return Unrecognized(position=position, contract_address=contract, topic0=topic0)

        try:
            indexed_topics = raw.topics[1:]
            if len(indexed_topics) != len(spec.indexed):
                raise MalformedEvent(
                    f"{spec.name} expects {len(spec.indexed)} indexed topics, got {len(indexed_topics)}"
                )
            indexed = tuple(
                _decode_topic(topic, kind) for topic, kind in zip(indexed_topics, spec.indexed)
            )
            data = _decode_payload(spec, raw.data)
        except MalformedEvent as exc:
            logger.warning(
                "Malformed {} log {}:{} at block {}: {}",
                spec.name,
                position.tx_hash,
                position.log_index,
                position.block_number,
                exc,
            )
            return Malformed(
                position=position,
                contract_address=contract,
                event_name=spec.name,
                reason=str(exc),
                raw=raw,
            )
        return spec.build(position, contract, indexed, data)

    def decode_many(self, raws: Iterable[RawLog]) -> list[DecodedEvent]:
        return [self.decode(raw) for raw in raws]


def decode_log(raw: RawLog, contracts: Mapping[str, str] | None = None) -> DecodedEvent:
    return EventDecoder(contracts).decode(raw)


__all__ = [
    "EVENT_SPECS",
    "EventDecoder",
    "EventSpec",
    "SPECS_BY_NAME",
    "SPECS_BY_TOPIC",
    "decode_log",
]
