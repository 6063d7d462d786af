"""Hand-built CELO logs and a scripted log source for tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from eth_abi import encode

from app.core.errors import RangeTooLarge, TransientSourceError
from app.domain import LogPosition, RawLog, SharesBought
from ingestion.decoder import SPECS_BY_NAME

CORE = "0x35f61008878b85b4239c1ef714989b236757a283"
CLAIMS = "0x2fdd27190d3a7eb376f06d391d7e0f4ff7811350"
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20
CONTRACTS = {"core": CORE, "claims": CLAIMS}

BASE_TIMESTAMP = 1_700_000_000


def tx(n: int) -> str:
    return "0x" + f"{n:064x}"


def block_time(block_number: int) -> datetime:
    return datetime.fromtimestamp(BASE_TIMESTAMP + block_number * 5, tz=timezone.utc)


def uint_topic(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def make_log(
    name: str,
    market_id: int,
    actor: str,
    data_values: list[Any],
    *,
    block: int,
    tx_hash: str,
    log_index: int = 0,
    address: str | None = None,
) -> RawLog:
    spec = SPECS_BY_NAME[name]
    data = "0x" + encode(list(spec.data), list(data_values)).hex()
    default_address = CORE if spec.contract == "core" else CLAIMS
    return RawLog(
        address=(address or default_address).lower(),
        topics=(spec.topic0, uint_topic(market_id), address_topic(actor)),
        data=data,
        block_number=block,
        transaction_hash=tx_hash,
        log_index=log_index,
    )


def market_created_log(
    market_id: int,
    creator: str = ALICE,
    *,
    block: int,
    tx_hash: str,
    log_index: int = 0,
    question: str = "Will CELO close above $1?",
    description: str = "Resolves on the listed source",
    source: str = "https://example.org/price",
    end_time: int = 1_800_000_000,
    creation_fee: int = 10**18,
) -> RawLog:
    return make_log(
        "MarketCreated",
        market_id,
        creator,
        [question, description, source, end_time, creation_fee],
        block=block,
        tx_hash=tx_hash,
        log_index=log_index,
    )


def shares_bought_log(
    market_id: int, buyer: str, side: bool, amount: int, *, block: int, tx_hash: str, log_index: int = 0
) -> RawLog:
    return make_log(
        "SharesBought", market_id, buyer, [side, amount], block=block, tx_hash=tx_hash, log_index=log_index
    )


def market_resolved_log(
    market_id: int, resolver: str, outcome: bool, *, block: int, tx_hash: str, log_index: int = 0
) -> RawLog:
    return make_log(
        "MarketResolved", market_id, resolver, [outcome], block=block, tx_hash=tx_hash, log_index=log_index
    )


def winnings_claimed_log(
    market_id: int, claimant: str, amount: int, *, block: int, tx_hash: str, log_index: int = 0
) -> RawLog:
    return make_log(
        "WinningsClaimed", market_id, claimant, [amount], block=block, tx_hash=tx_hash, log_index=log_index
    )


def purchase(
    market_id: int,
    buyer: str,
    side: bool,
    amount: int,
    *,
    tx_hash: str,
    log_index: int = 0,
    block: int = 100,
) -> SharesBought:
    return SharesBought(
        position=LogPosition(
            block_number=block, log_index=log_index, tx_hash=tx_hash, block_timestamp=block_time(block)
        ),
        contract_address=CORE,
        market_id=market_id,
        buyer=buyer,
        side=side,
        amount=amount,
    )


class FakeLogSource:
    """Scripted stand-in for ``ChainRpcClient``."""

    def __init__(
        self,
        logs: list[RawLog] | None = None,
        *,
        head: int = 0,
        max_range: int | None = None,
        transient_failures: int = 0,
        deployment_block: int = 0,
    ) -> None:
        self.logs = list(logs or [])
        self.head = head
        self.max_range = max_range
        self.transient_failures = transient_failures
        self.deployment_block = deployment_block
        self.get_logs_calls: list[tuple[str, str, int, int]] = []

    def get_block_number(self) -> int:
        return self.head

    def get_logs(self, address: str, topic0: str, from_block: int, to_block: int) -> list[RawLog]:
        self.get_logs_calls.append((address, topic0, from_block, to_block))
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientSourceError("HTTP 503")
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            raise RangeTooLarge(from_block, to_block)
        return [
            log
            for log in self.logs
            if log.address == address
            and log.topics
            and log.topics[0] == topic0
            and from_block <= log.block_number <= to_block
        ]

    def get_block_timestamp(self, block_number: int) -> int:
        return BASE_TIMESTAMP + block_number * 5

    def get_block_datetime(self, block_number: int) -> datetime:
        return block_time(block_number)

    def find_deployment_block(self, address: str, *, latest: int | None = None) -> int:
        return self.deployment_block

    def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        logs = [log.to_dict() for log in self.logs if log.transaction_hash == tx_hash]
        if not logs:
            return None
        return {
            "transactionHash": tx_hash,
            "blockNumber": hex(logs[0]["blockNumber"]),
            "status": "0x1",
            "logs": logs,
        }

    def close(self) -> None:
        pass
