from __future__ import annotations

import itertools
import random
import time
from collections import OrderedDict
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

import httpx
from loguru import logger

from app.core.config import settings
from app.core.errors import LedgerError, RangeTooLarge, TransientSourceError
from app.domain import RawLog

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_RANGE_ERROR_MARKERS = (
    "block range",
    "range too large",
    "query returned more than",
    "response size exceeded",
    "too many blocks",
    "exceed maximum block range",
    "query timeout",
)
_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "limit exceeded")


def _to_hex(value: int) -> str:
    return hex(value)


def _from_hex(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


class ChainRpcClient:
    """JSON-RPC log source for the CELO chain.

    Every call is classified into the ledger error taxonomy: throttling,
    timeouts and 5xx responses become ``TransientSourceError`` and are retried
    with exponential backoff; ``eth_getLogs`` windows the node refuses become
    ``RangeTooLarge`` and are left to the caller to bisect.
    """

    def __init__(
        self,
        *,
        rpc_url: str | None = None,
        timeout: float | None = None,
        retry_attempts: int | None = None,
        backoff_schedule: Sequence[float] | None = None,
        backoff_cap: float | None = None,
        timestamp_cache_size: int | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rpc_url = rpc_url or str(settings.rpc_url)
        self.timeout = timeout or settings.rpc_timeout_seconds
        self.retry_attempts = retry_attempts or settings.rpc_retry_attempts
        self.backoff_schedule = tuple(backoff_schedule or settings.rpc_retry_backoff_schedule)
        self.backoff_cap = backoff_cap or settings.rpc_retry_backoff_cap_seconds
        self._sleep = sleep
        self._request_ids = itertools.count(1)
        self.timestamp_cache_size = timestamp_cache_size or settings.block_timestamp_cache_size
        self._timestamp_cache: OrderedDict[int, int] = OrderedDict()
        self.client = httpx.Client(timeout=self.timeout, transport=transport)

    # ------------------------------------------------------------------
    # Transport

    def _retry_sleep_seconds(self, attempt: int) -> float:
        index = min(max(attempt - 1, 0), len(self.backoff_schedule) - 1)
        backoff = min(self.backoff_schedule[index], self.backoff_cap)
        jitter = random.uniform(0.0, backoff * 0.25)
        return min(backoff + jitter, self.backoff_cap)

    def _post(self, method: str, params: list[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        try:
            response = self.client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientSourceError(f"{method} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientSourceError(f"{method} transport error: {exc}") from exc

        if response.status_code in _RETRYABLE_STATUS_CODES:
            raise TransientSourceError(f"{method} returned HTTP {response.status_code}")
        if response.status_code == 413:
            raise LedgerError(f"{method} request entity too large")
        response.raise_for_status()

        body = response.json()
        error = body.get("error") if isinstance(body, dict) else None
        if error:
            code = error.get("code")
            message = str(error.get("message") or "")
            lowered = message.lower()
            if any(marker in lowered for marker in _RATE_LIMIT_MARKERS) and "block" not in lowered:
                raise TransientSourceError(f"{method} throttled: {message}")
            if code in (-32603, -32000) and "timeout" in lowered:
                raise TransientSourceError(f"{method} timed out upstream: {message}")
            raise LedgerError(f"{method} failed code={code}: {message}")
        return body.get("result") if isinstance(body, dict) else None

    def call(self, method: str, params: list[Any]) -> Any:
        """Issue a JSON-RPC call, retrying transient failures with backoff."""

        attempt = 0
        while True:
            attempt += 1
            try:
                return self._post(method, params)
            except TransientSourceError as exc:
                if attempt >= self.retry_attempts:
                    logger.error(
                        "RPC {} failed after {} attempts: {}", method, attempt, exc
                    )
                    raise
                delay = self._retry_sleep_seconds(attempt)
                logger.warning(
                    "RPC {} transient failure attempt={} retry_in={:.2f}s: {}",
                    method,
                    attempt,
                    delay,
                    exc,
                )
                self._sleep(delay)

    # ------------------------------------------------------------------
    # Log source

    def get_block_number(self) -> int:
        return _from_hex(self.call("eth_blockNumber", []))

    def get_logs(
        self, address: str, topic0: str, from_block: int, to_block: int
    ) -> list[RawLog]:
        """Fetch logs for one contract/signature pair over an inclusive range.

        No retries happen here: a timeout or a refused window is raised as
        ``RangeTooLarge`` so the poller can split the range.
        """

        params = [
            {
                "address": address,
                "topics": [topic0],
                "fromBlock": _to_hex(from_block),
                "toBlock": _to_hex(to_block),
            }
        ]
        logger.debug("RPC eth_getLogs {} {} blocks {}-{}", address, topic0[:10], from_block, to_block)
        try:
            result = self._post("eth_getLogs", params)
        except TransientSourceError as exc:
            if "timed out" in str(exc):
                raise RangeTooLarge(from_block, to_block, str(exc)) from exc
            raise
        except LedgerError as exc:
            lowered = str(exc).lower()
            if "-32005" in lowered or any(marker in lowered for marker in _RANGE_ERROR_MARKERS):
                raise RangeTooLarge(from_block, to_block, str(exc)) from exc
            raise
        return [RawLog.from_rpc(entry) for entry in result or []]

    def get_block_timestamp(self, block_number: int) -> int:
        cached = self._timestamp_cache.get(block_number)
        if cached is not None:
            self._timestamp_cache.move_to_end(block_number)
            return cached
        block = self.call("eth_getBlockByNumber", [_to_hex(block_number), False])
        if not block:
            raise TransientSourceError(f"Block {block_number} not available yet")
        timestamp = _from_hex(block["timestamp"])
        self._timestamp_cache[block_number] = timestamp
        # Least recently used first; the poller only moves forward.
        while len(self._timestamp_cache) > self.timestamp_cache_size:
            self._timestamp_cache.popitem(last=False)
        return timestamp

    def get_block_datetime(self, block_number: int) -> datetime:
        return datetime.fromtimestamp(self.get_block_timestamp(block_number), tz=timezone.utc)

    def get_code(self, address: str, block_number: int | None = None) -> str:
        block = "latest" if block_number is None else _to_hex(block_number)
        return str(self.call("eth_getCode", [address, block]) or "0x")

    def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return self.call("eth_getTransactionReceipt", [tx_hash])

    def find_deployment_block(self, address: str, *, latest: int | None = None) -> int:
        """Binary-search the first block at which ``address`` has code."""

        high = latest if latest is not None else self.get_block_number()
        if self.get_code(address, high) in ("0x", ""):
            raise LedgerError(f"No contract code at {address} as of block {high}")
        low = 0
        while low < high:
            mid = (low + high) // 2
            if self.get_code(address, mid) in ("0x", ""):
                low = mid + 1
            else:
                high = mid
        logger.info("Contract {} deployed at block {}", address, low)
        return low

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "ChainRpcClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
