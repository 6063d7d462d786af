"""Incremental chain poller that feeds decoded events into the ledger."""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.core.errors import RangeTooLarge, TransientSourceError
from app.domain import RawLog
from app.models import utcnow
from app.repositories import LedgerRepository
from app.services.aggregator import KeyLockRegistry, participant_locks
from app.services.event_applier import BatchResult
from ingestion.client import ChainRpcClient
from ingestion.decoder import EventDecoder
from ingestion.service import apply_events, session_scope, stamp_block_times


@dataclass(slots=True)
class PollerHealth:
    consecutive_failures: int = 0
    last_error: str | None = None
    last_success_at: datetime | None = None
    last_processed_block: int | None = None
    chain_head: int | None = None
    unhealthy_after: int = 5

    @property
    def healthy(self) -> bool:
        return self.consecutive_failures < self.unhealthy_after

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.last_error = None
        self.last_success_at = utcnow()

    def record_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        self.last_error = f"{exc.__class__.__name__}: {exc}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at,
            "last_processed_block": self.last_processed_block,
            "chain_head": self.chain_head,
        }


@dataclass(slots=True)
class PollResult:
    skipped: bool = False
    from_block: int | None = None
    to_block: int | None = None
    windows: int = 0
    logs: int = 0
    batch: BatchResult = field(default_factory=BatchResult)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "skipped": self.skipped,
            "from_block": self.from_block,
            "to_block": self.to_block,
            "windows": self.windows,
            "logs": self.logs,
            "error": self.error,
            **self.batch.to_dict(),
        }


def block_windows(start: int, end: int, size: int) -> Iterator[tuple[int, int]]:
    """Split the inclusive range ``[start, end]`` into windows of at most ``size`` blocks."""

    while start <= end:
        stop = min(end, start + size - 1)
        yield start, stop
        start = stop + 1


class EventPoller:
    """Advance the sync cursor over confirmed blocks, one committed window at a time.

    ``poll`` is non-reentrant: an overlapping call returns a skipped result
    immediately instead of racing the in-flight cycle.
    """

    def __init__(
        self,
        client: ChainRpcClient,
        *,
        decoder: EventDecoder | None = None,
        settings: Settings | None = None,
        session_factory: sessionmaker[Session] | None = None,
        locks: KeyLockRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client
        self.decoder = decoder or EventDecoder(self.settings.tracked_contracts)
        self._session_factory = session_factory
        self._locks = locks or participant_locks
        self._sleep = sleep
        self._guard = threading.Lock()
        self._bootstrap_cursor: int | None = None
        self.health = PollerHealth(unhealthy_after=self.settings.unhealthy_after_failures)

    def poll(self, stop_event: threading.Event | None = None) -> PollResult:
        if not self._guard.acquire(blocking=False):
            logger.debug("Poll already in progress; skipping overlapping cycle")
            return PollResult(skipped=True)
        try:
            return self._poll_once(stop_event)
        finally:
            self._guard.release()

    # ------------------------------------------------------------------
    # Cycle

    def _poll_once(self, stop_event: threading.Event | None) -> PollResult:
        result = PollResult()
        try:
            cursor = self._current_cursor()
            chain_height = self.client.get_block_number()
            head = chain_height - self.settings.confirmation_lag
            self.health.chain_head = chain_height
            self.health.last_processed_block = cursor
            if head <= cursor:
                self.health.record_success()
                return result

            result.from_block = cursor + 1
            for window_start, window_end in block_windows(cursor + 1, head, self.settings.max_block_range):
                if stop_event is not None and stop_event.is_set():
                    logger.info("Stop requested; leaving cursor at block {}", cursor)
                    break
                raw_logs = self.fetch_window(window_start, window_end)
                decoded = stamp_block_times(self.decoder.decode_many(raw_logs), self.client)
                batch = apply_events(
                    decoded,
                    session_factory=self._session_factory,
                    locks=self._locks,
                    attempts=self.settings.persistence_retry_attempts,
                    after_apply=lambda session, end=window_end: LedgerRepository(session).write_cursor(end),
                )
                cursor = window_end
                self._bootstrap_cursor = None
                self.health.last_processed_block = cursor
                result.to_block = window_end
                result.windows += 1
                result.logs += len(raw_logs)
                result.batch.merge(batch)
                logger.info(
                    "Processed blocks {}-{}: logs={} applied={} duplicates={} held={} malformed={}",
                    window_start,
                    window_end,
                    len(raw_logs),
                    batch.applied,
                    batch.duplicates,
                    batch.held,
                    batch.malformed,
                )
            self.health.record_success()
        except Exception as exc:  # noqa: BLE001
            self.health.record_failure(exc)
            result.error = str(exc)
            if isinstance(exc, TransientSourceError):
                logger.warning(
                    "Poll cycle failed (transient, failures={}): {}",
                    self.health.consecutive_failures,
                    exc,
                )
            else:
                logger.exception("Poll cycle failed (failures={})", self.health.consecutive_failures)
            if not self.health.healthy:
                logger.error(
                    "Event poller unhealthy after {} consecutive failures",
                    self.health.consecutive_failures,
                )
        return result

    def _current_cursor(self) -> int:
        with session_scope(self._session_factory) as session:
            stored = LedgerRepository(session).read_cursor()
        if stored is not None:
            return stored
        if self._bootstrap_cursor is None:
            if self.settings.start_block is not None:
                start = self.settings.start_block
            else:
                start = self.client.find_deployment_block(self.settings.core_contract_address)
            self._bootstrap_cursor = start - 1
            logger.info("No sync cursor stored; starting from block {}", start)
        return self._bootstrap_cursor

    # ------------------------------------------------------------------
    # Fetching

    def fetch_window(self, start: int, end: int) -> list[RawLog]:
        seen: dict[tuple[str, int], RawLog] = {}
        for address, topic0, _name in self.decoder.tracked_filters():
            for raw in self._get_logs_bisecting(address, topic0, start, end):
                seen.setdefault((raw.transaction_hash, raw.log_index), raw)
        return sorted(seen.values(), key=lambda raw: (raw.block_number, raw.log_index))

    def _get_logs_bisecting(self, address: str, topic0: str, start: int, end: int) -> list[RawLog]:
        try:
            return self._get_logs_with_backoff(address, topic0, start, end)
        except RangeTooLarge as exc:
            if start >= end:
                raise TransientSourceError(
                    f"RPC rejected single-block query for block {start}: {exc}"
                ) from exc
            mid = (start + end) // 2
            logger.warning("Range {}-{} too large; splitting at {}", start, end, mid)
            return self._get_logs_bisecting(address, topic0, start, mid) + self._get_logs_bisecting(
                address, topic0, mid + 1, end
            )

    def _get_logs_with_backoff(self, address: str, topic0: str, start: int, end: int) -> list[RawLog]:
        attempts = self.settings.rpc_retry_attempts
        schedule = self.settings.rpc_retry_backoff_schedule
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.client.get_logs(address, topic0, start, end)
            except RangeTooLarge:
                raise
            except TransientSourceError as exc:
                if attempt >= attempts:
                    raise
                base = schedule[min(attempt - 1, len(schedule) - 1)]
                delay = min(base + random.uniform(0.0, base * 0.25), self.settings.rpc_retry_backoff_cap_seconds)
                logger.warning(
                    "eth_getLogs {}-{} transient failure attempt={} retry_in={:.2f}s: {}",
                    start,
                    end,
                    attempt,
                    delay,
                    exc,
                )
                self._sleep(delay)


__all__ = ["EventPoller", "PollResult", "PollerHealth", "block_windows"]
