"""Composition root for the ingestion workers.

Run ``python -m pipelines.run_ingestion`` to poll the chain until interrupted,
or pass ``--once`` for a single cycle (useful from cron).
"""

from __future__ import annotations

import argparse
import json
import signal
import threading
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.db import init_db
from ingestion.client import ChainRpcClient
from pipelines.poller import EventPoller
from pipelines.reconciliation import ReconciliationJob
from pipelines.worker import PeriodicWorker


@dataclass(slots=True)
class LedgerRuntime:
    """Owns the RPC client, the poller, reconciliation, and their workers."""

    settings: Settings
    client: ChainRpcClient
    poller: EventPoller
    reconciliation: ReconciliationJob
    workers: list[PeriodicWorker] = field(default_factory=list)

    def start(self) -> None:
        for worker in self.workers:
            worker.start()

    def stop(self, timeout: float | None = 30.0) -> None:
        for worker in self.workers:
            worker.stop(timeout)
        self.client.close()

    def status(self) -> dict[str, Any]:
        return {
            "poller": self.poller.health.to_dict(),
            "workers": [worker.to_dict() for worker in self.workers],
        }


def build_runtime(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    client: ChainRpcClient | None = None,
    with_reconciliation: bool = True,
) -> LedgerRuntime:
    settings = settings or get_settings()
    client = client or ChainRpcClient(rpc_url=str(settings.rpc_url), timeout=settings.rpc_timeout_seconds)
    poller = EventPoller(client, settings=settings, session_factory=session_factory)
    reconciliation = ReconciliationJob(settings, session_factory=session_factory)
    workers = [PeriodicWorker("event-poller", poller.poll, settings.poll_interval_seconds)]
    if with_reconciliation:
        workers.append(
            PeriodicWorker(
                "participant-reconciliation",
                reconciliation.run,
                settings.reconciliation_interval_seconds,
                run_immediately=False,
            )
        )
    return LedgerRuntime(
        settings=settings,
        client=client,
        poller=poller,
        reconciliation=reconciliation,
        workers=workers,
    )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Poll CELO prediction-market events into the ledger")
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    parser.add_argument(
        "--no-reconcile",
        action="store_true",
        help="Do not schedule the duplicate-participant reconciliation worker",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    settings = get_settings()
    init_db()
    runtime = build_runtime(settings, with_reconciliation=not args.no_reconcile)

    if args.once:
        try:
            result = runtime.poller.poll()
        finally:
            runtime.client.close()
        logger.info("Poll result: {}", json.dumps(result.to_dict(), default=str))
        return

    shutdown = threading.Event()

    def _request_shutdown(signum, _frame) -> None:
        logger.info("Received signal {}; stopping workers", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)

    runtime.start()
    try:
        shutdown.wait()
    finally:
        runtime.stop()


if __name__ == "__main__":
    main()
