import argparse

from loguru import logger

from app.core.config import get_settings
from app.db import init_db
from app.services.event_applier import BatchResult
from ingestion.client import ChainRpcClient
from ingestion.service import apply_events, stamp_block_times
from pipelines.poller import EventPoller, block_windows


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Re-ingest a historical block range; already-applied events are skipped"
    )
    parser.add_argument("--from-block", type=int, required=True, help="First block to scan (inclusive)")
    parser.add_argument(
        "--to-block",
        type=int,
        default=None,
        help="Last block to scan (inclusive); defaults to the confirmed chain head",
    )
    parser.add_argument(
        "--window",
        type=int,
        default=None,
        help="Override the maximum block range requested per eth_getLogs call",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()

    totals = BatchResult()
    with ChainRpcClient() as client:
        poller = EventPoller(client, settings=settings)
        to_block = args.to_block
        if to_block is None:
            to_block = client.get_block_number() - settings.confirmation_lag
        window = args.window or settings.max_block_range
        for start, end in block_windows(args.from_block, to_block, window):
            raw_logs = poller.fetch_window(start, end)
            decoded = stamp_block_times(poller.decoder.decode_many(raw_logs), client)
            result = apply_events(decoded)
            totals.merge(result)
            logger.info(
                "Backfilled blocks {}-{}: logs={} applied={} duplicates={}",
                start,
                end,
                len(raw_logs),
                result.applied,
                result.duplicates,
            )

    logger.info("Backfill finished: {}", totals.to_dict())


if __name__ == "__main__":
    main()
