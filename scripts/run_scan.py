"""Standalone one-shot scan, for cron or CI.

Runs a single scan (fetch -> fingerprint -> diff -> score -> commit ->
notify) against the configured source, then exits non-zero if it failed
or if another process already has a scan running.

    python -m scripts.run_scan --pages 3 --segment saas

Runs left 'running' by a crashed process are only cleared with
--recover-stale; the API server clears them on its own startup.
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

load_dotenv()

from listingwatch.api.schemas import ScanStatus
from listingwatch.config import load_settings
from listingwatch.db.baseline_store import BaselineStore
from listingwatch.db.database import init_db
from listingwatch.db.scan_runs import ScanRunRepository
from listingwatch.errors import AlreadyRunning
from listingwatch.jobs.orchestrator import ScanOrchestrator
from listingwatch.notify.sink import create_sink
from listingwatch.scraper.source_factory import create_source

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("run_scan")


async def run_scan(segment=None, pages=None, recover_stale=False,
                   settings=None, source=None, sink=None):
    """Run one scan and return its ScanRun.

    Raises AlreadyRunning if a scan is in flight anywhere on the same database.
    """
    settings = settings or load_settings()
    await init_db(settings.db_path)

    source = source or create_source(settings.source)
    sink = sink or create_sink(settings.webhook_url, settings.notify_min_category)
    monitor = ScanOrchestrator(
        source=source,
        store=BaselineStore(settings.db_path),
        runs=ScanRunRepository(settings.db_path),
        sink=sink,
        settings=settings,
    )
    try:
        if recover_stale:
            await monitor.recover()
        return await monitor.run_scan(segment=segment, page_budget=pages, trigger="manual")
    finally:
        await source.close()
        await sink.close()


def main():
    parser = argparse.ArgumentParser(description="Run one listing scan")
    parser.add_argument("--segment", help="Marketplace segment to scan (default from config)")
    parser.add_argument("--pages", type=int, help="Page budget (default from config)")
    parser.add_argument(
        "--recover-stale", action="store_true",
        help="Mark runs left 'running' by a dead process as failed first. "
             "Only use when no other process is scanning.",
    )
    args = parser.parse_args()

    logger.info("Starting scan: segment=%s pages=%s", args.segment, args.pages)
    try:
        run = asyncio.run(run_scan(args.segment, args.pages, args.recover_stale))
    except AlreadyRunning as e:
        logger.error("Scan not started: %s", e)
        sys.exit(1)
    logger.info("Scan complete: %s", run.model_dump())

    if run.status != ScanStatus.SUCCEEDED:
        logger.error("Scan %s failed: %s", run.scan_id, run.error)
        sys.exit(1)


if __name__ == "__main__":
    main()
