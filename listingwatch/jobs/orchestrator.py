"""Scan orchestration: one scan run end to end.

start_scan() claims the single-flight slot, records a running ScanRun and
returns the scan id immediately; the scan itself runs as a background task
and the client polls for completion. States: idle -> running ->
succeeded/failed -> idle.

A scan fetches its page budget concurrently (each page retried with backoff),
fingerprints and diffs the fetched pages against the baseline, scores the
changes and commits snapshot + change log in one transaction. Any failure
before the commit leaves the baseline exactly as it was.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from listingwatch.api.schemas import (
    BaselineSnapshot, ChangeRecord, Listing, ScanRun, ScanStatus,
)
from listingwatch.config import Settings
from listingwatch.db.baseline_store import BaselineStore
from listingwatch.db.scan_runs import ScanRunRepository
from listingwatch.errors import (
    AlreadyRunning, CrawlFailed, FetchError, ListingWatchError, MalformedRecord,
    ScanCancelled, ScanTimeout, VersionConflict,
)
from listingwatch.jobs.monitoring import MonitoringSystem
from listingwatch.notify.sink import LogSink, NotificationSink
from listingwatch.pipeline.differ import ScanCoverage, build_change_summary, diff_listings
from listingwatch.pipeline.fingerprint import build_listing
from listingwatch.pipeline.scorer import build_change_record
from listingwatch.resilience.retry import call_with_retry
from listingwatch.scraper.base_source import BaseCrawlSource

logger = logging.getLogger(__name__)

FAILURE_KINDS = {
    CrawlFailed: "fetch_errors",
    VersionConflict: "version_conflict",
    ScanTimeout: "timeout",
    ScanCancelled: "cancelled",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_scan_id() -> str:
    return f"scan_{uuid.uuid4().hex[:16]}"


@dataclass
class ScanOutcome:
    """Everything a scan computed before touching the store."""
    expected_version: int
    snapshot: BaselineSnapshot
    changes: List[ChangeRecord] = field(default_factory=list)


class ScanOrchestrator(MonitoringSystem):
    """Drives scans against one monitored target, one at a time."""

    def __init__(
        self,
        source: BaseCrawlSource,
        store: BaselineStore,
        runs: ScanRunRepository,
        sink: Optional[NotificationSink] = None,
        settings: Optional[Settings] = None,
    ):
        self.source = source
        self.store = store
        self.runs = runs
        self.sink = sink or LogSink()
        self.settings = settings or Settings()

        self._current_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        # Scan tasks not yet finished, including ones still delivering notifications
        self._tasks: Set[asyncio.Task] = set()
        self._started: Optional[asyncio.Event] = None
        self._committing = False
        self._cancel_requested = False

    @property
    def state(self) -> str:
        return "running" if self._current_id else "idle"

    @property
    def current_scan_id(self) -> Optional[str]:
        return self._current_id

    async def recover(self) -> int:
        """Fail runs a previous process left in the running state."""
        return await self.runs.fail_interrupted("Interrupted by process restart")

    # -- trigger interface -------------------------------------------------

    async def start_scan(self, segment: Optional[str] = None, page_budget: Optional[int] = None,
                         trigger: str = "manual") -> str:
        # Claim the slot before the first await so concurrent callers see it
        if self._current_id is not None:
            raise AlreadyRunning(self._current_id)

        budget = self.settings.page_budget if page_budget is None else page_budget
        if budget < 1:
            raise ValueError("page_budget must be at least 1")

        scan_id = new_scan_id()
        self._current_id = scan_id
        run = ScanRun(
            scan_id=scan_id,
            trigger=trigger,
            segment=segment or self.settings.segment,
            started_at=_now(),
            pages_requested=budget,
        )
        try:
            await self.runs.create(run)
        except BaseException:
            self._current_id = None
            raise

        self._committing = False
        self._cancel_requested = False
        self._started = asyncio.Event()
        self._task = asyncio.create_task(self._execute(run), name=scan_id)
        self._tasks.add(self._task)
        self._task.add_done_callback(self._tasks.discard)
        logger.info("Scan %s started (%s, segment=%s, pages=%d)", scan_id, trigger, run.segment, budget)
        return scan_id

    async def run_scan(self, segment: Optional[str] = None, page_budget: Optional[int] = None,
                       trigger: str = "manual") -> ScanRun:
        await self.start_scan(segment, page_budget, trigger)
        return await self.wait()

    async def wait(self) -> Optional[ScanRun]:
        """Wait for the current (or last) scan task and return its run."""
        if self._task is None:
            return None
        return await self._task

    async def cancel(self) -> bool:
        task = self._task
        if task is None or task.done() or self._current_id is None:
            return False
        if self._committing:
            logger.warning("Scan %s is committing; cancel ignored", self._current_id)
            return False
        # A task cancelled before its first step never runs its cleanup
        await self._started.wait()
        if task.done() or self._committing or self._current_id is None:
            return False
        self._cancel_requested = True
        task.cancel()
        logger.info("Cancellation requested for scan %s", self._current_id)
        return True

    async def shutdown(self):
        """Cancel any in-flight scan and wait for it and pending deliveries to settle."""
        await self.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks)

    async def get_status(self) -> Optional[ScanRun]:
        return await self.runs.latest()

    async def get_run(self, scan_id: str) -> Optional[ScanRun]:
        return await self.runs.get(scan_id)

    async def list_runs(self, limit: int = 20) -> List[ScanRun]:
        return await self.runs.list_recent(limit)

    async def get_change_log(self, since: Optional[str] = None, scan_id: Optional[str] = None,
                             limit: Optional[int] = None) -> List[ChangeRecord]:
        return await self.store.get_change_log(since=since, scan_id=scan_id, limit=limit)

    # -- scan execution ----------------------------------------------------

    async def _execute(self, run: ScanRun) -> ScanRun:
        self._started.set()
        committed: Optional[List[ChangeRecord]] = None
        try:
            try:
                outcome = await asyncio.wait_for(
                    self._crawl_and_diff(run), timeout=self.settings.scan_timeout_seconds
                )
            except asyncio.TimeoutError:
                raise ScanTimeout(
                    f"Scan exceeded its {self.settings.scan_timeout_seconds:.0f}s budget"
                ) from None

            self._committing = True
            version = await self.store.commit(
                outcome.snapshot, outcome.expected_version, outcome.changes
            )
            committed = outcome.changes

            # Committed: the run is succeeded from here on
            run.status = ScanStatus.SUCCEEDED
            run.completed_at = _now()
            run.change_count = len(committed)
            run.snapshot_version = version
            await self._record_success(run)
            logger.info(
                "Scan %s succeeded: %d pages, %d listings, %d changes (version %d)",
                run.scan_id, run.pages_fetched, run.listings_observed, run.change_count, version,
            )

        except asyncio.CancelledError:
            if committed is None:
                await self._fail(run, ScanCancelled("Scan cancelled before commit"))
            if not self._cancel_requested:
                raise
        except ListingWatchError as e:
            await self._fail(run, e)
        except Exception as e:
            logger.error("Scan %s crashed: %s", run.scan_id, e, exc_info=True)
            await self._fail(run, e)
        finally:
            self._current_id = None
            self._committing = False

        # Delivered after the slot is released; a slow sink must not hold it
        if committed is not None:
            await self._deliver(run, committed)
        return run

    async def _record_success(self, run: ScanRun):
        try:
            await call_with_retry(
                self.runs.update, run,
                max_attempts=self.settings.fetch_max_attempts,
                base_delay=self.settings.backoff_base_seconds,
                max_delay=self.settings.backoff_max_seconds,
                retry_on=(Exception,),
                label=f"record scan {run.scan_id}",
            )
        except Exception as e:
            # Baseline is committed; the row stays 'running' until recover() clears it
            logger.error(
                "Scan %s committed version %s but its run record could not be saved: %s",
                run.scan_id, run.snapshot_version, e, exc_info=True,
            )

    async def _crawl_and_diff(self, run: ScanRun) -> ScanOutcome:
        baseline = await self.store.get()
        pages, page_errors = await self._fetch_pages(run.segment, run.pages_requested)

        fetched = sorted(p for p, records in pages.items() if records is not None)
        errors = [page_errors[p] for p in sorted(page_errors)]
        failed = run.pages_requested - len(fetched)
        run.pages_fetched = len(fetched)

        error_rate = failed / run.pages_requested
        if not fetched or error_rate > self.settings.max_fetch_error_rate:
            raise CrawlFailed(failed, run.pages_requested, errors)
        if failed:
            logger.warning(
                "Scan %s: %d/%d pages failed; diffing fetched scope %s only",
                run.scan_id, failed, run.pages_requested, fetched,
            )

        now = _now()
        observed: List[Listing] = []
        for page in fetched:
            for raw in pages[page]:
                try:
                    observed.append(build_listing(raw, run.segment, page, now))
                except MalformedRecord as e:
                    run.parse_errors += 1
                    logger.debug("Skipping malformed record on page %d: %s", page, e.reason)
        run.listings_observed = len(observed)
        if run.parse_errors:
            logger.warning("Scan %s: skipped %d malformed records", run.scan_id, run.parse_errors)

        coverage = ScanCoverage(run.segment, frozenset(fetched))
        diff = diff_listings(baseline.listings, observed, coverage, now)
        changes = [
            build_change_record(c, run.scan_id, now, self.settings.thresholds)
            for c in diff.changes
        ]
        logger.info("Scan %s diff: %s", run.scan_id, build_change_summary(diff.changes))

        return ScanOutcome(
            expected_version=baseline.version,
            snapshot=BaselineSnapshot(version=baseline.version + 1, as_of=now, listings=diff.listings),
            changes=changes,
        )

    async def _fetch_pages(
        self, segment: str, budget: int,
    ) -> Tuple[Dict[int, Optional[list]], Dict[int, str]]:
        """Fetch pages 1..budget through a bounded worker pool.

        Returns (page -> records, page -> last error). Records are None for
        pages that failed every attempt.
        """
        semaphore = asyncio.Semaphore(self.settings.fetch_concurrency)
        page_errors: Dict[int, str] = {}

        async def fetch(page: int):
            async with semaphore:
                try:
                    records = await call_with_retry(
                        self.source.fetch_page, segment, page,
                        max_attempts=self.settings.fetch_max_attempts,
                        base_delay=self.settings.backoff_base_seconds,
                        max_delay=self.settings.backoff_max_seconds,
                        retry_on=(FetchError,),
                        label=f"page {page}",
                    )
                    return page, list(records)
                except FetchError as e:
                    page_errors[page] = str(e)
                    return page, None

        results = await asyncio.gather(*(fetch(p) for p in range(1, budget + 1)))
        return dict(results), page_errors

    async def _fail(self, run: ScanRun, error: BaseException):
        run.status = ScanStatus.FAILED
        run.completed_at = _now()
        run.error = str(error) or type(error).__name__
        run.failure_kind = FAILURE_KINDS.get(type(error), "error")
        logger.warning("Scan %s failed (%s): %s", run.scan_id, run.failure_kind, run.error)
        try:
            await self.runs.update(run)
        except Exception as e:
            logger.error("Could not record failure of scan %s: %s", run.scan_id, e, exc_info=True)

    async def _deliver(self, run: ScanRun, changes: List[ChangeRecord]):
        try:
            await self.sink.deliver(changes)
        except Exception as e:
            logger.error(
                "Notification delivery failed for scan %s (%d changes): %s",
                run.scan_id, len(changes), e, exc_info=True,
            )
