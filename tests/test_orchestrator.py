"""End-to-end tests for scan orchestration against a fake crawl source."""

import asyncio
import dataclasses

import aiosqlite
import pytest
from listingwatch.api.schemas import BaselineSnapshot, ChangeType, ScanStatus, ScoreCategory
from listingwatch.errors import AlreadyRunning, FetchError
from listingwatch.db.scan_runs import ScanRunRepository
from listingwatch.jobs.orchestrator import ScanOrchestrator
from listingwatch.pipeline.fingerprint import build_listing

from conftest import FakeSource, FlakySource, RecordingSink, make_record


def orchestrator(source, store, runs, settings, sink=None):
    return ScanOrchestrator(source=source, store=store, runs=runs, sink=sink or RecordingSink(),
                            settings=settings)


class RacingSource(FakeSource):
    """Commits a competing baseline while the scan is fetching."""

    def __init__(self, pages, store):
        super().__init__(pages)
        self.store = store
        self.raced = False

    async def fetch_page(self, segment, page_number):
        if not self.raced:
            self.raced = True
            version = await self.store.get_version()
            rival = build_listing(make_record("rival"), "all", 1, "2026-01-06T09:00:00+00:00")
            await self.store.commit(
                BaselineSnapshot(version=version + 1, listings={"rival": rival}), version
            )
        return await super().fetch_page(segment, page_number)


class TestScanLifecycle:
    @pytest.mark.asyncio
    async def test_first_scan_reports_everything_new(self, store, runs, settings):
        sink = RecordingSink()
        source = FakeSource({1: [make_record("a"), make_record("b")], 2: [make_record("c")]})
        monitor = orchestrator(source, store, runs, settings, sink)

        run = await monitor.run_scan()
        assert run.status == ScanStatus.SUCCEEDED
        assert run.pages_fetched == 2
        assert run.listings_observed == 3
        assert run.change_count == 3
        assert run.snapshot_version == 1

        log = await monitor.get_change_log()
        assert [c.change_type for c in log] == [ChangeType.NEW] * 3
        assert len(sink.batches) == 1
        assert monitor.state == "idle"

    @pytest.mark.asyncio
    async def test_price_change_new_and_removed(self, store, runs, settings):
        source = FakeSource({1: [make_record("x", asking_price=100_000), make_record("z")]})
        monitor = orchestrator(source, store, runs, settings)
        await monitor.run_scan(page_budget=1)

        source.pages = {1: [make_record("x", asking_price=120_000),
                            make_record("y", asking_price=500_000)]}
        sink = RecordingSink()
        monitor.sink = sink
        run = await monitor.run_scan(page_budget=1)

        assert run.status == ScanStatus.SUCCEEDED
        changes = {c.listing_id: c for c in sink.batches[0]}
        assert changes["x"].change_type == ChangeType.PRICE_CHANGED
        assert changes["x"].score == 65.0
        assert changes["y"].change_type == ChangeType.NEW
        assert changes["y"].scored_category == ScoreCategory.HIGH
        assert changes["z"].change_type == ChangeType.REMOVED

        baseline = await store.get()
        assert baseline.version == 2
        assert set(baseline.listings) == {"x", "y"}
        assert baseline.listings["x"].asking_price == 120_000

    @pytest.mark.asyncio
    async def test_repeat_scan_detects_nothing(self, store, runs, settings):
        source = FakeSource({1: [make_record("a")], 2: [make_record("b")]})
        monitor = orchestrator(source, store, runs, settings)
        await monitor.run_scan()
        run = await monitor.run_scan()
        assert run.change_count == 0
        assert run.snapshot_version == 2
        assert len(await monitor.get_change_log()) == 2

    @pytest.mark.asyncio
    async def test_start_scan_returns_before_completion(self, store, runs, settings):
        monitor = orchestrator(FakeSource({1: [make_record("a")]}, delay=0.05), store, runs, settings)
        scan_id = await monitor.start_scan(page_budget=1)
        assert scan_id.startswith("scan_")
        assert monitor.current_scan_id == scan_id
        assert (await monitor.get_run(scan_id)).status == ScanStatus.RUNNING

        run = await monitor.wait()
        assert run.status == ScanStatus.SUCCEEDED
        assert (await monitor.get_status()).scan_id == scan_id

    @pytest.mark.asyncio
    async def test_invalid_budget_rejected(self, store, runs, settings):
        monitor = orchestrator(FakeSource(), store, runs, settings)
        with pytest.raises(ValueError):
            await monitor.start_scan(page_budget=0)
        assert monitor.state == "idle"

    @pytest.mark.asyncio
    async def test_recover_fails_stale_runs(self, store, runs, settings):
        monitor = orchestrator(FakeSource({1: [make_record("a")]}, delay=0.05), store, runs, settings)
        scan_id = await monitor.start_scan(page_budget=1)

        restarted = orchestrator(FakeSource(), store, runs, settings)
        assert await restarted.recover() == 1
        assert (await restarted.get_run(scan_id)).status == ScanStatus.FAILED
        await monitor.wait()


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_starts_admit_one(self, store, runs, settings):
        monitor = orchestrator(FakeSource({1: [make_record("a")]}, delay=0.05), store, runs, settings)
        results = await asyncio.gather(
            monitor.start_scan(), monitor.start_scan(), return_exceptions=True
        )
        started = [r for r in results if isinstance(r, str)]
        rejected = [r for r in results if isinstance(r, AlreadyRunning)]
        assert len(started) == 1
        assert len(rejected) == 1
        assert rejected[0].scan_id == started[0]

        await monitor.wait()
        assert len(await monitor.list_runs()) == 1

    @pytest.mark.asyncio
    async def test_second_orchestrator_blocked_by_database(self, store, runs, settings):
        first = orchestrator(FakeSource({1: [make_record("a")]}, delay=0.05), store, runs, settings)
        second = orchestrator(FakeSource(), store, runs, settings)
        await first.start_scan()
        with pytest.raises(AlreadyRunning):
            await second.start_scan()
        assert second.state == "idle"
        await first.wait()


class TestFailures:
    @pytest.mark.asyncio
    async def test_all_pages_failing_fails_scan(self, store, runs, settings):
        sink = RecordingSink()
        source = FakeSource({1: FetchError(1, "HTTP 500"), 2: FetchError(2, "HTTP 500")})
        monitor = orchestrator(source, store, runs, settings, sink)

        run = await monitor.run_scan()
        assert run.status == ScanStatus.FAILED
        assert run.failure_kind == "fetch_errors"
        assert "2/2 pages failed" in run.error
        assert await monitor.get_change_log() == []
        assert (await store.get()).version == 0
        assert sink.batches == []
        # every page retried up to the attempt limit
        assert len(source.calls) == 4

    @pytest.mark.asyncio
    async def test_retried_page_recovers(self, store, runs, settings):
        source = FlakySource({1: [make_record("a")], 2: [make_record("b")]}, failures=1)
        monitor = orchestrator(source, store, runs, settings)
        run = await monitor.run_scan()
        assert run.status == ScanStatus.SUCCEEDED
        assert run.change_count == 2

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_unscanned_listings(self, store, runs, settings):
        source = FakeSource({1: [make_record("a")], 2: [make_record("b")]})
        monitor = orchestrator(source, store, runs, settings)
        await monitor.run_scan()

        # page 2 now fails; b must not be reported removed
        source.pages = {1: [make_record("a")], 2: FetchError(2, "timeout")}
        run = await monitor.run_scan()
        assert run.status == ScanStatus.SUCCEEDED
        assert run.pages_fetched == 1
        assert run.change_count == 0
        assert "b" in (await store.get()).listings

    @pytest.mark.asyncio
    async def test_error_rate_above_limit_fails(self, store, runs, settings):
        settings = dataclasses.replace(settings, page_budget=3, max_fetch_error_rate=0.5)
        source = FakeSource({1: [make_record("a")], 2: FetchError(2, "HTTP 502")})
        monitor = orchestrator(source, store, runs, settings)
        run = await monitor.run_scan()
        assert run.status == ScanStatus.SUCCEEDED

        source.pages = {1: FetchError(1, "HTTP 502"), 2: FetchError(2, "HTTP 502")}
        run = await monitor.run_scan()
        assert run.status == ScanStatus.FAILED
        assert run.failure_kind == "fetch_errors"

    @pytest.mark.asyncio
    async def test_malformed_records_are_counted(self, store, runs, settings):
        page = [make_record("a"), {"title": "no id"}, make_record("b", asking_price="call us")]
        monitor = orchestrator(FakeSource({1: page}), store, runs, settings)
        run = await monitor.run_scan(page_budget=1)
        assert run.status == ScanStatus.SUCCEEDED
        assert run.parse_errors == 2
        assert run.listings_observed == 1
        assert set((await store.get()).listings) == {"a"}

    @pytest.mark.asyncio
    async def test_version_conflict_discards_scan(self, store, runs, settings):
        sink = RecordingSink()
        source = RacingSource({1: [make_record("a")]}, store)
        monitor = orchestrator(source, store, runs, settings, sink)

        run = await monitor.run_scan(page_budget=1)
        assert run.status == ScanStatus.FAILED
        assert run.failure_kind == "version_conflict"
        baseline = await store.get()
        assert set(baseline.listings) == {"rival"}
        assert await monitor.get_change_log() == []
        assert sink.batches == []

    @pytest.mark.asyncio
    async def test_timeout_fails_without_commit(self, store, runs, settings):
        settings = dataclasses.replace(settings, scan_timeout_seconds=0.05)
        monitor = orchestrator(FakeSource({1: [make_record("a")]}, delay=1.0), store, runs, settings)
        run = await monitor.run_scan(page_budget=1)
        assert run.status == ScanStatus.FAILED
        assert run.failure_kind == "timeout"
        assert (await store.get()).version == 0
        assert monitor.state == "idle"

    @pytest.mark.asyncio
    async def test_cancel_discards_scan(self, store, runs, settings):
        monitor = orchestrator(FakeSource({1: [make_record("a")]}, delay=1.0), store, runs, settings)
        await monitor.start_scan(page_budget=1)
        assert await monitor.cancel() is True

        run = await monitor.wait()
        assert run.status == ScanStatus.FAILED
        assert run.failure_kind == "cancelled"
        assert (await store.get()).version == 0
        assert monitor.state == "idle"
        assert await monitor.cancel() is False

    @pytest.mark.asyncio
    async def test_sink_failure_keeps_commit(self, store, runs, settings):
        sink = RecordingSink(fail=True)
        monitor = orchestrator(FakeSource({1: [make_record("a")]}), store, runs, settings, sink)
        run = await monitor.run_scan(page_budget=1)
        assert run.status == ScanStatus.SUCCEEDED
        assert len(sink.batches) == 1
        assert (await store.get()).version == 1
        assert len(await monitor.get_change_log()) == 1


class FailingSuccessRecord(ScanRunRepository):
    """Cannot save a run once it has succeeded."""

    async def update(self, run):
        if run.status == ScanStatus.SUCCEEDED:
            raise aiosqlite.OperationalError("database is locked")
        await super().update(run)


class BlockingSink(RecordingSink):
    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def deliver(self, changes):
        self.batches.append(list(changes))
        await self.release.wait()


class TestAfterCommit:
    @pytest.mark.asyncio
    async def test_unsaved_run_record_keeps_scan_succeeded(self, store, db_path, settings):
        sink = RecordingSink()
        runs = FailingSuccessRecord(db_path)
        monitor = orchestrator(FakeSource({1: [make_record("a")]}), store, runs, settings, sink)

        run = await monitor.run_scan(page_budget=1)
        assert run.status == ScanStatus.SUCCEEDED
        assert run.failure_kind is None
        assert run.snapshot_version == 1
        assert len(sink.batches) == 1
        assert set((await store.get()).listings) == {"a"}
        assert monitor.state == "idle"

    @pytest.mark.asyncio
    async def test_slow_delivery_does_not_hold_the_slot(self, store, runs, settings):
        sink = BlockingSink()
        source = FakeSource({1: [make_record("a")]})
        monitor = orchestrator(source, store, runs, settings, sink)

        first = await monitor.start_scan(page_budget=1)
        for _ in range(200):
            if sink.batches:
                break
            await asyncio.sleep(0.01)
        assert sink.batches
        assert monitor.state == "idle"
        assert await monitor.cancel() is False
        assert (await monitor.get_run(first)).status == ScanStatus.SUCCEEDED

        source.pages = {1: [make_record("a"), make_record("b")]}
        second = await monitor.start_scan(page_budget=1)
        assert second != first

        sink.release.set()
        run = await monitor.wait()
        assert run.status == ScanStatus.SUCCEEDED
        assert run.change_count == 1
        await monitor.shutdown()
        assert [len(b) for b in sink.batches] == [1, 1]
