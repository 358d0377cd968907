"""Shared fixtures: a throwaway SQLite database and in-memory fakes."""

import asyncio

import pytest
import pytest_asyncio

from listingwatch.config import Settings
from listingwatch.db.baseline_store import BaselineStore
from listingwatch.db.database import init_db
from listingwatch.db.scan_runs import ScanRunRepository
from listingwatch.errors import FetchError
from listingwatch.notify.sink import NotificationSink
from listingwatch.scraper.base_source import BaseCrawlSource


def make_record(listing_id, **kwargs):
    record = {
        "listing_id": listing_id,
        "title": f"Listing {listing_id}",
        "url": f"https://marketplace.example.com/listing/{listing_id}",
        "asking_price": 50_000,
        "monthly_revenue": 2_000,
        "monthly_profit": 1_200,
        "category": "SaaS",
        "status": "active",
    }
    record.update(kwargs)
    return record


class FakeSource(BaseCrawlSource):
    """Serves fixed pages. A page mapped to an exception raises it every time."""

    def __init__(self, pages=None, delay=0.0):
        super().__init__({"source": "fake"})
        self.pages = pages or {}
        self.delay = delay
        self.calls = []

    async def fetch_page(self, segment, page_number):
        self.calls.append((segment, page_number))
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.pages.get(page_number, [])
        if isinstance(result, Exception):
            raise result
        return [dict(r) for r in result]


class FlakySource(FakeSource):
    """Fails each page `failures` times before serving it."""

    def __init__(self, pages, failures=1):
        super().__init__(pages)
        self.failures = failures
        self._attempts = {}

    async def fetch_page(self, segment, page_number):
        attempt = self._attempts.get(page_number, 0) + 1
        self._attempts[page_number] = attempt
        if attempt <= self.failures:
            self.calls.append((segment, page_number))
            raise FetchError(page_number, "HTTP 503")
        return await super().fetch_page(segment, page_number)


class RecordingSink(NotificationSink):
    def __init__(self, fail=False):
        self.batches = []
        self.fail = fail

    async def deliver(self, changes):
        self.batches.append(list(changes))
        if self.fail:
            raise RuntimeError("webhook unreachable")


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "listingwatch.db")


@pytest.fixture
def settings(db_path):
    return Settings(
        db_path=db_path,
        page_budget=2,
        fetch_max_attempts=2,
        backoff_base_seconds=0.0,
        scan_timeout_seconds=5.0,
        schedule_minutes=0,
    )


@pytest_asyncio.fixture
async def store(db_path):
    await init_db(db_path)
    return BaselineStore(db_path)


@pytest_asyncio.fixture
async def runs(store, db_path):
    return ScanRunRepository(db_path)
