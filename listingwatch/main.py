"""ListingWatch: incremental marketplace listing monitor.

FastAPI application entry point. Wires the crawl source, baseline store,
scan orchestrator and scheduler together and serves the API.

    uvicorn listingwatch.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from listingwatch.api.cache import TTLCache
from listingwatch.api.routes import router
from listingwatch.config import Settings, load_settings
from listingwatch.db.baseline_store import BaselineStore
from listingwatch.db.database import init_db
from listingwatch.db.scan_runs import ScanRunRepository
from listingwatch.jobs.orchestrator import ScanOrchestrator
from listingwatch.jobs.scheduler import ScanScheduler
from listingwatch.notify.sink import NotificationSink, create_sink
from listingwatch.scraper.base_source import BaseCrawlSource
from listingwatch.scraper.source_factory import create_source

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    source: Optional[BaseCrawlSource] = None,
    sink: Optional[NotificationSink] = None,
) -> FastAPI:
    """Build the application. Collaborators not passed in are built from settings."""
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(settings.db_path)
        logger.info("Database initialized at %s", settings.db_path)

        crawl_source = source or create_source(settings.source)
        notification_sink = sink or create_sink(settings.webhook_url, settings.notify_min_category)
        store = BaselineStore(settings.db_path)
        monitor = ScanOrchestrator(
            source=crawl_source,
            store=store,
            runs=ScanRunRepository(settings.db_path),
            sink=notification_sink,
            settings=settings,
        )
        await monitor.recover()
        scheduler = ScanScheduler(monitor, settings)

        app.state.settings = settings
        app.state.store = store
        app.state.monitor = monitor
        app.state.scheduler = scheduler
        app.state.listing_cache = TTLCache(settings.cache_ttl_seconds, settings.cache_max_entries)

        scheduler.start()
        try:
            yield
        finally:
            scheduler.shutdown()
            await monitor.shutdown()
            await crawl_source.close()
            await notification_sink.close()

    app = FastAPI(
        title="ListingWatch",
        description="Incremental marketplace listing monitor with scored change alerts",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


app = create_app()
