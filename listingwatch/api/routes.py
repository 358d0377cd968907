"""API routes for ListingWatch.

Provides endpoints for triggering and cancelling scans, polling scan status,
reading the change log and the current baseline, and retrieving insights.
Every read goes to committed state only; an in-progress scan is never
visible until its commit lands.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from listingwatch.analytics import insights
from listingwatch.api.cache import TTLCache
from listingwatch.api.schemas import (
    ChangeRecord, Listing, ListingStatus, ScanAccepted, ScanRequest, ScanRun,
)
from listingwatch.config import Settings
from listingwatch.db.baseline_store import BaselineStore, normalize_timestamp
from listingwatch.db.database import get_db
from listingwatch.errors import AlreadyRunning
from listingwatch.jobs.monitoring import MonitoringSystem

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")


def get_monitor(request: Request) -> MonitoringSystem:
    return request.app.state.monitor


def get_store(request: Request) -> BaselineStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_listing_cache(request: Request) -> TTLCache:
    return request.app.state.listing_cache


def get_since(since: Optional[str] = None) -> Optional[str]:
    """`since` query parameter, converted to UTC."""
    if not since:
        return None
    try:
        return normalize_timestamp(since)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"since must be an ISO-8601 timestamp, got {since!r}")


@router.post("/scans", status_code=202, response_model=ScanAccepted)
async def start_scan(request: ScanRequest, monitor: MonitoringSystem = Depends(get_monitor)):
    """Start a background scan. Returns scan_id for polling."""
    try:
        scan_id = await monitor.start_scan(
            segment=request.segment, page_budget=request.page_budget, trigger="manual"
        )
    except AlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ScanAccepted(scan_id=scan_id, status="running", poll_url=f"/api/scans/{scan_id}")


@router.get("/scans/status", response_model=ScanRun)
async def get_scan_status(monitor: MonitoringSystem = Depends(get_monitor)):
    """The running scan, or the most recent one."""
    run = await monitor.get_status()
    if not run:
        raise HTTPException(status_code=404, detail="No scans yet")
    return run


@router.post("/scans/cancel")
async def cancel_scan(monitor: MonitoringSystem = Depends(get_monitor)):
    return {"cancelled": await monitor.cancel()}


@router.get("/scans", response_model=List[ScanRun])
async def list_scans(
    limit: int = Query(20, ge=1, le=200),
    monitor: MonitoringSystem = Depends(get_monitor),
):
    return await monitor.list_runs(limit)


@router.get("/scans/{scan_id}", response_model=ScanRun)
async def get_scan(scan_id: str, monitor: MonitoringSystem = Depends(get_monitor)):
    """Poll a scan's status."""
    run = await monitor.get_run(scan_id)
    if not run:
        raise HTTPException(status_code=404, detail="Scan not found")
    return run


@router.get("/changes", response_model=List[ChangeRecord])
async def get_changes(
    since: Optional[str] = Depends(get_since),
    scan_id: Optional[str] = None,
    limit: int = Query(500, ge=1, le=5000),
    monitor: MonitoringSystem = Depends(get_monitor),
):
    """Change records detected after `since` (ISO timestamp), in log order."""
    return await monitor.get_change_log(since=since, scan_id=scan_id, limit=limit)


@router.get("/listings")
async def list_listings(
    category: Optional[str] = None,
    status: Optional[ListingStatus] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    store: BaselineStore = Depends(get_store),
    cache: TTLCache = Depends(get_listing_cache),
):
    """Query the current baseline with filters."""
    version = await store.get_version()
    key = (version, category, status, min_price, max_price)
    matches = cache.get(key)

    if matches is None:
        snapshot = await store.get()
        matches = filter_listings(
            snapshot.listings.values(), category, status, min_price, max_price
        )
        cache.set((snapshot.version, category, status, min_price, max_price), matches)
        version = snapshot.version

    offset = (page - 1) * limit
    return {
        "version": version,
        "total": len(matches),
        "page": page,
        "limit": limit,
        "listings": matches[offset:offset + limit],
    }


def filter_listings(
    listings,
    category: Optional[str] = None,
    status: Optional[ListingStatus] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
) -> List[Listing]:
    result = []
    for listing in listings:
        if category and (listing.category or "").lower() != category.lower():
            continue
        if status and listing.status != status:
            continue
        if min_price is not None and (listing.asking_price is None or listing.asking_price < min_price):
            continue
        if max_price is not None and (listing.asking_price is None or listing.asking_price > max_price):
            continue
        result.append(listing)
    result.sort(key=lambda l: l.last_modified, reverse=True)
    return result


@router.get("/insights")
async def get_insights(
    since: Optional[str] = Depends(get_since),
    settings: Settings = Depends(get_settings),
):
    """Aggregated change and baseline data for the dashboard."""
    db = await get_db(settings.db_path)
    try:
        return {
            "change_counts": await insights.get_change_counts(db, since),
            "high_value_discoveries": await insights.get_high_value_discoveries(
                db, settings.thresholds, since
            ),
            "trending_categories": await insights.get_trending_categories(db, since),
            "category_breakdown": await insights.get_category_breakdown(db),
            "scan_history": await insights.get_scan_history(db),
        }
    finally:
        await db.close()


@router.get("/health")
async def health(request: Request, monitor: MonitoringSystem = Depends(get_monitor)):
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "ok": True,
        "state": getattr(monitor, "state", None),
        "next_scheduled_scan": scheduler.next_run_time() if scheduler else None,
    }
