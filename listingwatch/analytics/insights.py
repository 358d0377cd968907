"""Analytics over the baseline, change log and scan history.

Read-only aggregates for the dashboard: change counts by type, high-value
new listings, trending categories, category breakdown of the current
baseline, and recent scan history.
"""

import aiosqlite
from typing import List, Optional

from listingwatch.pipeline.scorer import ScoringThresholds

TRENDING_MIN_NEW = 3  # New listings in a category before it counts as trending


async def get_change_counts(db: aiosqlite.Connection, since: Optional[str] = None) -> List[dict]:
    """Count change records per change type."""
    query = "SELECT change_type, COUNT(*) AS cnt FROM change_log"
    params: list = []
    if since:
        query += " WHERE detected_at > ?"
        params.append(since)
    query += " GROUP BY change_type ORDER BY cnt DESC"
    cursor = await db.execute(query, params)
    rows = await cursor.fetchall()
    return [{"change_type": row[0], "count": row[1]} for row in rows]


async def get_high_value_discoveries(
    db: aiosqlite.Connection,
    thresholds: ScoringThresholds,
    since: Optional[str] = None,
    limit: int = 20,
) -> List[dict]:
    """New listings whose price or revenue crosses the high-value thresholds."""
    query = """SELECT listing_id, detected_at, score, scored_category,
                      json_extract(after, '$.title') AS title,
                      json_extract(after, '$.asking_price') AS price,
                      json_extract(after, '$.monthly_revenue') AS revenue,
                      json_extract(after, '$.category') AS category
               FROM change_log
               WHERE change_type = 'new'
                 AND (json_extract(after, '$.asking_price') >= ?
                      OR json_extract(after, '$.monthly_revenue') >= ?)"""
    params: list = [thresholds.high_value_price, thresholds.high_value_revenue]
    if since:
        query += " AND detected_at > ?"
        params.append(since)
    query += " ORDER BY score DESC, detected_at DESC LIMIT ?"
    params.append(limit)

    cursor = await db.execute(query, params)
    rows = await cursor.fetchall()
    return [
        {
            "listing_id": row[0], "detected_at": row[1], "score": row[2],
            "scored_category": row[3], "title": row[4], "asking_price": row[5],
            "monthly_revenue": row[6], "category": row[7],
        }
        for row in rows
    ]


async def get_trending_categories(
    db: aiosqlite.Connection,
    since: Optional[str] = None,
    min_new: int = TRENDING_MIN_NEW,
) -> List[dict]:
    """Categories with at least `min_new` new listings."""
    query = """SELECT json_extract(after, '$.category') AS category, COUNT(*) AS cnt
               FROM change_log
               WHERE change_type = 'new' AND json_extract(after, '$.category') IS NOT NULL"""
    params: list = []
    if since:
        query += " AND detected_at > ?"
        params.append(since)
    query += " GROUP BY category HAVING cnt >= ? ORDER BY cnt DESC"
    params.append(min_new)

    cursor = await db.execute(query, params)
    rows = await cursor.fetchall()
    return [{"category": row[0], "new_listings": row[1]} for row in rows]


async def get_category_breakdown(db: aiosqlite.Connection) -> List[dict]:
    """Active baseline listings per category with average asking price."""
    cursor = await db.execute(
        """SELECT COALESCE(category, 'Unknown'), COUNT(*) AS cnt, AVG(asking_price)
           FROM baseline_listings WHERE status = 'active'
           GROUP BY COALESCE(category, 'Unknown') ORDER BY cnt DESC"""
    )
    rows = await cursor.fetchall()
    return [
        {
            "category": row[0], "count": row[1],
            "avg_asking_price": round(row[2], 2) if row[2] is not None else None,
        }
        for row in rows
    ]


async def get_scan_history(db: aiosqlite.Connection, limit: int = 30) -> List[dict]:
    """Recent scan runs for trend charts."""
    cursor = await db.execute(
        """SELECT scan_id, started_at, status, pages_fetched, listings_observed,
                  change_count, failure_kind
           FROM scan_runs ORDER BY started_at DESC LIMIT ?""",
        (limit,),
    )
    rows = await cursor.fetchall()
    return [
        {
            "scan_id": row[0], "date": row[1], "status": row[2],
            "pages": row[3], "listings": row[4], "changes": row[5],
            "failure_kind": row[6],
        }
        for row in rows
    ]
