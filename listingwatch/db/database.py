"""SQLite database setup and table creation."""

import aiosqlite
import os

DB_PATH = os.environ.get("LISTINGWATCH_DB", "listingwatch.db")

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT = 30.0


async def get_db(db_path: str | None = None) -> aiosqlite.Connection:
    db = await aiosqlite.connect(db_path or DB_PATH, timeout=BUSY_TIMEOUT)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    return db


async def init_db(db_path: str | None = None):
    """Create tables on startup if they don't exist."""
    db = await get_db(db_path)
    try:
        await db.executescript("""
            CREATE TABLE IF NOT EXISTS baseline_meta (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL DEFAULT 0,
                as_of TEXT
            );

            INSERT OR IGNORE INTO baseline_meta (id, version, as_of) VALUES (1, 0, NULL);

            CREATE TABLE IF NOT EXISTS baseline_listings (
                listing_id TEXT PRIMARY KEY,
                fingerprint TEXT NOT NULL,
                title TEXT,
                url TEXT,
                asking_price REAL,
                monthly_revenue REAL,
                monthly_profit REAL,
                category TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                segment TEXT NOT NULL,
                page INTEGER NOT NULL,
                first_seen TEXT NOT NULL,
                last_seen TEXT NOT NULL,
                last_modified TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS change_log (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                change_id TEXT NOT NULL UNIQUE,
                scan_id TEXT NOT NULL,
                listing_id TEXT NOT NULL,
                change_type TEXT NOT NULL,
                changed_fields TEXT NOT NULL DEFAULT '[]',
                before TEXT,
                after TEXT,
                score REAL NOT NULL,
                scored_category TEXT NOT NULL,
                detected_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scan_runs (
                scan_id TEXT PRIMARY KEY,
                trigger TEXT NOT NULL DEFAULT 'manual',
                segment TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                status TEXT NOT NULL DEFAULT 'running',
                pages_requested INTEGER DEFAULT 0,
                pages_fetched INTEGER DEFAULT 0,
                listings_observed INTEGER DEFAULT 0,
                parse_errors INTEGER DEFAULT 0,
                change_count INTEGER DEFAULT 0,
                snapshot_version INTEGER,
                error TEXT,
                failure_kind TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_listings_location ON baseline_listings(segment, page);
            CREATE INDEX IF NOT EXISTS idx_listings_category ON baseline_listings(category);
            CREATE INDEX IF NOT EXISTS idx_changes_detected ON change_log(detected_at);
            CREATE INDEX IF NOT EXISTS idx_changes_scan ON change_log(scan_id);
            CREATE INDEX IF NOT EXISTS idx_runs_started ON scan_runs(started_at);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_single_running
                ON scan_runs(status) WHERE status = 'running';
        """)
        await db.commit()
    finally:
        await db.close()
