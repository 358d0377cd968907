"""Baseline snapshot and change log persistence.

The baseline is the last-known-good listing set. It is replaced wholesale by
`commit`, guarded by an optimistic version check, so a scan either lands in
full or not at all. Readers always see the last committed snapshot: reads run
in their own transaction and WAL mode keeps them from blocking on a writer.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

import aiosqlite

from listingwatch.api.schemas import BaselineSnapshot, ChangeRecord, Listing
from listingwatch.db.database import get_db
from listingwatch.errors import VersionConflict

logger = logging.getLogger(__name__)

LISTING_COLUMNS = (
    "listing_id", "fingerprint", "title", "url", "asking_price",
    "monthly_revenue", "monthly_profit", "category", "status",
    "segment", "page", "first_seen", "last_seen", "last_modified",
)


def _listing_row(listing: Listing) -> tuple:
    data = listing.model_dump(mode="json")
    return tuple(data[c] for c in LISTING_COLUMNS)


def _row_to_listing(row) -> Listing:
    return Listing(**{c: row[c] for c in LISTING_COLUMNS})


def normalize_timestamp(value: str) -> str:
    """Render an ISO-8601 timestamp as UTC in the form detected_at is stored in.

    Change log timestamps compare as strings, so a `Z` suffix or a non-UTC
    offset has to be converted first. Naive values are taken as UTC. Raises
    ValueError for anything that is not an ISO timestamp.
    """
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _change_row(change: ChangeRecord) -> tuple:
    return (
        change.change_id, change.scan_id, change.listing_id,
        change.change_type.value, json.dumps(change.changed_fields),
        change.before.model_dump_json() if change.before else None,
        change.after.model_dump_json() if change.after else None,
        change.score, change.scored_category.value, change.detected_at,
    )


def _row_to_change(row) -> ChangeRecord:
    return ChangeRecord(
        change_id=row["change_id"],
        scan_id=row["scan_id"],
        listing_id=row["listing_id"],
        change_type=row["change_type"],
        changed_fields=json.loads(row["changed_fields"]) if row["changed_fields"] else [],
        before=Listing.model_validate_json(row["before"]) if row["before"] else None,
        after=Listing.model_validate_json(row["after"]) if row["after"] else None,
        score=row["score"],
        scored_category=row["scored_category"],
        detected_at=row["detected_at"],
    )


async def _insert_changes(db: aiosqlite.Connection, changes: List[ChangeRecord]):
    await db.executemany(
        """INSERT INTO change_log
           (change_id, scan_id, listing_id, change_type, changed_fields,
            before, after, score, scored_category, detected_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        [_change_row(c) for c in changes],
    )


class BaselineStore:
    """Transactional access to the baseline snapshot and the change log."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        self._commit_lock = asyncio.Lock()

    async def get(self) -> BaselineSnapshot:
        """Return the last committed snapshot."""
        db = await get_db(self.db_path)
        try:
            await db.execute("BEGIN")
            cursor = await db.execute("SELECT version, as_of FROM baseline_meta WHERE id = 1")
            meta = await cursor.fetchone()
            cursor = await db.execute(
                f"SELECT {', '.join(LISTING_COLUMNS)} FROM baseline_listings ORDER BY listing_id"
            )
            rows = await cursor.fetchall()
            await db.commit()
        finally:
            await db.close()

        listings = {row["listing_id"]: _row_to_listing(row) for row in rows}
        return BaselineSnapshot(
            version=meta["version"] if meta else 0,
            as_of=meta["as_of"] if meta else None,
            listings=listings,
        )

    async def get_version(self) -> int:
        db = await get_db(self.db_path)
        try:
            cursor = await db.execute("SELECT version FROM baseline_meta WHERE id = 1")
            row = await cursor.fetchone()
            return row["version"] if row else 0
        finally:
            await db.close()

    async def commit(
        self,
        snapshot: BaselineSnapshot,
        expected_version: int,
        changes: Iterable[ChangeRecord] = (),
    ) -> int:
        """Replace the baseline if its version still equals `expected_version`.

        The change log batch for the transition is written in the same
        transaction. Returns the new version.

        Raises:
            VersionConflict: Another writer committed since `expected_version`
                was read. Nothing is written.
        """
        changes = list(changes)
        async with self._commit_lock:
            db = await get_db(self.db_path)
            try:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute("SELECT version FROM baseline_meta WHERE id = 1")
                    row = await cursor.fetchone()
                    current = row["version"] if row else 0
                    if current != expected_version:
                        raise VersionConflict(expected_version, current)

                    new_version = current + 1
                    as_of = snapshot.as_of or datetime.now(timezone.utc).isoformat()

                    await db.execute("DELETE FROM baseline_listings")
                    await db.executemany(
                        f"""INSERT INTO baseline_listings ({', '.join(LISTING_COLUMNS)})
                            VALUES ({', '.join('?' for _ in LISTING_COLUMNS)})""",
                        [_listing_row(l) for l in snapshot.listings.values()],
                    )
                    await db.execute(
                        "UPDATE baseline_meta SET version = ?, as_of = ? WHERE id = 1",
                        (new_version, as_of),
                    )
                    if changes:
                        await _insert_changes(db, changes)
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise
            finally:
                await db.close()

        logger.info(
            "Baseline committed: version %d -> %d (%d listings, %d changes)",
            expected_version, new_version, len(snapshot.listings), len(changes),
        )
        return new_version

    async def append_change_log(self, changes: Iterable[ChangeRecord]):
        """Append a batch of change records; all or nothing."""
        changes = list(changes)
        if not changes:
            return
        db = await get_db(self.db_path)
        try:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await _insert_changes(db, changes)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        finally:
            await db.close()

    async def get_change_log(
        self,
        since: Optional[str] = None,
        scan_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ChangeRecord]:
        """Return change records in log order, optionally after `since`."""
        conditions = []
        params: list = []
        if since:
            conditions.append("detected_at > ?")
            params.append(normalize_timestamp(since))
        if scan_id:
            conditions.append("scan_id = ?")
            params.append(scan_id)

        query = "SELECT * FROM change_log"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY seq"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        db = await get_db(self.db_path)
        try:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return [_row_to_change(r) for r in rows]
