"""Scan run history.

A partial unique index on `status = 'running'` makes the database itself
refuse a second running scan, backing up the orchestrator's in-process guard.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

import aiosqlite

from listingwatch.api.schemas import ScanRun, ScanStatus
from listingwatch.db.database import get_db
from listingwatch.errors import AlreadyRunning

logger = logging.getLogger(__name__)

RUN_COLUMNS = tuple(ScanRun.model_fields)


def _row_to_run(row) -> ScanRun:
    return ScanRun(**{c: row[c] for c in RUN_COLUMNS})


class ScanRunRepository:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    async def create(self, run: ScanRun):
        """Insert a running scan. Raises AlreadyRunning if one exists."""
        data = run.model_dump(mode="json")
        db = await get_db(self.db_path)
        try:
            await db.execute(
                f"""INSERT INTO scan_runs ({', '.join(RUN_COLUMNS)})
                    VALUES ({', '.join('?' for _ in RUN_COLUMNS)})""",
                tuple(data[c] for c in RUN_COLUMNS),
            )
            await db.commit()
        except aiosqlite.IntegrityError as e:
            running = await self._running_id(db)
            raise AlreadyRunning(running) from e
        finally:
            await db.close()

    async def _running_id(self, db) -> Optional[str]:
        cursor = await db.execute(
            "SELECT scan_id FROM scan_runs WHERE status = 'running' LIMIT 1"
        )
        row = await cursor.fetchone()
        return row["scan_id"] if row else None

    async def update(self, run: ScanRun):
        data = run.model_dump(mode="json")
        columns = [c for c in RUN_COLUMNS if c != "scan_id"]
        db = await get_db(self.db_path)
        try:
            await db.execute(
                f"UPDATE scan_runs SET {', '.join(f'{c} = ?' for c in columns)} WHERE scan_id = ?",
                tuple(data[c] for c in columns) + (run.scan_id,),
            )
            await db.commit()
        finally:
            await db.close()

    async def get(self, scan_id: str) -> Optional[ScanRun]:
        db = await get_db(self.db_path)
        try:
            cursor = await db.execute("SELECT * FROM scan_runs WHERE scan_id = ?", (scan_id,))
            row = await cursor.fetchone()
        finally:
            await db.close()
        return _row_to_run(row) if row else None

    async def latest(self) -> Optional[ScanRun]:
        runs = await self.list_recent(limit=1)
        return runs[0] if runs else None

    async def list_recent(self, limit: int = 20) -> List[ScanRun]:
        db = await get_db(self.db_path)
        try:
            cursor = await db.execute(
                "SELECT * FROM scan_runs ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (limit,),
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return [_row_to_run(r) for r in rows]

    async def fail_interrupted(self, reason: str = "Interrupted before completion") -> int:
        """Mark runs left running by a previous process as failed."""
        now = datetime.now(timezone.utc).isoformat()
        db = await get_db(self.db_path)
        try:
            cursor = await db.execute(
                """UPDATE scan_runs SET status = ?, completed_at = ?, error = ?,
                   failure_kind = 'error' WHERE status = 'running'""",
                (ScanStatus.FAILED.value, now, reason),
            )
            await db.commit()
            count = cursor.rowcount
        finally:
            await db.close()
        if count:
            logger.warning("Marked %d interrupted scan run(s) as failed", count)
        return count
