"""SQLite-backed persistence for job records."""
from __future__ import annotations

import asyncio
import json
import re
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import aiosqlite

from ..errors import PersistenceError
from .models import JobDocument, JobRecord, JobStatus, utc_now_iso

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Columns that may be written through ``update_job``.
_UPDATABLE = (
    "status",
    "attempts",
    "started_at",
    "completed_at",
    "result",
    "error",
    "payload",
    "next_attempt_at",
)
_JSON_COLUMNS = ("result", "payload")


class JobStore:
    """Async SQLite store for job lifecycle tracking.

    Rows are keyed by the logical job id. ``result`` and ``payload`` are kept
    as JSON text.
    """

    def __init__(self, db_path: str = "execution_jobs.db", table: str = "execution_jobs") -> None:
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self.db_path = db_path
        self.table = table
        self._db: Optional[aiosqlite.Connection] = None
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """Connect, create the jobs table and its indexes.

        Raises ``PersistenceError`` if the database cannot be opened.
        """
        async with self._init_lock:
            if self._db is None:
                try:
                    self._db = await self._open()
                except (sqlite3.Error, OSError) as exc:
                    raise PersistenceError(
                        f"Cannot open job store at {self.db_path!r}: {exc}"
                    ) from exc

    async def _open(self) -> aiosqlite.Connection:
        db = await aiosqlite.connect(self.db_path)
        try:
            await db.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'queued',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    result TEXT,
                    error TEXT,
                    payload TEXT,
                    next_attempt_at TEXT,
                    locked_until TEXT
                )
            """)
            await db.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{self.table}_status ON {self.table}(status)"
            )
            await db.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{self.table}_next_attempt "
                f"ON {self.table}(next_attempt_at)"
            )
            await db.commit()
        except Exception:
            await db.close()
            raise
        return db

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ── Writes ───────────────────────────────────────────────────────

    async def save_job(self, job_id: str, record: JobRecord) -> None:
        """Upsert the full document for *job_id*.

        The reserved scheduling columns are reset on every full save.
        """
        db = await self._conn()
        await db.execute(
            f"""INSERT INTO {self.table}
                (id, status, attempts, created_at, started_at, completed_at,
                 result, error, payload, next_attempt_at, locked_until)
                VALUES (?,?,?,?,?,?,?,?,?,NULL,NULL)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    attempts = excluded.attempts,
                    created_at = excluded.created_at,
                    started_at = excluded.started_at,
                    completed_at = excluded.completed_at,
                    result = excluded.result,
                    error = excluded.error,
                    payload = excluded.payload,
                    next_attempt_at = NULL,
                    locked_until = NULL""",
            (
                job_id,
                JobStatus(record.status).value,
                record.attempts,
                record.created_at,
                record.started_at,
                record.completed_at,
                _dumps(record.result),
                record.error,
                _dumps(record.payload),
            ),
        )
        await db.commit()

    async def update_job(self, job_id: str, **fields: Any) -> None:
        """Partially upsert *job_id*; a call without fields does nothing.

        Raises ``ValueError`` for columns outside the updatable set.
        """
        # NOT NULL columns: a None means "leave as is".
        fields = {
            k: v for k, v in fields.items()
            if not (k in ("status", "attempts") and v is None)
        }
        if not fields:
            return
        bad = set(fields) - set(_UPDATABLE)
        if bad:
            raise ValueError(f"Fields not updatable: {sorted(bad)}")

        cols = [c for c in _UPDATABLE if c in fields]
        vals: list = []
        for col in cols:
            value = fields[col]
            if col == "status" and value is not None:
                value = JobStatus(value).value
            elif col in _JSON_COLUMNS:
                value = _dumps(value)
            vals.append(value)

        sets = ", ".join(f"{c} = excluded.{c}" for c in cols)
        placeholders = ",".join("?" for _ in range(len(cols) + 2))
        db = await self._conn()
        await db.execute(
            f"INSERT INTO {self.table} (id, created_at, {', '.join(cols)}) "
            f"VALUES ({placeholders}) ON CONFLICT(id) DO UPDATE SET {sets}",
            [job_id, utc_now_iso(), *vals],
        )
        await db.commit()

    async def mark_running(self, job_id: str, attempts: Optional[int] = None) -> None:
        """Set status=running, stamp ``started_at`` and clear ``next_attempt_at``."""
        await self.update_job(
            job_id,
            status=JobStatus.running,
            started_at=utc_now_iso(),
            attempts=attempts,
            next_attempt_at=None,
        )

    # ── Reads ────────────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[JobDocument]:
        """Fetch a single job by ID."""
        db = await self._conn()
        async with db.execute(f"SELECT * FROM {self.table} WHERE id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return self._row_to_document(row, desc)

    async def list_jobs(self, limit: int = 50) -> List[JobDocument]:
        """List jobs ordered by creation time (newest first)."""
        db = await self._conn()
        async with db.execute(
            f"SELECT * FROM {self.table} ORDER BY created_at DESC LIMIT ?", (limit,)
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_document(r, desc) for r in rows]

    async def list_pending_jobs(self, cutoff_seconds: int = 3600) -> List[JobDocument]:
        """Jobs that still need to run.

        Everything queued, plus running jobs whose ``started_at`` is older
        than *cutoff_seconds* (their process is presumed dead).
        """
        stale = (datetime.now(timezone.utc) - timedelta(seconds=cutoff_seconds)).isoformat()
        db = await self._conn()
        async with db.execute(
            f"""SELECT * FROM {self.table}
                WHERE status = ?
                   OR (status = ? AND started_at IS NOT NULL AND started_at < ?)
                ORDER BY created_at ASC""",
            (JobStatus.queued.value, JobStatus.running.value, stale),
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_document(r, desc) for r in rows]

    # ── Helpers ───────────────────────────────────────────────────────

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    @staticmethod
    def _row_to_document(row, description) -> JobDocument:
        cols = [d[0] for d in description]
        d: Dict[str, Any] = dict(zip(cols, row))
        for col in _JSON_COLUMNS:
            d[col] = json.loads(d[col]) if d.get(col) is not None else None
        return JobDocument(**d)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)
