"""
Level Import Service - SQLite Database

Embedded SQLite store for assets, import jobs, user levels and level
versions.  Uses aiosqlite for async operations within FastAPI and plain
sqlite3 for the sync helpers the import worker calls from its thread.

Nested documents (job params / result / error, asset metadata, charts) are
stored as JSON text columns.  Every write touches only the columns it
changes, and every write made by a worker on a job it holds is guarded by
``locked_by`` so a worker whose lock was reclaimed can never clobber the
new owner's progress.
"""

import json
import sqlite3
import uuid
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import aiosqlite
from loguru import logger

from level_import.config import DB_PATH, IMPORT_MAX_ATTEMPTS, IMPORT_STALE_LOCK_SECONDS
from level_import.utils import parse_json_column

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS assets (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    storage_provider TEXT NOT NULL DEFAULT 'local',
    storage_path TEXT NOT NULL,
    public_url TEXT NOT NULL,
    mime_type TEXT DEFAULT '',
    size_bytes INTEGER DEFAULT 0,
    original_filename TEXT DEFAULT '',
    metadata TEXT DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_assets_owner ON assets(owner_id);

CREATE TABLE IF NOT EXISTS import_jobs (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    source_type TEXT NOT NULL,
    source_asset_id TEXT NOT NULL,
    audio_asset_id TEXT,
    status TEXT NOT NULL DEFAULT 'queued',
    stage TEXT NOT NULL DEFAULT 'queued',
    progress_percent INTEGER NOT NULL DEFAULT 0,
    params TEXT NOT NULL DEFAULT '{}',
    result TEXT,
    error TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    locked_by TEXT,
    locked_at TEXT,
    level_id TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_import_jobs_claim ON import_jobs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_import_jobs_owner ON import_jobs(owner_id, created_at);

CREATE TABLE IF NOT EXISTS user_levels (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    source_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft',
    current_draft_version_id TEXT,
    published_version_id TEXT,
    latest_import_job_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_user_levels_owner ON user_levels(owner_id);

CREATE TABLE IF NOT EXISTS level_versions (
    id TEXT PRIMARY KEY,
    level_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    version_number INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft',
    chart TEXT NOT NULL,
    source_job_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (level_id, version_number)
);
"""

JSON_COLUMNS = ("params", "result", "error", "metadata", "chart")


class LockLostError(RuntimeError):
    """Raised when a worker writes to a job it no longer holds the lock on."""


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------
def init_db() -> None:
    """Initialize the SQLite database and create tables and indexes."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    try:
        with sqlite3.connect(str(DB_PATH)) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA_SQL)
            conn.commit()
        logger.success(f"✅ Database initialized at {DB_PATH}")
    except Exception as e:
        logger.critical(f"❌ Failed to initialize database: {e}")
        raise


# ---------------------------------------------------------------------------
# Async context manager (for use in FastAPI routes)
# ---------------------------------------------------------------------------
@asynccontextmanager
async def get_async_connection():
    """Async context manager for an aiosqlite connection with row factory."""
    db = await aiosqlite.connect(str(DB_PATH), timeout=30)
    db.row_factory = aiosqlite.Row
    try:
        yield db
    finally:
        await db.close()


# ---------------------------------------------------------------------------
# Sync context manager (for use in services / background tasks)
# ---------------------------------------------------------------------------
@contextmanager
def get_connection():
    """Synchronous context manager for a sqlite3 connection with row factory."""
    conn = sqlite3.connect(str(DB_PATH), timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def row_to_dict(row) -> Dict[str, Any]:
    """Convert a database row to a plain dictionary, decoding JSON columns."""
    if row is None:
        return {}
    data = dict(row)
    for column in JSON_COLUMNS:
        if column in data and data[column] is not None:
            data[column] = parse_json_column(data[column])
    return data


def utc_now() -> str:
    """Current UTC time as a sortable ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def _stale_cutoff(stale_lock_seconds: int) -> str:
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_lock_seconds)
    return cutoff.isoformat(timespec="milliseconds")


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------
def _insert_asset(conn: sqlite3.Connection, asset: Dict[str, Any]) -> str:
    """Insert an asset record on *conn* (no commit) and return its id."""
    asset_id = asset.get("id") or new_id()
    now = utc_now()
    conn.execute(
        """
        INSERT INTO assets (id, owner_id, kind, storage_provider, storage_path,
                            public_url, mime_type, size_bytes, original_filename,
                            metadata, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            asset_id,
            asset["owner_id"],
            asset["kind"],
            asset.get("storage_provider") or "local",
            asset["storage_path"],
            asset["public_url"],
            asset.get("mime_type") or "",
            asset.get("size_bytes") or 0,
            asset.get("original_filename") or "",
            json.dumps(asset.get("metadata") or {}),
            now,
            now,
        ),
    )
    return asset_id


def insert_asset_sync(
    owner_id: str,
    kind: str,
    storage_path: str,
    public_url: str,
    mime_type: str = "",
    size_bytes: int = 0,
    original_filename: str = "",
    metadata: Optional[Dict[str, Any]] = None,
    storage_provider: str = "local",
) -> str:
    """Insert an asset record and return its id."""
    with get_connection() as conn:
        asset_id = _insert_asset(
            conn,
            {
                "owner_id": owner_id,
                "kind": kind,
                "storage_provider": storage_provider,
                "storage_path": storage_path,
                "public_url": public_url,
                "mime_type": mime_type,
                "size_bytes": size_bytes,
                "original_filename": original_filename,
                "metadata": metadata,
            },
        )
        conn.commit()
    logger.info("📦 Asset stored (id={}, kind={}): {}", asset_id, kind, original_filename)
    return asset_id


def get_asset_sync(asset_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
    """Fetch an asset owned by *owner_id*."""
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM assets WHERE id = ? AND owner_id = ?", (asset_id, owner_id)
        ).fetchone()
        return row_to_dict(row) if row else None


async def get_asset(asset_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
    """Fetch an asset owned by *owner_id*."""
    async with get_async_connection() as db:
        cursor = await db.execute(
            "SELECT * FROM assets WHERE id = ? AND owner_id = ?", (asset_id, owner_id)
        )
        row = await cursor.fetchone()
        return row_to_dict(row) if row else None


# ---------------------------------------------------------------------------
# Import jobs (async, API side)
# ---------------------------------------------------------------------------
async def insert_import_job(
    owner_id: str,
    source_type: str,
    source_asset_id: str,
    audio_asset_id: Optional[str],
    params: Dict[str, Any],
    max_attempts: int = IMPORT_MAX_ATTEMPTS,
) -> str:
    """Insert a queued import job and return its id."""
    job_id = new_id()
    now = utc_now()
    async with get_async_connection() as db:
        await db.execute(
            """
            INSERT INTO import_jobs (id, owner_id, source_type, source_asset_id,
                                     audio_asset_id, status, stage, progress_percent,
                                     params, attempts, max_attempts, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'queued', 'queued', 0, ?, 0, ?, ?, ?)
            """,
            (
                job_id,
                owner_id,
                source_type,
                source_asset_id,
                audio_asset_id,
                json.dumps(params),
                max_attempts,
                now,
                now,
            ),
        )
        await db.commit()
    logger.info("📝 Import job queued (id={}, source={})", job_id, source_type)
    return job_id


async def get_import_job(job_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
    """Fetch a single import job owned by *owner_id*."""
    async with get_async_connection() as db:
        cursor = await db.execute(
            "SELECT * FROM import_jobs WHERE id = ? AND owner_id = ?", (job_id, owner_id)
        )
        row = await cursor.fetchone()
        return row_to_dict(row) if row else None


async def list_import_jobs(owner_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Return the most recent import jobs for *owner_id*, newest first."""
    async with get_async_connection() as db:
        cursor = await db.execute(
            """
            SELECT * FROM import_jobs
            WHERE owner_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (owner_id, limit),
        )
        rows = await cursor.fetchall()
        return [row_to_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Import jobs (sync, worker side)
# ---------------------------------------------------------------------------
_CLAIMABLE_SQL = """
    status = 'queued'
    OR (status = 'processing' AND locked_at < ? AND attempts < max_attempts)
"""


def get_import_job_sync(job_id: str) -> Optional[Dict[str, Any]]:
    """Fetch a single import job by id regardless of owner."""
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM import_jobs WHERE id = ?", (job_id,)).fetchone()
        return row_to_dict(row) if row else None


def claim_next_job(
    worker_id: str,
    stale_lock_seconds: Optional[int] = None,
    batch_size: int = 5,
) -> Optional[Dict[str, Any]]:
    """
    Atomically claim the oldest claimable import job for *worker_id*.

    A job is claimable when it is ``queued``, or ``processing`` with a lock
    older than *stale_lock_seconds* and attempts remaining.  The claim is a
    compare-and-set: the ``UPDATE`` re-checks the claimable predicate, so of
    two workers racing for the same row exactly one sees ``rowcount == 1``.
    The loser moves on to the next candidate.

    Returns the claimed job, or None when nothing is claimable.
    """
    if stale_lock_seconds is None:
        stale_lock_seconds = IMPORT_STALE_LOCK_SECONDS
    cutoff = _stale_cutoff(stale_lock_seconds)

    with get_connection() as conn:
        candidates = conn.execute(
            f"""
            SELECT id FROM import_jobs
            WHERE {_CLAIMABLE_SQL}
            ORDER BY created_at ASC, rowid ASC
            LIMIT ?
            """,
            (cutoff, batch_size),
        ).fetchall()

        for candidate in candidates:
            now = utc_now()
            cursor = conn.execute(
                f"""
                UPDATE import_jobs
                SET status = 'processing',
                    stage = 'validating_assets',
                    locked_by = ?,
                    locked_at = ?,
                    started_at = ?,
                    updated_at = ?,
                    attempts = attempts + 1
                WHERE id = ? AND ({_CLAIMABLE_SQL})
                """,
                (worker_id, now, now, now, candidate["id"], cutoff),
            )
            conn.commit()
            if cursor.rowcount == 1:
                row = conn.execute(
                    "SELECT * FROM import_jobs WHERE id = ?", (candidate["id"],)
                ).fetchone()
                job = row_to_dict(row)
                logger.info(
                    "🔒 Claimed import job {} (attempt {}/{})",
                    job["id"],
                    job["attempts"],
                    job["max_attempts"],
                )
                return job
    return None


def expire_exhausted_jobs(stale_lock_seconds: Optional[int] = None) -> int:
    """
    Fail stale ``processing`` jobs that have used up their attempts.

    Returns the number of jobs marked failed.
    """
    if stale_lock_seconds is None:
        stale_lock_seconds = IMPORT_STALE_LOCK_SECONDS
    cutoff = _stale_cutoff(stale_lock_seconds)
    now = utc_now()
    error = {
        "code": "IMPORT_ATTEMPTS_EXHAUSTED",
        "message": "Import failed while processing your level.",
        "details": "The import worker stopped responding too many times.",
    }
    with get_connection() as conn:
        cursor = conn.execute(
            """
            UPDATE import_jobs
            SET status = 'failed', stage = 'failed', progress_percent = 100,
                error = ?, completed_at = ?, updated_at = ?,
                locked_by = NULL, locked_at = NULL
            WHERE status = 'processing' AND locked_at < ? AND attempts >= max_attempts
            """,
            (json.dumps(error), now, now, cutoff),
        )
        conn.commit()
        expired = cursor.rowcount
    if expired:
        logger.warning("⚠️ Marked {} stale import job(s) failed (attempts exhausted)", expired)
    return expired


def update_job_progress(
    job_id: str, worker_id: str, stage: str, progress_percent: int
) -> None:
    """
    Record a stage checkpoint for a job held by *worker_id*.

    Progress is written as ``MAX(current, new)`` so it never decreases, and
    the lock timestamp is refreshed.  Raises LockLostError when the job is no
    longer locked by this worker.
    """
    now = utc_now()
    with get_connection() as conn:
        cursor = conn.execute(
            """
            UPDATE import_jobs
            SET stage = ?,
                progress_percent = MAX(progress_percent, ?),
                locked_at = ?,
                updated_at = ?
            WHERE id = ? AND locked_by = ? AND status = 'processing'
            """,
            (stage, progress_percent, now, now, job_id, worker_id),
        )
        conn.commit()
    if cursor.rowcount != 1:
        raise LockLostError(f"Worker {worker_id} no longer holds import job {job_id}")
    logger.debug("📈 Job {} → {} ({}%)", job_id, stage, progress_percent)


def set_job_level_id(job_id: str, worker_id: str, level_id: str) -> None:
    """Remember the level a job writes to so a reclaimed attempt reuses it."""
    with get_connection() as conn:
        cursor = conn.execute(
            """
            UPDATE import_jobs SET level_id = ?, updated_at = ?
            WHERE id = ? AND locked_by = ? AND status = 'processing'
            """,
            (level_id, utc_now(), job_id, worker_id),
        )
        conn.commit()
    if cursor.rowcount != 1:
        raise LockLostError(f"Worker {worker_id} no longer holds import job {job_id}")


def mark_job_failed(
    job_id: str,
    worker_id: str,
    message: str,
    details: Optional[str] = None,
    code: str = "IMPORT_FAILED",
) -> None:
    """Move a job held by *worker_id* to the terminal ``failed`` state."""
    now = utc_now()
    error = {"code": code, "message": message, "details": details}
    with get_connection() as conn:
        cursor = conn.execute(
            """
            UPDATE import_jobs
            SET status = 'failed', stage = 'failed', progress_percent = 100,
                error = ?, completed_at = ?, updated_at = ?,
                locked_by = NULL, locked_at = NULL
            WHERE id = ? AND locked_by = ? AND status = 'processing'
            """,
            (json.dumps(error), now, now, job_id, worker_id),
        )
        conn.commit()
    if cursor.rowcount != 1:
        raise LockLostError(f"Worker {worker_id} no longer holds import job {job_id}")
    logger.error("❌ Import job {} failed: {}", job_id, details or message)


def complete_job_with_draft(
    job: Dict[str, Any],
    worker_id: str,
    level_id: str,
    chart: Dict[str, Any],
    result: Dict[str, Any],
    assets: Optional[List[Dict[str, Any]]] = None,
) -> str:
    """
    Persist *chart* as a new draft level version and complete the job.

    Runs as one ``BEGIN IMMEDIATE`` transaction: the lock is verified first,
    files the pipeline staged in storage (*assets*) are registered, the user
    level is upserted, the next version number is allocated
    (``max + 1``), the draft pointer is moved, and the job is marked
    ``awaiting_review``.  Nothing is written if the lock has been lost.

    Returns the new level version id.
    """
    now = utc_now()
    version_id = new_id()
    params = job.get("params") or {}

    conn = sqlite3.connect(str(DB_PATH), timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("BEGIN IMMEDIATE")
        held = conn.execute(
            "SELECT 1 FROM import_jobs WHERE id = ? AND locked_by = ? AND status = 'processing'",
            (job["id"], worker_id),
        ).fetchone()
        if held is None:
            raise LockLostError(f"Worker {worker_id} no longer holds import job {job['id']}")

        for asset in assets or []:
            _insert_asset(conn, asset)

        existing = conn.execute(
            "SELECT id FROM user_levels WHERE id = ? AND owner_id = ?",
            (level_id, job["owner_id"]),
        ).fetchone()
        if existing:
            conn.execute(
                """
                UPDATE user_levels
                SET title = ?, source_type = ?, latest_import_job_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (params.get("title", ""), job["source_type"], job["id"], now, level_id),
            )
        else:
            conn.execute(
                """
                INSERT INTO user_levels (id, owner_id, title, source_type, status,
                                         latest_import_job_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'draft', ?, ?, ?)
                """,
                (
                    level_id,
                    job["owner_id"],
                    params.get("title", ""),
                    job["source_type"],
                    job["id"],
                    now,
                    now,
                ),
            )

        (latest,) = conn.execute(
            "SELECT COALESCE(MAX(version_number), 0) FROM level_versions WHERE level_id = ?",
            (level_id,),
        ).fetchone()
        version_number = int(latest) + 1

        conn.execute(
            """
            INSERT INTO level_versions (id, level_id, owner_id, version_number, status,
                                        chart, source_job_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'draft', ?, ?, ?, ?)
            """,
            (
                version_id,
                level_id,
                job["owner_id"],
                version_number,
                json.dumps(chart),
                job["id"],
                now,
                now,
            ),
        )
        conn.execute(
            "UPDATE user_levels SET current_draft_version_id = ?, updated_at = ? WHERE id = ?",
            (version_id, now, level_id),
        )

        full_result = dict(result, levelId=level_id, levelVersionId=version_id)
        conn.execute(
            """
            UPDATE import_jobs
            SET status = 'awaiting_review', stage = 'complete', progress_percent = 100,
                level_id = ?, result = ?, error = NULL, completed_at = ?, updated_at = ?,
                locked_by = NULL, locked_at = NULL
            WHERE id = ?
            """,
            (level_id, json.dumps(full_result), now, now, job["id"]),
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()

    logger.success(
        "✅ Draft v{} saved for level {} (job {})", version_number, level_id, job["id"]
    )
    return version_id


# ---------------------------------------------------------------------------
# User levels
# ---------------------------------------------------------------------------
async def get_user_level(level_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
    """Fetch a user level owned by *owner_id*."""
    async with get_async_connection() as db:
        cursor = await db.execute(
            "SELECT * FROM user_levels WHERE id = ? AND owner_id = ?", (level_id, owner_id)
        )
        row = await cursor.fetchone()
        return row_to_dict(row) if row else None


async def get_level_version(version_id: str) -> Optional[Dict[str, Any]]:
    """Fetch a single level version by id."""
    async with get_async_connection() as db:
        cursor = await db.execute("SELECT * FROM level_versions WHERE id = ?", (version_id,))
        row = await cursor.fetchone()
        return row_to_dict(row) if row else None


async def publish_user_level(level_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
    """
    Publish the current draft of a level.

    Any previously published version is demoted back to ``draft``.  Returns
    the updated level, or None when the level does not exist.  Raises
    ValueError when there is nothing publishable.
    """
    async with get_async_connection() as db:
        cursor = await db.execute(
            "SELECT * FROM user_levels WHERE id = ? AND owner_id = ?", (level_id, owner_id)
        )
        level = await cursor.fetchone()
        if level is None:
            return None
        draft_id = level["current_draft_version_id"]
        if not draft_id:
            raise ValueError("No draft version available to publish.")

        cursor = await db.execute("SELECT chart FROM level_versions WHERE id = ?", (draft_id,))
        version = await cursor.fetchone()
        chart = parse_json_column(version["chart"]) if version else {}
        if not chart.get("audioUrl"):
            raise ValueError("Level needs an audio track before it can be published.")

        now = utc_now()
        await db.execute(
            """
            UPDATE level_versions SET status = 'draft', updated_at = ?
            WHERE level_id = ? AND status = 'published'
            """,
            (now, level_id),
        )
        await db.execute(
            "UPDATE level_versions SET status = 'published', updated_at = ? WHERE id = ?",
            (now, draft_id),
        )
        await db.execute(
            """
            UPDATE user_levels
            SET status = 'published', published_version_id = ?, updated_at = ?
            WHERE id = ?
            """,
            (draft_id, now, level_id),
        )
        await db.commit()

        cursor = await db.execute("SELECT * FROM user_levels WHERE id = ?", (level_id,))
        updated = await cursor.fetchone()
    logger.info("🚀 Level {} published (version {})", level_id, draft_id)
    return row_to_dict(updated)
