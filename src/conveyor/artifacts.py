"""Artifact & cache store — SQLite-backed blob persistence.

Two kinds of entries:

- Artifacts, keyed per job run (``<pipeline>/<job>/<name>``). Immutable once
  written; carry an optional expiry after which they read as not found and
  are removed by :meth:`ArtifactStore.invalidate_expired`.
- Cache entries, keyed by a stable cache key shared across pipelines. Stored
  one row per file path so a later write layers onto earlier ones; writes
  for the same key are serialized with an ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import sqlite3
from datetime import datetime, timedelta

import aiosqlite

from conveyor.errors import ArtifactExistsError, ArtifactNotFound
from conveyor.models import Artifact, ArtifactKind, utcnow

logger = logging.getLogger(__name__)


def artifact_key(pipeline_id: str, job_name: str, name: str) -> str:
    """Stable key for an artifact produced by one job run."""
    return f"{pipeline_id}/{job_name}/{name}"


class ArtifactStore:
    """Blob persistence for artifacts and caches.

    Takes an already-open aiosqlite connection. Call ``initialize()`` to
    create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db
        self._cache_locks: dict[str, asyncio.Lock] = {}

    async def initialize(self) -> None:
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Artifact store tables initialized")

    # ── Artifacts ────────────────────────────────────────────────────────────

    async def put(
        self,
        key: str,
        blob: bytes,
        expiry: timedelta | None = None,
        *,
        kind: ArtifactKind = ArtifactKind.GENERIC,
        pipeline_id: str | None = None,
        job_name: str | None = None,
        name: str | None = None,
    ) -> Artifact:
        """Store an artifact. ``expiry`` None keeps it until deleted.

        Raises:
            ArtifactExistsError: If a live artifact already has this key.
        """
        now = utcnow()
        existing = await self._get_row(key)
        if existing is not None:
            if not _row_expired(existing, now):
                raise ArtifactExistsError(key)
            await self._db.execute("DELETE FROM artifacts WHERE key = ?", (key,))

        artifact = Artifact(
            key=key,
            pipeline_id=pipeline_id,
            job_name=job_name,
            name=name or key.rsplit("/", 1)[-1],
            kind=kind,
            size=len(blob),
            sha256=hashlib.sha256(blob).hexdigest(),
            created_at=now,
            expires_at=now + expiry if expiry is not None else None,
        )
        try:
            await self._db.execute(
                """
                INSERT INTO artifacts (
                    key, pipeline_id, job_name, name, kind,
                    size, sha256, content, created_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    artifact.key,
                    artifact.pipeline_id,
                    artifact.job_name,
                    artifact.name,
                    artifact.kind.value,
                    artifact.size,
                    artifact.sha256,
                    blob,
                    _dt_to_str(artifact.created_at),
                    _dt_to_str(artifact.expires_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            # A concurrent writer inserted the key after our lookup.
            raise ArtifactExistsError(key) from exc
        await self._db.commit()
        logger.debug("Stored artifact %s (%d bytes, kind=%s)", key, len(blob), kind.value)
        return artifact

    async def get(self, key: str) -> bytes:
        """Fetch an artifact's bytes.

        Raises:
            ArtifactNotFound: If the key is unknown or expired.
        """
        row = await self._get_row(key)
        if row is None or _row_expired(row, utcnow()):
            raise ArtifactNotFound(key)
        return bytes(row["content"])

    async def get_metadata(self, key: str) -> Artifact:
        row = await self._get_row(key)
        if row is None or _row_expired(row, utcnow()):
            raise ArtifactNotFound(key)
        return _row_to_artifact(row)

    async def exists(self, key: str) -> bool:
        try:
            await self.get_metadata(key)
        except ArtifactNotFound:
            return False
        return True

    async def list_artifacts(
        self, pipeline_id: str, *, job_name: str | None = None
    ) -> list[Artifact]:
        """Live artifacts of a pipeline (optionally one job), oldest first."""
        if job_name:
            cursor = await self._db.execute(
                "SELECT * FROM artifacts WHERE pipeline_id = ? AND job_name = ? ORDER BY created_at",
                (pipeline_id, job_name),
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM artifacts WHERE pipeline_id = ? ORDER BY created_at",
                (pipeline_id,),
            )
        rows = await cursor.fetchall()
        now = utcnow()
        return [_row_to_artifact(r) for r in rows if not _row_expired(r, now)]

    async def invalidate_expired(self, now: datetime | None = None) -> int:
        """Delete expired artifacts. Returns how many were removed."""
        cursor = await self._db.execute(
            "DELETE FROM artifacts WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (_dt_to_str(now or utcnow()),),
        )
        await self._db.commit()
        removed = cursor.rowcount or 0
        if removed:
            logger.info("Removed %d expired artifacts", removed)
        return removed

    async def _get_row(self, key: str) -> aiosqlite.Row | None:
        cursor = await self._db.execute("SELECT * FROM artifacts WHERE key = ?", (key,))
        return await cursor.fetchone()

    # ── Caches ───────────────────────────────────────────────────────────────

    def _lock_for(self, cache_key: str) -> asyncio.Lock:
        lock = self._cache_locks.get(cache_key)
        if lock is None:
            lock = asyncio.Lock()
            self._cache_locks[cache_key] = lock
        return lock

    async def put_cache(
        self, cache_key: str, files: dict[str, bytes], *, reset: bool = False
    ) -> int:
        """Layer ``files`` onto the cache for ``cache_key``.

        Paths not in ``files`` are kept; a path present in both takes the
        new content. ``reset`` drops the previous contents first.
        Returns the number of files written.
        """
        async with self._lock_for(cache_key):
            if reset:
                await self._db.execute("DELETE FROM cache_entries WHERE cache_key = ?", (cache_key,))
            now = _dt_to_str(utcnow())
            await self._db.executemany(
                """
                INSERT INTO cache_entries (cache_key, path, content, sha256, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(cache_key, path) DO UPDATE SET
                    content = excluded.content,
                    sha256 = excluded.sha256,
                    updated_at = excluded.updated_at
                """,
                [
                    (cache_key, path, content, hashlib.sha256(content).hexdigest(), now)
                    for path, content in sorted(files.items())
                ],
            )
            await self._db.commit()
        logger.debug(
            "Cache '%s': wrote %d files%s", cache_key, len(files), " (reset)" if reset else ""
        )
        return len(files)

    async def get_cache(self, cache_key: str) -> dict[str, bytes]:
        """All files cached under ``cache_key`` (empty if none)."""
        cursor = await self._db.execute(
            "SELECT path, content FROM cache_entries WHERE cache_key = ? ORDER BY path",
            (cache_key,),
        )
        rows = await cursor.fetchall()
        return {r["path"]: bytes(r["content"]) for r in rows}

    async def cache_digest(self, cache_key: str) -> str:
        """Content digest of a cache, independent of write order."""
        cursor = await self._db.execute(
            "SELECT path, sha256 FROM cache_entries WHERE cache_key = ? ORDER BY path",
            (cache_key,),
        )
        rows = await cursor.fetchall()
        digest = hashlib.sha256()
        for r in rows:
            digest.update(f"{r['path']}\0{r['sha256']}\n".encode())
        return digest.hexdigest()

    async def clear_cache(self, cache_key: str) -> None:
        async with self._lock_for(cache_key):
            await self._db.execute("DELETE FROM cache_entries WHERE cache_key = ?", (cache_key,))
            await self._db.commit()


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS artifacts (
    key TEXT PRIMARY KEY,
    pipeline_id TEXT,
    job_name TEXT,
    name TEXT NOT NULL DEFAULT '',
    kind TEXT NOT NULL DEFAULT 'generic',
    size INTEGER NOT NULL DEFAULT 0,
    sha256 TEXT NOT NULL DEFAULT '',
    content BLOB NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_artifacts_pipeline ON artifacts(pipeline_id, job_name);
CREATE INDEX IF NOT EXISTS idx_artifacts_expiry ON artifacts(expires_at);

CREATE TABLE IF NOT EXISTS cache_entries (
    cache_key TEXT NOT NULL,
    path TEXT NOT NULL,
    content BLOB NOT NULL,
    sha256 TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (cache_key, path)
);
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_expired(row: aiosqlite.Row, now: datetime) -> bool:
    expires_at = _str_to_dt(row["expires_at"])
    return expires_at is not None and now >= expires_at


def _row_to_artifact(row: aiosqlite.Row) -> Artifact:
    return Artifact(
        key=row["key"],
        pipeline_id=row["pipeline_id"],
        job_name=row["job_name"],
        name=row["name"],
        kind=ArtifactKind(row["kind"]),
        size=row["size"],
        sha256=row["sha256"],
        created_at=_str_to_dt(row["created_at"]),
        expires_at=_str_to_dt(row["expires_at"]),
    )
