"""
PostgreSQL job store (asyncpg).

Rows live in ``video_generations``; ``mark_delivered`` is a conditional
UPDATE so two overlapping passes cannot both flip the delivery flag.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from avatar_relay.storage.base import JobStore, apply_job_update
from avatar_relay.storage.records import JobQuery, JobRecord
from avatar_relay.utils.errors import StorageError

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS video_generations (
    video_id         TEXT PRIMARY KEY,
    telegram_id      BIGINT NOT NULL,
    status           TEXT NOT NULL DEFAULT 'pending',
    input_type       TEXT NOT NULL,
    avatar_id        TEXT NOT NULL,
    avatar_name      TEXT,
    voice_id         TEXT,
    input_text       TEXT,
    audio_url        TEXT,
    aspect_ratio     TEXT NOT NULL DEFAULT '16:9',
    avatar_style     TEXT NOT NULL DEFAULT 'normal',
    background       JSONB,
    test_mode        BOOLEAN NOT NULL DEFAULT false,
    video_url        TEXT,
    thumbnail_url    TEXT,
    error_message    TEXT,
    credits_used     INTEGER NOT NULL DEFAULT 0,
    sent_to_telegram BOOLEAN NOT NULL DEFAULT false,
    created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at     TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_video_generations_undelivered
    ON video_generations(status, completed_at) WHERE sent_to_telegram = false;
CREATE INDEX IF NOT EXISTS idx_video_generations_telegram_id
    ON video_generations(telegram_id, created_at DESC);
"""

_COLUMNS = (
    "video_id",
    "telegram_id",
    "status",
    "input_type",
    "avatar_id",
    "avatar_name",
    "voice_id",
    "input_text",
    "audio_url",
    "aspect_ratio",
    "avatar_style",
    "background",
    "test_mode",
    "video_url",
    "thumbnail_url",
    "error_message",
    "credits_used",
    "sent_to_telegram",
    "created_at",
    "updated_at",
    "completed_at",
)
_TIMESTAMP_COLUMNS = {"created_at", "updated_at", "completed_at"}
_ORDER_BY = {
    "completed_at": "completed_at ASC NULLS LAST, updated_at ASC",
    "created_at": "created_at ASC",
    "created_at_desc": "created_at DESC",
}


def _to_db(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _TIMESTAMP_COLUMNS and isinstance(value, str):
        return datetime.fromisoformat(value)
    if column == "background":
        return json.dumps(value)
    return value


def _row_to_record(row: asyncpg.Record) -> JobRecord:
    data: Dict[str, Any] = dict(row)
    for column in _TIMESTAMP_COLUMNS:
        if isinstance(data.get(column), datetime):
            data[column] = data[column].isoformat()
    if isinstance(data.get("background"), str):
        data["background"] = json.loads(data["background"])
    return JobRecord.from_dict(data)


# Connection-level failures surface as OSError or timeouts, not PostgresError.
_DB_ERRORS = (asyncpg.PostgresError, OSError, asyncio.TimeoutError)


class PostgresJobStore(JobStore):
    """PostgreSQL-backed job store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 5, command_timeout: float = 30.0):
        if not dsn:
            raise ValueError("DATABASE_URL not set - postgres storage requires database URL")
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout,
                )
                async with self._pool.acquire() as conn:
                    await conn.execute(SCHEMA_SQL)
                logger.info("[STORAGE] schema_ready=true backend=postgres pool_max=%s", self.max_size)
        return self._pool

    async def create_job(self, record: JobRecord) -> Optional[JobRecord]:
        data = record.to_dict()
        placeholders = ", ".join(f"${i}" for i in range(1, len(_COLUMNS) + 1))
        sql = (
            f"INSERT INTO video_generations ({', '.join(_COLUMNS)}) VALUES ({placeholders}) "
            "ON CONFLICT (video_id) DO NOTHING RETURNING *"
        )
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(sql, *[_to_db(column, data[column]) for column in _COLUMNS])
        except _DB_ERRORS as exc:
            logger.error("JOB_CREATE_FAILED video_id=%s error=%s", record.video_id, exc)
            raise StorageError(str(exc)) from exc
        if row is None:
            logger.warning("JOB_CREATE_DUPLICATE video_id=%s", record.video_id)
            return None
        return _row_to_record(row)

    async def update_job(self, video_id: str, **changes: Any) -> bool:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        "SELECT * FROM video_generations WHERE video_id = $1 FOR UPDATE",
                        video_id,
                    )
                    if row is None:
                        return False
                    current = _row_to_record(row)
                    updated, changed = apply_job_update(current, changes)
                    if not changed:
                        return True
                    columns = [
                        column
                        for column in _COLUMNS
                        if column not in ("video_id", "sent_to_telegram")
                        and getattr(updated, column) != getattr(current, column)
                    ]
                    assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(columns, start=2))
                    await conn.execute(
                        f"UPDATE video_generations SET {assignments} WHERE video_id = $1",
                        video_id,
                        *[_to_db(column, getattr(updated, column)) for column in columns],
                    )
            return True
        except _DB_ERRORS as exc:
            logger.error("JOB_UPDATE_FAILED video_id=%s error=%s", video_id, exc)
            raise StorageError(str(exc)) from exc

    async def get_job(self, video_id: str) -> Optional[JobRecord]:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow("SELECT * FROM video_generations WHERE video_id = $1", video_id)
        except _DB_ERRORS as exc:
            logger.error("JOB_READ_FAILED video_id=%s error=%s", video_id, exc)
            raise StorageError(str(exc)) from exc
        return _row_to_record(row) if row else None

    async def list_jobs(self, query: JobQuery) -> List[JobRecord]:
        clauses: List[str] = []
        args: List[Any] = []
        if query.statuses is not None:
            args.append(sorted(query.statuses))
            clauses.append(f"status = ANY(${len(args)}::text[])")
        if query.sent_to_telegram is not None:
            args.append(query.sent_to_telegram)
            clauses.append(f"sent_to_telegram = ${len(args)}")
        if query.has_video_url is not None:
            clauses.append("video_url IS NOT NULL" if query.has_video_url else "video_url IS NULL")
        if query.telegram_id is not None:
            args.append(query.telegram_id)
            clauses.append(f"telegram_id = ${len(args)}")
        sql = "SELECT * FROM video_generations"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY " + _ORDER_BY.get(query.order_by, _ORDER_BY["completed_at"])
        if query.limit is not None:
            args.append(query.limit)
            sql += f" LIMIT ${len(args)}"
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                rows = await conn.fetch(sql, *args)
        except _DB_ERRORS as exc:
            logger.error("JOB_LIST_FAILED error=%s", exc)
            raise StorageError(str(exc)) from exc
        return [_row_to_record(row) for row in rows]

    async def mark_delivered(self, video_id: str) -> bool:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE video_generations
                    SET sent_to_telegram = true, updated_at = now()
                    WHERE video_id = $1
                      AND sent_to_telegram = false
                      AND status IN ('completed', 'failed')
                    RETURNING video_id
                    """,
                    video_id,
                )
        except _DB_ERRORS as exc:
            logger.error("JOB_MARK_DELIVERED_FAILED video_id=%s error=%s", video_id, exc)
            raise StorageError(str(exc)) from exc
        return row is not None

    async def ping(self) -> bool:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                await conn.execute("SELECT 1")
            return True
        except _DB_ERRORS as exc:
            logger.warning("PostgreSQL ping failed: %s", exc)
            return False

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
