from __future__ import annotations

from typing import Iterable, List, Optional

import asyncpg

from app.domain.enums import SongJobStatus
from app.domain.models import QueueStats, SongJob, SongJobPayload


def _row_to_job(row: asyncpg.Record) -> SongJob:
    return SongJob.model_validate(dict(row))


class SongJobsRepo:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def enqueue(self, job: SongJob) -> bool:
        """Insert a pending job. Returns False when a job with the same id already exists."""
        sql = """
        INSERT INTO song_jobs (
          id, order_id, song_index, customer_ref, payload, status,
          attempts, content_moderation_retries, created_at, updated_at
        )
        VALUES ($1, $2, $3, $4, $5::jsonb, 'pending', 0, 0, now(), now())
        ON CONFLICT (id) DO NOTHING
        RETURNING id
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                sql,
                job.id,
                job.order_id,
                job.song_index,
                job.customer_ref,
                job.payload.model_dump(mode="json"),
            )
        return row is not None

    async def get(self, job_id: str) -> Optional[SongJob]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM song_jobs WHERE id = $1", job_id)
        return _row_to_job(row) if row else None

    async def count_processing(self) -> int:
        async with self.pool.acquire() as conn:
            n = await conn.fetchval("SELECT count(*) FROM song_jobs WHERE status = 'processing'")
        return int(n or 0)

    async def claim_pending(self, limit: int) -> List[SongJob]:
        if limit <= 0:
            return []
        sql = """
        WITH cte AS (
            SELECT id
            FROM song_jobs
            WHERE status = 'pending'
            ORDER BY created_at
            LIMIT $1
            FOR UPDATE SKIP LOCKED
        )
        UPDATE song_jobs j
        SET status = 'processing',
            processing_started_at = now(),
            updated_at = now()
        FROM cte
        WHERE j.id = cte.id
        RETURNING j.*
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, limit)
        return [_row_to_job(r) for r in rows]

    async def claim(self, job_id: str) -> Optional[SongJob]:
        """Single-job compare-and-set pending -> processing. None if someone else won."""
        sql = """
        UPDATE song_jobs
        SET status = 'processing',
            processing_started_at = now(),
            updated_at = now()
        WHERE id = $1 AND status = 'pending'
        RETURNING *
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(sql, job_id)
        return _row_to_job(row) if row else None

    async def set_provider_task(self, job_id: str, task_id: str) -> None:
        sql = "UPDATE song_jobs SET provider_task_id = $2, updated_at = now() WHERE id = $1"
        async with self.pool.acquire() as conn:
            await conn.execute(sql, job_id, task_id)

    async def requeue(
        self,
        job_id: str,
        *,
        attempts: int,
        content_moderation_retries: Optional[int] = None,
        payload: Optional[SongJobPayload] = None,
        last_error: Optional[str] = None,
    ) -> bool:
        """processing -> pending. False when the row is no longer ours (reclaimed or finished)."""
        sql = """
        UPDATE song_jobs
        SET status = 'pending',
            attempts = $2,
            content_moderation_retries = COALESCE($3, content_moderation_retries),
            payload = COALESCE($4::jsonb, payload),
            last_error = $5,
            processing_started_at = NULL,
            updated_at = now()
        WHERE id = $1 AND status = 'processing'
        RETURNING id
        """
        payload_json = payload.model_dump(mode="json") if payload is not None else None
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(sql, job_id, attempts, content_moderation_retries, payload_json, last_error)
        return row is not None

    async def mark_completed(self, job_id: str, retention_seconds: int) -> bool:
        sql = """
        UPDATE song_jobs
        SET status = 'completed',
            completed_at = now(),
            last_error = NULL,
            delete_after = now() + ($2::int * interval '1 second'),
            updated_at = now()
        WHERE id = $1 AND status = 'processing'
        RETURNING id
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(sql, job_id, retention_seconds)
        return row is not None

    async def mark_failed(self, job_id: str, *, attempts: int, error: str, retention_seconds: int) -> bool:
        sql = """
        UPDATE song_jobs
        SET status = 'failed',
            attempts = $2,
            last_error = $3,
            delete_after = now() + ($4::int * interval '1 second'),
            updated_at = now()
        WHERE id = $1 AND status = 'processing'
        RETURNING id
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(sql, job_id, attempts, error, retention_seconds)
        return row is not None

    async def reclaim_stale(self, stale_after_secs: int, exclude_ids: Iterable[str] = ()) -> int:
        """
        Return crash-orphaned processing rows to pending. 0 reclaims every processing row.
        `exclude_ids` are jobs the caller is still running; they are never reclaimed.
        """
        sql = """
        UPDATE song_jobs
        SET status = 'pending',
            processing_started_at = NULL,
            updated_at = now()
        WHERE status = 'processing'
          AND NOT (id = ANY($2::text[]))
          AND (processing_started_at IS NULL
               OR processing_started_at <= now() - ($1::int * interval '1 second'))
        RETURNING id
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, max(0, int(stale_after_secs)), list(exclude_ids))
        return len(rows)

    async def purge_expired(self) -> int:
        sql = "DELETE FROM song_jobs WHERE delete_after IS NOT NULL AND delete_after < now() RETURNING id"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql)
        return len(rows)

    async def stats(self) -> QueueStats:
        sql = "SELECT status, count(*) AS n FROM song_jobs GROUP BY status"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql)
        counts = {r["status"]: int(r["n"]) for r in rows}
        return QueueStats(**{s.value: counts.get(s.value, 0) for s in SongJobStatus})
