"""
In-process store backend (STORE_BACKEND=memory).

Same method surface as the asyncpg repos. Every compare-and-set runs under one
asyncio.Lock so conditional transitions and claims stay mutually exclusive.
Models are copied on the way in and out; callers never share mutable state with the store.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from app.domain.enums import ORDER_TRANSITIONS, OrderStatus, SongJobStatus
from app.domain.models import DiscountCode, DiscountUsage, Order, QueueStats, SongJob, SongJobPayload

_UPDATABLE_FIELDS = frozenset({"paid_at", "completed_at", "error_message", "payment_token"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.orders: Dict[str, Order] = {}
        self.jobs: Dict[str, SongJob] = {}
        self.discount_codes: Dict[str, DiscountCode] = {}
        self.discount_usages: List[DiscountUsage] = []


class MemoryOrdersRepo:
    def __init__(self, store: MemoryStore):
        self.store = store

    async def insert(self, order: Order) -> None:
        async with self.store.lock:
            if order.id in self.store.orders:
                raise ValueError(f"order exists: {order.id}")
            self.store.orders[order.id] = order.model_copy(deep=True, update={"updated_at": _now()})

    async def get(self, order_id: str) -> Optional[Order]:
        o = self.store.orders.get(order_id)
        return o.model_copy(deep=True) if o else None

    async def list_by_customer(self, customer_ref: str, limit: int = 20) -> List[Order]:
        rows = [o for o in self.store.orders.values() if o.customer_ref == customer_ref]
        rows.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in rows[:limit]]

    async def transition(self, order_id: str, to_status: OrderStatus, **fields: Any) -> bool:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"not updatable: {sorted(unknown)}")
        async with self.store.lock:
            o = self.store.orders.get(order_id)
            if o is None or o.status not in ORDER_TRANSITIONS[to_status]:
                return False
            self.store.orders[order_id] = o.model_copy(
                update={"status": to_status, "updated_at": _now(), **fields}
            )
            return True

    async def update_fields(self, order_id: str, **fields: Any) -> None:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"not updatable: {sorted(unknown)}")
        async with self.store.lock:
            o = self.store.orders.get(order_id)
            if o is not None:
                self.store.orders[order_id] = o.model_copy(update={"updated_at": _now(), **fields})

    async def set_lyrics(self, order_id: str, song_index: int, text: str) -> None:
        async with self.store.lock:
            o = self.store.orders.get(order_id)
            if o is None:
                return
            lyrics = {**o.lyrics, str(song_index): text}
            self.store.orders[order_id] = o.model_copy(update={"lyrics": lyrics, "updated_at": _now()})

    async def set_genre(self, order_id: str, song_index: int, genre: str) -> None:
        async with self.store.lock:
            o = self.store.orders.get(order_id)
            if o is None:
                return
            genres = {**o.genres, str(song_index): genre}
            self.store.orders[order_id] = o.model_copy(update={"genres": genres, "updated_at": _now()})

    async def set_audio_url_once(self, order_id: str, song_index: int, url: str) -> Optional[str]:
        key = str(song_index)
        async with self.store.lock:
            o = self.store.orders.get(order_id)
            if o is None:
                return None
            if key in o.audio_urls:
                return o.audio_urls[key]
            urls = {**o.audio_urls, key: url}
            self.store.orders[order_id] = o.model_copy(update={"audio_urls": urls, "updated_at": _now()})
            return url

    async def increment_lyrics_revisions(self, order_id: str, max_revisions: int) -> Optional[int]:
        async with self.store.lock:
            o = self.store.orders.get(order_id)
            if o is None or o.lyrics_revisions >= max_revisions:
                return None
            n = o.lyrics_revisions + 1
            self.store.orders[order_id] = o.model_copy(update={"lyrics_revisions": n, "updated_at": _now()})
            return n


class MemorySongJobsRepo:
    def __init__(self, store: MemoryStore):
        self.store = store

    def _put(self, job: SongJob, **update: Any) -> SongJob:
        j = job.model_copy(update={"updated_at": _now(), **update})
        self.store.jobs[j.id] = j
        return j

    async def enqueue(self, job: SongJob) -> bool:
        async with self.store.lock:
            if job.id in self.store.jobs:
                return False
            now = _now()
            self._put(
                job.model_copy(deep=True),
                status=SongJobStatus.pending,
                attempts=0,
                content_moderation_retries=0,
                created_at=now,
            )
            return True

    async def get(self, job_id: str) -> Optional[SongJob]:
        j = self.store.jobs.get(job_id)
        return j.model_copy(deep=True) if j else None

    async def count_processing(self) -> int:
        return sum(1 for j in self.store.jobs.values() if j.status == SongJobStatus.processing)

    async def claim_pending(self, limit: int) -> List[SongJob]:
        if limit <= 0:
            return []
        async with self.store.lock:
            pending = [j for j in self.store.jobs.values() if j.status == SongJobStatus.pending]
            pending.sort(key=lambda j: j.created_at or _now())
            now = _now()
            return [
                self._put(j, status=SongJobStatus.processing, processing_started_at=now).model_copy(deep=True)
                for j in pending[:limit]
            ]

    async def claim(self, job_id: str) -> Optional[SongJob]:
        async with self.store.lock:
            j = self.store.jobs.get(job_id)
            if j is None or j.status != SongJobStatus.pending:
                return None
            return self._put(j, status=SongJobStatus.processing, processing_started_at=_now()).model_copy(deep=True)

    async def set_provider_task(self, job_id: str, task_id: str) -> None:
        async with self.store.lock:
            j = self.store.jobs.get(job_id)
            if j is not None:
                self._put(j, provider_task_id=task_id)

    async def requeue(
        self,
        job_id: str,
        *,
        attempts: int,
        content_moderation_retries: Optional[int] = None,
        payload: Optional[SongJobPayload] = None,
        last_error: Optional[str] = None,
    ) -> bool:
        async with self.store.lock:
            j = self.store.jobs.get(job_id)
            if j is None or j.status != SongJobStatus.processing:
                return False
            update: Dict[str, Any] = {
                "status": SongJobStatus.pending,
                "attempts": attempts,
                "last_error": last_error,
                "processing_started_at": None,
            }
            if content_moderation_retries is not None:
                update["content_moderation_retries"] = content_moderation_retries
            if payload is not None:
                update["payload"] = payload.model_copy(deep=True)
            self._put(j, **update)
            return True

    async def mark_completed(self, job_id: str, retention_seconds: int) -> bool:
        async with self.store.lock:
            j = self.store.jobs.get(job_id)
            if j is None or j.status != SongJobStatus.processing:
                return False
            now = _now()
            self._put(
                j,
                status=SongJobStatus.completed,
                completed_at=now,
                last_error=None,
                delete_after=now + timedelta(seconds=retention_seconds),
            )
            return True

    async def mark_failed(self, job_id: str, *, attempts: int, error: str, retention_seconds: int) -> bool:
        async with self.store.lock:
            j = self.store.jobs.get(job_id)
            if j is None or j.status != SongJobStatus.processing:
                return False
            self._put(
                j,
                status=SongJobStatus.failed,
                attempts=attempts,
                last_error=error,
                delete_after=_now() + timedelta(seconds=retention_seconds),
            )
            return True

    async def reclaim_stale(self, stale_after_secs: int, exclude_ids: Iterable[str] = ()) -> int:
        cutoff = _now() - timedelta(seconds=max(0, int(stale_after_secs)))
        skip = set(exclude_ids)
        n = 0
        async with self.store.lock:
            for j in list(self.store.jobs.values()):
                if j.status != SongJobStatus.processing or j.id in skip:
                    continue
                if j.processing_started_at is None or j.processing_started_at <= cutoff:
                    self._put(j, status=SongJobStatus.pending, processing_started_at=None)
                    n += 1
        return n

    async def purge_expired(self) -> int:
        now = _now()
        async with self.store.lock:
            expired = [k for k, j in self.store.jobs.items() if j.delete_after and j.delete_after < now]
            for k in expired:
                del self.store.jobs[k]
        return len(expired)

    async def stats(self) -> QueueStats:
        counts: Dict[str, int] = {s.value: 0 for s in SongJobStatus}
        for j in self.store.jobs.values():
            counts[j.status.value] += 1
        return QueueStats(**counts)


class MemoryDiscountsRepo:
    def __init__(self, store: MemoryStore):
        self.store = store

    async def get_by_code(self, code: str) -> Optional[DiscountCode]:
        c = self.store.discount_codes.get(code.strip().upper())
        return c.model_copy(deep=True) if c else None

    async def upsert_code(self, code: DiscountCode) -> None:
        async with self.store.lock:
            key = code.code.upper()
            existing = self.store.discount_codes.get(key)
            used = existing.used_count if existing else code.used_count
            self.store.discount_codes[key] = code.model_copy(
                deep=True, update={"code": key, "used_count": used, "created_at": code.created_at or _now()}
            )

    async def record_usage(self, usage: DiscountUsage) -> None:
        async with self.store.lock:
            self.store.discount_usages.append(usage.model_copy(update={"used_at": _now()}))
            for key, c in self.store.discount_codes.items():
                if c.id == usage.discount_code_id:
                    self.store.discount_codes[key] = c.model_copy(update={"used_count": c.used_count + 1})
                    break
