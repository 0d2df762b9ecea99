"""
Durable song-generation queue.

A single poller claims pending jobs (bounded by MAX_CONCURRENT_JOBS counted from
durable `processing` rows, and by the provider rate limiter) and runs each claimed
job as its own asyncio task:

    submit -> poll until terminal -> download -> upload -> persist URL (first write wins)

Content-policy rejections are corrected and replayed with attempts reset to 0:
  - offending token in the style text: token stripped, synthesized genre cleared,
    moderation retry budget untouched
  - otherwise lyrics are cleaned (or regenerated under strict rules) and the
    moderation retry counter goes up; past MAX_MODERATION_RETRIES the job fails

Every other failure consumes one attempt; at MAX_ATTEMPTS the job and its order fail.
Missing configuration (IntegrationError) fails the job on the spot.

Outcome writes only land while the row is still `processing`, and the stale sweep
never touches a job this process is running, so a job has at most one live runner.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Set

from app.config import settings
from app.domain.errors import (
    ContentRejectedError,
    IntegrationError,
    ProviderError,
    ProviderTimeoutError,
    TerminalJobError,
)
from app.domain.models import LyricsRequest, SongJob, SongJobPayload
from app.services.content_sanitizer import ContentSanitizer, parse_rejection, strip_style_tokens, style_contains_tokens
from app.services.delivery_notifier import BestEffortNotifier
from app.services.providers.base import GenerationProvider
from app.services.providers.suno.mapper import build_style, title_for, vocal_gender
from app.services.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger("song_job_queue")


class JobOutcomeHooks(Protocol):
    async def on_job_completed(self, job: SongJob, audio_url: str) -> None:
        ...

    async def on_job_failed(self, job: SongJob, message: str) -> None:
        ...


class SongJobQueue:
    def __init__(
        self,
        *,
        jobs: Any,
        orders: Any,
        provider: GenerationProvider,
        sanitizer: ContentSanitizer,
        artifacts: Any,
        notifier: BestEffortNotifier,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        hooks: Optional[JobOutcomeHooks] = None,
        poll_seconds: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        max_attempts: Optional[int] = None,
        max_moderation_retries: Optional[int] = None,
        stale_seconds: Optional[int] = None,
        provider_poll_seconds: Optional[float] = None,
        provider_max_polls: Optional[int] = None,
        completed_retention_seconds: Optional[int] = None,
        failed_retention_seconds: Optional[int] = None,
    ):
        self.jobs = jobs
        self.orders = orders
        self.provider = provider
        self.sanitizer = sanitizer
        self.artifacts = artifacts
        self.notifier = notifier
        self.rate_limiter = rate_limiter
        self.hooks = hooks

        def pick(v, default):
            return default if v is None else v

        self.poll_seconds = float(pick(poll_seconds, settings.QUEUE_POLL_SECONDS))
        self.max_concurrent = int(pick(max_concurrent, settings.MAX_CONCURRENT_JOBS))
        self.max_attempts = int(pick(max_attempts, settings.MAX_ATTEMPTS))
        self.max_moderation_retries = int(pick(max_moderation_retries, settings.MAX_MODERATION_RETRIES))
        self.stale_seconds = int(pick(stale_seconds, settings.QUEUE_STALE_SECONDS))
        self.provider_poll_seconds = float(pick(provider_poll_seconds, settings.PROVIDER_POLL_SECONDS))
        self.provider_max_polls = int(pick(provider_max_polls, settings.PROVIDER_MAX_POLLS))
        self.completed_retention_seconds = int(pick(completed_retention_seconds, settings.JOB_COMPLETED_RETENTION_SECONDS))
        self.failed_retention_seconds = int(pick(failed_retention_seconds, settings.JOB_FAILED_RETENTION_SECONDS))

        self._tasks: Set[asyncio.Task] = set()
        self._running: Set[str] = set()
        self._poller: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    def set_hooks(self, hooks: JobOutcomeHooks) -> None:
        self.hooks = hooks

    # -----------------------------
    # Producer side
    # -----------------------------

    async def enqueue(self, *, order_id: str, song_index: int, customer_ref: str, payload: SongJobPayload) -> bool:
        job = SongJob(
            id=SongJob.make_id(order_id, song_index),
            order_id=order_id,
            song_index=song_index,
            customer_ref=customer_ref,
            payload=payload,
        )
        created = await self.jobs.enqueue(job)
        if not created:
            logger.info("job_enqueue_duplicate", extra={"job_id": job.id})
            return False

        logger.info("job_enqueued", extra={"job_id": job.id, "order_id": order_id, "song_index": song_index})
        await self.notifier.notify_progress(
            customer_ref=customer_ref,
            order_id=order_id,
            label=f"Song {song_index} is being prepared",
            percent=25 if song_index == 1 else 75,
        )
        return True

    async def get_job(self, job_id: str) -> Optional[SongJob]:
        return await self.jobs.get(job_id)

    async def stats(self) -> Dict[str, int]:
        return (await self.jobs.stats()).model_dump()

    # -----------------------------
    # Poller
    # -----------------------------

    async def start(self) -> None:
        if self._poller is not None:
            return
        # one logical worker: anything still "processing" belongs to a dead process
        reclaimed = await self.jobs.reclaim_stale(0, exclude_ids=set(self._running))
        if reclaimed:
            logger.warning("jobs_reclaimed_on_start", extra={"count": reclaimed})
        self._stopping.clear()
        self._poller = asyncio.create_task(self._poll_forever(), name="song-job-queue-poller")
        logger.info(
            "queue_started",
            extra={"poll_seconds": self.poll_seconds, "max_concurrent": self.max_concurrent},
        )

    async def _poll_forever(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.exception("queue_tick_failed", extra={"error": str(e)})
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> List[SongJob]:
        """One scheduling pass. Returns the jobs claimed (their tasks are already running)."""
        purged = await self.jobs.purge_expired()
        if purged:
            logger.info("jobs_purged", extra={"count": purged})

        reclaimed = await self.jobs.reclaim_stale(self.stale_seconds, exclude_ids=set(self._running))
        if reclaimed:
            logger.warning("stale_jobs_reclaimed", extra={"count": reclaimed})

        in_flight = await self.jobs.count_processing()
        capacity = self.max_concurrent - in_flight
        if self.rate_limiter is not None:
            capacity = min(capacity, self.rate_limiter.free_slots())
        if capacity <= 0:
            return []

        claimed = await self.jobs.claim_pending(capacity)
        for job in claimed:
            logger.info(
                "job_claimed",
                extra={"job_id": job.id, "attempts": job.attempts, "moderation_retries": job.content_moderation_retries},
            )
            self._spawn(job)
        return claimed

    def _spawn(self, job: SongJob) -> None:
        self._running.add(job.id)
        task = asyncio.create_task(self._run_logged(job), name=f"song-job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_logged(self, job: SongJob) -> None:
        try:
            await self.run_job(job)
        except Exception as e:
            # store unreachable while recording the outcome; the stale sweep returns the row to pending
            logger.exception("job_unhandled_exception", extra={"job_id": job.id, "error": str(e)})
        finally:
            self._running.discard(job.id)

    async def drain(self) -> None:
        """Wait for every job task started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self._stopping.set()
        if self._poller is not None:
            await self._poller
            self._poller = None
        await self.drain()
        logger.info("queue_stopped")

    # -----------------------------
    # Job execution
    # -----------------------------

    async def run_job(self, job: SongJob) -> None:
        try:
            try:
                await self._process(job)
            except ContentRejectedError as e:
                await self._correct_and_requeue(job, e)
        except (TerminalJobError, IntegrationError) as e:
            await self._fail(job, str(e), attempts=job.attempts)
        except Exception as e:
            await self._record_attempt_failure(job, e)

    async def _process(self, job: SongJob) -> None:
        order = await self.orders.get(job.order_id)
        if order is None:
            raise TerminalJobError(f"order not found: {job.order_id}")

        existing = order.audio_url_for(job.song_index)
        if existing:
            # an earlier run uploaded and died before finishing; no new generation
            logger.info("job_reused_artifact", extra={"job_id": job.id})
            await self._complete(job, existing)
            return

        if self.artifacts is None:
            raise IntegrationError("artifact store is not configured")

        await self.notifier.notify_progress(
            customer_ref=job.customer_ref,
            order_id=job.order_id,
            label=f"Generating music for song {job.song_index}",
            percent=30 if job.song_index == 1 else 80,
        )

        payload = job.payload
        style = build_style(payload)
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        submitted = await self.provider.submit(
            lyrics=payload.lyrics,
            style=style,
            vocal=vocal_gender(payload.vocal),
            title=title_for(payload.song_type),
        )
        task_id = submitted.provider_task_id
        await self.jobs.set_provider_task(job.id, task_id)
        logger.info("job_submitted", extra={"job_id": job.id, "provider_task_id": task_id, "style": style})

        audio_url = await self._wait_for_audio(job, task_id)

        data = await self.provider.download(audio_url)
        uploaded = await self.artifacts.upload(order_id=job.order_id, song_index=job.song_index, data=data)
        stored = await self.orders.set_audio_url_once(job.order_id, job.song_index, uploaded)
        if stored and stored != uploaded:
            logger.info("audio_url_already_set", extra={"job_id": job.id})

        await self.notifier.notify_progress(
            customer_ref=job.customer_ref,
            order_id=job.order_id,
            label=f"Song {job.song_index} is ready",
            percent=90,
        )
        await self._complete(job, stored or uploaded)

    async def _wait_for_audio(self, job: SongJob, task_id: str) -> str:
        for n in range(1, self.provider_max_polls + 1):
            res = await self.provider.poll(task_id)

            if res.status == "succeeded" and res.audio_url:
                logger.info("provider_succeeded", extra={"job_id": job.id, "polls": n})
                return res.audio_url
            if res.status == "sensitive_content":
                raise ContentRejectedError(res.detail, parse_rejection(res.detail))
            if res.status == "failed":
                raise ProviderError(f"provider failed: {res.detail or 'no detail'}")

            if n < self.provider_max_polls:
                await asyncio.sleep(self.provider_poll_seconds)

        raise ProviderTimeoutError(f"timeout: provider did not finish after {self.provider_max_polls} polls")

    def _superseded(self, job: SongJob, outcome: str) -> None:
        logger.warning("job_outcome_superseded", extra={"job_id": job.id, "outcome": outcome})

    async def _complete(self, job: SongJob, audio_url: str) -> None:
        if not await self.jobs.mark_completed(job.id, self.completed_retention_seconds):
            self._superseded(job, "completed")
            return
        logger.info("job_completed", extra={"job_id": job.id, "order_id": job.order_id})
        if self.hooks is not None:
            try:
                await self.hooks.on_job_completed(job, audio_url)
            except Exception as e:
                # job is done; the order side is reconciled by the next completed sibling or by support
                logger.exception("job_completed_hook_failed", extra={"job_id": job.id, "error": str(e)})

    async def _fail(self, job: SongJob, message: str, *, attempts: int) -> None:
        marked = await self.jobs.mark_failed(
            job.id, attempts=attempts, error=message, retention_seconds=self.failed_retention_seconds
        )
        if not marked:
            self._superseded(job, "failed")
            return
        logger.error("job_failed", extra={"job_id": job.id, "attempts": attempts, "error": message})
        if self.hooks is not None:
            try:
                await self.hooks.on_job_failed(job, message)
            except Exception as e:
                logger.exception("job_failed_hook_failed", extra={"job_id": job.id, "error": str(e)})

    async def _record_attempt_failure(self, job: SongJob, err: Exception) -> None:
        attempts = job.attempts + 1
        message = str(err) or type(err).__name__
        if attempts >= self.max_attempts:
            await self._fail(job, message, attempts=attempts)
            return
        if not await self.jobs.requeue(job.id, attempts=attempts, last_error=message):
            self._superseded(job, "requeued")
            return
        logger.warning(
            "job_requeued",
            extra={"job_id": job.id, "attempts": attempts, "max_attempts": self.max_attempts, "error": message},
        )

    async def _correct_and_requeue(self, job: SongJob, rejection: ContentRejectedError) -> None:
        payload = job.payload
        detail = rejection.detail
        tokens = rejection.tokens or parse_rejection(detail)

        if tokens and style_contains_tokens(build_style(payload), tokens):
            corrected = payload.model_copy(update={"style": strip_style_tokens(payload.style, tokens), "genre": None})
            if corrected != payload:
                requeued = await self.jobs.requeue(
                    job.id,
                    attempts=0,
                    payload=corrected,
                    last_error=f"style_rejected: {detail}",
                )
                if not requeued:
                    self._superseded(job, "style_corrected")
                    return
                logger.warning(
                    "moderation_style_corrected",
                    extra={"job_id": job.id, "tokens": tokens, "style": corrected.style},
                )
                return

        if job.content_moderation_retries >= self.max_moderation_retries:
            raise TerminalJobError(f"content repeatedly rejected: {detail or 'no detail'}")

        phrases = [t for t in tokens if t.lower() in payload.lyrics.lower()]
        if not phrases:
            analysis = await self.sanitizer.analyze(payload.lyrics)
            phrases = analysis.flagged_phrases if analysis.flagged else []

        if phrases:
            new_lyrics = await self.sanitizer.clean(payload.lyrics, phrases)
            mode = "clean"
        else:
            new_lyrics = await self.sanitizer.regenerate(LyricsRequest.from_payload(payload))
            mode = "regenerate"

        retries = job.content_moderation_retries + 1
        corrected = payload.model_copy(update={"lyrics": new_lyrics})
        requeued = await self.jobs.requeue(
            job.id,
            attempts=0,
            content_moderation_retries=retries,
            payload=corrected,
            last_error=f"lyrics_rejected: {detail}",
        )
        if not requeued:
            self._superseded(job, "lyrics_corrected")
            return
        await self.orders.set_lyrics(job.order_id, job.song_index, new_lyrics)
        logger.warning(
            "moderation_lyrics_corrected",
            extra={"job_id": job.id, "mode": mode, "phrases": phrases, "moderation_retries": retries},
        )
