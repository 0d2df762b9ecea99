import asyncio

import pytest

from app.domain.enums import OrderStatus, SongJobStatus
from app.domain.errors import ContentRejectedError, ProviderError
from app.domain.models import SongJob
from app.services.delivery_notifier import BestEffortNotifier
from app.services.order_controller import OrderController
from app.services.providers.base import ProviderPollResult
from app.services.song_job_queue import SongJobQueue

from conftest import make_payload, seed_order


async def _enqueue(queue, order_id="order1", song_index=1, **payload_overrides) -> str:
    await queue.enqueue(
        order_id=order_id,
        song_index=song_index,
        customer_ref="905551112233",
        payload=make_payload(**payload_overrides),
    )
    return SongJob.make_id(order_id, song_index)


async def _run_once(queue, jobs, job_id):
    job = await jobs.claim(job_id)
    assert job is not None, "job should be claimable"
    await queue.run_job(job)
    return await jobs.get(job_id)


@pytest.mark.asyncio
async def test_happy_path_completes_job_and_order(queue, controller, orders, jobs, artifacts, delivered):
    await seed_order(orders)
    job_id = await _enqueue(queue)

    claimed = await queue.tick()
    assert [j.id for j in claimed] == [job_id]
    await queue.drain()

    job = await jobs.get(job_id)
    assert job.status == SongJobStatus.completed
    assert job.provider_task_id == "task-1"
    assert job.delete_after is not None

    order = await orders.get("order1")
    assert order.status == OrderStatus.completed
    assert order.completed_at is not None
    assert order.audio_url_for(1) == "https://blob.test/songs/order1/song1.mp3?v=1"
    assert len(delivered.of("success")) == 1
    assert delivered.of("success")[0]["audio_urls"] == [order.audio_url_for(1)]


@pytest.mark.asyncio
async def test_duplicate_enqueue_is_ignored(queue, orders, jobs):
    await seed_order(orders)
    assert await queue.enqueue(order_id="order1", song_index=1, customer_ref="c-1", payload=make_payload())
    assert not await queue.enqueue(order_id="order1", song_index=1, customer_ref="c-1", payload=make_payload())
    assert (await jobs.stats()).pending == 1


@pytest.mark.asyncio
async def test_transient_failure_increments_attempts_then_recovers(queue, orders, jobs, provider):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    provider.submit_outcomes = [ProviderError("503 from provider")]

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.pending
    assert job.attempts == 1
    assert job.content_moderation_retries == 0
    assert "503" in job.last_error

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.completed


@pytest.mark.asyncio
async def test_poll_timeout_exhausts_attempts_and_fails_order(queue, controller, orders, jobs, provider, delivered):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    provider.never_finishes = True

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.pending
    assert job.attempts == 1
    assert "timeout" in job.last_error

    job = await _run_once(queue, jobs, job_id)
    assert job.attempts == 2

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.failed
    assert job.attempts == 3
    assert "timeout" in job.last_error

    order = await orders.get("order1")
    assert order.status == OrderStatus.failed
    assert order.error_message == controller.failure_message
    assert len(delivered.of("failure")) == 1


@pytest.mark.asyncio
async def test_style_rejection_strips_token_and_resets_attempts(queue, orders, jobs, provider, sanitizer):
    await seed_order(orders)
    job_id = await _enqueue(queue, genre="romantic pop like Tarkan")
    provider.submit_outcomes = [
        ContentRejectedError("Style contains artist name 'Tarkan'", ["Tarkan"]),
    ]

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.pending
    assert job.attempts == 0
    assert job.content_moderation_retries == 0
    assert job.payload.genre is None
    assert "tarkan" not in job.payload.style.lower()
    assert job.payload.lyrics == make_payload().lyrics
    assert sanitizer.calls == []

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.completed
    assert "tarkan" not in provider.submits[-1]["style"].lower()


@pytest.mark.asyncio
async def test_style_rejection_after_transient_failure_resets_attempts(queue, orders, jobs, provider):
    await seed_order(orders)
    job_id = await _enqueue(queue, genre="pop like Tarkan")
    provider.submit_outcomes = [
        ProviderError("connection reset"),
        ContentRejectedError("artist name 'Tarkan' is not allowed", ["Tarkan"]),
    ]

    job = await _run_once(queue, jobs, job_id)
    assert job.attempts == 1

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.pending
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_lyrics_rejection_cleans_and_counts_moderation_retry(queue, orders, jobs, provider, sanitizer):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    provider.submit_outcomes = [ContentRejectedError("Lyrics contain sensitive words: fight", ["fight"])]

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.pending
    assert job.attempts == 0
    assert job.content_moderation_retries == 1
    assert job.payload.lyrics.startswith("[verse]\ncleaned lyrics")
    assert sanitizer.calls == ["clean"]

    order = await orders.get("order1")
    assert order.lyrics_for(1) == job.payload.lyrics


@pytest.mark.asyncio
async def test_lyrics_rejection_without_phrases_regenerates(queue, orders, jobs, provider, sanitizer):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    sanitizer.flagged_phrases = []
    provider.poll_outcomes = [ProviderPollResult(status="sensitive_content", detail="SENSITIVE_WORD_ERROR")]

    job = await _run_once(queue, jobs, job_id)
    assert sanitizer.calls == ["analyze", "regenerate"]
    assert job.payload.lyrics.startswith("[verse]\nregenerated lyrics")
    assert job.content_moderation_retries == 1


@pytest.mark.asyncio
async def test_lyrics_repeatedly_rejected_fails_job_and_order(queue, controller, orders, jobs, provider, delivered):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    provider.submit_outcomes = [ContentRejectedError("inappropriate lyrics", []) for _ in range(3)]

    job = await _run_once(queue, jobs, job_id)
    assert job.content_moderation_retries == 1
    job = await _run_once(queue, jobs, job_id)
    assert job.content_moderation_retries == 2
    assert job.attempts == 0

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.failed
    assert "content repeatedly rejected" in job.last_error

    order = await orders.get("order1")
    assert order.status == OrderStatus.failed
    assert len(delivered.of("failure")) == 1


@pytest.mark.asyncio
async def test_audio_url_written_once(queue, orders, jobs, provider, artifacts):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    provider.gate = asyncio.Event()

    job = await jobs.claim(job_id)
    run = asyncio.create_task(queue.run_job(job))
    for _ in range(100):
        if provider.in_flight:
            break
        await asyncio.sleep(0)
    assert provider.in_flight == 1
    # another writer lands a URL while this run is still generating
    assert await orders.set_audio_url_once("order1", 1, "https://first") == "https://first"
    provider.gate.set()
    await run

    assert (await jobs.get(job_id)).status == SongJobStatus.completed
    assert len(artifacts.uploads) == 1
    assert (await orders.get("order1")).audio_url_for(1) == "https://first"
    assert await orders.set_audio_url_once("order1", 1, "https://second") == "https://first"


@pytest.mark.asyncio
async def test_rerun_after_upload_reuses_existing_artifact(queue, orders, jobs, provider, artifacts):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    # worker died between upload and marking the job completed
    assert await jobs.claim(job_id) is not None
    await orders.set_audio_url_once("order1", 1, "https://already-uploaded")
    assert await jobs.reclaim_stale(0) == 1

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.completed
    assert job.attempts == 0
    assert provider.submits == []
    assert artifacts.uploads == []


@pytest.mark.asyncio
async def test_concurrent_claim_has_single_winner(queue, orders, jobs):
    await seed_order(orders)
    job_id = await _enqueue(queue)

    results = await asyncio.gather(jobs.claim(job_id), jobs.claim(job_id))
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].status == SongJobStatus.processing


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_max(queue, orders, jobs, provider):
    for i in range(5):
        await seed_order(orders, order_id=f"o{i}")
        await _enqueue(queue, order_id=f"o{i}")

    provider.gate = asyncio.Event()

    await queue.tick()
    await asyncio.sleep(0)
    await queue.tick()
    await queue.tick()
    assert await jobs.count_processing() == 2
    assert (await jobs.stats()).pending == 3

    provider.gate.set()
    for _ in range(10):
        await queue.drain()
        assert await jobs.count_processing() <= 2
        if not await queue.tick():
            break
    await queue.drain()

    stats = await jobs.stats()
    assert stats.completed == 5
    assert provider.max_in_flight <= 2


@pytest.mark.asyncio
async def test_multi_song_order_completes_after_last_song(queue, controller, orders, jobs, delivered):
    await seed_order(orders, n_songs=2)
    id1 = await _enqueue(queue, song_index=1)
    id2 = await _enqueue(queue, song_index=2)

    await _run_once(queue, jobs, id1)
    order = await orders.get("order1")
    assert order.status == OrderStatus.music_generating
    assert delivered.of("success") == []

    await _run_once(queue, jobs, id2)
    order = await orders.get("order1")
    assert order.status == OrderStatus.completed
    assert len(delivered.of("success")[0]["audio_urls"]) == 2


@pytest.mark.asyncio
async def test_start_reclaims_orphaned_processing_rows(queue, orders, jobs):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    assert await jobs.claim(job_id) is not None

    await queue.start()
    try:
        for _ in range(200):
            job = await jobs.get(job_id)
            if job.status == SongJobStatus.completed:
                break
            await asyncio.sleep(0.01)
    finally:
        await queue.close()

    job = await jobs.get(job_id)
    assert job.status == SongJobStatus.completed


@pytest.mark.asyncio
async def test_start_reclaim_does_not_regenerate_uploaded_song(queue, controller, orders, jobs, provider, artifacts):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    assert await jobs.claim(job_id) is not None
    await orders.set_audio_url_once("order1", 1, "https://blob.test/songs/order1/song1.mp3")

    await queue.start()
    try:
        for _ in range(200):
            if (await jobs.get(job_id)).status == SongJobStatus.completed:
                break
            await asyncio.sleep(0.01)
    finally:
        await queue.close()

    assert (await jobs.get(job_id)).status == SongJobStatus.completed
    assert provider.submits == []
    assert artifacts.uploads == []
    assert (await orders.get("order1")).status == OrderStatus.completed


@pytest.mark.asyncio
async def test_stale_sweep_skips_jobs_still_running_here(queue, orders, jobs, provider, artifacts):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    queue.stale_seconds = 0
    provider.gate = asyncio.Event()

    first = await queue.tick()
    assert [j.id for j in first] == [job_id]
    for _ in range(100):
        if provider.in_flight:
            break
        await asyncio.sleep(0)

    second = await queue.tick()
    assert second == []
    assert (await jobs.get(job_id)).status == SongJobStatus.processing

    provider.gate.set()
    await queue.drain()
    assert len(provider.submits) == 1
    assert len(artifacts.uploads) == 1
    assert (await jobs.get(job_id)).status == SongJobStatus.completed


@pytest.mark.asyncio
async def test_outcome_of_reclaimed_run_is_dropped(queue, controller, orders, jobs, provider, delivered):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    provider.submit_outcomes = [ProviderError("503 from provider")]

    stale = await jobs.claim(job_id)
    assert await jobs.reclaim_stale(0) == 1
    await queue.run_job(stale)

    job = await jobs.get(job_id)
    assert job.status == SongJobStatus.pending
    assert job.attempts == 0
    assert job.last_error is None

    assert await jobs.mark_completed(job_id, 60) is False
    assert await jobs.mark_failed(job_id, attempts=1, error="x", retention_seconds=60) is False
    assert delivered.of("failure") == []


@pytest.mark.asyncio
async def test_sanitizer_failure_counts_as_ordinary_attempt(queue, orders, jobs, provider, sanitizer):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    provider.submit_outcomes = [ContentRejectedError("Lyrics contain sensitive words: fight", ["fight"])]

    async def broken_clean(lyrics, flagged_phrases):
        raise ProviderError("chat model unavailable")

    sanitizer.clean = broken_clean

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.pending
    assert job.attempts == 1
    assert job.content_moderation_retries == 0
    assert "chat model unavailable" in job.last_error
    assert job.payload.lyrics == make_payload().lyrics
    assert (await orders.get("order1")).lyrics_for(1) == "[verse]\nlyrics 1"


class _BrokenTransport:
    async def notify_success(self, **kwargs):
        raise RuntimeError("transport down")

    async def notify_failure(self, **kwargs):
        raise RuntimeError("transport down")

    async def notify_progress(self, **kwargs):
        raise RuntimeError("transport down")

    async def notify_lyrics_ready(self, **kwargs):
        raise RuntimeError("transport down")


@pytest.mark.asyncio
async def test_notifier_failures_never_fail_the_job(orders, jobs, discounts, provider, sanitizer, artifacts, lyrics, payment):
    notifier = BestEffortNotifier(_BrokenTransport())
    queue = SongJobQueue(
        jobs=jobs,
        orders=orders,
        provider=provider,
        sanitizer=sanitizer,
        artifacts=artifacts,
        notifier=notifier,
        max_attempts=3,
        provider_poll_seconds=0,
        provider_max_polls=3,
    )
    OrderController(
        orders=orders,
        discounts=discounts,
        lyrics=lyrics,
        queue=queue,
        payment=payment,
        notifier=notifier,
        base_price=350,
        review_enabled=False,
    )
    await seed_order(orders)
    job_id = await _enqueue(queue)

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.completed
    assert job.attempts == 0
    assert (await orders.get("order1")).status == OrderStatus.completed


@pytest.mark.asyncio
async def test_missing_artifact_store_fails_without_retry(queue, controller, orders, jobs, provider):
    await seed_order(orders)
    job_id = await _enqueue(queue)
    queue.artifacts = None

    job = await _run_once(queue, jobs, job_id)
    assert job.status == SongJobStatus.failed
    assert provider.submits == []
    assert (await orders.get("order1")).status == OrderStatus.failed
