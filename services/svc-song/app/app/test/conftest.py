from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from app.domain.enums import OrderStatus, SongMood, SongType, VocalPreference
from app.domain.errors import IntegrationError
from app.domain.models import (
    LyricsRequest,
    ModerationAnalysis,
    Order,
    OrderRequest,
    PaymentToken,
    SongDetails,
    SongJobPayload,
)
from app.repos.memory import MemoryDiscountsRepo, MemoryOrdersRepo, MemorySongJobsRepo, MemoryStore
from app.services.delivery_notifier import BestEffortNotifier
from app.services.discount_service import DiscountService
from app.services.order_controller import OrderController
from app.services.providers.base import ProviderPollResult, ProviderSubmitResult
from app.services.song_job_queue import SongJobQueue


# -----------------------------
# Fakes
# -----------------------------


class FakeProvider:
    """
    Scripted generation provider.

    submit_outcomes: consumed per submit; an Exception is raised, None means success.
    poll_outcomes: consumed per poll; when empty every poll succeeds (or stays processing
    when `never_finishes` is set).
    """

    provider_name = "fake"

    def __init__(self) -> None:
        self.submit_outcomes: List[Optional[Exception]] = []
        self.poll_outcomes: List[ProviderPollResult] = []
        self.never_finishes = False
        self.gate: Optional[asyncio.Event] = None
        self.submits: List[Dict[str, Any]] = []
        self.downloads = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._ids = itertools.count(1)

    async def submit(self, *, lyrics: str, style: str, vocal: Optional[str], title: str) -> ProviderSubmitResult:
        self.submits.append({"lyrics": lyrics, "style": style, "vocal": vocal, "title": title})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.submit_outcomes:
                err = self.submit_outcomes.pop(0)
                if err is not None:
                    raise err
        finally:
            self.in_flight -= 1
        return ProviderSubmitResult(provider_task_id=f"task-{next(self._ids)}", raw_response={})

    async def poll(self, provider_task_id: str) -> ProviderPollResult:
        if self.poll_outcomes:
            return self.poll_outcomes.pop(0)
        if self.never_finishes:
            return ProviderPollResult(status="processing")
        return ProviderPollResult(status="succeeded", audio_url=f"https://provider.test/{provider_task_id}.mp3")

    async def download(self, url: str) -> bytes:
        self.downloads += 1
        return b"ID3-fake-audio"


class FakeSanitizer:
    def __init__(self) -> None:
        self.flagged_phrases: List[str] = ["fight"]
        self.calls: List[str] = []
        self._n = itertools.count(1)

    async def analyze(self, lyrics: str) -> ModerationAnalysis:
        self.calls.append("analyze")
        return ModerationAnalysis(flagged=bool(self.flagged_phrases), flagged_phrases=list(self.flagged_phrases))

    async def clean(self, lyrics: str, flagged_phrases: List[str]) -> str:
        self.calls.append("clean")
        return f"[verse]\ncleaned lyrics v{next(self._n)}"

    async def regenerate(self, req: LyricsRequest) -> str:
        self.calls.append("regenerate")
        return f"[verse]\nregenerated lyrics v{next(self._n)}"


class FakeArtifacts:
    def __init__(self) -> None:
        self.uploads: List[Dict[str, Any]] = []

    async def upload(self, *, order_id: str, song_index: int, data: bytes) -> str:
        self.uploads.append({"order_id": order_id, "song_index": song_index, "bytes": len(data)})
        return f"https://blob.test/songs/{order_id}/song{song_index}.mp3?v={len(self.uploads)}"


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def of(self, kind: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["event"] == kind]

    async def notify_success(self, *, customer_ref: str, order_id: str, audio_urls: List[str]) -> None:
        self.events.append({"event": "success", "customer_ref": customer_ref, "order_id": order_id, "audio_urls": audio_urls})

    async def notify_failure(self, *, customer_ref: str, order_id: str, message: str) -> None:
        self.events.append({"event": "failure", "customer_ref": customer_ref, "order_id": order_id, "message": message})

    async def notify_progress(self, *, customer_ref: str, order_id: str, label: str, percent: int) -> None:
        self.events.append({"event": "progress", "order_id": order_id, "label": label, "percent": percent})

    async def notify_lyrics_ready(self, *, customer_ref: str, order_id: str, lyrics: Dict[str, str]) -> None:
        self.events.append({"event": "lyrics_ready", "order_id": order_id, "lyrics": dict(lyrics)})


class FakeLyrics:
    def __init__(self) -> None:
        self.fail_generate = False
        self.generated: List[LyricsRequest] = []
        self.revisions: List[str] = []

    async def generate(self, req: LyricsRequest, *, strict: bool = False) -> str:
        if self.fail_generate:
            raise IntegrationError("OPENAI_API_KEY is not set.")
        self.generated.append(req)
        return f"[verse]\nlyrics for {req.song.type.value} #{len(self.generated)}"

    async def revise(self, lyrics: str, feedback: str) -> str:
        self.revisions.append(feedback)
        return f"{lyrics}\n[outro]\nrevised: {feedback}"

    async def synthesize_genre(self, song: SongDetails, notes: Optional[str] = None) -> str:
        return f"warm {song.type.value} ballad"


class FakePayment:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def create_token(self, *, order_id: str, amount: float, payer: str) -> PaymentToken:
        self.calls.append({"order_id": order_id, "amount": amount, "payer": payer})
        if self.error is not None:
            raise self.error
        return PaymentToken(token=f"tok-{order_id}", payment_url=f"https://pay.test/{order_id}")


# -----------------------------
# Builders
# -----------------------------


def make_request(n_songs: int = 1, **overrides: Any) -> OrderRequest:
    songs = [
        SongDetails(type=SongType.pop, style=SongMood.romantic, vocal=VocalPreference.female),
        SongDetails(type=SongType.rock, style=SongMood.fun, vocal=VocalPreference.male),
    ][:n_songs]
    data: Dict[str, Any] = {
        "customer_ref": "905551112233",
        "songs": songs,
        "recipient_relation": "wife",
        "include_name_in_song": True,
        "recipient_name": "Ayse",
        "story": "We met on a rainy day in Izmir and have been inseparable since.",
        "notes": None,
    }
    data.update(overrides)
    return OrderRequest(**data)


def make_payload(**overrides: Any) -> SongJobPayload:
    data: Dict[str, Any] = {
        "lyrics": "[verse]\nwe fight for love under the rain",
        "song_type": SongType.pop,
        "style": SongMood.romantic.value,
        "vocal": VocalPreference.female,
        "genre": "romantic pop ballad",
        "story": "We met on a rainy day.",
        "recipient_name": "Ayse",
    }
    data.update(overrides)
    return SongJobPayload(**data)


async def seed_order(
    orders: MemoryOrdersRepo,
    *,
    n_songs: int = 1,
    status: OrderStatus = OrderStatus.music_generating,
    order_id: str = "order1",
) -> Order:
    req = make_request(n_songs)
    order = Order(
        id=order_id,
        customer_ref=req.customer_ref,
        order_data=req,
        status=status,
        base_price=350.0 * n_songs,
        total_price=350.0 * n_songs,
        lyrics={str(i): f"[verse]\nlyrics {i}" for i in range(1, n_songs + 1)},
        created_at=datetime.now(timezone.utc),
    )
    await orders.insert(order)
    return order


# -----------------------------
# Fixtures
# -----------------------------


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def orders(store) -> MemoryOrdersRepo:
    return MemoryOrdersRepo(store)


@pytest.fixture
def jobs(store) -> MemorySongJobsRepo:
    return MemorySongJobsRepo(store)


@pytest.fixture
def discount_repo(store) -> MemoryDiscountsRepo:
    return MemoryDiscountsRepo(store)


@pytest.fixture
def discounts(discount_repo) -> DiscountService:
    return DiscountService(discount_repo)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sanitizer() -> FakeSanitizer:
    return FakeSanitizer()


@pytest.fixture
def artifacts() -> FakeArtifacts:
    return FakeArtifacts()


@pytest.fixture
def delivered() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def notifier(delivered) -> BestEffortNotifier:
    return BestEffortNotifier(delivered)


@pytest.fixture
def lyrics() -> FakeLyrics:
    return FakeLyrics()


@pytest.fixture
def payment() -> FakePayment:
    return FakePayment()


@pytest.fixture
def queue(jobs, orders, provider, sanitizer, artifacts, notifier) -> SongJobQueue:
    return SongJobQueue(
        jobs=jobs,
        orders=orders,
        provider=provider,
        sanitizer=sanitizer,
        artifacts=artifacts,
        notifier=notifier,
        poll_seconds=0.01,
        max_concurrent=2,
        max_attempts=3,
        max_moderation_retries=2,
        stale_seconds=1800,
        provider_poll_seconds=0,
        provider_max_polls=3,
    )


@pytest.fixture
def controller(orders, discounts, lyrics, queue, payment, notifier) -> OrderController:
    return OrderController(
        orders=orders,
        discounts=discounts,
        lyrics=lyrics,
        queue=queue,
        payment=payment,
        notifier=notifier,
        base_price=350,
        review_enabled=False,
        max_revisions=2,
    )
