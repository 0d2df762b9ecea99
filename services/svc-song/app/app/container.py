from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.config import settings
from app.db import close_pool, get_pool
from app.domain.errors import IntegrationError
from app.repos.discounts_repo import DiscountsRepo
from app.repos.memory import MemoryDiscountsRepo, MemoryOrdersRepo, MemorySongJobsRepo, MemoryStore
from app.repos.orders_repo import OrdersRepo
from app.repos.song_jobs_repo import SongJobsRepo
from app.services.azure_storage_service import AzureStorageService
from app.services.content_sanitizer import ContentSanitizer
from app.services.delivery_notifier import BestEffortNotifier, WebhookDeliveryNotifier
from app.services.discount_service import DiscountService
from app.services.lyrics_service import LyricsService, OpenAIChatClient
from app.services.order_controller import OrderController
from app.services.payment_client import HttpPaymentGateway
from app.services.providers.base import GenerationProvider
from app.services.providers.minimax.client import MiniMaxClient
from app.services.providers.suno.client import SunoClient
from app.services.rate_limiter import SlidingWindowRateLimiter
from app.services.song_job_queue import SongJobQueue

logger = logging.getLogger("svc-song.container")


@dataclass
class Container:
    orders: Any
    jobs: Any
    discounts: DiscountService
    queue: SongJobQueue
    controller: OrderController
    backend: str


_CONTAINER: Optional[Container] = None
_LOCK = asyncio.Lock()


async def _build_stores() -> tuple[Any, Any, Any, str]:
    backend = (settings.STORE_BACKEND or "postgres").strip().lower()
    if backend == "memory":
        store = MemoryStore()
        return MemoryOrdersRepo(store), MemorySongJobsRepo(store), MemoryDiscountsRepo(store), backend
    if backend != "postgres":
        raise ValueError(f"unknown STORE_BACKEND: {settings.STORE_BACKEND}")
    pool = await get_pool()
    return OrdersRepo(pool), SongJobsRepo(pool), DiscountsRepo(pool), backend


def _build_provider() -> GenerationProvider:
    name = (settings.MUSIC_PROVIDER or "suno").strip().lower()
    if name == "suno":
        return SunoClient()
    if name == "minimax":
        return MiniMaxClient()
    raise ValueError(f"unknown MUSIC_PROVIDER: {settings.MUSIC_PROVIDER}")


def _build_artifacts() -> Optional[AzureStorageService]:
    try:
        return AzureStorageService()
    except IntegrationError as e:
        # jobs fail fast with an integration error until storage is configured
        logger.warning("artifact_store_not_configured", extra={"error": str(e)})
        return None


async def build_container() -> Container:
    orders, jobs, discount_repo, backend = await _build_stores()

    chat = OpenAIChatClient()
    lyrics = LyricsService(chat)
    notifier = BestEffortNotifier(WebhookDeliveryNotifier() if settings.DELIVERY_WEBHOOK_URL else None)

    payment = None
    if settings.PAYMENT_GATEWAY_URL and settings.PAYMENT_GATEWAY_KEY:
        payment = HttpPaymentGateway()
    else:
        logger.warning("payment_gateway_not_configured")

    queue = SongJobQueue(
        jobs=jobs,
        orders=orders,
        provider=_build_provider(),
        sanitizer=ContentSanitizer(chat, lyrics),
        artifacts=_build_artifacts(),
        notifier=notifier,
        rate_limiter=SlidingWindowRateLimiter(
            settings.PROVIDER_RATE_LIMIT_REQUESTS, settings.PROVIDER_RATE_LIMIT_WINDOW_SECONDS
        ),
    )
    discounts = DiscountService(discount_repo)
    # registers itself as the queue's outcome hooks
    controller = OrderController(
        orders=orders,
        discounts=discounts,
        lyrics=lyrics,
        queue=queue,
        payment=payment,
        notifier=notifier,
    )
    logger.info("container_built", extra={"backend": backend})
    return Container(
        orders=orders, jobs=jobs, discounts=discounts, queue=queue, controller=controller, backend=backend
    )


async def get_container() -> Container:
    global _CONTAINER
    if _CONTAINER is not None:
        return _CONTAINER
    async with _LOCK:
        if _CONTAINER is None:
            _CONTAINER = await build_container()
        return _CONTAINER


def set_container(container: Optional[Container]) -> None:
    global _CONTAINER
    _CONTAINER = container


async def close_container() -> None:
    global _CONTAINER
    c = _CONTAINER
    _CONTAINER = None
    if c is None:
        return
    await c.queue.close()
    if c.backend == "postgres":
        await close_pool()
