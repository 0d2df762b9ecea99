from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import settings
from app.domain.errors import IntegrationError

logger = logging.getLogger("delivery")


class DeliveryNotifier(Protocol):
    async def notify_success(self, *, customer_ref: str, order_id: str, audio_urls: List[str]) -> None:
        ...

    async def notify_failure(self, *, customer_ref: str, order_id: str, message: str) -> None:
        ...

    async def notify_progress(self, *, customer_ref: str, order_id: str, label: str, percent: int) -> None:
        ...

    async def notify_lyrics_ready(self, *, customer_ref: str, order_id: str, lyrics: Dict[str, str]) -> None:
        ...


class WebhookDeliveryNotifier:
    """
    Pushes customer-facing events to the messaging transport's webhook.

    Body: {"event": "...", "customer_ref": "...", "order_id": "...", ...}
    """

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.url = (settings.DELIVERY_WEBHOOK_URL or "").strip()
        self.timeout = settings.DELIVERY_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json"}
        if settings.DELIVERY_WEBHOOK_TOKEN:
            h["Authorization"] = f"Bearer {settings.DELIVERY_WEBHOOK_TOKEN}"
        return h

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def _post(self, body: Dict[str, Any]) -> None:
        if not self.url:
            raise IntegrationError("DELIVERY_WEBHOOK_URL is not set.")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.post(self.url, headers=self._headers(), json=body)
        r.raise_for_status()

    async def notify_success(self, *, customer_ref: str, order_id: str, audio_urls: List[str]) -> None:
        await self._post(
            {"event": "order_completed", "customer_ref": customer_ref, "order_id": order_id, "audio_urls": audio_urls}
        )

    async def notify_failure(self, *, customer_ref: str, order_id: str, message: str) -> None:
        await self._post({"event": "order_failed", "customer_ref": customer_ref, "order_id": order_id, "message": message})

    async def notify_progress(self, *, customer_ref: str, order_id: str, label: str, percent: int) -> None:
        await self._post(
            {
                "event": "order_progress",
                "customer_ref": customer_ref,
                "order_id": order_id,
                "label": label,
                "percent": max(0, min(100, int(percent))),
            }
        )

    async def notify_lyrics_ready(self, *, customer_ref: str, order_id: str, lyrics: Dict[str, str]) -> None:
        await self._post({"event": "lyrics_ready", "customer_ref": customer_ref, "order_id": order_id, "lyrics": lyrics})


class BestEffortNotifier:
    """Wraps a DeliveryNotifier; delivery problems are logged and never reach the caller."""

    def __init__(self, inner: Optional[DeliveryNotifier]):
        self.inner = inner

    async def _call(self, method: str, **kwargs: Any) -> None:
        if self.inner is None:
            logger.info("delivery_skipped_no_notifier", extra={"method": method, "order_id": kwargs.get("order_id")})
            return
        try:
            await getattr(self.inner, method)(**kwargs)
        except Exception as e:
            logger.warning(
                "delivery_notify_failed",
                extra={"method": method, "order_id": kwargs.get("order_id"), "error": str(e)},
            )

    async def notify_success(self, *, customer_ref: str, order_id: str, audio_urls: List[str]) -> None:
        await self._call("notify_success", customer_ref=customer_ref, order_id=order_id, audio_urls=audio_urls)

    async def notify_failure(self, *, customer_ref: str, order_id: str, message: str) -> None:
        await self._call("notify_failure", customer_ref=customer_ref, order_id=order_id, message=message)

    async def notify_progress(self, *, customer_ref: str, order_id: str, label: str, percent: int) -> None:
        await self._call("notify_progress", customer_ref=customer_ref, order_id=order_id, label=label, percent=percent)

    async def notify_lyrics_ready(self, *, customer_ref: str, order_id: str, lyrics: Dict[str, str]) -> None:
        await self._call("notify_lyrics_ready", customer_ref=customer_ref, order_id=order_id, lyrics=lyrics)
