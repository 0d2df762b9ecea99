from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import settings
from app.domain.errors import IntegrationError
from app.domain.models import PaymentToken

logger = logging.getLogger("payment")


class PaymentGateway(Protocol):
    async def create_token(self, *, order_id: str, amount: float, payer: str) -> PaymentToken:
        ...


class HttpPaymentGateway:
    """
    Thin client for the payment collaborator's token endpoint.

    POST {PAYMENT_GATEWAY_URL}/tokens
      {"order_id", "amount_minor", "currency", "payer", "success_url", "fail_url"}
    -> {"token": "...", "payment_url": "..."}

    Signature verification of the callback happens on the collaborator side.
    """

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base = (settings.PAYMENT_GATEWAY_URL or "").rstrip("/")
        self.timeout = settings.PAYMENT_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        if not self.base or not settings.PAYMENT_GATEWAY_KEY:
            raise IntegrationError("payment gateway is not configured")
        return {"Authorization": f"Bearer {settings.PAYMENT_GATEWAY_KEY}", "Content-Type": "application/json"}

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def create_token(self, *, order_id: str, amount: float, payer: str) -> PaymentToken:
        headers = self._headers()
        public = settings.PUBLIC_BASE_URL.rstrip("/")
        body: Dict[str, Any] = {
            "order_id": order_id,
            # gateways take minor units
            "amount_minor": int(round(amount * 100)),
            "currency": settings.PAYMENT_CURRENCY,
            "payer": payer,
            "success_url": f"{public}/payment/success?order_id={order_id}",
            "fail_url": f"{public}/payment/fail?order_id={order_id}",
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.post(f"{self.base}/tokens", headers=headers, json=body)

        if r.status_code >= 400:
            raise IntegrationError(f"payment token request failed {r.status_code}: {r.text[:300]}")

        data = r.json()
        token = data.get("token")
        payment_url = data.get("payment_url") or (f"{self.base}/pay/{token}" if token else None)
        if not token or not payment_url:
            raise IntegrationError(f"payment token missing in response: {data}")

        logger.info("payment_token_created", extra={"order_id": order_id, "amount": amount})
        return PaymentToken(token=str(token), payment_url=str(payment_url), raw=data)
