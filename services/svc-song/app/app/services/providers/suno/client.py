from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import settings
from app.domain.errors import ContentRejectedError, IntegrationError, ProviderError
from app.services.content_sanitizer import parse_rejection
from app.services.providers.base import ProviderPollResult, ProviderSubmitResult
from app.services.providers.downloads import stream_audio

logger = logging.getLogger("suno")


class SunoApiError(ProviderError):
    pass


_SENSITIVE_HINTS = ("sensitive", "artist name", "inappropriate", "moderation")

_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


def _headers() -> Dict[str, str]:
    if not settings.SUNO_API_KEY:
        raise IntegrationError("SUNO_API_KEY is not set.")
    return {
        "Authorization": f"Bearer {settings.SUNO_API_KEY}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def _safe_json(resp: httpx.Response) -> Dict[str, Any]:
    text = (resp.text or "").strip()
    if not text:
        raise SunoApiError("HTTP 200 but EMPTY_BODY")
    try:
        obj = resp.json()
    except json.JSONDecodeError as e:
        raise SunoApiError(f"INVALID_JSON: {str(e)} body={text[:200]}") from e
    if not isinstance(obj, dict):
        raise SunoApiError(f"UNEXPECTED_JSON_TYPE: {type(obj)}")
    return obj


def _normalize_status(raw_status: Any) -> str:
    s = str(raw_status or "").strip().upper()
    if s == "SUCCESS":
        return "succeeded"
    if "SENSITIVE" in s:
        return "sensitive_content"
    if "ERROR" in s or "FAILED" in s:
        return "failed"
    # PENDING, TEXT_SUCCESS, FIRST_SUCCESS, ...
    return "processing"


def _extract_audio_url(task: Dict[str, Any]) -> Optional[str]:
    songs = (task.get("response") or {}).get("sunoData")
    if isinstance(songs, list) and songs:
        first = songs[0] if isinstance(songs[0], dict) else {}
        url = first.get("audioUrl") or first.get("sourceAudioUrl")
        if url:
            return str(url)
    url = task.get("audio_url") or task.get("audioUrl") or task.get("url") or task.get("file_url")
    return str(url) if url else None


def _extract_error_message(obj: Dict[str, Any]) -> Optional[str]:
    msg = (
        obj.get("errorMessage")
        or obj.get("error_message")
        or obj.get("fail_reason")
        or obj.get("error")
        or obj.get("message")
        or obj.get("msg")
    )
    return str(msg) if msg else None


def _looks_like_content_rejection(msg: Optional[str]) -> bool:
    m = (msg or "").lower()
    return any(h in m for h in _SENSITIVE_HINTS)


class SunoClient:
    provider_name = "suno"

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base = settings.SUNO_BASE_URL.rstrip("/")
        self.timeout = settings.SUNO_TIMEOUT_SECONDS
        self.model = settings.SUNO_MODEL
        self._transport = transport

    def _client(self, timeout: float | httpx.Timeout | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    def _callback_url(self) -> str:
        if settings.SUNO_CALLBACK_URL:
            return settings.SUNO_CALLBACK_URL
        return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/providers/suno/callback"

    # only retry when the request never reached Suno; anything later may already have created a task
    @retry(
        reraise=True,
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.6, min=0.6, max=6.0),
        retry=retry_if_exception_type(_NOT_SENT),
    )
    async def submit(self, *, lyrics: str, style: str, vocal: Optional[str], title: str) -> ProviderSubmitResult:
        url = f"{self.base}/api/v1/generate"
        payload: Dict[str, Any] = {
            "model": self.model,
            "customMode": True,
            "instrumental": False,
            "prompt": lyrics,
            "style": style,
            "title": title,
            "callBackUrl": self._callback_url(),
        }
        if vocal:
            payload["vocalGender"] = vocal

        async with self._client() as client:
            r = await client.post(url, headers=_headers(), json=payload)

        if r.status_code >= 500:
            raise SunoApiError(f"Suno submit failed {r.status_code}: {r.text}")

        data = _safe_json(r)
        code = data.get("code")
        task_id = (data.get("data") or {}).get("taskId")

        if code == 200 and task_id:
            logger.info("suno_task_created", extra={"task_id": task_id, "style": style, "lyrics_len": len(lyrics)})
            return ProviderSubmitResult(provider_task_id=str(task_id), raw_response=data)

        msg = _extract_error_message(data) or f"http {r.status_code}"
        if _looks_like_content_rejection(msg):
            # rejected up front; no task exists to poll
            raise ContentRejectedError(msg, parse_rejection(msg))
        raise SunoApiError(f"Suno submit rejected code={code}: {msg}")

    @retry(
        reraise=True,
        stop=stop_after_attempt(6),
        wait=wait_exponential(multiplier=0.6, min=0.6, max=8.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError, SunoApiError)),
    )
    async def poll(self, provider_task_id: str) -> ProviderPollResult:
        url = f"{self.base}/api/v1/generate/record-info"
        params = {"taskId": provider_task_id}

        async with self._client() as client:
            r = await client.get(url, headers=_headers(), params=params)

        if r.status_code >= 400:
            raise SunoApiError(f"Suno record-info failed {r.status_code}: {r.text}")

        data = _safe_json(r)
        task = data.get("data")
        if data.get("code") != 200 or not isinstance(task, dict):
            return ProviderPollResult(status="processing", raw_response=data)

        status = _normalize_status(task.get("status"))

        if status == "succeeded":
            audio_url = _extract_audio_url(task)
            if not audio_url:
                # SUCCESS can precede the audio URL by a few seconds
                logger.info("suno_success_without_audio", extra={"task_id": provider_task_id})
                return ProviderPollResult(status="processing", raw_response=task)
            return ProviderPollResult(status="succeeded", audio_url=audio_url, raw_response=task)

        if status == "sensitive_content":
            detail = _extract_error_message(task) or ""
            logger.warning("suno_sensitive_word_error", extra={"task_id": provider_task_id, "detail": detail})
            return ProviderPollResult(status="sensitive_content", detail=detail, raw_response=task)

        if status == "failed":
            msg = _extract_error_message(task) or str(task.get("status") or "provider failed")
            if _looks_like_content_rejection(msg):
                return ProviderPollResult(status="sensitive_content", detail=msg, raw_response=task)
            return ProviderPollResult(status="failed", detail=msg, raw_response=task)

        return ProviderPollResult(status="processing", raw_response=task)

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1.0, min=1.0, max=8.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def download(self, url: str) -> bytes:
        max_bytes = settings.PROVIDER_MAX_DOWNLOAD_BYTES
        timeout = httpx.Timeout(connect=30.0, read=settings.PROVIDER_DOWNLOAD_TIMEOUT_SECONDS, write=30.0, pool=30.0)

        async with self._client(timeout) as client:
            return await stream_audio(client, url, max_bytes=max_bytes, error_cls=SunoApiError)
