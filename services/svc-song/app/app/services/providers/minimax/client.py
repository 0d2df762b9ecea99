from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import settings
from app.domain.errors import ContentRejectedError, IntegrationError, ProviderError
from app.services.content_sanitizer import parse_rejection
from app.services.providers.base import ProviderPollResult, ProviderSubmitResult
from app.services.providers.downloads import stream_audio

logger = logging.getLogger("minimax")


class MiniMaxApiError(ProviderError):
    pass


# base_resp.status_code values MiniMax uses for input/output moderation
_SENSITIVE_CODES = {1026, 1027}
_SENSITIVE_HINTS = ("sensitive", "inappropriate", "moderation")

_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)

# audio returned in the response body instead of as a link
_INLINE_PREFIX = "minimax-inline://"


def _headers() -> Dict[str, str]:
    if not settings.MINIMAX_API_KEY:
        raise IntegrationError("MINIMAX_API_KEY is not set.")
    return {
        "Authorization": f"Bearer {settings.MINIMAX_API_KEY}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def _safe_json(resp: httpx.Response) -> Dict[str, Any]:
    text = (resp.text or "").strip()
    if not text:
        raise MiniMaxApiError("HTTP 200 but EMPTY_BODY")
    try:
        obj = resp.json()
    except json.JSONDecodeError as e:
        raise MiniMaxApiError(f"INVALID_JSON: {str(e)} body={text[:200]}") from e
    if not isinstance(obj, dict):
        raise MiniMaxApiError(f"UNEXPECTED_JSON_TYPE: {type(obj)}")
    return obj


def _base_resp(data: Dict[str, Any]) -> tuple[int, str]:
    br = data.get("base_resp") or {}
    try:
        code = int(br.get("status_code") or 0)
    except (TypeError, ValueError):
        code = -1
    return code, str(br.get("status_msg") or "")


def _is_content_rejection(code: int, msg: str) -> bool:
    m = msg.lower()
    return code in _SENSITIVE_CODES or any(h in m for h in _SENSITIVE_HINTS)


def build_prompt(style: str, vocal: Optional[str]) -> str:
    if vocal in ("f", "m") and "vocal" not in style.lower():
        return f"{style}, {'female' if vocal == 'f' else 'male'} vocals"
    return style


class MiniMaxClient:
    """
    MiniMax music generation.

    The API either answers synchronously with the audio (hex or link) or hands back a
    task id to query. Synchronous audio is kept in memory under a synthetic task id so
    the queue's submit/poll/download flow is the same for both shapes.
    """

    provider_name = "minimax"

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base = settings.MINIMAX_BASE_URL.rstrip("/")
        self.timeout = settings.MINIMAX_TIMEOUT_SECONDS
        self.model = settings.MINIMAX_MODEL
        self._transport = transport
        self._ready: Dict[str, str] = {}
        self._inline: Dict[str, bytes] = {}

    def _client(self, timeout: float | httpx.Timeout | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    def _audio_url(self, task_id: str, audio: str) -> str:
        if audio.startswith(("http://", "https://")):
            url = audio
        else:
            try:
                blob = bytes.fromhex(audio)
            except ValueError as e:
                raise MiniMaxApiError(f"undecodable audio payload for {task_id}") from e
            url = f"{_INLINE_PREFIX}{task_id}"
            self._inline[url] = blob
        return url

    @retry(
        reraise=True,
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.6, min=0.6, max=6.0),
        retry=retry_if_exception_type(_NOT_SENT),
    )
    async def submit(self, *, lyrics: str, style: str, vocal: Optional[str], title: str) -> ProviderSubmitResult:
        url = f"{self.base}/v1/music_generation"
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": build_prompt(style, vocal),
            "lyrics": lyrics,
            "audio_setting": {"sample_rate": 44100, "bitrate": 256000, "format": "mp3"},
        }

        async with self._client() as client:
            r = await client.post(url, headers=_headers(), json=payload)

        if r.status_code >= 500:
            raise MiniMaxApiError(f"MiniMax submit failed {r.status_code}: {r.text}")

        data = _safe_json(r)
        code, msg = _base_resp(data)
        if code != 0:
            if _is_content_rejection(code, msg):
                raise ContentRejectedError(msg, parse_rejection(msg))
            raise MiniMaxApiError(f"MiniMax submit rejected code={code}: {msg or 'no detail'}")

        body = data.get("data") or {}
        audio = body.get("audio")
        if audio:
            task_id = f"inline-{uuid.uuid4().hex}"
            self._ready[task_id] = self._audio_url(task_id, str(audio))
            logger.info("minimax_audio_returned_inline", extra={"task_id": task_id, "lyrics_len": len(lyrics)})
            return ProviderSubmitResult(provider_task_id=task_id, raw_response={"base_resp": data.get("base_resp")})

        task_id = data.get("task_id") or body.get("task_id")
        if task_id:
            logger.info("minimax_task_created", extra={"task_id": task_id, "lyrics_len": len(lyrics)})
            return ProviderSubmitResult(provider_task_id=str(task_id), raw_response=data)

        raise MiniMaxApiError(f"MiniMax unexpected submit response keys={sorted(data.keys())}")

    @retry(
        reraise=True,
        stop=stop_after_attempt(6),
        wait=wait_exponential(multiplier=0.6, min=0.6, max=8.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError, MiniMaxApiError)),
    )
    async def poll(self, provider_task_id: str) -> ProviderPollResult:
        ready = self._ready.pop(provider_task_id, None)
        if ready:
            return ProviderPollResult(status="succeeded", audio_url=ready)
        if provider_task_id.startswith("inline-"):
            return ProviderPollResult(status="failed", detail="inline audio is no longer available")

        url = f"{self.base}/v1/music_generation/query/{provider_task_id}"
        async with self._client() as client:
            r = await client.get(url, headers=_headers())

        if r.status_code >= 400:
            raise MiniMaxApiError(f"MiniMax query failed {r.status_code}: {r.text}")

        data = _safe_json(r)
        code, msg = _base_resp(data)
        status = str(data.get("status") or "").strip().lower()

        if code != 0 and _is_content_rejection(code, msg):
            logger.warning("minimax_sensitive_content", extra={"task_id": provider_task_id, "detail": msg})
            return ProviderPollResult(status="sensitive_content", detail=msg, raw_response=data)

        if status == "success":
            audio = (data.get("data") or {}).get("audio") or data.get("file_url")
            if not audio:
                return ProviderPollResult(status="processing", raw_response=data)
            return ProviderPollResult(status="succeeded", audio_url=self._audio_url(provider_task_id, str(audio)))

        if status == "failed" or code != 0:
            detail = msg or "provider failed"
            if _is_content_rejection(code, detail):
                return ProviderPollResult(status="sensitive_content", detail=detail, raw_response=data)
            return ProviderPollResult(status="failed", detail=detail, raw_response=data)

        return ProviderPollResult(status="processing", raw_response=data)

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1.0, min=1.0, max=8.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def download(self, url: str) -> bytes:
        if url.startswith(_INLINE_PREFIX):
            blob = self._inline.pop(url, None)
            if blob is None:
                # held in memory only; gone after a restart, the retry generates again
                raise MiniMaxApiError("inline audio is no longer available")
            return blob

        timeout = httpx.Timeout(connect=30.0, read=settings.PROVIDER_DOWNLOAD_TIMEOUT_SECONDS, write=30.0, pool=30.0)
        async with self._client(timeout) as client:
            return await stream_audio(
                client, url, max_bytes=settings.PROVIDER_MAX_DOWNLOAD_BYTES, error_cls=MiniMaxApiError
            )
