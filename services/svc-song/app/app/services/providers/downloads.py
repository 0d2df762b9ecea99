from __future__ import annotations

from typing import Type

import httpx

from app.domain.errors import ProviderError


async def stream_audio(
    client: httpx.AsyncClient,
    url: str,
    *,
    max_bytes: int,
    error_cls: Type[ProviderError] = ProviderError,
) -> bytes:
    """Stream a generated file into memory, refusing anything past max_bytes."""
    buf = bytearray()
    async with client.stream("GET", url) as resp:
        if resp.status_code >= 400:
            raise error_cls(f"audio download failed {resp.status_code}")
        async for chunk in resp.aiter_bytes(chunk_size=1024 * 1024):
            if not chunk:
                continue
            buf.extend(chunk)
            if len(buf) > max_bytes:
                raise error_cls(f"audio_too_large: > {max_bytes} bytes")

    if not buf:
        raise error_cls("downloaded_audio_is_empty")
    return bytes(buf)
