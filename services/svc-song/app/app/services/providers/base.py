from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol


@dataclass
class ProviderSubmitResult:
    provider_task_id: str
    raw_response: Dict[str, Any]


@dataclass
class ProviderPollResult:
    status: str  # "processing" | "succeeded" | "failed" | "sensitive_content"
    audio_url: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None
    # provider's own wording for failures; for sensitive_content this is the rejection detail
    detail: Optional[str] = None


class GenerationProvider(Protocol):
    provider_name: str

    async def submit(self, *, lyrics: str, style: str, vocal: Optional[str], title: str) -> ProviderSubmitResult:
        ...

    async def poll(self, provider_task_id: str) -> ProviderPollResult:
        ...

    async def download(self, url: str) -> bytes:
        ...
