from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Request

logger = logging.getLogger("provider_callbacks")

router = APIRouter(prefix="/api/providers", tags=["providers"])


@router.post("/suno/callback")
async def suno_callback(request: Request) -> Dict[str, Any]:
    # Suno requires a callback URL; job state is driven by polling, so this only records the event
    try:
        body = await request.json()
    except ValueError:
        body = {}
    data = body.get("data") if isinstance(body, dict) else None
    logger.info(
        "suno_callback_received",
        extra={
            "task_id": (data or {}).get("task_id") or (data or {}).get("taskId"),
            "callback_type": (data or {}).get("callbackType"),
            "code": body.get("code") if isinstance(body, dict) else None,
        },
    )
    return {"status": "received"}
