from __future__ import annotations

import os
import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.deps import get_queue
from app.services.song_job_queue import SongJobQueue

router = APIRouter(prefix="/api/health", tags=["health"])

_STARTED_AT = time.time()


@router.get("")
@router.get("/")
async def health() -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "service": os.getenv("SERVICE_NAME", "svc-song"),
        "version": os.getenv("SERVICE_VERSION", os.getenv("GIT_SHA", "dev")),
        "time_utc": now.isoformat(),
        "uptime_s": round(time.time() - _STARTED_AT, 3),
    }


@router.get("/ready")
async def ready(queue: SongJobQueue = Depends(get_queue)):
    # a stats read proves the job store is reachable
    try:
        stats = await queue.stats()
    except Exception as e:
        return JSONResponse(status_code=503, content={"status": "not_ready", "error": str(e)})
    return {"status": "ready", "queue": stats}
