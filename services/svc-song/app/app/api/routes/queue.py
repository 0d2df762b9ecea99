from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends

from app.api.deps import get_queue
from app.services.song_job_queue import SongJobQueue

router = APIRouter(prefix="/api/queue", tags=["queue"])


@router.get("/stats")
async def queue_stats(queue: SongJobQueue = Depends(get_queue)) -> Dict[str, int]:
    return await queue.stats()
