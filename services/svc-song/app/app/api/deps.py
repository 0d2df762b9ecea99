from __future__ import annotations

from fastapi import Depends

from app.container import Container, get_container
from app.services.order_controller import OrderController
from app.services.song_job_queue import SongJobQueue


async def get_controller(c: Container = Depends(get_container)) -> OrderController:
    return c.controller


async def get_queue(c: Container = Depends(get_container)) -> SongJobQueue:
    return c.queue
