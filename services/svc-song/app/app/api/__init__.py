from __future__ import annotations

from fastapi import APIRouter

from app.api.health import router as health_router
from app.api.routes.orders import router as orders_router
from app.api.routes.payments import router as payments_router
from app.api.routes.providers import router as providers_router
from app.api.routes.queue import router as queue_router


def build_router() -> APIRouter:
    r = APIRouter()
    r.include_router(health_router)
    r.include_router(orders_router)
    r.include_router(payments_router)
    r.include_router(queue_router)
    r.include_router(providers_router)
    return r
