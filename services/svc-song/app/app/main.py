from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from app.api import build_router
from app.config import settings
from app.container import close_container, get_container
from app.logging import configure_logging

logger = logging.getLogger("svc-song")


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title=os.getenv("SERVICE_NAME", settings.SERVICE_NAME),
        version=os.getenv("SERVICE_VERSION", os.getenv("GIT_SHA", "dev")),
        docs_url=os.getenv("DOCS_URL", "/docs"),
        redoc_url=os.getenv("REDOC_URL", "/redoc"),
        openapi_url=os.getenv("OPENAPI_URL", "/openapi.json"),
    )

    app.include_router(build_router())

    @app.on_event("startup")
    async def startup():
        c = await get_container()
        if settings.WORKER_EMBEDDED:
            await c.queue.start()
        else:
            logger.info("queue_worker_external")

    @app.on_event("shutdown")
    async def shutdown():
        await close_container()

    @app.get("/")
    async def root():
        return {"service": settings.SERVICE_NAME, "status": "ok"}

    return app


# uvicorn app.main:app
app = create_app()
