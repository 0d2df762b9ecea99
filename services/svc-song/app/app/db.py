from __future__ import annotations

import asyncio
import json
import logging
from urllib.parse import urlparse

import asyncpg

from app.config import settings

logger = logging.getLogger("svc-song.db")

_POOL: asyncpg.Pool | None = None
_LOCK = asyncio.Lock()


def _dsn_safe(dsn: str) -> str:
    try:
        u = urlparse(dsn)
        host = u.hostname or ""
        port = u.port or ""
        db = (u.path or "").lstrip("/")
        return f"{u.scheme}://***@{host}:{port}/{db}"
    except Exception:
        return "<invalid-dsn>"


async def _init_conn(conn: asyncpg.Connection) -> None:
    # jsonb columns round-trip as python dicts/lists
    await conn.set_type_codec("json", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def init_pool() -> asyncpg.Pool:
    global _POOL
    dsn = (settings.DATABASE_URL or "").strip()
    if not dsn:
        raise RuntimeError("DATABASE_URL is required")

    if _POOL is not None:
        return _POOL

    async with _LOCK:
        if _POOL is not None:
            return _POOL

        logger.info("Initializing asyncpg pool: %s", _dsn_safe(dsn))
        _POOL = await asyncpg.create_pool(
            dsn=dsn,
            min_size=settings.DB_POOL_MIN,
            max_size=settings.DB_POOL_MAX,
            command_timeout=settings.DB_COMMAND_TIMEOUT,
            init=_init_conn,
        )
        return _POOL


async def get_pool() -> asyncpg.Pool:
    return await init_pool()


async def close_pool() -> None:
    global _POOL
    if _POOL is not None:
        await _POOL.close()
        _POOL = None
