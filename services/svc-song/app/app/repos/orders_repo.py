from __future__ import annotations

from typing import Any, Dict, List, Optional

import asyncpg

from app.domain.enums import ORDER_TRANSITIONS, OrderStatus
from app.domain.models import Order

# columns a status transition / field update may touch; never a whole-record overwrite
_UPDATABLE_FIELDS = frozenset({"paid_at", "completed_at", "error_message", "payment_token"})


def _row_to_order(row: asyncpg.Record) -> Order:
    d = dict(row)
    for k in ("base_price", "discount_amount", "total_price"):
        if d.get(k) is not None:
            d[k] = float(d[k])
    d["lyrics"] = d.get("lyrics") or {}
    d["genres"] = d.get("genres") or {}
    d["audio_urls"] = d.get("audio_urls") or {}
    return Order.model_validate(d)


def _set_clause(fields: Dict[str, Any], start: int) -> tuple[str, list[Any]]:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"not updatable: {sorted(unknown)}")
    parts: list[str] = []
    args: list[Any] = []
    for i, (k, v) in enumerate(sorted(fields.items()), start=start):
        parts.append(f"{k}=${i}")
        args.append(v)
    return "".join(f", {p}" for p in parts), args


class OrdersRepo:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def insert(self, order: Order) -> None:
        sql = """
        INSERT INTO orders (
          id, customer_ref, order_data, status,
          base_price, discount_amount, total_price, discount_code,
          lyrics, genres, lyrics_revisions, audio_urls,
          payment_token, error_message,
          created_at, paid_at, completed_at, updated_at
        )
        VALUES ($1, $2, $3::jsonb, $4, $5, $6, $7, $8, $9::jsonb, $10::jsonb, $11, $12::jsonb, $13, $14, $15, $16, $17, now())
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                sql,
                order.id,
                order.customer_ref,
                order.order_data.model_dump(mode="json"),
                order.status.value,
                order.base_price,
                order.discount_amount,
                order.total_price,
                order.discount_code,
                order.lyrics,
                order.genres,
                order.lyrics_revisions,
                order.audio_urls,
                order.payment_token,
                order.error_message,
                order.created_at,
                order.paid_at,
                order.completed_at,
            )

    async def get(self, order_id: str) -> Optional[Order]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        return _row_to_order(row) if row else None

    async def list_by_customer(self, customer_ref: str, limit: int = 20) -> List[Order]:
        sql = """
        SELECT * FROM orders
        WHERE customer_ref = $1
        ORDER BY created_at DESC
        LIMIT $2
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, customer_ref, limit)
        return [_row_to_order(r) for r in rows]

    async def transition(self, order_id: str, to_status: OrderStatus, **fields: Any) -> bool:
        """
        Conditional status change. Only applies when the current status is one the
        target may be entered from; returns False otherwise (including unknown ids).
        """
        allowed = [s.value for s in ORDER_TRANSITIONS[to_status]]
        extra_sql, extra_args = _set_clause(fields, start=4)
        sql = f"""
        UPDATE orders
        SET status = $2, updated_at = now(){extra_sql}
        WHERE id = $1 AND status = ANY($3::text[])
        RETURNING id
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(sql, order_id, to_status.value, allowed, *extra_args)
        return row is not None

    async def update_fields(self, order_id: str, **fields: Any) -> None:
        if not fields:
            return
        extra_sql, extra_args = _set_clause(fields, start=2)
        sql = f"UPDATE orders SET updated_at = now(){extra_sql} WHERE id = $1"
        async with self.pool.acquire() as conn:
            await conn.execute(sql, order_id, *extra_args)

    async def set_lyrics(self, order_id: str, song_index: int, text: str) -> None:
        sql = """
        UPDATE orders
        SET lyrics = coalesce(lyrics, '{}'::jsonb) || jsonb_build_object($2::text, $3::text),
            updated_at = now()
        WHERE id = $1
        """
        async with self.pool.acquire() as conn:
            await conn.execute(sql, order_id, str(song_index), text)

    async def set_genre(self, order_id: str, song_index: int, genre: str) -> None:
        sql = """
        UPDATE orders
        SET genres = coalesce(genres, '{}'::jsonb) || jsonb_build_object($2::text, $3::text),
            updated_at = now()
        WHERE id = $1
        """
        async with self.pool.acquire() as conn:
            await conn.execute(sql, order_id, str(song_index), genre)

    async def set_audio_url_once(self, order_id: str, song_index: int, url: str) -> Optional[str]:
        """
        First write wins. Returns the URL stored for the index after the call,
        which is the pre-existing one when the key was already set.
        """
        key = str(song_index)
        sql = """
        UPDATE orders
        SET audio_urls = coalesce(audio_urls, '{}'::jsonb) || jsonb_build_object($2::text, $3::text),
            updated_at = now()
        WHERE id = $1 AND NOT (coalesce(audio_urls, '{}'::jsonb) ? $2::text)
        RETURNING audio_urls ->> $2::text AS url
        """
        async with self.pool.acquire() as conn:
            stored = await conn.fetchval(sql, order_id, key, url)
            if stored is None:
                stored = await conn.fetchval(
                    "SELECT audio_urls ->> $2::text FROM orders WHERE id = $1", order_id, key
                )
        return stored

    async def increment_lyrics_revisions(self, order_id: str, max_revisions: int) -> Optional[int]:
        """Returns the new count, or None when the limit is already reached."""
        sql = """
        UPDATE orders
        SET lyrics_revisions = lyrics_revisions + 1, updated_at = now()
        WHERE id = $1 AND lyrics_revisions < $2
        RETURNING lyrics_revisions
        """
        async with self.pool.acquire() as conn:
            return await conn.fetchval(sql, order_id, max_revisions)
