from __future__ import annotations

from typing import Optional

import asyncpg

from app.domain.models import DiscountCode, DiscountUsage


def _row_to_code(row: asyncpg.Record) -> DiscountCode:
    d = dict(row)
    for k in ("value", "min_order_amount"):
        if d.get(k) is not None:
            d[k] = float(d[k])
    return DiscountCode.model_validate(d)


class DiscountsRepo:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_by_code(self, code: str) -> Optional[DiscountCode]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM discount_codes WHERE code = $1", code.strip().upper())
        return _row_to_code(row) if row else None

    async def upsert_code(self, code: DiscountCode) -> None:
        sql = """
        INSERT INTO discount_codes (
          id, code, type, value, max_uses, used_count, min_order_amount,
          valid_from, valid_until, is_active, allowed_customers, description, created_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, now())
        ON CONFLICT (code) DO UPDATE
        SET type = EXCLUDED.type,
            value = EXCLUDED.value,
            max_uses = EXCLUDED.max_uses,
            min_order_amount = EXCLUDED.min_order_amount,
            valid_from = EXCLUDED.valid_from,
            valid_until = EXCLUDED.valid_until,
            is_active = EXCLUDED.is_active,
            allowed_customers = EXCLUDED.allowed_customers,
            description = EXCLUDED.description
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                sql,
                code.id,
                code.code.upper(),
                code.type.value,
                code.value,
                code.max_uses,
                code.used_count,
                code.min_order_amount,
                code.valid_from,
                code.valid_until,
                code.is_active,
                code.allowed_customers,
                code.description,
            )

    async def record_usage(self, usage: DiscountUsage) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO discount_usages (
                      id, discount_code_id, order_id, customer_ref,
                      discount_amount, original_price, final_price, used_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, now())
                    """,
                    usage.id,
                    usage.discount_code_id,
                    usage.order_id,
                    usage.customer_ref,
                    usage.discount_amount,
                    usage.original_price,
                    usage.final_price,
                )
                await conn.execute(
                    "UPDATE discount_codes SET used_count = used_count + 1 WHERE id = $1",
                    usage.discount_code_id,
                )
