from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Protocol

from app.domain.enums import DiscountType
from app.domain.models import DiscountCode, DiscountResult, DiscountUsage

logger = logging.getLogger("discounts")


class DiscountStore(Protocol):
    async def get_by_code(self, code: str) -> Optional[DiscountCode]:
        ...

    async def upsert_code(self, code: DiscountCode) -> None:
        ...

    async def record_usage(self, usage: DiscountUsage) -> None:
        ...


def _invalid(price: float, message: str) -> DiscountResult:
    return DiscountResult(is_valid=False, discount_amount=0, final_price=price, message=message)


class DiscountService:
    def __init__(self, repo: DiscountStore):
        self.repo = repo

    async def create_code(self, code: DiscountCode) -> DiscountCode:
        c = code.model_copy(update={"code": code.code.strip().upper(), "used_count": 0})
        await self.repo.upsert_code(c)
        logger.info("discount_code_saved", extra={"code": c.code, "type": c.type.value, "value": c.value})
        return c

    async def get_code(self, code: str) -> Optional[DiscountCode]:
        return await self.repo.get_by_code(code.strip().upper())

    async def validate(self, code: str, customer_ref: str, price: float, *, now: Optional[datetime] = None) -> DiscountResult:
        dc = await self.repo.get_by_code(code.strip().upper())
        if dc is None:
            return _invalid(price, "Invalid discount code.")
        if not dc.is_active:
            return _invalid(price, "This discount code is no longer active.")

        now = now or datetime.now(timezone.utc)
        if dc.valid_from and dc.valid_from > now:
            return _invalid(price, "This discount code is not valid yet.")
        if dc.valid_until and dc.valid_until < now:
            return _invalid(price, "This discount code has expired.")

        # zero / null limits mean "no limit"
        if dc.max_uses and dc.used_count >= dc.max_uses:
            return _invalid(price, "This discount code has reached its usage limit.")
        if dc.min_order_amount and price < dc.min_order_amount:
            return _invalid(price, f"Minimum order amount for this code is {dc.min_order_amount:g}.")
        if dc.allowed_customers is not None and customer_ref not in dc.allowed_customers:
            return _invalid(price, "This discount code is not valid for you.")

        if dc.type == DiscountType.percentage:
            # whole currency units, halves round up
            raw = Decimal(str(price)) * Decimal(str(dc.value)) / 100
            amount = float(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        else:
            amount = float(dc.value)
        amount = max(0.0, min(amount, price))
        final = price - amount

        return DiscountResult(
            is_valid=True,
            discount_amount=amount,
            final_price=final,
            message=f"{dc.code} applied: {amount:g} off.",
            discount_code=dc,
        )

    async def record_usage(
        self,
        *,
        discount_code_id: str,
        order_id: str,
        customer_ref: str,
        discount_amount: float,
        original_price: float,
        final_price: float,
    ) -> None:
        await self.repo.record_usage(
            DiscountUsage(
                id=uuid.uuid4().hex,
                discount_code_id=discount_code_id,
                order_id=order_id,
                customer_ref=customer_ref,
                discount_amount=discount_amount,
                original_price=original_price,
                final_price=final_price,
            )
        )
        logger.info("discount_usage_recorded", extra={"order_id": order_id, "discount_code_id": discount_code_id})
