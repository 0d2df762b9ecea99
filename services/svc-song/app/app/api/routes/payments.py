from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_controller
from app.domain.errors import OrderNotFoundError
from app.domain.models import PaymentCallbackIn
from app.services.order_controller import OrderController

logger = logging.getLogger("payments_api")

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/callback")
async def payment_callback(
    body: PaymentCallbackIn,
    ctl: OrderController = Depends(get_controller),
) -> Dict[str, Any]:
    """
    Result relayed by the payment collaborator after it verified the gateway signature.
    Duplicate callbacks are accepted and ignored by the controller.
    """
    if not body.signature_valid:
        logger.warning("payment_callback_bad_signature", extra={"order_id": body.order_id})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_signature")

    try:
        if body.success:
            order = await ctl.handle_payment_success(body.order_id)
        else:
            order = await ctl.handle_payment_failure(body.order_id)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return {"order_id": order.id, "status": order.status.value}
