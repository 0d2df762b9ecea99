from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_controller
from app.domain.errors import InvalidTransitionError, OrderNotFoundError, RevisionLimitError
from app.domain.models import CreateOrderResult, LyricsRevisionIn, Order, OrderProgressOut, OrderRequest
from app.services.order_controller import OrderController

logger = logging.getLogger("orders_api")

router = APIRouter(prefix="/api/orders", tags=["orders"])


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, OrderNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (InvalidTransitionError, RevisionLimitError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("", response_model=CreateOrderResult, status_code=status.HTTP_201_CREATED)
async def create_order(req: OrderRequest, ctl: OrderController = Depends(get_controller)) -> CreateOrderResult:
    return await ctl.create_order(req)


@router.get("", response_model=List[Order])
async def list_orders(
    customer_ref: str = Query(..., min_length=3),
    limit: int = Query(20, ge=1, le=100),
    ctl: OrderController = Depends(get_controller),
) -> List[Order]:
    return await ctl.list_orders_for_customer(customer_ref, limit=limit)


@router.get("/{order_id}", response_model=Order)
async def get_order(order_id: str, ctl: OrderController = Depends(get_controller)) -> Order:
    try:
        return await ctl.get_order(order_id)
    except OrderNotFoundError as e:
        raise _http_error(e)


@router.get("/{order_id}/status", response_model=OrderProgressOut)
async def get_order_status(order_id: str, ctl: OrderController = Depends(get_controller)) -> OrderProgressOut:
    try:
        return await ctl.get_order_status(order_id)
    except OrderNotFoundError as e:
        raise _http_error(e)


@router.post("/{order_id}/lyrics/revise", response_model=Order)
async def revise_lyrics(
    order_id: str,
    body: LyricsRevisionIn,
    ctl: OrderController = Depends(get_controller),
) -> Order:
    try:
        return await ctl.revise_lyrics(order_id, body.feedback, song_index=body.song_index)
    except (OrderNotFoundError, InvalidTransitionError, RevisionLimitError, ValueError) as e:
        logger.info("lyrics_revision_rejected", extra={"order_id": order_id, "error": str(e)})
        raise _http_error(e)


@router.post("/{order_id}/lyrics/approve", response_model=Order)
async def approve_lyrics(order_id: str, ctl: OrderController = Depends(get_controller)) -> Order:
    try:
        return await ctl.approve_lyrics(order_id)
    except (OrderNotFoundError, InvalidTransitionError) as e:
        logger.info("lyrics_approval_rejected", extra={"order_id": order_id, "error": str(e)})
        raise _http_error(e)
