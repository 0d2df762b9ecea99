from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from app.config import settings
from app.domain.enums import OrderStatus
from app.domain.errors import InvalidTransitionError, OrderNotFoundError, RevisionLimitError
from app.domain.models import (
    CreateOrderResult,
    LyricsRequest,
    Order,
    OrderProgressOut,
    OrderRequest,
    SongJob,
    SongJobPayload,
)
from app.services.delivery_notifier import BestEffortNotifier
from app.services.discount_service import DiscountService
from app.services.lyrics_service import LyricsService
from app.services.payment_client import PaymentGateway
from app.services.song_job_queue import SongJobQueue

logger = logging.getLogger("order_controller")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _lyrics_request(order: Order, song_index: int) -> LyricsRequest:
    data = order.order_data
    return LyricsRequest(
        song=data.songs[song_index - 1],
        story=data.story,
        notes=data.notes,
        recipient_name=data.recipient_name,
        recipient_relation=data.recipient_relation,
        include_name_in_song=data.include_name_in_song,
    )


class OrderController:
    """
    Order lifecycle:

      payment_pending -> paid -> lyrics_generating -> music_generating -> completed
      (any non-terminal state) -> failed

    Every status change is a conditional store update, so duplicate callbacks and
    concurrent job outcomes can only move an order forward once.
    """

    def __init__(
        self,
        *,
        orders: Any,
        discounts: DiscountService,
        lyrics: LyricsService,
        queue: SongJobQueue,
        payment: Optional[PaymentGateway],
        notifier: BestEffortNotifier,
        base_price: Optional[float] = None,
        review_enabled: Optional[bool] = None,
        max_revisions: Optional[int] = None,
    ):
        self.orders = orders
        self.discounts = discounts
        self.lyrics = lyrics
        self.queue = queue
        self.payment = payment
        self.notifier = notifier

        self.base_price = float(settings.SONG_BASE_PRICE if base_price is None else base_price)
        self.review_enabled = settings.LYRICS_REVIEW_ENABLED if review_enabled is None else bool(review_enabled)
        self.max_revisions = int(settings.MAX_LYRICS_REVISIONS if max_revisions is None else max_revisions)
        self.failure_message = settings.GENERIC_FAILURE_MESSAGE

        queue.set_hooks(self)

    # -----------------------------
    # Reads
    # -----------------------------

    async def get_order(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(f"order not found: {order_id}")
        return order

    async def get_order_status(self, order_id: str) -> OrderProgressOut:
        order = await self.get_order(order_id)
        n = order.song_count
        lyrics_done = sum(1 for i in range(1, n + 1) if order.lyrics_for(i))
        songs_ready = {str(i): bool(order.audio_url_for(i)) for i in range(1, n + 1)}
        done = lyrics_done + sum(songs_ready.values())
        return OrderProgressOut(
            order_id=order.id,
            status=order.status,
            lyrics_ready=lyrics_done == n,
            songs_ready=songs_ready,
            completion_percentage=round(done / (2 * n) * 100) if n else 0,
            error_message=order.error_message,
        )

    async def list_orders_for_customer(self, customer_ref: str, limit: int = 20) -> List[Order]:
        return await self.orders.list_by_customer(customer_ref, limit=limit)

    # -----------------------------
    # Creation / payment
    # -----------------------------

    async def create_order(self, req: OrderRequest) -> CreateOrderResult:
        base = self.base_price * len(req.songs)
        discount_amount = 0.0
        discount_message: Optional[str] = None

        if req.discount_code:
            discount = await self.discounts.validate(req.discount_code, req.customer_ref, base)
            discount_message = discount.message
            if discount.is_valid:
                discount_amount = discount.discount_amount
            else:
                logger.info(
                    "discount_rejected",
                    extra={"customer_ref": req.customer_ref, "code": req.discount_code, "reason": discount.message},
                )

        total = max(0.0, base - discount_amount)
        free = total <= 0
        now = _now()
        order = Order(
            # payment gateways reject hyphens in merchant order ids
            id=uuid.uuid4().hex,
            customer_ref=req.customer_ref,
            order_data=req,
            # free orders never wait on payment
            status=OrderStatus.paid if free else OrderStatus.payment_pending,
            base_price=base,
            discount_amount=discount_amount,
            total_price=total,
            discount_code=req.discount_code if discount_amount > 0 else None,
            created_at=now,
            paid_at=now if free else None,
        )
        await self.orders.insert(order)
        logger.info("order_created", extra={"order_id": order.id, "songs": len(req.songs), "total_price": total})

        if free:
            logger.info("free_order_skips_payment", extra={"order_id": order.id})
            await self._record_discount_usage(order)
            await self.generate_lyrics(order.id)
            current = await self.get_order(order.id)
            return CreateOrderResult(
                order_id=order.id, payment_url=None, price=0, status=current.status, discount_message=discount_message
            )

        if self.payment is None:
            logger.error("payment_not_configured", extra={"order_id": order.id})
            await self._fail_order(order.id, reason="payment_not_configured")
            return CreateOrderResult(
                order_id=order.id, price=total, status=OrderStatus.failed, discount_message=discount_message
            )

        try:
            token = await self.payment.create_token(order_id=order.id, amount=total, payer=req.customer_ref)
        except Exception as e:
            logger.exception("payment_token_failed", extra={"order_id": order.id, "error": str(e)})
            await self._fail_order(order.id, reason=f"payment_token_failed: {e}")
            return CreateOrderResult(
                order_id=order.id, price=total, status=OrderStatus.failed, discount_message=discount_message
            )

        await self.orders.update_fields(order.id, payment_token=token.token)
        return CreateOrderResult(
            order_id=order.id,
            payment_url=token.payment_url,
            price=total,
            status=OrderStatus.payment_pending,
            discount_message=discount_message,
        )

    async def handle_payment_success(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        if order.status != OrderStatus.payment_pending:
            logger.info("payment_success_ignored", extra={"order_id": order_id, "status": order.status.value})
            return order
        await self._mark_paid_and_start(order_id)
        return await self.get_order(order_id)

    async def handle_payment_failure(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        if order.status != OrderStatus.payment_pending:
            logger.info("payment_failure_ignored", extra={"order_id": order_id, "status": order.status.value})
            return order
        # customer may retry with the same order
        logger.info("payment_failed", extra={"order_id": order_id})
        await self.notifier.notify_progress(
            customer_ref=order.customer_ref,
            order_id=order_id,
            label="Payment was not completed. You can try again with the same link.",
            percent=0,
        )
        return order

    async def _mark_paid_and_start(self, order_id: str) -> None:
        if not await self.orders.transition(order_id, OrderStatus.paid, paid_at=_now()):
            logger.info("paid_transition_skipped", extra={"order_id": order_id})
            return
        logger.info("order_paid", extra={"order_id": order_id})
        await self._record_discount_usage(await self.get_order(order_id))
        await self.generate_lyrics(order_id)

    async def _record_discount_usage(self, order: Order) -> None:
        # counted once the order is paid, so abandoned checkouts keep the code's budget
        if not order.discount_code or order.discount_amount <= 0:
            return
        dc = await self.discounts.get_code(order.discount_code)
        if dc is None:
            logger.warning("discount_code_vanished", extra={"order_id": order.id, "code": order.discount_code})
            return
        try:
            await self.discounts.record_usage(
                discount_code_id=dc.id,
                order_id=order.id,
                customer_ref=order.customer_ref,
                discount_amount=order.discount_amount,
                original_price=order.base_price,
                final_price=order.total_price,
            )
        except Exception as e:
            # the customer has paid; bookkeeping never blocks the song
            logger.exception("discount_usage_record_failed", extra={"order_id": order.id, "error": str(e)})

    # -----------------------------
    # Lyrics
    # -----------------------------

    async def generate_lyrics(self, order_id: str) -> None:
        if not await self.orders.transition(order_id, OrderStatus.lyrics_generating):
            logger.info("lyrics_generation_skipped", extra={"order_id": order_id})
            return
        order = await self.get_order(order_id)
        await self.notifier.notify_progress(
            customer_ref=order.customer_ref, order_id=order_id, label="Writing your lyrics", percent=10
        )

        try:
            for i, song in enumerate(order.order_data.songs, start=1):
                genre = await self.lyrics.synthesize_genre(song, order.order_data.notes)
                await self.orders.set_genre(order_id, i, genre)
                text = await self.lyrics.generate(_lyrics_request(order, i))
                await self.orders.set_lyrics(order_id, i, text)
        except Exception as e:
            logger.exception("lyrics_generation_failed", extra={"order_id": order_id, "error": str(e)})
            await self._fail_order(order_id, reason=f"lyrics_generation_failed: {e}")
            return

        if self.review_enabled:
            order = await self.get_order(order_id)
            await self.notifier.notify_lyrics_ready(
                customer_ref=order.customer_ref, order_id=order_id, lyrics=order.lyrics
            )
            logger.info("lyrics_awaiting_review", extra={"order_id": order_id})
            return

        await self.approve_lyrics(order_id)

    async def revise_lyrics(self, order_id: str, feedback: str, song_index: int = 1) -> Order:
        order = await self.get_order(order_id)
        if order.status != OrderStatus.lyrics_generating:
            raise InvalidTransitionError(f"lyrics can only be revised while generating (status={order.status.value})")
        if not 1 <= song_index <= order.song_count:
            raise ValueError(f"song_index out of range: {song_index}")
        if order.lyrics_revisions >= self.max_revisions:
            raise RevisionLimitError(f"revision limit reached ({self.max_revisions})")

        current = order.lyrics_for(song_index)
        if not current:
            raise InvalidTransitionError(f"no lyrics yet for song {song_index}")

        revised = await self.lyrics.revise(current, feedback)

        count = await self.orders.increment_lyrics_revisions(order_id, self.max_revisions)
        if count is None:
            raise RevisionLimitError(f"revision limit reached ({self.max_revisions})")
        await self.orders.set_lyrics(order_id, song_index, revised)
        logger.info("lyrics_revision_applied", extra={"order_id": order_id, "song_index": song_index, "revisions": count})

        order = await self.get_order(order_id)
        await self.notifier.notify_lyrics_ready(customer_ref=order.customer_ref, order_id=order_id, lyrics=order.lyrics)
        return order

    async def approve_lyrics(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        if order.status != OrderStatus.lyrics_generating:
            raise InvalidTransitionError(f"lyrics can only be approved while generating (status={order.status.value})")
        missing = [i for i in range(1, order.song_count + 1) if not order.lyrics_for(i)]
        if missing:
            raise InvalidTransitionError(f"lyrics missing for songs {missing}")

        # the conditional transition elects a single approver; only it enqueues
        if not await self.orders.transition(order_id, OrderStatus.music_generating):
            raise InvalidTransitionError("order changed state during approval")

        data = order.order_data
        for i, song in enumerate(data.songs, start=1):
            payload = SongJobPayload(
                lyrics=order.lyrics_for(i) or "",
                song_type=song.type,
                style=song.style.value,
                vocal=song.vocal,
                genre=order.genre_for(i),
                story=data.story,
                notes=data.notes,
                recipient_name=data.recipient_name,
                recipient_relation=data.recipient_relation,
                include_name_in_song=data.include_name_in_song,
            )
            await self.queue.enqueue(order_id=order_id, song_index=i, customer_ref=order.customer_ref, payload=payload)

        logger.info("lyrics_approved", extra={"order_id": order_id, "songs": order.song_count})
        return await self.get_order(order_id)

    # -----------------------------
    # Queue outcomes
    # -----------------------------

    async def on_job_completed(self, job: SongJob, audio_url: str) -> None:
        order = await self.orders.get(job.order_id)
        if order is None:
            logger.warning("job_completed_order_missing", extra={"job_id": job.id})
            return
        if not order.all_songs_delivered():
            logger.info("order_waiting_for_songs", extra={"order_id": order.id, "job_id": job.id})
            return

        if not await self.orders.transition(order.id, OrderStatus.completed, completed_at=_now()):
            logger.info("order_completion_skipped", extra={"order_id": order.id, "status": order.status.value})
            return

        urls = [order.audio_url_for(i) or "" for i in range(1, order.song_count + 1)]
        logger.info("order_completed", extra={"order_id": order.id})
        await self.notifier.notify_success(customer_ref=order.customer_ref, order_id=order.id, audio_urls=urls)

    async def on_job_failed(self, job: SongJob, message: str) -> None:
        await self._fail_order(job.order_id, reason=message)

    async def _fail_order(self, order_id: str, *, reason: str) -> None:
        if not await self.orders.transition(order_id, OrderStatus.failed, error_message=self.failure_message):
            logger.info("order_fail_skipped", extra={"order_id": order_id, "reason": reason})
            return
        logger.error("order_failed", extra={"order_id": order_id, "reason": reason})
        order = await self.orders.get(order_id)
        if order is not None:
            await self.notifier.notify_failure(
                customer_ref=order.customer_ref, order_id=order_id, message=self.failure_message
            )
