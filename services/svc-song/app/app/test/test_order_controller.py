import pytest

from app.domain.enums import DiscountType, OrderStatus, SongJobStatus
from app.domain.errors import IntegrationError, InvalidTransitionError, OrderNotFoundError, RevisionLimitError
from app.domain.models import DiscountCode, SongJob

from conftest import make_request


@pytest.mark.asyncio
async def test_create_order_requests_payment(controller, orders, payment):
    res = await controller.create_order(make_request(2))

    assert res.status == OrderStatus.payment_pending
    assert res.price == 700
    assert res.payment_url == f"https://pay.test/{res.order_id}"
    assert "-" not in res.order_id
    assert payment.calls == [{"order_id": res.order_id, "amount": 700, "payer": "905551112233"}]

    order = await orders.get(res.order_id)
    assert order.payment_token == f"tok-{res.order_id}"
    assert order.paid_at is None


@pytest.mark.asyncio
async def test_payment_success_generates_lyrics_and_enqueues_songs(controller, orders, jobs, lyrics):
    res = await controller.create_order(make_request(2, notes="something like our wedding song"))

    order = await controller.handle_payment_success(res.order_id)
    assert order.status == OrderStatus.music_generating
    assert order.paid_at is not None
    assert order.genre_for(1) == "warm pop ballad"
    assert order.genre_for(2) == "warm rock ballad"
    assert order.lyrics_for(1) and order.lyrics_for(2)

    for i in (1, 2):
        job = await jobs.get(SongJob.make_id(res.order_id, i))
        assert job.status == SongJobStatus.pending
        assert job.payload.lyrics == order.lyrics_for(i)
        assert job.payload.genre == order.genre_for(i)
    assert len(lyrics.generated) == 2


@pytest.mark.asyncio
async def test_duplicate_payment_callback_is_ignored(controller, jobs, lyrics):
    res = await controller.create_order(make_request())
    await controller.handle_payment_success(res.order_id)
    order = await controller.handle_payment_success(res.order_id)

    assert order.status == OrderStatus.music_generating
    assert len(lyrics.generated) == 1
    assert (await jobs.stats()).pending == 1


@pytest.mark.asyncio
async def test_payment_failure_keeps_order_pending(controller, delivered):
    res = await controller.create_order(make_request())
    order = await controller.handle_payment_failure(res.order_id)

    assert order.status == OrderStatus.payment_pending
    assert delivered.of("progress")[-1]["order_id"] == res.order_id


@pytest.mark.asyncio
async def test_payment_for_unknown_order(controller):
    with pytest.raises(OrderNotFoundError):
        await controller.handle_payment_success("nope")


@pytest.mark.asyncio
async def test_payment_gateway_error_fails_order(controller, orders, payment, delivered):
    payment.error = IntegrationError("payment gateway is not configured")
    res = await controller.create_order(make_request())

    assert res.status == OrderStatus.failed
    assert res.payment_url is None
    order = await orders.get(res.order_id)
    assert order.status == OrderStatus.failed
    assert order.error_message == controller.failure_message
    assert delivered.of("failure")[0]["message"] == controller.failure_message


@pytest.mark.asyncio
async def test_unconfigured_payment_fails_order(controller, delivered):
    controller.payment = None
    res = await controller.create_order(make_request())
    assert res.status == OrderStatus.failed
    assert len(delivered.of("failure")) == 1


@pytest.mark.asyncio
async def test_free_order_skips_payment(controller, discounts, orders, jobs, payment):
    await discounts.create_code(DiscountCode(id="d-free", code="gift100", type=DiscountType.percentage, value=100))

    res = await controller.create_order(make_request(discount_code="gift100"))

    assert res.price == 0
    assert res.payment_url is None
    assert payment.calls == []
    order = await orders.get(res.order_id)
    assert order.paid_at is not None
    assert order.status == OrderStatus.music_generating
    assert order.discount_amount == 350
    assert order.discount_code == "GIFT100"
    assert (await jobs.stats()).pending == 1

    code = await discounts.repo.get_by_code("GIFT100")
    assert code.used_count == 1


@pytest.mark.asyncio
async def test_discount_usage_counted_only_once_paid(controller, discounts, store):
    await discounts.create_code(
        DiscountCode(id="d-spring", code="spring", type=DiscountType.percentage, value=15, max_uses=1)
    )

    abandoned = await controller.create_order(make_request(discount_code="spring"))
    assert abandoned.price == 297
    assert (await discounts.get_code("SPRING")).used_count == 0

    paid = await controller.create_order(make_request(discount_code="spring"))
    assert paid.price == 297
    await controller.handle_payment_success(paid.order_id)
    await controller.handle_payment_success(paid.order_id)

    assert (await discounts.get_code("SPRING")).used_count == 1
    assert [u.order_id for u in store.discount_usages] == [paid.order_id]
    assert store.discount_usages[0].final_price == 297

    late = await controller.create_order(make_request(discount_code="spring"))
    assert late.price == 350
    assert late.discount_message == "This discount code has reached its usage limit."


@pytest.mark.asyncio
async def test_invalid_discount_code_is_ignored(controller):
    res = await controller.create_order(make_request(discount_code="NOPE"))
    assert res.price == 350
    assert res.discount_message == "Invalid discount code."
    assert res.status == OrderStatus.payment_pending


@pytest.mark.asyncio
async def test_lyrics_failure_fails_order(controller, orders, lyrics, delivered):
    lyrics.fail_generate = True
    res = await controller.create_order(make_request())
    await controller.handle_payment_success(res.order_id)

    order = await orders.get(res.order_id)
    assert order.status == OrderStatus.failed
    assert order.error_message == controller.failure_message
    assert len(delivered.of("failure")) == 1


@pytest.mark.asyncio
async def test_review_flow_revise_then_approve(controller, orders, jobs, delivered):
    controller.review_enabled = True
    res = await controller.create_order(make_request())
    order = await controller.handle_payment_success(res.order_id)

    assert order.status == OrderStatus.lyrics_generating
    assert len(delivered.of("lyrics_ready")) == 1
    assert (await jobs.stats()).pending == 0

    order = await controller.revise_lyrics(res.order_id, "mention the sea")
    assert "mention the sea" in order.lyrics_for(1)
    await controller.revise_lyrics(res.order_id, "shorter chorus")
    with pytest.raises(RevisionLimitError):
        await controller.revise_lyrics(res.order_id, "one more")
    assert (await orders.get(res.order_id)).lyrics_revisions == 2

    order = await controller.approve_lyrics(res.order_id)
    assert order.status == OrderStatus.music_generating
    job = await jobs.get(SongJob.make_id(res.order_id, 1))
    assert "shorter chorus" in job.payload.lyrics

    with pytest.raises(InvalidTransitionError):
        await controller.approve_lyrics(res.order_id)
    with pytest.raises(InvalidTransitionError):
        await controller.revise_lyrics(res.order_id, "too late")


@pytest.mark.asyncio
async def test_revise_rejects_bad_song_index(controller):
    controller.review_enabled = True
    res = await controller.create_order(make_request())
    await controller.handle_payment_success(res.order_id)
    with pytest.raises(ValueError):
        await controller.revise_lyrics(res.order_id, "more", song_index=2)


@pytest.mark.asyncio
async def test_job_failure_fails_order_once(controller, jobs, delivered):
    res = await controller.create_order(make_request())
    await controller.handle_payment_success(res.order_id)
    job = await jobs.get(SongJob.make_id(res.order_id, 1))

    await controller.on_job_failed(job, "content repeatedly rejected: x")
    await controller.on_job_failed(job, "content repeatedly rejected: x")

    order = await controller.get_order(res.order_id)
    assert order.status == OrderStatus.failed
    assert len(delivered.of("failure")) == 1


@pytest.mark.asyncio
async def test_order_status_progress(controller, orders):
    res = await controller.create_order(make_request(2))
    status = await controller.get_order_status(res.order_id)
    assert status.completion_percentage == 0
    assert status.lyrics_ready is False

    await controller.handle_payment_success(res.order_id)
    await orders.set_audio_url_once(res.order_id, 1, "https://blob.test/1.mp3")

    status = await controller.get_order_status(res.order_id)
    assert status.lyrics_ready is True
    assert status.songs_ready == {"1": True, "2": False}
    assert status.completion_percentage == 75


@pytest.mark.asyncio
async def test_list_orders_for_customer(controller):
    a = await controller.create_order(make_request())
    b = await controller.create_order(make_request())
    await controller.create_order(make_request(customer_ref="905550000000"))

    listed = await controller.list_orders_for_customer("905551112233")
    assert {o.id for o in listed} == {a.order_id, b.order_id}
