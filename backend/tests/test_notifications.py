"""
Notification tests: enqueue after commit, dispatch, inbox and webhook sink.
"""

import pytest
import httpx
from sqlalchemy import select

from backend.app.core.reliability import CircuitBreaker
from backend.app.models.notification import Notification, NotificationEvent, NotificationStatus
from backend.app.models.order_enums import StockPolicy
from backend.app.services.notification_service import (
    NotificationDispatcher, NotificationDraft, NotificationInbox, WebhookSink, retry_delay
)


async def events_for(session_factory, user_id):
    async with session_factory() as db:
        rows = (await db.execute(
            select(Notification).where(Notification.user_id == user_id).order_by(Notification.id)
        )).scalars().all()
    return [row.event for row in rows]


@pytest.mark.asyncio
async def test_purchase_notifies_buyer_and_seller(settlement_engine, market, session_factory, sink):
    product = await market.product()
    await market.fund("buyer", "50.00")

    await settlement_engine.purchase("k1", "buyer", product.id)

    assert await events_for(session_factory, "buyer") == [NotificationEvent.NEW_ORDER]
    assert await events_for(session_factory, "seller-1") == [NotificationEvent.NEW_ORDER]

    stats = await settlement_engine.dispatcher.dispatch_pending()
    assert stats["sent"] == 2
    assert {n.user_id for n in sink.sent} == {"buyer", "seller-1"}


@pytest.mark.asyncio
async def test_failed_purchase_sends_nothing(settlement_engine, market, session_factory):
    product = await market.product(price="99.00")

    result = await settlement_engine.purchase("k1", "broke-buyer", product.id)

    assert not result.ok
    assert await events_for(session_factory, "broke-buyer") == []
    assert await events_for(session_factory, "seller-1") == []


@pytest.mark.asyncio
async def test_pool_drain_sends_stock_alerts(settlement_engine, market, session_factory, mocker):
    mocker.patch("backend.app.domain.settlement.coordinator.settings.low_stock_threshold", 1)
    product = await market.product(price="1.00", stock_policy=StockPolicy.POOLED)
    await market.items(settlement_engine, product, ["A", "B"])
    await market.fund("buyer", "5.00")

    await settlement_engine.purchase("k1", "buyer", product.id)
    await settlement_engine.purchase("k2", "buyer", product.id)

    seller_events = await events_for(session_factory, "seller-1")
    assert NotificationEvent.LOW_STOCK in seller_events
    assert seller_events[-1] == NotificationEvent.OUT_OF_STOCK
    assert (await events_for(session_factory, "buyer")).count(NotificationEvent.DELIVERED) == 2


@pytest.mark.asyncio
async def test_inbox_read_flags(session_factory, dispatcher):
    await dispatcher.enqueue([
        NotificationDraft(user_id="u1", event=NotificationEvent.APPROVED, title="a", message="1"),
        NotificationDraft(user_id="u1", event=NotificationEvent.REFUNDED, title="b", message="2"),
        NotificationDraft(user_id="u2", event=NotificationEvent.APPROVED, title="c", message="3"),
    ])

    async with session_factory() as db:
        assert await NotificationInbox.unread_count(db, "u1") == 2
        first = (await NotificationInbox.list_for_user(db, "u1"))[-1]
        assert not await NotificationInbox.mark_read(db, first.id, "u2")
        assert await NotificationInbox.mark_read(db, first.id, "u1")
        await db.commit()

    async with session_factory() as db:
        assert len(await NotificationInbox.list_for_user(db, "u1", unread_only=True)) == 1
        assert await NotificationInbox.mark_all_read(db, "u1") == 1
        await db.commit()

    async with session_factory() as db:
        assert await NotificationInbox.unread_count(db, "u1") == 0
        assert await NotificationInbox.unread_count(db, "u2") == 1


def test_retry_delay_backs_off(mocker):
    mocker.patch("backend.app.services.notification_service.settings.notification_retry_base_seconds", 10)
    assert [retry_delay(n).total_seconds() for n in (1, 2, 3)] == [10, 20, 40]


@pytest.mark.asyncio
async def test_webhook_sink_posts_json(session_factory):
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(204)

    sink = WebhookSink("https://hooks.example.com/notify", transport=httpx.MockTransport(handler))
    dispatcher = NotificationDispatcher(session_factory, sink=sink, breaker=CircuitBreaker())
    await dispatcher.enqueue([NotificationDraft(user_id="u1", event=NotificationEvent.DELIVERED, title="t", message="m", order_id=7)])

    stats = await dispatcher.dispatch_pending()

    assert stats["sent"] == 1
    assert received[0].url == "https://hooks.example.com/notify"
    assert b'"event":"delivered"' in received[0].content.replace(b" ", b"")

    async with session_factory() as db:
        notification = (await db.execute(select(Notification))).scalar_one()
    assert notification.status == NotificationStatus.SENT


@pytest.mark.asyncio
async def test_webhook_error_status_is_retried(session_factory):
    sink = WebhookSink("https://hooks.example.com/notify", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    dispatcher = NotificationDispatcher(session_factory, sink=sink, breaker=CircuitBreaker())
    await dispatcher.enqueue([NotificationDraft(user_id="u1", event=NotificationEvent.DELIVERED, title="t", message="m")])

    stats = await dispatcher.dispatch_pending()

    assert stats["retrying"] == 1
    async with session_factory() as db:
        notification = (await db.execute(select(Notification))).scalar_one()
    assert notification.attempts == 1
    assert "HTTPStatusError" in notification.last_error
