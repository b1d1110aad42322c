"""
Delivery pool tests: duplicate filtering, ordered claims and withdrawal.
"""

import pytest
from sqlalchemy import select

from backend.app.core.exceptions import (
    OutOfStockError, InvalidRequestError, NotAuthorizedError, SettlementNotFoundError
)
from backend.app.models.delivery_item import DeliveryItem
from backend.app.models.order_enums import StockPolicy, DeliveryItemState
from backend.app.models.product import Product
from backend.app.domain.settlement.delivery_pool import DeliveryPool, payload_hash


def test_payload_hash_ignores_key_order():
    assert payload_hash({"user": "a", "pass": "b"}) == payload_hash({"pass": "b", "user": "a"})
    assert payload_hash({"user": "a"}) != payload_hash({"user": "b"})


@pytest.mark.asyncio
async def test_add_items_skips_duplicates(settlement_engine, market):
    product = await market.product(stock_policy=StockPolicy.POOLED)

    first = await settlement_engine.add_delivery_items(
        product.id, "seller-1", [{"payload": "KEY-1"}, {"payload": "KEY-2"}, {"payload": "KEY-1"}]
    )
    assert first.ok
    assert (first.added, first.duplicates_skipped, first.available) == (2, 1, 2)

    second = await settlement_engine.add_delivery_items(
        product.id, "seller-1", [{"payload": "KEY-2"}, {"payload": {"code": "KEY-3"}}]
    )
    assert (second.added, second.duplicates_skipped, second.available) == (1, 1, 3)


@pytest.mark.asyncio
async def test_add_items_requires_owner_and_pooled_product(settlement_engine, market):
    pooled = await market.product(stock_policy=StockPolicy.POOLED)
    counted = await market.product(stock_policy=StockPolicy.COUNTED, stock=3)

    foreign = await settlement_engine.add_delivery_items(pooled.id, "someone-else", [{"payload": "K"}])
    assert foreign.error.value == "NOT_AUTHORIZED"

    wrong_policy = await settlement_engine.add_delivery_items(counted.id, "seller-1", [{"payload": "K"}])
    assert wrong_policy.error.value == "INVALID_REQUEST"

    missing = await settlement_engine.add_delivery_items(9999, "seller-1", [{"payload": "K"}])
    assert missing.error.value == "NOT_FOUND"

    empty = await settlement_engine.add_delivery_items(pooled.id, "seller-1", [{"payload": ""}])
    assert empty.error.value == "INVALID_REQUEST"


@pytest.mark.asyncio
async def test_add_items_rejects_payloads_that_are_not_json(session_factory, settlement_engine, market):
    product = await market.product(stock_policy=StockPolicy.POOLED)

    raw_bytes = await settlement_engine.add_delivery_items(
        product.id, "seller-1", [{"payload": "KEY-1"}, {"payload": b"\x00secret"}]
    )
    assert not raw_bytes.ok
    assert raw_bytes.error.value == "INVALID_REQUEST"
    assert raw_bytes.details == {"payload_type": "bytes"}

    nan = await settlement_engine.add_delivery_items(product.id, "seller-1", [{"payload": float("nan")}])
    assert nan.error.value == "INVALID_REQUEST"

    bad_type = await settlement_engine.add_delivery_items(
        product.id, "seller-1", [{"payload": "KEY-2", "item_type": "floppy_disk"}]
    )
    assert bad_type.error.value == "INVALID_REQUEST"

    not_a_dict = await settlement_engine.add_delivery_items(product.id, "seller-1", ["KEY-3"])
    assert not_a_dict.error.value == "INVALID_REQUEST"

    async with session_factory() as db:
        stored = (await db.execute(select(DeliveryItem))).scalars().all()
    assert stored == []


def test_payload_hash_rejects_bytes():
    with pytest.raises(InvalidRequestError):
        payload_hash(b"raw")


@pytest.mark.asyncio
async def test_reserve_one_follows_display_order(session_factory, settlement_engine, market):
    product = await market.product(stock_policy=StockPolicy.POOLED)
    await market.items(settlement_engine, product, ["A", "B"])

    async with session_factory() as db:
        async with db.begin():
            first = await DeliveryPool.reserve_one(db, product.id, order_id=1, buyer_id="b1")
            second = await DeliveryPool.reserve_one(db, product.id, order_id=2, buyer_id="b2")

    assert first.item.payload == "A"
    assert first.remaining == 1
    assert second.item.payload == "B"
    assert second.remaining == 0
    assert second.item.state == DeliveryItemState.ASSIGNED
    assert second.item.assigned_to == "b2"

    with pytest.raises(OutOfStockError):
        async with session_factory() as db:
            async with db.begin():
                await DeliveryPool.reserve_one(db, product.id, order_id=3, buyer_id="b3")


@pytest.mark.asyncio
async def test_restock_re_enables_auto_hidden_product(session_factory, settlement_engine, market):
    product = await market.product(stock_policy=StockPolicy.POOLED)
    async with session_factory() as db:
        async with db.begin():
            stored = await db.get(Product, product.id)
            stored.is_available = False
            stored.auto_hidden = True

    await market.items(settlement_engine, product, ["A"])

    async with session_factory() as db:
        stored = await db.get(Product, product.id)
    assert stored.is_available
    assert not stored.auto_hidden


@pytest.mark.asyncio
async def test_withdraw_only_unassigned_own_items(session_factory, settlement_engine, market):
    product = await market.product(stock_policy=StockPolicy.POOLED)
    await market.items(settlement_engine, product, ["A", "B"])

    async with session_factory() as db:
        items = (await db.execute(select(DeliveryItem).order_by(DeliveryItem.display_order))).scalars().all()
    first, second = items

    async with session_factory() as db:
        async with db.begin():
            await DeliveryPool.reserve_one(db, product.id, order_id=1, buyer_id="b1")

    with pytest.raises(InvalidRequestError):
        await settlement_engine.withdraw_delivery_item(first.id, "seller-1")
    with pytest.raises(NotAuthorizedError):
        await settlement_engine.withdraw_delivery_item(second.id, "seller-2")
    with pytest.raises(SettlementNotFoundError):
        await settlement_engine.withdraw_delivery_item(12345, "seller-1")

    await settlement_engine.withdraw_delivery_item(second.id, "seller-1")
    async with session_factory() as db:
        assert await DeliveryPool.count_available(db, product.id) == 0
        assert await db.get(DeliveryItem, second.id) is None
