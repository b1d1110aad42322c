"""
Purchase tests: one atomic unit for debit, escrow credit, stock and order.
"""

import pytest
from decimal import Decimal
from sqlalchemy import select, func

from backend.app.core.exceptions import ErrorKind
from backend.app.models.billing_enums import LedgerReason
from backend.app.models.idempotency_record import IdempotencyRecord
from backend.app.models.ledger_entry import LedgerEntry
from backend.app.models.order import Order
from backend.app.models.order_enums import OrderStatus, StockPolicy
from backend.app.models.product import Product


async def count(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(func.count(model.id)))).scalar()


@pytest.mark.asyncio
async def test_purchase_moves_money_into_escrow(settlement_engine, market, session_factory):
    product = await market.product(price="20.00")
    await market.fund("buyer", "50.00")

    result = await settlement_engine.purchase("k1", "buyer", product.id)

    assert result.ok
    assert result.status == OrderStatus.PENDING_DELIVERY
    assert result.new_balance == Decimal("30.00")
    assert result.amount == Decimal("20.00")
    assert result.commission_rate == Decimal("0.1000")
    assert result.seller_earning == Decimal("18.00")

    seller = await market.balance("seller-1")
    assert seller.available == Decimal("0.00")
    assert seller.pending == Decimal("18.00")

    async with session_factory() as db:
        order = await db.get(Order, result.order_id)
        reasons = (await db.execute(
            select(LedgerEntry.reason).where(LedgerEntry.order_id == order.id).order_by(LedgerEntry.id)
        )).scalars().all()
    assert order.commission_amount + order.seller_earning == order.amount
    assert reasons == [LedgerReason.PURCHASE_DEBIT, LedgerReason.SALE_CREDIT_PENDING]


@pytest.mark.asyncio
async def test_insufficient_funds_leaves_no_trace(settlement_engine, market, session_factory):
    product = await market.product(price="20.00", stock_policy=StockPolicy.COUNTED, stock=3)
    await market.fund("buyer", "19.99")

    result = await settlement_engine.purchase("k1", "buyer", product.id)

    assert not result.ok
    assert result.error == ErrorKind.INSUFFICIENT_FUNDS
    assert result.details == {"required": "20.00", "available": "19.99"}
    assert await count(session_factory, Order) == 0
    assert await count(session_factory, IdempotencyRecord) == 0
    assert (await market.balance("buyer")).available == Decimal("19.99")
    async with session_factory() as db:
        assert (await db.get(Product, product.id)).stock == 3

    # Failed attempts do not burn the key
    await market.fund("buyer", "0.01")
    retry = await settlement_engine.purchase("k1", "buyer", product.id)
    assert retry.ok and not retry.replayed


@pytest.mark.asyncio
async def test_same_key_replays_without_second_charge(settlement_engine, market, session_factory):
    product = await market.product(price="5.00")
    await market.fund("buyer", "20.00")

    first = await settlement_engine.purchase("same", "buyer", product.id)
    second = await settlement_engine.purchase("same", "buyer", product.id)

    assert first.ok and second.ok
    assert second.replayed
    assert second.order_id == first.order_id
    assert second.new_balance == first.new_balance
    assert (await market.balance("buyer")).available == Decimal("15.00")
    assert await count(session_factory, Order) == 1


@pytest.mark.asyncio
async def test_key_reused_for_other_product_conflicts(settlement_engine, market):
    first_product = await market.product(price="5.00")
    other_product = await market.product(price="5.00")
    await market.fund("buyer", "20.00")

    assert (await settlement_engine.purchase("key", "buyer", first_product.id)).ok
    conflict = await settlement_engine.purchase("key", "buyer", other_product.id)
    assert conflict.error == ErrorKind.IDEMPOTENCY_CONFLICT


@pytest.mark.asyncio
async def test_rate_is_frozen_on_the_order(settlement_engine, market, session_factory):
    product = await market.product(price="10.00")
    await market.fund("buyer", "20.00")

    first = await settlement_engine.purchase("k1", "buyer", product.id)
    await market.policy("0.25")
    second = await settlement_engine.purchase("k2", "buyer", product.id)

    async with session_factory() as db:
        old_order = await db.get(Order, first.order_id)
        new_order = await db.get(Order, second.order_id)
    assert old_order.commission_rate == Decimal("0.1000")
    assert old_order.seller_earning == Decimal("9.00")
    assert new_order.commission_rate == Decimal("0.2500")
    assert new_order.seller_earning == Decimal("7.50")


@pytest.mark.asyncio
async def test_platform_product_has_no_seller_entries(settlement_engine, market, session_factory):
    product = await market.product(seller_id=None, price="8.00")
    await market.fund("buyer", "8.00")

    result = await settlement_engine.purchase("k1", "buyer", product.id)

    assert result.ok
    assert result.commission_rate == Decimal("1.0000")
    assert result.seller_earning == Decimal("0.00")
    assert result.new_balance == Decimal("0.00")
    async with session_factory() as db:
        entries = (await db.execute(select(LedgerEntry).where(LedgerEntry.order_id == result.order_id))).scalars().all()
    assert [e.user_id for e in entries] == ["buyer"]


@pytest.mark.asyncio
async def test_free_product_skips_debit(settlement_engine, market, session_factory):
    product = await market.product(price="0.00")

    result = await settlement_engine.purchase("k1", "buyer", product.id)

    assert result.ok
    assert result.new_balance == Decimal("0.00")
    async with session_factory() as db:
        entries = (await db.execute(select(func.count(LedgerEntry.id)))).scalar()
    assert entries == 0


@pytest.mark.asyncio
async def test_unavailable_and_own_products_rejected(settlement_engine, market):
    hidden = await market.product(is_available=False)
    own = await market.product(seller_id="buyer")
    await market.fund("buyer", "100.00")

    assert (await settlement_engine.purchase("k1", "buyer", hidden.id)).error == ErrorKind.PRODUCT_UNAVAILABLE
    assert (await settlement_engine.purchase("k2", "buyer", own.id)).error == ErrorKind.PRODUCT_UNAVAILABLE
    assert (await settlement_engine.purchase("k3", "buyer", 424242)).error == ErrorKind.PRODUCT_UNAVAILABLE


@pytest.mark.asyncio
async def test_email_required_products(settlement_engine, market):
    product = await market.product(requires_email=True)
    await market.fund("buyer", "100.00")

    missing = await settlement_engine.purchase("k1", "buyer", product.id)
    assert missing.error == ErrorKind.INVALID_REQUEST

    given = await settlement_engine.purchase("k2", "buyer", product.id, buyer_email="b@example.com")
    assert given.ok


@pytest.mark.asyncio
async def test_counted_stock_decrements_and_auto_hides(settlement_engine, market, session_factory):
    product = await market.product(price="1.00", stock_policy=StockPolicy.COUNTED, stock=1)
    await market.fund("buyer", "10.00")

    assert (await settlement_engine.purchase("k1", "buyer", product.id)).ok
    sold_out = await settlement_engine.purchase("k2", "buyer", product.id)

    assert sold_out.error == ErrorKind.OUT_OF_STOCK
    async with session_factory() as db:
        stored = await db.get(Product, product.id)
    assert stored.stock == 0
    assert stored.auto_hidden and not stored.is_available


@pytest.mark.asyncio
async def test_pooled_purchase_delivers_instantly(settlement_engine, market, session_factory):
    product = await market.product(price="3.00", stock_policy=StockPolicy.POOLED)
    await market.items(settlement_engine, product, [{"user": "a", "pass": "1"}, {"user": "b", "pass": "2"}])
    await market.fund("buyer", "10.00")

    result = await settlement_engine.purchase("k1", "buyer", product.id)

    assert result.ok
    assert result.status == OrderStatus.DELIVERED
    assert result.delivery_item_id is not None
    order = await settlement_engine.get_order(result.order_id, "buyer")
    assert order.delivered_at is not None


@pytest.mark.asyncio
async def test_empty_pool_without_fallback_is_out_of_stock(settlement_engine, market, session_factory):
    product = await market.product(stock_policy=StockPolicy.POOLED)
    await market.fund("buyer", "100.00")

    result = await settlement_engine.purchase("k1", "buyer", product.id)

    assert result.error == ErrorKind.OUT_OF_STOCK
    assert (await market.balance("buyer")).available == Decimal("100.00")
    async with session_factory() as db:
        stored = await db.get(Product, product.id)
    assert stored.auto_hidden


@pytest.mark.asyncio
async def test_empty_pool_with_fallback_waits_for_manual_delivery(settlement_engine, market):
    product = await market.product(stock_policy=StockPolicy.POOLED, allow_manual_fallback=True)
    await market.fund("buyer", "100.00")

    result = await settlement_engine.purchase("k1", "buyer", product.id)

    assert result.ok
    assert result.status == OrderStatus.PENDING_DELIVERY
    assert result.delivery_item_id is None

    delivered = await settlement_engine.deliver_order(result.order_id, "seller-1", {"code": "MANUAL-1"})
    assert delivered.ok
    assert delivered.status == OrderStatus.DELIVERED


@pytest.mark.asyncio
async def test_manual_delivery_rules(settlement_engine, market):
    product = await market.product()
    await market.fund("buyer", "100.00")
    order_id = (await settlement_engine.purchase("k1", "buyer", product.id)).order_id

    assert (await settlement_engine.deliver_order(order_id, "seller-1", "")).error == ErrorKind.INVALID_REQUEST
    assert (await settlement_engine.deliver_order(order_id, "intruder", "x")).error == ErrorKind.NOT_AUTHORIZED
    assert (await settlement_engine.deliver_order(order_id, "seller-1", b"\x00")).error == ErrorKind.INVALID_REQUEST
    assert (await settlement_engine.deliver_order(order_id, "seller-1", "x")).ok
    again = await settlement_engine.deliver_order(order_id, "seller-1", "y")
    assert again.error == ErrorKind.INVALID_ORDER_STATE
