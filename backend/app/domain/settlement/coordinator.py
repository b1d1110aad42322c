"""
Purchase Transaction Coordinator (Domain Logic).

Runs a purchase as one unit inside the caller's transaction:
idempotency record, buyer debit, seller escrow credit, stock handling and
the order row either all commit or none do.
"""

import logging
from typing import Any, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.exceptions import (
    ProductUnavailableError,
    OutOfStockError,
    InvalidRequestError,
    IdempotencyConflictError,
    ConcurrentModificationError,
    NotAuthorizedError,
    InvalidOrderStateError,
    SettlementNotFoundError,
)
from backend.app.models.product import Product
from backend.app.models.order import Order
from backend.app.models.idempotency_record import IdempotencyRecord
from backend.app.models.billing_enums import LedgerReason, BalanceBucket
from backend.app.models.order_enums import OrderStatus, StockPolicy
from backend.app.models.notification import NotificationEvent
from backend.app.domain.settlement.wallet_ledger import WalletLedger
from backend.app.domain.settlement.delivery_pool import DeliveryPool, canonical_payload
from backend.app.domain.settlement.commission import CommissionResolver, split
from backend.app.domain.settlement.money import to_money, ZERO
from backend.app.domain.settlement.results import PurchaseResult
from backend.app.services.notification_service import NotificationDraft

logger = logging.getLogger(__name__)

Drafts = List[NotificationDraft]


class PurchaseCoordinator:

    @staticmethod
    async def _claim_idempotency_key(
        db: AsyncSession, key: str, buyer_id: str, product_id: int
    ) -> Tuple[Optional[PurchaseResult], Optional[IdempotencyRecord]]:
        """
        Return the stored result for a replayed key, or a fresh record.

        The record is inserted before any money moves; a concurrent request
        with the same key fails on the unique constraint, and its retry
        finds the committed record here.
        """
        result = await db.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.buyer_id == buyer_id,
                IdempotencyRecord.key == key,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            if existing.product_id != product_id:
                raise IdempotencyConflictError(key)
            if existing.response is None:
                raise ConcurrentModificationError("Purchase with this key is still in flight")
            logger.info("Idempotent replay: buyer=%s key=%s order=%s", buyer_id, key, existing.order_id)
            return PurchaseResult.from_record(existing.response), None

        record = IdempotencyRecord(buyer_id=buyer_id, key=key, product_id=product_id)
        db.add(record)
        await db.flush()
        return None, record

    @staticmethod
    async def _load_product(db: AsyncSession, product_id: int, buyer_id: str, buyer_email: Optional[str]) -> Product:
        result = await db.execute(
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        product = result.scalar_one_or_none()
        if product is None:
            raise ProductUnavailableError(product_id, "Product not found")
        if product.auto_hidden:
            # Hidden because its stock ran out, not by the seller
            raise OutOfStockError(product_id)
        if not product.is_available:
            raise ProductUnavailableError(product_id)
        if product.seller_id is not None and product.seller_id == buyer_id:
            raise ProductUnavailableError(product_id, "Sellers cannot buy their own products")
        if product.requires_email and not buyer_email:
            raise InvalidRequestError("This product requires an email address", details={"product_id": product_id})
        return product

    @staticmethod
    def _stock_drafts(product: Product, remaining: int) -> Drafts:
        if product.seller_id is None:
            return []
        if remaining == 0:
            return [NotificationDraft(
                user_id=product.seller_id,
                event=NotificationEvent.OUT_OF_STOCK,
                title="Out of stock",
                message=f"'{product.name}' is out of stock.",
                metadata={"product_id": product.id},
            )]
        if remaining <= settings.low_stock_threshold:
            return [NotificationDraft(
                user_id=product.seller_id,
                event=NotificationEvent.LOW_STOCK,
                title="Low stock",
                message=f"Only {remaining} left for '{product.name}'.",
                metadata={"product_id": product.id, "remaining": remaining},
            )]
        return []

    @staticmethod
    def _hide_when_drained(product: Product) -> None:
        product.is_available = False
        product.auto_hidden = True
        logger.info("Product %s sold out, auto-hidden", product.id)

    @staticmethod
    async def _take_stock(db: AsyncSession, product: Product, order: Order, buyer_id: str) -> Drafts:
        """Consume one unit of stock for the order and set its initial status."""
        if product.stock_policy == StockPolicy.COUNTED:
            result = await db.execute(
                update(Product)
                .where(Product.id == product.id, Product.stock > 0)
                .values(stock=Product.stock - 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise OutOfStockError(product.id)
            await db.refresh(product)
            if product.stock == 0:
                PurchaseCoordinator._hide_when_drained(product)
            return PurchaseCoordinator._stock_drafts(product, product.stock)

        if product.stock_policy == StockPolicy.POOLED:
            try:
                reservation = await DeliveryPool.reserve_one(db, product.id, order.id, buyer_id)
            except OutOfStockError:
                if not product.allow_manual_fallback:
                    raise
                logger.info("Pool empty for product %s, order %s falls back to manual delivery", product.id, order.id)
                return []

            order.delivery_item_id = reservation.item.id
            order.status = OrderStatus.DELIVERED
            order.delivered_at = utcnow()
            if reservation.remaining == 0 and not product.allow_manual_fallback:
                PurchaseCoordinator._hide_when_drained(product)
            return PurchaseCoordinator._stock_drafts(product, reservation.remaining)

        return []

    @staticmethod
    async def purchase(
        db: AsyncSession,
        idempotency_key: str,
        buyer_id: str,
        product_id: int,
        buyer_email: Optional[str] = None,
    ) -> Tuple[PurchaseResult, Drafts]:
        """
        Buy a product with wallet funds.

        Flow:
        0. Claim the idempotency key (replays return the stored result)
        1. Re-read and lock the product, validate availability
        2. Freeze the commission split on a new order row
        3. Debit the buyer, credit the seller's pending bucket
        4. Consume stock (counted decrement or pool reservation)
        5. Store the result on the idempotency record

        Any raised SettlementError aborts the caller's transaction, so a
        failed purchase leaves no trace, the idempotency record included.

        Returns:
            (PurchaseResult, notifications to enqueue after commit)
        """
        if not idempotency_key:
            raise InvalidRequestError("An idempotency key is required")

        replay, record = await PurchaseCoordinator._claim_idempotency_key(db, idempotency_key, buyer_id, product_id)
        if replay is not None:
            return replay, []

        product = await PurchaseCoordinator._load_product(db, product_id, buyer_id, buyer_email)

        # Price always comes from the locked product row
        amount = to_money(product.price)
        rate = await CommissionResolver.resolve_rate(db, product.seller_id)
        commission = split(amount, rate)

        order = Order(
            buyer_id=buyer_id,
            seller_id=product.seller_id,
            product_id=product.id,
            amount=commission.amount,
            commission_rate=commission.rate,
            commission_amount=commission.commission_amount,
            seller_earning=commission.seller_earning,
            status=OrderStatus.PENDING_DELIVERY,
            buyer_email=buyer_email,
        )
        db.add(order)
        await db.flush()

        if amount > ZERO:
            debit = await WalletLedger.debit(
                db, buyer_id, amount, reason=LedgerReason.PURCHASE_DEBIT, order_id=order.id
            )
            new_balance = to_money(debit.available_after)
        else:
            new_balance = (await WalletLedger.get_balance(db, buyer_id)).available

        if product.seller_id is not None and commission.seller_earning > ZERO:
            await WalletLedger.credit(
                db, product.seller_id, commission.seller_earning,
                reason=LedgerReason.SALE_CREDIT_PENDING,
                order_id=order.id,
                bucket=BalanceBucket.PENDING,
            )

        drafts = await PurchaseCoordinator._take_stock(db, product, order, buyer_id)
        await db.flush()

        result = PurchaseResult(
            ok=True,
            order_id=order.id,
            status=order.status,
            new_balance=new_balance,
            amount=commission.amount,
            seller_earning=commission.seller_earning,
            commission_rate=commission.rate,
            delivery_item_id=order.delivery_item_id,
        )
        record.order_id = order.id
        record.response = result.to_record()
        await db.flush()

        logger.info(
            "Purchase committed: order=%s buyer=%s seller=%s product=%s amount=%s earning=%s rate=%s status=%s",
            order.id, buyer_id, product.seller_id, product.id, amount,
            commission.seller_earning, commission.rate, order.status.value,
        )
        return result, PurchaseCoordinator._order_drafts(product, order) + drafts

    @staticmethod
    def _order_drafts(product: Product, order: Order) -> Drafts:
        drafts = [NotificationDraft(
            user_id=order.buyer_id,
            event=NotificationEvent.NEW_ORDER,
            title="Purchase confirmed",
            message=f"Your order #{order.id} for '{product.name}' was placed.",
            order_id=order.id,
            metadata={"amount": str(order.amount)},
        )]
        if order.seller_id is not None:
            drafts.append(NotificationDraft(
                user_id=order.seller_id,
                event=NotificationEvent.NEW_ORDER,
                title="New order",
                message=f"Order #{order.id} for '{product.name}'. Earnings are held until the buyer approves.",
                order_id=order.id,
                metadata={"seller_earning": str(order.seller_earning)},
            ))
        if order.status == OrderStatus.DELIVERED:
            drafts.append(NotificationDraft(
                user_id=order.buyer_id,
                event=NotificationEvent.DELIVERED,
                title="Order delivered",
                message=f"Order #{order.id} was delivered. Approve it once you have checked it.",
                order_id=order.id,
            ))
        return drafts

    @staticmethod
    async def hide_drained_product(db: AsyncSession, product_id: int) -> Optional[Drafts]:
        """
        Hide a product whose stock ran out during a failed purchase.

        Runs in its own transaction after the purchase rolled back.
        Returns the seller notifications when this call hid the product,
        None when there was nothing to do.
        """
        result = await db.execute(
            select(Product).where(Product.id == product_id).with_for_update()
        )
        product = result.scalar_one_or_none()
        if product is None or product.auto_hidden or not product.is_available:
            return None

        if product.stock_policy == StockPolicy.POOLED:
            if product.allow_manual_fallback or await DeliveryPool.count_available(db, product_id) > 0:
                return None
        elif product.stock_policy == StockPolicy.COUNTED:
            if (product.stock or 0) > 0:
                return None
        else:
            return None

        PurchaseCoordinator._hide_when_drained(product)
        await db.flush()
        return PurchaseCoordinator._stock_drafts(product, 0)

    @staticmethod
    async def load_order(db: AsyncSession, order_id: int, lock: bool = False) -> Order:
        query = select(Order).where(Order.id == order_id)
        if lock:
            query = query.with_for_update()
        result = await db.execute(query.execution_options(populate_existing=True))
        order = result.scalar_one_or_none()
        if order is None:
            raise SettlementNotFoundError("Order", order_id)
        return order

    @staticmethod
    async def deliver(
        db: AsyncSession, order_id: int, actor_id: str, payload: Any, is_admin: bool = False
    ) -> Tuple[Order, Drafts]:
        """
        Manual fulfilment: the seller attaches the delivered content.

        pending_delivery -> delivered. Platform-owned orders are delivered by an admin.
        """
        order = await PurchaseCoordinator.load_order(db, order_id, lock=True)
        if not is_admin and order.seller_id != actor_id:
            raise NotAuthorizedError("Only the seller can deliver this order")
        if order.status != OrderStatus.PENDING_DELIVERY:
            raise InvalidOrderStateError(order_id, order.status.value, "deliver")
        canonical_payload(payload)

        now = utcnow()
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING_DELIVERY)
            .values(status=OrderStatus.DELIVERED, manual_payload=payload, delivered_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError()
        await db.refresh(order)

        logger.info("Order %s delivered manually by %s", order_id, actor_id)
        return order, [NotificationDraft(
            user_id=order.buyer_id,
            event=NotificationEvent.DELIVERED,
            title="Order delivered",
            message=f"Order #{order.id} was delivered. Approve it once you have checked it.",
            order_id=order.id,
        )]

    @staticmethod
    async def get_order(db: AsyncSession, order_id: int, user_id: str, is_admin: bool = False) -> Order:
        """Buyer, seller or admin only."""
        order = await PurchaseCoordinator.load_order(db, order_id)
        if not is_admin and user_id not in (order.buyer_id, order.seller_id):
            raise NotAuthorizedError("Not a party to this order")
        return order

    @staticmethod
    async def list_orders(
        db: AsyncSession, buyer_id: Optional[str] = None, seller_id: Optional[str] = None,
        status: Optional[OrderStatus] = None, limit: int = 50,
    ) -> List[Order]:
        query = select(Order)
        if buyer_id:
            query = query.where(Order.buyer_id == buyer_id)
        if seller_id:
            query = query.where(Order.seller_id == seller_id)
        if status:
            query = query.where(Order.status == status)
        result = await db.execute(query.order_by(Order.id.desc()).limit(limit))
        return result.scalars().all()
