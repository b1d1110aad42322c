"""
Escrow Release Gate (Domain Logic).

Moves a seller's earning from pending to available exactly once per order.
Buyer approval, the automatic release of stale deliveries and an admin
resolving a dispute in the seller's favour all go through `_release`.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow, as_utc
from backend.app.core.config import settings
from backend.app.core.exceptions import (
    AlreadyApprovedError,
    NotDeliveredYetError,
    NotAuthorizedError,
    InvalidOrderStateError,
    InvalidRequestError,
    ConcurrentModificationError,
)
from backend.app.models.order import Order
from backend.app.models.order_enums import OrderStatus
from backend.app.models.billing_enums import LedgerReason, ReleaseSource
from backend.app.models.notification import NotificationEvent
from backend.app.domain.settlement.wallet_ledger import WalletLedger
from backend.app.domain.settlement.coordinator import PurchaseCoordinator
from backend.app.domain.settlement.money import to_money, ZERO
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.notification_service import NotificationDraft

logger = logging.getLogger(__name__)

Drafts = List[NotificationDraft]


class EscrowGate:

    @staticmethod
    async def _transition(db: AsyncSession, order: Order, expected: OrderStatus, **values) -> None:
        """Conditional status write; losing the race is a concurrent modification."""
        result = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(f"Order {order.id} changed concurrently")
        await db.refresh(order)

    @staticmethod
    async def _release(db: AsyncSession, order: Order, source: ReleaseSource) -> Decimal:
        """
        Complete the order and release the seller's earning.

        Writes exactly one escrow-release entry (none for platform-owned
        or zero-earning orders).
        """
        expected = order.status
        await EscrowGate._transition(
            db, order, expected,
            status=OrderStatus.COMPLETED,
            approved_at=utcnow(),
            release_source=source,
        )

        earning = to_money(order.seller_earning)
        if order.seller_id is not None and earning > ZERO:
            await WalletLedger.release_pending(db, order.seller_id, earning, order.id)

        logger.info(
            "Escrow released: order=%s seller=%s amount=%s source=%s",
            order.id, order.seller_id, earning, source.value,
        )
        return earning

    @staticmethod
    def _release_drafts(order: Order, earning: Decimal) -> Drafts:
        if order.seller_id is None:
            return []
        return [NotificationDraft(
            user_id=order.seller_id,
            event=NotificationEvent.APPROVED,
            title="Funds released",
            message=f"{earning} from order #{order.id} is now available in your wallet.",
            order_id=order.id,
            metadata={"released": str(earning)},
        )]

    @staticmethod
    async def approve(db: AsyncSession, order_id: int, buyer_id: str) -> Tuple[Order, Decimal, Drafts]:
        """
        Buyer confirms delivery; the seller's earning becomes available.

        Raises:
            NotAuthorizedError: caller is not the order's buyer
            AlreadyApprovedError: order already completed (no ledger change)
            NotDeliveredYetError: order still awaiting delivery
            InvalidOrderStateError: order is disputed or refunded
        """
        order = await PurchaseCoordinator.load_order(db, order_id, lock=True)

        if order.buyer_id != buyer_id:
            raise NotAuthorizedError("Only the buyer can approve this order")
        if order.status == OrderStatus.COMPLETED:
            raise AlreadyApprovedError(order_id)
        if order.status == OrderStatus.PENDING_DELIVERY:
            raise NotDeliveredYetError(order_id)
        if order.status != OrderStatus.DELIVERED:
            raise InvalidOrderStateError(order_id, order.status.value, "approve")

        earning = await EscrowGate._release(db, order, ReleaseSource.BUYER)
        return order, earning, EscrowGate._release_drafts(order, earning)

    @staticmethod
    async def due_order_ids(db: AsyncSession, now: Optional[datetime] = None, limit: int = 500) -> List[int]:
        """Delivered orders old enough for automatic release."""
        cutoff = (now or utcnow()) - timedelta(days=settings.escrow_auto_release_days)
        result = await db.execute(
            select(Order.id)
            .where(Order.status == OrderStatus.DELIVERED, Order.delivered_at <= cutoff)
            .order_by(Order.delivered_at, Order.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def auto_release(db: AsyncSession, order_id: int, now: Optional[datetime] = None) -> Optional[Tuple[Decimal, Drafts]]:
        """
        Release one stale delivered order.

        Returns None when the order no longer qualifies (approved, disputed
        or refreshed since it was listed).
        """
        now = now or utcnow()
        order = await PurchaseCoordinator.load_order(db, order_id, lock=True)
        cutoff = now - timedelta(days=settings.escrow_auto_release_days)
        if order.status != OrderStatus.DELIVERED or order.delivered_at is None or as_utc(order.delivered_at) > cutoff:
            return None

        earning = await EscrowGate._release(db, order, ReleaseSource.AUTO)
        await log_event(
            db,
            AuditAction.ESCROW_AUTO_RELEASED,
            target_user_id=order.seller_id,
            order_id=order.id,
            metadata={"released": str(earning), "delivered_at": as_utc(order.delivered_at).isoformat()},
        )
        return earning, EscrowGate._release_drafts(order, earning)

    @staticmethod
    async def open_dispute(db: AsyncSession, order_id: int, buyer_id: str, reason: str) -> Tuple[Order, Drafts]:
        """pending_delivery | delivered -> disputed. Freezes the escrow until an admin decides."""
        if not reason or not reason.strip():
            raise InvalidRequestError("A dispute reason is required")

        order = await PurchaseCoordinator.load_order(db, order_id, lock=True)
        if order.buyer_id != buyer_id:
            raise NotAuthorizedError("Only the buyer can dispute this order")
        if order.status == OrderStatus.COMPLETED:
            raise AlreadyApprovedError(order_id)
        if order.status not in (OrderStatus.PENDING_DELIVERY, OrderStatus.DELIVERED):
            raise InvalidOrderStateError(order_id, order.status.value, "dispute")

        await EscrowGate._transition(
            db, order, order.status,
            status=OrderStatus.DISPUTED,
            dispute_reason=reason.strip(),
        )
        await log_event(
            db, AuditAction.DISPUTE_OPENED,
            actor_id=buyer_id, target_user_id=order.seller_id, order_id=order.id,
            metadata={"reason": order.dispute_reason},
        )
        logger.info("Dispute opened: order=%s buyer=%s", order_id, buyer_id)

        drafts = []
        if order.seller_id is not None:
            drafts.append(NotificationDraft(
                user_id=order.seller_id,
                event=NotificationEvent.DISPUTED,
                title="Order disputed",
                message=f"The buyer disputed order #{order.id}. Earnings stay on hold until it is resolved.",
                order_id=order.id,
            ))
        return order, drafts

    @staticmethod
    async def resolve_dispute(
        db: AsyncSession, order_id: int, admin_id: str, refund: bool, note: Optional[str] = None
    ) -> Tuple[Order, Drafts]:
        """
        Admin decision on a disputed order.

        refund=True:  disputed -> refunded; buyer credited the amount,
                      seller's pending earning reversed.
        refund=False: disputed -> completed through the normal release path.
        """
        order = await PurchaseCoordinator.load_order(db, order_id, lock=True)
        if order.status != OrderStatus.DISPUTED:
            raise InvalidOrderStateError(order_id, order.status.value, "resolve")

        if not refund:
            earning = await EscrowGate._release(db, order, ReleaseSource.ADMIN)
            await log_event(
                db, AuditAction.DISPUTE_RESOLVED_RELEASE,
                actor_id=admin_id, target_user_id=order.seller_id, order_id=order.id,
                metadata={"released": str(earning), "note": note},
            )
            drafts = EscrowGate._release_drafts(order, earning)
            drafts.append(NotificationDraft(
                user_id=order.buyer_id,
                event=NotificationEvent.APPROVED,
                title="Dispute closed",
                message=f"Your dispute on order #{order.id} was resolved in the seller's favour.",
                order_id=order.id,
            ))
            return order, drafts

        await EscrowGate._transition(
            db, order, OrderStatus.DISPUTED,
            status=OrderStatus.REFUNDED,
            refunded_at=utcnow(),
        )

        amount = to_money(order.amount)
        earning = to_money(order.seller_earning)
        if amount > ZERO:
            await WalletLedger.credit(db, order.buyer_id, amount, reason=LedgerReason.REFUND, order_id=order.id)
        if order.seller_id is not None and earning > ZERO:
            await WalletLedger.reverse_pending(db, order.seller_id, earning, order.id)

        await log_event(
            db, AuditAction.DISPUTE_RESOLVED_REFUND,
            actor_id=admin_id, target_user_id=order.buyer_id, order_id=order.id,
            metadata={"refunded": str(amount), "reversed": str(earning), "note": note},
        )
        logger.info("Order %s refunded by %s: buyer +%s seller pending -%s", order_id, admin_id, amount, earning)

        drafts = [NotificationDraft(
            user_id=order.buyer_id,
            event=NotificationEvent.REFUNDED,
            title="Order refunded",
            message=f"{amount} for order #{order.id} was returned to your wallet.",
            order_id=order.id,
        )]
        if order.seller_id is not None:
            drafts.append(NotificationDraft(
                user_id=order.seller_id,
                event=NotificationEvent.REFUNDED,
                title="Order refunded",
                message=f"Order #{order.id} was refunded to the buyer after a dispute.",
                order_id=order.id,
            ))
        return order, drafts
