"""
Withdrawals (Domain Logic).

Payout of available wallet funds, reviewed by an admin.

The amount is debited when the request is made, so it can no longer be
spent on purchases while the admin reviews it. Approval only closes the
request; rejection credits the amount back. Each step is one atomic unit
run by the settlement engine.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.exceptions import (
    InvalidRequestError,
    IdempotencyConflictError,
    InvalidWithdrawalStateError,
    WithdrawalPendingError,
    ConcurrentModificationError,
    SettlementNotFoundError,
)
from backend.app.models.billing_enums import LedgerReason, BalanceBucket, WithdrawalStatus
from backend.app.models.notification import NotificationEvent
from backend.app.models.withdrawal import Withdrawal
from backend.app.domain.settlement.wallet_ledger import WalletLedger
from backend.app.domain.settlement.money import to_money
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.notification_service import NotificationDraft

logger = logging.getLogger(__name__)

Drafts = List[NotificationDraft]


class WithdrawalDesk:

    @staticmethod
    async def _load(db: AsyncSession, withdrawal_id: int, lock: bool = False) -> Withdrawal:
        query = select(Withdrawal).where(Withdrawal.id == withdrawal_id)
        if lock:
            query = query.with_for_update()
        result = await db.execute(query.execution_options(populate_existing=True))
        withdrawal = result.scalar_one_or_none()
        if withdrawal is None:
            raise SettlementNotFoundError("Withdrawal", withdrawal_id)
        return withdrawal

    @staticmethod
    async def request(
        db: AsyncSession,
        user_id: str,
        amount,
        payout_method: str,
        account_details: str,
        reference: Optional[str] = None,
    ) -> Tuple[Withdrawal, bool]:
        """
        Take `amount` out of the user's available balance for payout.

        Flow:
        1. Replay a request already made with the same reference
        2. Refuse while another request waits for review
        3. Insert the request, then debit the wallet (fails closed)

        Returns:
            (withdrawal, replayed)

        Raises:
            InsufficientFundsError: available balance < amount
            WithdrawalPendingError: the user already has a request under review
            InvalidRequestError: amount below the configured minimum
        """
        value = to_money(amount)
        minimum = to_money(settings.min_withdrawal_amount)
        if value < minimum:
            raise InvalidRequestError(
                f"Minimum withdrawal is {minimum}",
                details={"amount": str(value), "minimum": str(minimum)},
            )

        if reference:
            result = await db.execute(
                select(Withdrawal).where(Withdrawal.user_id == user_id, Withdrawal.reference == reference)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                if to_money(existing.amount) != value:
                    raise IdempotencyConflictError(reference)
                return existing, True

        result = await db.execute(
            select(Withdrawal.id).where(
                Withdrawal.user_id == user_id,
                Withdrawal.status == WithdrawalStatus.REQUESTED,
            )
        )
        waiting = result.scalar_one_or_none()
        if waiting is not None:
            raise WithdrawalPendingError(waiting)

        withdrawal = Withdrawal(
            user_id=user_id,
            amount=value,
            payout_method=payout_method,
            account_details=account_details,
            reference=reference,
            status=WithdrawalStatus.REQUESTED,
        )
        db.add(withdrawal)
        await db.flush()

        entry = await WalletLedger.debit(
            db, user_id, value, reason=LedgerReason.WITHDRAWAL, reference=f"withdrawal:{withdrawal.id}"
        )
        withdrawal.request_entry_id = entry.id
        await db.flush()

        logger.info("Withdrawal requested: id=%s user=%s amount=%s", withdrawal.id, user_id, value)
        return withdrawal, False

    @staticmethod
    async def _decide(
        db: AsyncSession, withdrawal: Withdrawal, target: WithdrawalStatus, admin_id: str, notes: Optional[str]
    ) -> None:
        result = await db.execute(
            update(Withdrawal)
            .where(Withdrawal.id == withdrawal.id, Withdrawal.status == WithdrawalStatus.REQUESTED)
            .values(status=target, processed_by=admin_id, admin_notes=notes, processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(f"Withdrawal {withdrawal.id} changed concurrently")
        await db.refresh(withdrawal)

    @staticmethod
    async def approve(
        db: AsyncSession, withdrawal_id: int, admin_id: str, notes: Optional[str] = None
    ) -> Tuple[Withdrawal, Drafts]:
        """The admin paid the request out. No money moves: it left the wallet on request."""
        withdrawal = await WithdrawalDesk._load(db, withdrawal_id, lock=True)
        if withdrawal.status != WithdrawalStatus.REQUESTED:
            raise InvalidWithdrawalStateError(withdrawal_id, withdrawal.status.value, "approve")

        await WithdrawalDesk._decide(db, withdrawal, WithdrawalStatus.APPROVED, admin_id, notes)
        await log_event(
            db, AuditAction.WITHDRAWAL_APPROVED,
            actor_id=admin_id, target_user_id=withdrawal.user_id,
            metadata={"withdrawal_id": withdrawal.id, "amount": str(to_money(withdrawal.amount))},
        )
        logger.info("Withdrawal approved: id=%s admin=%s", withdrawal.id, admin_id)

        return withdrawal, [NotificationDraft(
            user_id=withdrawal.user_id,
            event=NotificationEvent.WITHDRAWAL_APPROVED,
            title="Withdrawal approved",
            message=f"Your withdrawal of {to_money(withdrawal.amount)} via {withdrawal.payout_method} was paid out.",
            metadata={"withdrawal_id": withdrawal.id},
        )]

    @staticmethod
    async def reject(
        db: AsyncSession, withdrawal_id: int, admin_id: str, notes: Optional[str] = None
    ) -> Tuple[Withdrawal, Drafts]:
        """Close the request and return the amount to the available balance in the same unit."""
        withdrawal = await WithdrawalDesk._load(db, withdrawal_id, lock=True)
        if withdrawal.status != WithdrawalStatus.REQUESTED:
            raise InvalidWithdrawalStateError(withdrawal_id, withdrawal.status.value, "reject")

        await WithdrawalDesk._decide(db, withdrawal, WithdrawalStatus.REJECTED, admin_id, notes)
        amount: Decimal = to_money(withdrawal.amount)
        entry = await WalletLedger.credit(
            db, withdrawal.user_id, amount,
            reason=LedgerReason.WITHDRAWAL_REVERSAL,
            bucket=BalanceBucket.AVAILABLE,
            reference=f"withdrawal:{withdrawal.id}",
        )
        withdrawal.reversal_entry_id = entry.id
        await db.flush()

        await log_event(
            db, AuditAction.WITHDRAWAL_REJECTED,
            actor_id=admin_id, target_user_id=withdrawal.user_id,
            metadata={"withdrawal_id": withdrawal.id, "amount": str(amount), "notes": notes},
        )
        logger.info("Withdrawal rejected: id=%s admin=%s refunded=%s", withdrawal.id, admin_id, amount)

        message = f"Your withdrawal of {amount} was rejected and returned to your wallet."
        if notes:
            message = f"{message} Note: {notes}"
        return withdrawal, [NotificationDraft(
            user_id=withdrawal.user_id,
            event=NotificationEvent.WITHDRAWAL_REJECTED,
            title="Withdrawal rejected",
            message=message,
            metadata={"withdrawal_id": withdrawal.id},
        )]

    @staticmethod
    async def list_withdrawals(
        db: AsyncSession,
        user_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 100,
    ) -> List[Withdrawal]:
        query = select(Withdrawal)
        if user_id is not None:
            query = query.where(Withdrawal.user_id == user_id)
        if status is not None:
            query = query.where(Withdrawal.status == status)
        result = await db.execute(query.order_by(Withdrawal.id.desc()).limit(limit))
        return result.scalars().all()
