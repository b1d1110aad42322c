"""
Wallet Ledger (Domain Logic).

Per-user balances with atomic credit/debit and an append-only audit trail.
Every mutation writes exactly one LedgerEntry in the caller's transaction.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    InsufficientFundsError,
    InvalidAmountError,
    ConcurrentModificationError,
)
from backend.app.models.wallet import Wallet
from backend.app.models.ledger_entry import LedgerEntry
from backend.app.models.billing_enums import LedgerReason, BalanceBucket
from backend.app.domain.settlement.money import to_money, ZERO
from backend.app.domain.settlement.results import WalletBalance, ReconciliationReport

logger = logging.getLogger(__name__)


def _positive(amount) -> Decimal:
    value = to_money(amount)
    if value <= ZERO:
        raise InvalidAmountError(amount)
    return value


class WalletLedger:

    @staticmethod
    async def _select_wallet(db: AsyncSession, user_id: str, lock: bool) -> Optional[Wallet]:
        query = select(Wallet).where(Wallet.user_id == user_id)
        if lock:
            # Row lock on PostgreSQL; a no-op on SQLite where BEGIN IMMEDIATE already serializes writers
            query = query.with_for_update()
        query = query.execution_options(populate_existing=True)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_or_create_wallet(db: AsyncSession, user_id: str, lock: bool = False) -> Wallet:
        """
        Return the user's wallet, creating an empty one on first access.

        Creation runs in a savepoint; if another transaction inserted the
        wallet first, the unique violation is absorbed and the row re-read.
        """
        wallet = await WalletLedger._select_wallet(db, user_id, lock)
        if wallet is not None:
            return wallet

        try:
            async with db.begin_nested():
                wallet = Wallet(
                    user_id=user_id,
                    available_balance=ZERO,
                    pending_balance=ZERO,
                    version=0,
                )
                db.add(wallet)
                await db.flush()
            logger.info("Wallet created lazily: user=%s wallet=%s", user_id, wallet.id)
        except IntegrityError:
            wallet = await WalletLedger._select_wallet(db, user_id, lock)
            if wallet is None:
                raise ConcurrentModificationError("Wallet creation raced, please retry")

        return wallet

    @staticmethod
    async def _apply(
        db: AsyncSession,
        user_id: str,
        reason: LedgerReason,
        available_delta: Decimal = ZERO,
        pending_delta: Decimal = ZERO,
        order_id: Optional[int] = None,
        reference: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Apply a signed change to one wallet and append its ledger entry.

        Flow:
        1. Lock the wallet row (FOR UPDATE) and read its version
        2. Fail closed if either bucket would go negative
        3. Conditional UPDATE ... WHERE version = :seen
        4. Append the LedgerEntry with post-change snapshots
        """
        wallet = await WalletLedger.get_or_create_wallet(db, user_id, lock=True)

        current_available = to_money(wallet.available_balance)
        current_pending = to_money(wallet.pending_balance)
        new_available = current_available + available_delta
        new_pending = current_pending + pending_delta

        if new_available < ZERO:
            raise InsufficientFundsError(required=-available_delta, available=current_available)
        if new_pending < ZERO:
            raise InsufficientFundsError(required=-pending_delta, available=current_pending)

        seen_version = wallet.version
        result = await db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id, Wallet.version == seen_version)
            .values(
                available_balance=new_available,
                pending_balance=new_pending,
                version=seen_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Wallet version check lost: user=%s version=%s", user_id, seen_version)
            raise ConcurrentModificationError()

        await db.refresh(wallet)

        entry = LedgerEntry(
            wallet_id=wallet.id,
            user_id=user_id,
            order_id=order_id,
            reason=reason,
            available_delta=available_delta,
            pending_delta=pending_delta,
            available_after=new_available,
            pending_after=new_pending,
            reference=reference,
        )
        db.add(entry)
        await db.flush()

        logger.info(
            "Ledger %s: user=%s available%+.2f pending%+.2f -> available=%s pending=%s order=%s",
            reason.value, user_id, available_delta, pending_delta, new_available, new_pending, order_id,
        )
        return entry

    @staticmethod
    async def debit(
        db: AsyncSession,
        user_id: str,
        amount,
        reason: LedgerReason = LedgerReason.PURCHASE_DEBIT,
        order_id: Optional[int] = None,
        reference: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Debit the available bucket.

        Raises:
            InsufficientFundsError: balance < amount (wallet untouched)
        """
        value = _positive(amount)
        return await WalletLedger._apply(
            db, user_id, reason, available_delta=-value, order_id=order_id, reference=reference
        )

    @staticmethod
    async def credit(
        db: AsyncSession,
        user_id: str,
        amount,
        reason: LedgerReason,
        order_id: Optional[int] = None,
        bucket: BalanceBucket = BalanceBucket.AVAILABLE,
        reference: Optional[str] = None,
    ) -> LedgerEntry:
        """Credit the available or pending bucket."""
        value = _positive(amount)
        if bucket == BalanceBucket.PENDING:
            return await WalletLedger._apply(
                db, user_id, reason, pending_delta=value, order_id=order_id, reference=reference
            )
        return await WalletLedger._apply(
            db, user_id, reason, available_delta=value, order_id=order_id, reference=reference
        )

    @staticmethod
    async def release_pending(db: AsyncSession, user_id: str, amount, order_id: int) -> LedgerEntry:
        """Move an escrowed earning to available: one escrow-release entry."""
        value = _positive(amount)
        return await WalletLedger._apply(
            db, user_id, LedgerReason.ESCROW_RELEASE,
            available_delta=value, pending_delta=-value, order_id=order_id,
        )

    @staticmethod
    async def reverse_pending(db: AsyncSession, user_id: str, amount, order_id: int) -> LedgerEntry:
        """Remove an unreleased earning after a refund."""
        value = _positive(amount)
        return await WalletLedger._apply(
            db, user_id, LedgerReason.REFUND_REVERSAL, pending_delta=-value, order_id=order_id,
        )

    @staticmethod
    async def get_balance(db: AsyncSession, user_id: str) -> WalletBalance:
        wallet = await WalletLedger.get_or_create_wallet(db, user_id)
        return WalletBalance(
            user_id=user_id,
            available=to_money(wallet.available_balance),
            pending=to_money(wallet.pending_balance),
        )

    @staticmethod
    async def list_entries(db: AsyncSession, user_id: str, limit: int = 100) -> List[LedgerEntry]:
        result = await db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.id.desc())
            .limit(limit)
        )
        return result.scalars().all()

    @staticmethod
    async def reconcile(db: AsyncSession, user_id: str) -> ReconciliationReport:
        """Recompute both balances from the ledger and compare with the wallet row."""
        wallet = await WalletLedger.get_or_create_wallet(db, user_id)
        result = await db.execute(
            select(
                func.coalesce(func.sum(LedgerEntry.available_delta), 0),
                func.coalesce(func.sum(LedgerEntry.pending_delta), 0),
                func.count(LedgerEntry.id),
            ).where(LedgerEntry.wallet_id == wallet.id)
        )
        ledger_available, ledger_pending, count = result.one()

        report = ReconciliationReport(
            user_id=user_id,
            available_balance=to_money(wallet.available_balance),
            pending_balance=to_money(wallet.pending_balance),
            ledger_available=to_money(ledger_available),
            ledger_pending=to_money(ledger_pending),
            entry_count=count,
        )
        if not report.balanced:
            logger.error(
                "Ledger drift: user=%s wallet=(%s, %s) ledger=(%s, %s)",
                user_id, report.available_balance, report.pending_balance,
                report.ledger_available, report.ledger_pending,
            )
        return report
