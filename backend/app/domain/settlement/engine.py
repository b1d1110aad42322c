"""
Settlement Engine.

Public entry point over the settlement modules. Each write operation runs
in its own atomic unit (with transient-error retries), converts business
failures into typed result values, and enqueues notifications only after
the unit committed.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.exceptions import (
    SettlementError,
    OutOfStockError,
    InvalidRequestError,
    NotAuthorizedError,
    SettlementNotFoundError,
)
from backend.app.core.reliability import run_atomic
from backend.app.models.billing_enums import LedgerReason, BalanceBucket, WithdrawalStatus
from backend.app.models.ledger_entry import LedgerEntry
from backend.app.models.order import Order
from backend.app.models.product import Product
from backend.app.models.withdrawal import Withdrawal
from backend.app.domain.settlement.coordinator import PurchaseCoordinator
from backend.app.domain.settlement.delivery_pool import DeliveryPool
from backend.app.domain.settlement.escrow import EscrowGate
from backend.app.domain.settlement.intents import IntentBook, intent_idempotency_key
from backend.app.domain.settlement.wallet_ledger import WalletLedger
from backend.app.domain.settlement.withdrawals import WithdrawalDesk
from backend.app.domain.settlement.money import to_money
from backend.app.domain.settlement.results import (
    WalletBalance,
    AddItemsResult,
    PurchaseResult,
    ApprovalResult,
    OrderResult,
    TopUpResult,
    IntentResult,
    WithdrawalResult,
    AutoReleaseReport,
    ReconciliationReport,
)
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.notification_service import NotificationDispatcher, NotificationDraft

logger = logging.getLogger(__name__)

PurchaseWork = Callable[[AsyncSession], Awaitable[Tuple[PurchaseResult, List[NotificationDraft]]]]


class SettlementEngine:
    """
    Usage:
        engine = SettlementEngine(AsyncSessionLocal)
        result = await engine.purchase("key-1", buyer_id="u1", product_id=42)
        if not result.ok:
            ...  # result.error is an ErrorKind
    """

    def __init__(self, session_factory: async_sessionmaker, dispatcher: Optional[NotificationDispatcher] = None):
        self.session_factory = session_factory
        self.dispatcher = dispatcher or NotificationDispatcher(session_factory)

    async def _atomic(self, work, label: str):
        return await run_atomic(self.session_factory, work, label=label)

    async def _notify(self, drafts: Iterable[NotificationDraft]) -> None:
        await self.dispatcher.enqueue(drafts)

    # Purchases

    async def purchase(
        self,
        idempotency_key: str,
        buyer_id: str,
        product_id: int,
        buyer_email: Optional[str] = None,
    ) -> PurchaseResult:
        async def work(db: AsyncSession):
            return await PurchaseCoordinator.purchase(db, idempotency_key, buyer_id, product_id, buyer_email)

        return await self._run_purchase(work, product_id, label="purchase")

    async def _run_purchase(self, work: PurchaseWork, product_id: int, label: str) -> PurchaseResult:
        try:
            result, drafts = await self._atomic(work, label)
        except OutOfStockError as exc:
            await self._hide_drained_product(product_id)
            return PurchaseResult.failure(exc)
        except SettlementError as exc:
            logger.info("%s rejected: product=%s kind=%s", label, product_id, exc.kind.value)
            return PurchaseResult.failure(exc)

        await self._notify(drafts)
        return result

    async def _hide_drained_product(self, product_id: int) -> None:
        """Separate unit: the purchase that found the stock empty has rolled back."""
        async def work(db: AsyncSession):
            drafts = await PurchaseCoordinator.hide_drained_product(db, product_id)
            if drafts is not None:
                await log_event(db, AuditAction.PRODUCT_AUTO_HIDDEN, metadata={"product_id": product_id})
            return drafts

        try:
            drafts = await self._atomic(work, "auto-hide")
        except SettlementError as exc:
            logger.warning("Could not auto-hide product %s: %s", product_id, exc.message)
            return
        if drafts:
            await self._notify(drafts)

    async def create_intent(self, product_id: int) -> IntentResult:
        async def work(db: AsyncSession):
            intent = await IntentBook.create(db, product_id)
            return IntentResult(
                ok=True,
                token=intent.token,
                product_id=intent.product_id,
                price_snapshot=to_money(intent.price_snapshot),
                expires_at=intent.expires_at,
            )

        try:
            return await self._atomic(work, "create-intent")
        except SettlementError as exc:
            return IntentResult.failure(exc)

    async def resume_intent(self, token: str, buyer_id: str, buyer_email: Optional[str] = None) -> PurchaseResult:
        """Purchase the intent's product for a now-authenticated buyer."""
        product_ids: Dict[str, int] = {}

        async def work(db: AsyncSession):
            intent = await IntentBook.claim(db, token, buyer_id)
            product_ids["product_id"] = intent.product_id
            result, drafts = await PurchaseCoordinator.purchase(
                db, intent_idempotency_key(token), buyer_id, intent.product_id, buyer_email
            )
            IntentBook.mark_consumed(intent, buyer_id, result.order_id)
            return result, drafts

        try:
            result, drafts = await self._atomic(work, "resume-intent")
        except OutOfStockError as exc:
            if "product_id" in product_ids:
                await self._hide_drained_product(product_ids["product_id"])
            return PurchaseResult.failure(exc)
        except SettlementError as exc:
            logger.info("resume-intent rejected: buyer=%s kind=%s", buyer_id, exc.kind.value)
            return PurchaseResult.failure(exc)

        await self._notify(drafts)
        return result

    async def get_order(self, order_id: int, user_id: str, is_admin: bool = False) -> Order:
        """Raises SettlementNotFoundError / NotAuthorizedError, or a transient error if storage is down."""
        async def work(db: AsyncSession):
            return await PurchaseCoordinator.get_order(db, order_id, user_id, is_admin)

        return await self._atomic(work, "get-order")

    async def deliver_order(self, order_id: int, actor_id: str, payload: Any, is_admin: bool = False) -> OrderResult:
        if payload is None or payload == "" or payload == {}:
            return OrderResult.failure(InvalidRequestError("Delivery content is required"), order_id)

        async def work(db: AsyncSession):
            return await PurchaseCoordinator.deliver(db, order_id, actor_id, payload, is_admin)

        try:
            order, drafts = await self._atomic(work, "deliver")
        except SettlementError as exc:
            return OrderResult.failure(exc, order_id)

        await self._notify(drafts)
        return OrderResult(ok=True, order_id=order.id, status=order.status)

    # Escrow

    async def approve_delivery(self, order_id: int, buyer_id: str) -> ApprovalResult:
        async def work(db: AsyncSession):
            return await EscrowGate.approve(db, order_id, buyer_id)

        try:
            order, released, drafts = await self._atomic(work, "approve")
        except SettlementError as exc:
            logger.info("approve rejected: order=%s buyer=%s kind=%s", order_id, buyer_id, exc.kind.value)
            return ApprovalResult.failure(exc, order_id)

        await self._notify(drafts)
        return ApprovalResult(ok=True, order_id=order.id, status=order.status, released_amount=released)

    async def auto_release_due(self, now: Optional[datetime] = None) -> AutoReleaseReport:
        """Release every stale delivered order, one atomic unit per order."""
        report = AutoReleaseReport()
        async def due(db: AsyncSession):
            return await EscrowGate.due_order_ids(db, now)

        order_ids = await self._atomic(due, "auto-release-scan")

        for order_id in order_ids:
            async def work(db: AsyncSession, order_id=order_id):
                return await EscrowGate.auto_release(db, order_id, now)

            try:
                outcome = await self._atomic(work, "auto-release")
            except SettlementError as exc:
                logger.error("Auto release failed: order=%s kind=%s %s", order_id, exc.kind.value, exc.message)
                report.failed.append(order_id)
                continue

            if outcome is None:
                report.skipped.append(order_id)
                continue
            report.released.append(order_id)
            await self._notify(outcome[1])

        if order_ids:
            logger.info(
                "Auto release run: released=%d skipped=%d failed=%d",
                len(report.released), len(report.skipped), len(report.failed),
            )
        return report

    async def open_dispute(self, order_id: int, buyer_id: str, reason: str) -> OrderResult:
        async def work(db: AsyncSession):
            return await EscrowGate.open_dispute(db, order_id, buyer_id, reason)

        try:
            order, drafts = await self._atomic(work, "open-dispute")
        except SettlementError as exc:
            return OrderResult.failure(exc, order_id)

        await self._notify(drafts)
        return OrderResult(ok=True, order_id=order.id, status=order.status)

    async def resolve_dispute(
        self, order_id: int, admin_id: str, refund: bool, note: Optional[str] = None
    ) -> OrderResult:
        async def work(db: AsyncSession):
            return await EscrowGate.resolve_dispute(db, order_id, admin_id, refund, note)

        try:
            order, drafts = await self._atomic(work, "resolve-dispute")
        except SettlementError as exc:
            return OrderResult.failure(exc, order_id)

        await self._notify(drafts)
        return OrderResult(ok=True, order_id=order.id, status=order.status)

    # Wallets

    async def get_wallet_balance(self, user_id: str) -> WalletBalance:
        """Creates the wallet on first access; raises only on storage failure."""
        async def work(db: AsyncSession):
            return await WalletLedger.get_balance(db, user_id)

        return await self._atomic(work, "wallet-balance")

    async def top_up(
        self, user_id: str, amount, admin_id: Optional[str] = None, reference: Optional[str] = None
    ) -> TopUpResult:
        """
        Credit funds from a payment gateway.

        A repeated `reference` (gateway transaction id) for the same user
        returns the original entry instead of crediting twice.
        """
        async def work(db: AsyncSession):
            if reference:
                existing = await db.execute(
                    select(LedgerEntry).where(
                        LedgerEntry.user_id == user_id,
                        LedgerEntry.reason == LedgerReason.TOP_UP,
                        LedgerEntry.reference == reference,
                    )
                )
                entry = existing.scalar_one_or_none()
                if entry is not None:
                    balance = await WalletLedger.get_balance(db, user_id)
                    return TopUpResult(ok=True, balance=balance, ledger_entry_id=entry.id, replayed=True)

            entry = await WalletLedger.credit(
                db, user_id, amount,
                reason=LedgerReason.TOP_UP,
                bucket=BalanceBucket.AVAILABLE,
                reference=reference,
            )
            await log_event(
                db, AuditAction.WALLET_TOPPED_UP,
                actor_id=admin_id, target_user_id=user_id,
                metadata={"amount": str(to_money(amount)), "reference": reference, "ledger_entry_id": entry.id},
            )
            balance = await WalletLedger.get_balance(db, user_id)
            return TopUpResult(ok=True, balance=balance, ledger_entry_id=entry.id)

        try:
            return await self._atomic(work, "top-up")
        except ValueError as exc:
            return TopUpResult.failure(InvalidRequestError(str(exc)))
        except SettlementError as exc:
            return TopUpResult.failure(exc)

    async def request_withdrawal(
        self,
        user_id: str,
        amount,
        payout_method: str,
        account_details: str,
        reference: Optional[str] = None,
    ) -> WithdrawalResult:
        """
        Debit `amount` from the available balance and queue it for admin payout.

        A repeated `reference` returns the original request.
        """
        async def work(db: AsyncSession):
            withdrawal, replayed = await WithdrawalDesk.request(
                db, user_id, amount, payout_method, account_details, reference
            )
            balance = await WalletLedger.get_balance(db, user_id)
            return WithdrawalResult(
                ok=True,
                withdrawal_id=withdrawal.id,
                status=withdrawal.status,
                amount=to_money(withdrawal.amount),
                balance=balance,
                replayed=replayed,
            )

        try:
            return await self._atomic(work, "request-withdrawal")
        except ValueError as exc:
            return WithdrawalResult.failure(InvalidRequestError(str(exc)))
        except SettlementError as exc:
            logger.info("withdrawal rejected: user=%s kind=%s", user_id, exc.kind.value)
            return WithdrawalResult.failure(exc)

    async def approve_withdrawal(
        self, withdrawal_id: int, admin_id: str, notes: Optional[str] = None
    ) -> WithdrawalResult:
        async def work(db: AsyncSession):
            return await WithdrawalDesk.approve(db, withdrawal_id, admin_id, notes)

        return await self._decide_withdrawal(work, withdrawal_id, "approve-withdrawal")

    async def reject_withdrawal(
        self, withdrawal_id: int, admin_id: str, notes: Optional[str] = None
    ) -> WithdrawalResult:
        """Close the request and credit the amount back, in one unit."""
        async def work(db: AsyncSession):
            return await WithdrawalDesk.reject(db, withdrawal_id, admin_id, notes)

        return await self._decide_withdrawal(work, withdrawal_id, "reject-withdrawal")

    async def _decide_withdrawal(self, work, withdrawal_id: int, label: str) -> WithdrawalResult:
        try:
            withdrawal, drafts = await self._atomic(work, label)
        except SettlementError as exc:
            return WithdrawalResult.failure(exc, withdrawal_id)

        await self._notify(drafts)
        return WithdrawalResult(
            ok=True,
            withdrawal_id=withdrawal.id,
            status=withdrawal.status,
            amount=to_money(withdrawal.amount),
        )

    async def list_withdrawals(
        self,
        user_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 100,
    ) -> List[Withdrawal]:
        async def work(db: AsyncSession):
            return await WithdrawalDesk.list_withdrawals(db, user_id, status, limit)

        return await self._atomic(work, "list-withdrawals")

    async def reconcile_wallet(self, user_id: str) -> ReconciliationReport:
        async def work(db: AsyncSession):
            return await WalletLedger.reconcile(db, user_id)

        return await self._atomic(work, "reconcile")

    async def list_ledger(self, user_id: str, limit: int = 100) -> List[LedgerEntry]:
        async def work(db: AsyncSession):
            return await WalletLedger.list_entries(db, user_id, limit)

        return await self._atomic(work, "list-ledger")

    # Delivery inventory

    async def add_delivery_items(
        self, product_id: int, seller_id: str, items: List[Dict[str, Any]], is_admin: bool = False
    ) -> AddItemsResult:
        if not items:
            return AddItemsResult.failure(InvalidRequestError("No delivery items supplied"))
        if any(not isinstance(item, dict) or item.get("payload") in (None, "", {}) for item in items):
            return AddItemsResult.failure(InvalidRequestError("Every delivery item needs a payload"))

        async def work(db: AsyncSession):
            result = await db.execute(
                select(Product).where(Product.id == product_id).with_for_update()
            )
            product = result.scalar_one_or_none()
            if product is None:
                raise SettlementNotFoundError("Product", product_id)
            if not is_admin and product.seller_id != seller_id:
                raise NotAuthorizedError("Product belongs to another seller")
            return await DeliveryPool.add_many(db, product, items)

        try:
            return await self._atomic(work, "add-delivery-items")
        except SettlementError as exc:
            return AddItemsResult.failure(exc)

    async def withdraw_delivery_item(self, item_id: int, seller_id: str) -> None:
        """Raises SettlementError on failure."""
        async def work(db: AsyncSession):
            await DeliveryPool.withdraw(db, item_id, seller_id)

        await self._atomic(work, "withdraw-delivery-item")
