"""
Withdrawal tests: request debits, review by admin, refund on rejection.
"""

import pytest
from decimal import Decimal
from sqlalchemy import select, func

from backend.app.core.exceptions import ErrorKind
from backend.app.models.audit_log import AuditLog
from backend.app.models.billing_enums import LedgerReason, WithdrawalStatus
from backend.app.models.enums import UserRole
from backend.app.models.ledger_entry import LedgerEntry
from backend.app.models.notification import NotificationEvent
from backend.app.models.withdrawal import Withdrawal
from backend.app.services.audit import AuditAction


async def request(engine, amount="20.00", user_id="seller-1", reference=None):
    return await engine.request_withdrawal(
        user_id, amount, payout_method="bank_transfer", account_details="IBAN DE00 1234", reference=reference
    )


async def withdrawal_count(session_factory, user_id="seller-1"):
    async with session_factory() as db:
        return (await db.execute(
            select(func.count(Withdrawal.id)).where(Withdrawal.user_id == user_id)
        )).scalar()


async def reasons(session_factory, user_id="seller-1"):
    async with session_factory() as db:
        return (await db.execute(
            select(LedgerEntry.reason).where(LedgerEntry.user_id == user_id).order_by(LedgerEntry.id)
        )).scalars().all()


@pytest.mark.asyncio
async def test_request_debits_available_balance(settlement_engine, market, session_factory):
    await market.fund("seller-1", "50.00")

    result = await request(settlement_engine, "20.00")
    assert result.ok
    assert result.status == WithdrawalStatus.REQUESTED
    assert result.amount == Decimal("20.00")
    assert result.balance.available == Decimal("30.00")
    assert not result.replayed

    assert await reasons(session_factory) == [LedgerReason.TOP_UP, LedgerReason.WITHDRAWAL]
    assert (await settlement_engine.reconcile_wallet("seller-1")).balanced

    listed = await settlement_engine.list_withdrawals(user_id="seller-1")
    assert [w.id for w in listed] == [result.withdrawal_id]


@pytest.mark.asyncio
async def test_withdraw_more_than_available_fails_closed(settlement_engine, market, session_factory):
    await market.fund("seller-1", "19.99")

    result = await request(settlement_engine, "20.00")
    assert not result.ok
    assert result.error == ErrorKind.INSUFFICIENT_FUNDS
    assert result.details == {"required": "20.00", "available": "19.99"}

    assert await withdrawal_count(session_factory) == 0
    assert (await market.balance("seller-1")).available == Decimal("19.99")
    assert await reasons(session_factory) == [LedgerReason.TOP_UP]


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["4.99", "NaN", "abc"])
async def test_invalid_amounts_are_refused(settlement_engine, market, session_factory, amount):
    await market.fund("seller-1", "50.00")

    result = await request(settlement_engine, amount)
    assert result.error == ErrorKind.INVALID_REQUEST
    assert await withdrawal_count(session_factory) == 0
    assert (await market.balance("seller-1")).available == Decimal("50.00")


@pytest.mark.asyncio
async def test_one_request_waits_for_review_at_a_time(settlement_engine, market):
    await market.fund("seller-1", "50.00")
    first = await request(settlement_engine, "10.00")
    assert first.ok

    second = await request(settlement_engine, "10.00")
    assert second.error == ErrorKind.WITHDRAWAL_PENDING
    assert second.details == {"withdrawal_id": first.withdrawal_id}
    assert (await market.balance("seller-1")).available == Decimal("40.00")

    assert (await settlement_engine.approve_withdrawal(first.withdrawal_id, "admin-1")).ok
    assert (await request(settlement_engine, "10.00")).ok


@pytest.mark.asyncio
async def test_reference_replays_instead_of_debiting_twice(settlement_engine, market):
    await market.fund("seller-1", "50.00")

    first = await request(settlement_engine, "15.00", reference="payout-7")
    again = await request(settlement_engine, "15.00", reference="payout-7")
    assert again.ok and again.replayed
    assert again.withdrawal_id == first.withdrawal_id
    assert again.balance.available == Decimal("35.00")

    conflict = await request(settlement_engine, "16.00", reference="payout-7")
    assert conflict.error == ErrorKind.IDEMPOTENCY_CONFLICT
    assert (await market.balance("seller-1")).available == Decimal("35.00")


@pytest.mark.asyncio
async def test_approval_is_final(settlement_engine, market, session_factory, sink):
    await market.fund("seller-1", "50.00")
    withdrawal_id = (await request(settlement_engine, "20.00")).withdrawal_id

    approved = await settlement_engine.approve_withdrawal(withdrawal_id, "admin-1", notes="Paid")
    assert approved.ok
    assert approved.status == WithdrawalStatus.APPROVED

    again = await settlement_engine.approve_withdrawal(withdrawal_id, "admin-1")
    assert again.error == ErrorKind.INVALID_WITHDRAWAL_STATE
    late_reject = await settlement_engine.reject_withdrawal(withdrawal_id, "admin-1")
    assert late_reject.error == ErrorKind.INVALID_WITHDRAWAL_STATE

    # Approval moves no money
    assert (await market.balance("seller-1")).available == Decimal("30.00")
    assert (await settlement_engine.reconcile_wallet("seller-1")).balanced

    [stored] = await settlement_engine.list_withdrawals(user_id="seller-1")
    assert stored.processed_by == "admin-1"
    assert stored.admin_notes == "Paid"
    assert stored.processed_at is not None

    await settlement_engine.dispatcher.dispatch_pending()
    assert [n.event for n in sink.sent] == [NotificationEvent.WITHDRAWAL_APPROVED]


@pytest.mark.asyncio
async def test_rejection_returns_funds(settlement_engine, market, session_factory, sink):
    await market.fund("seller-1", "50.00")
    withdrawal_id = (await request(settlement_engine, "20.00")).withdrawal_id

    rejected = await settlement_engine.reject_withdrawal(withdrawal_id, "admin-1", notes="Wrong IBAN")
    assert rejected.ok
    assert rejected.status == WithdrawalStatus.REJECTED

    assert (await market.balance("seller-1")).available == Decimal("50.00")
    assert await reasons(session_factory) == [
        LedgerReason.TOP_UP, LedgerReason.WITHDRAWAL, LedgerReason.WITHDRAWAL_REVERSAL
    ]
    assert (await settlement_engine.reconcile_wallet("seller-1")).balanced

    again = await settlement_engine.reject_withdrawal(withdrawal_id, "admin-1")
    assert again.error == ErrorKind.INVALID_WITHDRAWAL_STATE
    assert (await market.balance("seller-1")).available == Decimal("50.00")

    async with session_factory() as db:
        actions = (await db.execute(select(AuditLog.action).order_by(AuditLog.id))).scalars().all()
    assert actions == [AuditAction.WITHDRAWAL_REJECTED]

    await settlement_engine.dispatcher.dispatch_pending()
    [notice] = sink.sent
    assert notice.event == NotificationEvent.WITHDRAWAL_REJECTED
    assert "Wrong IBAN" in notice.message


@pytest.mark.asyncio
async def test_unknown_withdrawal(settlement_engine):
    result = await settlement_engine.approve_withdrawal(999, "admin-1")
    assert result.error == ErrorKind.NOT_FOUND
    assert result.withdrawal_id == 999


@pytest.mark.asyncio
async def test_withdrawal_api_flow(client, auth_headers):
    admin = auth_headers("admin-1", UserRole.ADMIN)
    seller = auth_headers("seller-1", UserRole.SELLER)

    funded = await client.post(
        "/v1/admin/wallets/top-up", headers=admin, json={"user_id": "seller-1", "amount": "40.00"}
    )
    assert funded.status_code == 200, funded.text

    too_much = await client.post("/v1/withdrawals", headers=seller, json={
        "amount": "41.00", "payout_method": "paypal", "account_details": "seller@example.com",
    })
    assert too_much.status_code == 402
    assert too_much.json()["details"]["kind"] == "INSUFFICIENT_FUNDS"

    created = await client.post("/v1/withdrawals", headers=seller, json={
        "amount": "25.00", "payout_method": "paypal", "account_details": "seller@example.com", "reference": "w-1",
    })
    assert created.status_code == 201, created.text
    body = created.json()
    assert body["status"] == "requested"
    assert Decimal(body["available"]) == Decimal("15.00")

    replay = await client.post("/v1/withdrawals", headers=seller, json={
        "amount": "25.00", "payout_method": "paypal", "account_details": "seller@example.com", "reference": "w-1",
    })
    assert replay.status_code == 200
    assert replay.json()["replayed"] is True

    forbidden = await client.post(f"/v1/admin/withdrawals/{body['withdrawal_id']}/approve", headers=seller, json={})
    assert forbidden.status_code == 403

    queue = await client.get("/v1/admin/withdrawals", headers=admin)
    assert queue.status_code == 200
    assert [w["id"] for w in queue.json()] == [body["withdrawal_id"]]

    rejected = await client.post(
        f"/v1/admin/withdrawals/{body['withdrawal_id']}/reject", headers=admin, json={"notes": "Account closed"}
    )
    assert rejected.status_code == 200, rejected.text
    assert rejected.json()["status"] == "rejected"

    twice = await client.post(f"/v1/admin/withdrawals/{body['withdrawal_id']}/approve", headers=admin, json={})
    assert twice.status_code == 409
    assert twice.json()["error_code"] == "ERR_WITHDRAWAL_001"

    mine = await client.get("/v1/withdrawals", headers=seller)
    assert [w["status"] for w in mine.json()] == ["rejected"]
    assert (await client.get("/v1/admin/withdrawals", headers=admin)).json() == []
