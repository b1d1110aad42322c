"""
Admin Settlement API Endpoints.

Commission policies, wallet top-ups, withdrawal review, dispute resolution,
reconciliation and platform-owned products.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.models.commission_policy import CommissionPolicy
from backend.app.models.billing_enums import WithdrawalStatus
from backend.app.models.enums import UserRole
from backend.app.schemas.commission import (
    CommissionPolicyCreate, CommissionPolicyResponse, DisputeResolution, AutoReleaseResponse
)
from backend.app.schemas.product import ProductCreate, ProductResponse, DeliveryItemsAdd, AddItemsResponse
from backend.app.schemas.purchase import DeliverRequest, OrderActionResponse
from backend.app.schemas.wallet import TopUpRequest, TopUpResponse, ReconciliationResponse
from backend.app.schemas.withdrawal import WithdrawalResponse, WithdrawalDecision, WithdrawalActionResponse
from backend.app.core.clock import utcnow
from backend.app.core.guards import require_role
from backend.app.core.dependencies import get_settlement_engine
from backend.app.core.exceptions import raise_for_result
from backend.app.core.token_revocation import revoke_all_user_tokens, clear_user_token_revocation
from backend.app.domain.settlement.engine import SettlementEngine
from backend.app.domain.settlement.money import to_rate
from backend.app.services.audit import log_event, AuditAction
from backend.app.api.v1.endpoints.seller import new_product

router = APIRouter(prefix="/admin", tags=["Admin - Settlement"])


@router.post("/commission-policies", response_model=CommissionPolicyResponse, status_code=status.HTTP_201_CREATED)
async def create_commission_policy(
    policy: CommissionPolicyCreate,
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a commission policy.

    Applies to purchases made after `effective_from`; existing orders keep
    their frozen rate. The newest effective policy per tier wins.
    """
    new_policy = CommissionPolicy(
        seller_id=policy.seller_id,
        rate=to_rate(policy.rate),
        effective_from=policy.effective_from or utcnow(),
        is_active=True,
        created_by=current_user["user_id"],
    )
    db.add(new_policy)
    await db.flush()

    await log_event(
        db=db,
        action=AuditAction.COMMISSION_POLICY_CREATED,
        actor_id=current_user["user_id"],
        target_user_id=policy.seller_id,
        metadata={"policy_id": new_policy.id, "rate": str(new_policy.rate)},
    )
    await db.commit()
    await db.refresh(new_policy)
    return new_policy


@router.get("/commission-policies", response_model=List[CommissionPolicyResponse])
async def list_commission_policies(
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(CommissionPolicy).order_by(desc(CommissionPolicy.effective_from), desc(CommissionPolicy.id))
    )
    return result.scalars().all()


@router.post("/commission-policies/{policy_id}/deactivate", response_model=CommissionPolicyResponse)
async def deactivate_commission_policy(
    policy_id: int = Path(..., description="Commission policy ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    policy = await db.get(CommissionPolicy, policy_id)
    if not policy:
        raise HTTPException(status_code=404, detail="Commission policy not found")

    policy.is_active = False
    await log_event(
        db=db,
        action=AuditAction.COMMISSION_POLICY_DEACTIVATED,
        actor_id=current_user["user_id"],
        target_user_id=policy.seller_id,
        metadata={"policy_id": policy.id},
    )
    await db.commit()
    await db.refresh(policy)
    return policy


@router.post("/wallets/top-up", response_model=TopUpResponse)
async def top_up_wallet(
    request: TopUpRequest,
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """
    Credit a wallet after a confirmed gateway payment.

    Repeating a `reference` returns the original entry without crediting twice.
    """
    result = raise_for_result(await engine.top_up(
        request.user_id, request.amount, admin_id=current_user["user_id"], reference=request.reference
    ))
    return TopUpResponse(
        user_id=request.user_id,
        available=result.balance.available,
        pending=result.balance.pending,
        ledger_entry_id=result.ledger_entry_id,
        replayed=result.replayed,
    )


@router.get("/wallets/{user_id}/reconcile", response_model=ReconciliationResponse)
async def reconcile_wallet(
    user_id: str = Path(..., description="User ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Recompute a wallet from its ledger and report any drift."""
    report = await engine.reconcile_wallet(user_id)
    return ReconciliationResponse(
        user_id=report.user_id,
        available_balance=report.available_balance,
        pending_balance=report.pending_balance,
        ledger_available=report.ledger_available,
        ledger_pending=report.ledger_pending,
        entry_count=report.entry_count,
        balanced=report.balanced,
    )


@router.post("/orders/{order_id}/resolve-dispute", response_model=OrderActionResponse)
async def resolve_dispute(
    resolution: DisputeResolution,
    order_id: int = Path(..., description="Order ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Refund the buyer or release the escrow to the seller."""
    result = raise_for_result(await engine.resolve_dispute(
        order_id, current_user["user_id"], refund=resolution.refund, note=resolution.note
    ))
    return OrderActionResponse(order_id=result.order_id, status=result.status)


@router.post("/orders/{order_id}/deliver", response_model=OrderActionResponse)
async def deliver_platform_order(
    request: DeliverRequest,
    order_id: int = Path(..., description="Order ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Manual fulfilment on behalf of the platform (or a seller)."""
    result = raise_for_result(await engine.deliver_order(
        order_id, current_user["user_id"], request.payload, is_admin=True
    ))
    return OrderActionResponse(order_id=result.order_id, status=result.status)


@router.post("/escrow/auto-release", response_model=AutoReleaseResponse)
async def trigger_auto_release(
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Release every delivered order past the auto-release window now."""
    report = await engine.auto_release_due()
    return AutoReleaseResponse(**report.as_dict())


@router.get("/withdrawals", response_model=List[WithdrawalResponse])
async def list_withdrawals(
    status_filter: Optional[WithdrawalStatus] = Query(WithdrawalStatus.REQUESTED, alias="status"),
    user_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Withdrawal requests, by default those waiting for review."""
    return await engine.list_withdrawals(user_id=user_id, status=status_filter, limit=limit)


@router.post("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalActionResponse)
async def approve_withdrawal(
    decision: WithdrawalDecision,
    withdrawal_id: int = Path(..., description="Withdrawal ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Mark a request as paid out. The funds already left the wallet on request."""
    result = raise_for_result(await engine.approve_withdrawal(
        withdrawal_id, current_user["user_id"], notes=decision.notes
    ))
    return WithdrawalActionResponse(withdrawal_id=result.withdrawal_id, status=result.status, amount=result.amount)


@router.post("/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalActionResponse)
async def reject_withdrawal(
    decision: WithdrawalDecision,
    withdrawal_id: int = Path(..., description="Withdrawal ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Reject a request and return the amount to the user's available balance."""
    result = raise_for_result(await engine.reject_withdrawal(
        withdrawal_id, current_user["user_id"], notes=decision.notes
    ))
    return WithdrawalActionResponse(withdrawal_id=result.withdrawal_id, status=result.status, amount=result.amount)


@router.post("/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_platform_product(
    data: ProductCreate,
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """List a platform-owned product (the platform keeps the whole amount)."""
    product = new_product(data, seller_id=None)
    db.add(product)
    await db.commit()
    await db.refresh(product)
    return product


@router.post("/products/{product_id}/delivery-items", response_model=AddItemsResponse)
async def add_platform_delivery_items(
    data: DeliveryItemsAdd,
    product_id: int = Path(..., description="Product ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    result = raise_for_result(await engine.add_delivery_items(
        product_id, current_user["user_id"], [item.model_dump(mode="json") for item in data.items], is_admin=True
    ))
    return AddItemsResponse(
        product_id=product_id,
        added=result.added,
        duplicates_skipped=result.duplicates_skipped,
        available=result.available,
    )


@router.post("/users/{user_id}/revoke-tokens")
async def revoke_user_tokens(
    user_id: str = Path(..., description="User ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN]))
):
    """Invalidate every token issued to a user (account suspension)."""
    if not await revoke_all_user_tokens(user_id):
        raise HTTPException(status_code=503, detail="Token revocation store unavailable")
    return {"message": f"All tokens for user {user_id} revoked"}


@router.delete("/users/{user_id}/revoke-tokens")
async def restore_user_tokens(
    user_id: str = Path(..., description="User ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN]))
):
    if not await clear_user_token_revocation(user_id):
        raise HTTPException(status_code=503, detail="Token revocation store unavailable")
    return {"message": f"Token revocation cleared for user {user_id}"}
