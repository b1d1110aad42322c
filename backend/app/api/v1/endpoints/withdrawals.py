"""
Withdrawal API Endpoints.

Sellers and buyers cash out their available balance; an admin reviews
every request (see admin_settlement).
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from backend.app.models.billing_enums import WithdrawalStatus
from backend.app.models.enums import UserRole
from backend.app.schemas.withdrawal import WithdrawalCreate, WithdrawalResponse, WithdrawalActionResponse
from backend.app.core.guards import require_role
from backend.app.core.dependencies import get_settlement_engine
from backend.app.core.exceptions import raise_for_result
from backend.app.domain.settlement.engine import SettlementEngine

router = APIRouter(prefix="/withdrawals", tags=["Withdrawals"])


@router.post("", response_model=WithdrawalActionResponse, status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    request: WithdrawalCreate,
    response: Response,
    current_user: dict = Depends(require_role([UserRole.SELLER, UserRole.BUYER])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """
    Request a payout of available funds.

    The amount leaves the wallet immediately and is returned if an admin
    rejects the request. Only one request can wait for review at a time.
    """
    result = raise_for_result(await engine.request_withdrawal(
        current_user["user_id"],
        request.amount,
        payout_method=request.payout_method,
        account_details=request.account_details,
        reference=request.reference,
    ))
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return WithdrawalActionResponse(
        withdrawal_id=result.withdrawal_id,
        status=result.status,
        amount=result.amount,
        available=result.balance.available,
        replayed=result.replayed,
    )


@router.get("", response_model=List[WithdrawalResponse])
async def list_my_withdrawals(
    status_filter: Optional[WithdrawalStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(require_role([UserRole.SELLER, UserRole.BUYER])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Withdrawal requests of the current user, newest first."""
    return await engine.list_withdrawals(user_id=current_user["user_id"], status=status_filter, limit=limit)
