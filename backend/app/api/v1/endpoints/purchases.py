"""
Purchase API Endpoints.

Wallet-funded purchases and server-side purchase intents.
"""

from fastapi import APIRouter, Depends, Header, Response, status

from backend.app.models.enums import UserRole
from backend.app.schemas.purchase import (
    PurchaseRequest, PurchaseResponse, IntentCreate, IntentResponse, IntentResume
)
from backend.app.core.guards import require_role
from backend.app.core.dependencies import get_settlement_engine
from backend.app.core.exceptions import raise_for_result
from backend.app.domain.settlement.engine import SettlementEngine
from backend.app.domain.settlement.results import PurchaseResult

router = APIRouter(prefix="/purchases", tags=["Purchases"])


def _purchase_response(result: PurchaseResult, response: Response) -> PurchaseResponse:
    raise_for_result(result)
    # Replays are not new resources
    response.status_code = status.HTTP_200_OK if result.replayed else status.HTTP_201_CREATED
    return PurchaseResponse(
        order_id=result.order_id,
        status=result.status,
        new_balance=result.new_balance,
        amount=result.amount,
        seller_earning=result.seller_earning,
        commission_rate=result.commission_rate,
        delivery_item_id=result.delivery_item_id,
        replayed=result.replayed,
    )


@router.post("", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
async def purchase(
    request: PurchaseRequest,
    response: Response,
    idempotency_key: str = Header(..., alias="Idempotency-Key", min_length=1, max_length=255),
    current_user: dict = Depends(require_role([UserRole.BUYER, UserRole.SELLER])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """
    Buy a product with wallet funds.

    Retrying with the same Idempotency-Key returns the original order
    without charging again.
    """
    result = await engine.purchase(
        idempotency_key=idempotency_key,
        buyer_id=current_user["user_id"],
        product_id=request.product_id,
        buyer_email=request.buyer_email,
    )
    return _purchase_response(result, response)


@router.post("/intents", response_model=IntentResponse, status_code=status.HTTP_201_CREATED)
async def create_intent(
    request: IntentCreate,
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """
    Remember a product chosen before login.

    Anonymous; the returned token is resumed after the visitor signs in.
    """
    result = raise_for_result(await engine.create_intent(request.product_id))
    return IntentResponse(
        token=result.token,
        product_id=result.product_id,
        price_snapshot=result.price_snapshot,
        expires_at=result.expires_at,
    )


@router.post("/intents/{token}/resume", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
async def resume_intent(
    token: str,
    response: Response,
    request: IntentResume = IntentResume(),
    current_user: dict = Depends(require_role([UserRole.BUYER, UserRole.SELLER])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Complete the purchase behind an intent for the signed-in buyer."""
    result = await engine.resume_intent(token, current_user["user_id"], buyer_email=request.buyer_email)
    return _purchase_response(result, response)
