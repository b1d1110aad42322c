"""
Buyer Order API Endpoints.

Order history, delivery approval (escrow release) and disputes.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.models.delivery_item import DeliveryItem
from backend.app.models.enums import UserRole
from backend.app.models.order import Order
from backend.app.models.order_enums import OrderStatus
from backend.app.schemas.purchase import (
    OrderResponse, OrderDetailResponse, DeliveredItem, DisputeRequest, OrderActionResponse, ApprovalResponse
)
from backend.app.core.guards import require_role, is_admin
from backend.app.core.dependencies import get_current_user, get_settlement_engine
from backend.app.core.exceptions import raise_for_result
from backend.app.domain.settlement.coordinator import PurchaseCoordinator
from backend.app.domain.settlement.engine import SettlementEngine

router = APIRouter(prefix="/orders", tags=["Orders"])


async def order_detail(db: AsyncSession, order: Order) -> OrderDetailResponse:
    detail = OrderDetailResponse.model_validate(order)
    if order.delivery_item_id is not None:
        item = await db.get(DeliveryItem, order.delivery_item_id)
        if item is not None:
            detail.delivered_item = DeliveredItem(item_type=item.item_type, label=item.label, payload=item.payload)
    return detail


@router.get("", response_model=List[OrderResponse])
async def list_my_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Orders placed by the current user."""
    return await PurchaseCoordinator.list_orders(
        db, buyer_id=current_user["user_id"], status=status_filter, limit=limit
    )


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(
    order_id: int = Path(..., description="Order ID"),
    current_user: dict = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_settlement_engine),
    db: AsyncSession = Depends(get_db)
):
    """Order details, including the delivered content. Buyer, seller or admin only."""
    order = await engine.get_order(order_id, current_user["user_id"], is_admin=is_admin(current_user))
    return await order_detail(db, order)


@router.post("/{order_id}/approve", response_model=ApprovalResponse)
async def approve_delivery(
    order_id: int = Path(..., description="Order ID"),
    current_user: dict = Depends(require_role([UserRole.BUYER, UserRole.SELLER])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """
    Confirm the delivery is as described.

    Releases the seller's earning from escrow. Approving twice changes nothing.
    """
    result = raise_for_result(await engine.approve_delivery(order_id, current_user["user_id"]))
    return ApprovalResponse(order_id=result.order_id, status=result.status, released_amount=result.released_amount)


@router.post("/{order_id}/dispute", response_model=OrderActionResponse)
async def open_dispute(
    request: DisputeRequest,
    order_id: int = Path(..., description="Order ID"),
    current_user: dict = Depends(require_role([UserRole.BUYER, UserRole.SELLER])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Hold the escrow and ask an admin to decide."""
    result = raise_for_result(await engine.open_dispute(order_id, current_user["user_id"], request.reason))
    return OrderActionResponse(order_id=result.order_id, status=result.status)
