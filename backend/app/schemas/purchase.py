"""
Purchase, intent and order Pydantic schemas.
"""

from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Any
from backend.app.models.order_enums import OrderStatus, DeliveryItemType
from backend.app.models.billing_enums import ReleaseSource


class PurchaseRequest(BaseModel):
    """The price is never sent by the client; it is read from the product."""
    product_id: int = Field(..., gt=0)
    buyer_email: Optional[EmailStr] = None


class PurchaseResponse(BaseModel):
    order_id: int
    status: OrderStatus
    new_balance: Decimal
    amount: Decimal
    seller_earning: Decimal
    commission_rate: Decimal
    delivery_item_id: Optional[int] = None
    replayed: bool = False


class IntentCreate(BaseModel):
    product_id: int = Field(..., gt=0)


class IntentResponse(BaseModel):
    token: str
    product_id: int
    price_snapshot: Decimal
    expires_at: datetime


class IntentResume(BaseModel):
    buyer_email: Optional[EmailStr] = None


class DeliveredItem(BaseModel):
    item_type: DeliveryItemType
    label: Optional[str]
    payload: Any


class OrderResponse(BaseModel):
    id: int
    buyer_id: str
    seller_id: Optional[str]
    product_id: int
    amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    seller_earning: Decimal
    status: OrderStatus
    delivery_item_id: Optional[int]
    buyer_email: Optional[str]
    release_source: Optional[ReleaseSource]
    dispute_reason: Optional[str]
    created_at: datetime
    delivered_at: Optional[datetime]
    approved_at: Optional[datetime]
    refunded_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderDetailResponse(OrderResponse):
    """Order plus what was delivered (pool item or manual content)."""
    delivered_item: Optional[DeliveredItem] = None
    manual_payload: Optional[Any] = None


class DeliverRequest(BaseModel):
    payload: Any = Field(..., description="Content delivered to the buyer")


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class OrderActionResponse(BaseModel):
    order_id: int
    status: OrderStatus


class ApprovalResponse(OrderActionResponse):
    released_amount: Decimal
