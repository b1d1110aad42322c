"""
Product and delivery inventory Pydantic schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Any
from backend.app.models.order_enums import StockPolicy, DeliveryMode, DeliveryItemType, DeliveryItemState


class ProductCreate(BaseModel):
    """Schema for listing a new product."""
    name: str = Field(..., min_length=1, max_length=255)
    price: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)
    stock_policy: StockPolicy = StockPolicy.UNLIMITED
    stock: Optional[int] = Field(None, ge=0, description="Required for counted stock")
    delivery_mode: DeliveryMode = DeliveryMode.MANUAL
    allow_manual_fallback: bool = False
    chat_allowed: bool = True
    requires_email: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    price: Optional[Decimal] = Field(None, ge=0, max_digits=14, decimal_places=2)
    stock: Optional[int] = Field(None, ge=0)
    is_available: Optional[bool] = None
    allow_manual_fallback: Optional[bool] = None
    chat_allowed: Optional[bool] = None
    requires_email: Optional[bool] = None


class ProductResponse(BaseModel):
    id: int
    seller_id: Optional[str]
    name: str
    price: Decimal
    stock_policy: StockPolicy
    stock: Optional[int]
    delivery_mode: DeliveryMode
    allow_manual_fallback: bool
    is_available: bool
    auto_hidden: bool
    chat_allowed: bool
    requires_email: bool
    created_at: datetime

    class Config:
        from_attributes = True


class DeliveryItemIn(BaseModel):
    payload: Any = Field(..., description="Opaque content handed to the buyer (credentials, key, ...)")
    item_type: DeliveryItemType = DeliveryItemType.GENERIC
    label: Optional[str] = Field(None, max_length=255)


class DeliveryItemsAdd(BaseModel):
    items: List[DeliveryItemIn] = Field(..., min_length=1, max_length=1000)


class AddItemsResponse(BaseModel):
    product_id: int
    added: int
    duplicates_skipped: int
    available: int


class DeliveryItemResponse(BaseModel):
    id: int
    product_id: int
    item_type: DeliveryItemType
    label: Optional[str]
    payload: Any
    display_order: int
    state: DeliveryItemState
    assigned_order_id: Optional[int]
    assigned_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True
