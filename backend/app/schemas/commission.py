"""
Commission policy and admin settlement schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List


class CommissionPolicyCreate(BaseModel):
    """Schema for creating a commission policy (seller_id None = global)."""
    seller_id: Optional[str] = Field(None, max_length=64)
    rate: Decimal = Field(..., ge=0, lt=1, max_digits=5, decimal_places=4)
    effective_from: Optional[datetime] = None


class CommissionPolicyResponse(BaseModel):
    id: int
    seller_id: Optional[str]
    rate: Decimal
    effective_from: datetime
    is_active: bool
    created_by: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class DisputeResolution(BaseModel):
    refund: bool = Field(..., description="True refunds the buyer, False releases escrow to the seller")
    note: Optional[str] = Field(None, max_length=2000)


class AutoReleaseResponse(BaseModel):
    released: List[int]
    skipped: List[int]
    failed: List[int]
