"""
Withdrawal Pydantic schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from backend.app.models.billing_enums import WithdrawalStatus


class WithdrawalCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    payout_method: str = Field(..., min_length=1, max_length=64, description="e.g. bank_transfer, upi, paypal")
    account_details: str = Field(..., min_length=1, max_length=255)
    reference: Optional[str] = Field(None, max_length=255, description="Client token; retrying with it never debits twice")


class WithdrawalDecision(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class WithdrawalResponse(BaseModel):
    id: int
    user_id: str
    amount: Decimal
    status: WithdrawalStatus
    payout_method: str
    account_details: str
    reference: Optional[str]
    processed_by: Optional[str]
    admin_notes: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class WithdrawalActionResponse(BaseModel):
    withdrawal_id: int
    status: WithdrawalStatus
    amount: Decimal
    available: Optional[Decimal] = None
    replayed: bool = False
