"""
Wallet and ledger Pydantic schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from backend.app.models.billing_enums import LedgerReason


class WalletBalanceResponse(BaseModel):
    user_id: str
    available: Decimal
    pending: Decimal


class LedgerEntryResponse(BaseModel):
    id: int
    order_id: Optional[int]
    reason: LedgerReason
    available_delta: Decimal
    pending_delta: Decimal
    available_after: Decimal
    pending_after: Decimal
    reference: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class TopUpRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    reference: Optional[str] = Field(None, max_length=255, description="Payment gateway transaction id")


class TopUpResponse(BaseModel):
    user_id: str
    available: Decimal
    pending: Decimal
    ledger_entry_id: int
    replayed: bool


class ReconciliationResponse(BaseModel):
    user_id: str
    available_balance: Decimal
    pending_balance: Decimal
    ledger_available: Decimal
    ledger_pending: Decimal
    entry_count: int
    balanced: bool
