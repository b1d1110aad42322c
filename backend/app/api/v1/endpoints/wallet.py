"""
Wallet API Endpoints.

Balance and ledger history for the current user.
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from backend.app.schemas.wallet import WalletBalanceResponse, LedgerEntryResponse
from backend.app.core.dependencies import get_current_user, get_settlement_engine
from backend.app.domain.settlement.engine import SettlementEngine

router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("", response_model=WalletBalanceResponse)
async def get_balance(
    current_user: dict = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Available and escrow-pending balance. The wallet is created on first access."""
    balance = await engine.get_wallet_balance(current_user["user_id"])
    return WalletBalanceResponse(user_id=balance.user_id, available=balance.available, pending=balance.pending)


@router.get("/ledger", response_model=List[LedgerEntryResponse])
async def list_ledger(
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Ledger entries, newest first."""
    return await engine.list_ledger(current_user["user_id"], limit)
