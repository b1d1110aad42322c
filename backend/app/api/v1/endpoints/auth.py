"""
Authentication API endpoints.

Accounts and logins live in the identity service; this service only
inspects and revokes the bearer tokens it issues.
"""

from fastapi import APIRouter, Depends, HTTPException
from backend.app.core.dependencies import get_current_user
from backend.app.core.token_revocation import revoke_token

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.get("/me")
async def who_am_i(current_user: dict = Depends(get_current_user)):
    """Identity asserted by the current token."""
    return {
        "user_id": current_user["user_id"],
        "sub": current_user.get("sub"),
        "role": current_user.get("role"),
    }


@router.post("/logout")
async def logout(current_user: dict = Depends(get_current_user)):
    """Revoke the token used for this request."""
    if not await revoke_token(current_user["token"], current_user["user_id"]):
        raise HTTPException(status_code=503, detail="Token revocation store unavailable")
    return {"message": "Logged out"}
