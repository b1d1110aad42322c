"""
Commission Resolver.

Determines the platform commission for a sale.
Follows priority:
1. Seller-tier active policy
2. Global active policy
3. settings.default_commission_rate
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.models.commission_policy import CommissionPolicy
from backend.app.domain.settlement.money import to_money, to_rate
from backend.app.domain.settlement.results import CommissionSplit

# Platform-owned products keep the whole amount
PLATFORM_RATE = Decimal("1.0000")


class CommissionResolver:

    @staticmethod
    async def _active_policy(db: AsyncSession, seller_id: Optional[str]) -> Optional[CommissionPolicy]:
        now = utcnow()
        query = select(CommissionPolicy).where(
            CommissionPolicy.is_active == True,
            CommissionPolicy.effective_from <= now,
        )
        if seller_id is None:
            query = query.where(CommissionPolicy.seller_id.is_(None))
        else:
            query = query.where(CommissionPolicy.seller_id == seller_id)

        query = query.order_by(CommissionPolicy.effective_from.desc(), CommissionPolicy.id.desc()).limit(1)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    async def resolve_rate(db: AsyncSession, seller_id: Optional[str]) -> Decimal:
        """
        Rate in effect right now for a seller's sales.

        Returns PLATFORM_RATE for platform-owned products (seller_id None).
        """
        if seller_id is None:
            return PLATFORM_RATE

        policy = await CommissionResolver._active_policy(db, seller_id)
        if policy is None:
            policy = await CommissionResolver._active_policy(db, None)
        if policy is None:
            return to_rate(settings.default_commission_rate)
        return to_rate(policy.rate)


def split(amount, rate) -> CommissionSplit:
    """
    Split a sale into seller earning and platform commission.

    The earning is rounded half-up to cents and the commission takes the
    remainder, so earning + commission == amount exactly.
    """
    amount = to_money(amount)
    rate = to_rate(rate)
    if rate < 0 or rate > 1:
        raise ValueError(f"Commission rate out of range: {rate}")

    seller_earning = to_money(amount * (Decimal("1") - rate))
    return CommissionSplit(
        amount=amount,
        rate=rate,
        seller_earning=seller_earning,
        commission_amount=amount - seller_earning,
    )
