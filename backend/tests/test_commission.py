"""
Commission resolution and split tests.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from backend.app.core.clock import utcnow
from backend.app.domain.settlement.commission import CommissionResolver, PLATFORM_RATE, split


def test_split_rounds_earning_half_up():
    result = split(Decimal("9.99"), Decimal("0.15"))
    # 9.99 * 0.85 = 8.4915
    assert result.seller_earning == Decimal("8.49")
    assert result.commission_amount == Decimal("1.50")
    assert result.seller_earning + result.commission_amount == result.amount


def test_split_half_cent_goes_to_seller():
    result = split(Decimal("0.10"), Decimal("0.05"))
    # 0.10 * 0.95 = 0.095
    assert result.seller_earning == Decimal("0.10")
    assert result.commission_amount == Decimal("0.00")


def test_split_edges():
    assert split(Decimal("10.00"), PLATFORM_RATE).seller_earning == Decimal("0.00")
    assert split(Decimal("10.00"), Decimal("0")).commission_amount == Decimal("0.00")
    assert split(Decimal("0.00"), Decimal("0.10")).seller_earning == Decimal("0.00")

    with pytest.raises(ValueError):
        split(Decimal("10.00"), Decimal("1.5"))


@pytest.mark.asyncio
async def test_default_rate_without_policies(db_session):
    assert await CommissionResolver.resolve_rate(db_session, "seller-1") == Decimal("0.1000")


@pytest.mark.asyncio
async def test_platform_products_keep_everything(db_session, market):
    await market.policy("0.20")
    assert await CommissionResolver.resolve_rate(db_session, None) == PLATFORM_RATE


@pytest.mark.asyncio
async def test_seller_tier_overrides_global(db_session, market):
    await market.policy("0.20")
    await market.policy("0.05", seller_id="vip")

    assert await CommissionResolver.resolve_rate(db_session, "vip") == Decimal("0.0500")
    assert await CommissionResolver.resolve_rate(db_session, "regular") == Decimal("0.2000")


@pytest.mark.asyncio
async def test_inactive_and_future_policies_ignored(db_session, market):
    await market.policy("0.20")
    await market.policy("0.30", is_active=False)
    await market.policy("0.40", effective_from=utcnow() + timedelta(days=1))

    assert await CommissionResolver.resolve_rate(db_session, "seller-1") == Decimal("0.2000")


@pytest.mark.asyncio
async def test_newest_effective_policy_wins(db_session, market):
    await market.policy("0.20", effective_from=utcnow() - timedelta(days=10))
    await market.policy("0.12", effective_from=utcnow() - timedelta(days=1))

    assert await CommissionResolver.resolve_rate(db_session, "seller-1") == Decimal("0.1200")
