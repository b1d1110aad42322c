"""
Purchase Intents (Domain Logic).

A visitor picks a product before logging in; the intent remembers the
product server-side under an opaque token. Resuming it after login runs
a normal purchase with the idempotency key `intent:<token>`, so resuming
twice charges once.
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow, as_utc
from backend.app.core.config import settings
from backend.app.core.exceptions import (
    ProductUnavailableError,
    IntentExpiredError,
    NotAuthorizedError,
    SettlementNotFoundError,
)
from backend.app.models.product import Product
from backend.app.models.purchase_intent import PurchaseIntent
from backend.app.domain.settlement.money import to_money

logger = logging.getLogger(__name__)


def intent_idempotency_key(token: str) -> str:
    return f"intent:{token}"


class IntentBook:

    @staticmethod
    async def create(db: AsyncSession, product_id: int) -> PurchaseIntent:
        product = await db.get(Product, product_id)
        if product is None or not product.is_available:
            raise ProductUnavailableError(product_id)

        intent = PurchaseIntent(
            token=secrets.token_urlsafe(32),
            product_id=product.id,
            price_snapshot=to_money(product.price),
            expires_at=utcnow() + timedelta(minutes=settings.purchase_intent_ttl_minutes),
        )
        db.add(intent)
        await db.flush()
        logger.info("Purchase intent created: product=%s intent=%s", product_id, intent.id)
        return intent

    @staticmethod
    async def claim(db: AsyncSession, token: str, buyer_id: str) -> PurchaseIntent:
        """
        Lock the intent for resumption by `buyer_id`.

        An intent already consumed by the same buyer is returned as is; the
        purchase it triggers replays the stored result.
        """
        result = await db.execute(
            select(PurchaseIntent).where(PurchaseIntent.token == token).with_for_update()
        )
        intent = result.scalar_one_or_none()
        if intent is None:
            raise SettlementNotFoundError("Purchase intent")

        if intent.consumed_by is not None:
            if intent.consumed_by != buyer_id:
                raise NotAuthorizedError("Purchase intent was used by another account")
            return intent

        if as_utc(intent.expires_at) <= utcnow():
            raise IntentExpiredError(token)
        return intent

    @staticmethod
    def mark_consumed(intent: PurchaseIntent, buyer_id: str, order_id: Optional[int]) -> None:
        if intent.consumed_by is not None:
            return
        intent.consumed_by = buyer_id
        intent.consumed_at = utcnow()
        intent.order_id = order_id
