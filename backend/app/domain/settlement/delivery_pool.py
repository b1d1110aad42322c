"""
Delivery Inventory Pool (Domain Logic).

Per-product pool of single-use delivery items. A claim is a single
conditional UPDATE, so exactly one of N concurrent callers wins any item.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.exceptions import (
    OutOfStockError,
    ConcurrentModificationError,
    InvalidRequestError,
    NotAuthorizedError,
    SettlementNotFoundError,
)
from backend.app.models.delivery_item import DeliveryItem
from backend.app.models.product import Product
from backend.app.models.order_enums import DeliveryItemState, DeliveryItemType, StockPolicy
from backend.app.domain.settlement.results import AddItemsResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    item: DeliveryItem
    remaining: int


def canonical_payload(payload: Any) -> str:
    """
    Canonical JSON form of a delivery payload; key order does not matter.

    Raises:
        InvalidRequestError: the payload cannot be stored as JSON
    """
    try:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError):
        raise InvalidRequestError(
            "Delivery payload must be JSON (text, numbers, lists or objects)",
            details={"payload_type": type(payload).__name__},
        )


def payload_hash(payload: Any) -> str:
    return hashlib.sha256(canonical_payload(payload).encode("utf-8")).hexdigest()


class DeliveryPool:

    @staticmethod
    async def count_available(db: AsyncSession, product_id: int) -> int:
        result = await db.execute(
            select(func.count(DeliveryItem.id)).where(
                DeliveryItem.product_id == product_id,
                DeliveryItem.state == DeliveryItemState.AVAILABLE,
            )
        )
        return result.scalar()

    @staticmethod
    async def add_many(db: AsyncSession, product: Product, items: Iterable[Dict[str, Any]]) -> AddItemsResult:
        """
        Bulk-insert delivery items for a pooled product.

        Exact-duplicate payloads are skipped, both inside the batch and
        against items already stored for the product (assigned or not).

        Args:
            db: Database session (transaction managed by caller)
            product: Pooled product receiving the items
            items: dicts with `payload`, optional `item_type` and `label`

        Returns:
            AddItemsResult with added / duplicates_skipped counts
        """
        if product.stock_policy != StockPolicy.POOLED:
            raise InvalidRequestError(
                "Delivery items can only be added to pooled products",
                details={"product_id": product.id},
            )

        batch: List[Dict[str, Any]] = []
        seen = set()
        duplicates = 0
        for raw in items:
            digest = payload_hash(raw["payload"])
            try:
                item_type = DeliveryItemType(raw.get("item_type") or DeliveryItemType.GENERIC)
            except ValueError:
                raise InvalidRequestError(
                    "Unknown delivery item type", details={"item_type": str(raw.get("item_type"))}
                )
            if digest in seen:
                duplicates += 1
                continue
            seen.add(digest)
            batch.append({**raw, "item_type": item_type, "payload_hash": digest})

        if seen:
            existing = await db.execute(
                select(DeliveryItem.payload_hash).where(
                    DeliveryItem.product_id == product.id,
                    DeliveryItem.payload_hash.in_(seen),
                )
            )
            stored = set(existing.scalars().all())
            if stored:
                duplicates += sum(1 for entry in batch if entry["payload_hash"] in stored)
                batch = [entry for entry in batch if entry["payload_hash"] not in stored]

        max_order = await db.execute(
            select(func.coalesce(func.max(DeliveryItem.display_order), 0)).where(
                DeliveryItem.product_id == product.id
            )
        )
        next_order = (max_order.scalar() or 0) + 1

        for offset, entry in enumerate(batch):
            db.add(DeliveryItem(
                product_id=product.id,
                seller_id=product.seller_id,
                item_type=entry["item_type"],
                label=entry.get("label"),
                payload=entry["payload"],
                payload_hash=entry["payload_hash"],
                display_order=next_order + offset,
                state=DeliveryItemState.AVAILABLE,
            ))
        await db.flush()

        # Restocking brings back a product the pool drained
        if batch and product.auto_hidden:
            product.is_available = True
            product.auto_hidden = False
            await db.flush()
            logger.info("Product %s restocked and re-enabled", product.id)

        available = await DeliveryPool.count_available(db, product.id)
        logger.info(
            "Delivery items added: product=%s added=%d duplicates=%d available=%d",
            product.id, len(batch), duplicates, available,
        )
        return AddItemsResult(added=len(batch), duplicates_skipped=duplicates, available=available)

    @staticmethod
    async def reserve_one(db: AsyncSession, product_id: int, order_id: int, buyer_id: str) -> Reservation:
        """
        Claim the next available item for an order.

        The candidate is picked FOR UPDATE SKIP LOCKED (PostgreSQL) and then
        claimed with UPDATE ... WHERE state = 'available'. Only a row count
        of one is a win; a lost race moves on to the next candidate.

        Raises:
            OutOfStockError: the pool has no available item
            ConcurrentModificationError: every attempt lost its race
        """
        for attempt in range(settings.pool_claim_attempts):
            candidate = await db.execute(
                select(DeliveryItem.id)
                .where(
                    DeliveryItem.product_id == product_id,
                    DeliveryItem.state == DeliveryItemState.AVAILABLE,
                )
                .order_by(DeliveryItem.display_order, DeliveryItem.id)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            item_id = candidate.scalar_one_or_none()
            if item_id is None:
                raise OutOfStockError(product_id)

            claimed = await db.execute(
                update(DeliveryItem)
                .where(
                    DeliveryItem.id == item_id,
                    DeliveryItem.state == DeliveryItemState.AVAILABLE,
                )
                .values(
                    state=DeliveryItemState.ASSIGNED,
                    assigned_order_id=order_id,
                    assigned_to=buyer_id,
                    assigned_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                item = await db.get(DeliveryItem, item_id, populate_existing=True)
                remaining = await DeliveryPool.count_available(db, product_id)
                logger.info(
                    "Delivery item claimed: item=%s product=%s order=%s remaining=%d",
                    item_id, product_id, order_id, remaining,
                )
                return Reservation(item=item, remaining=remaining)

            logger.info("Delivery item %s claimed concurrently (attempt %d)", item_id, attempt + 1)

        raise ConcurrentModificationError("Delivery pool contention, please retry")

    @staticmethod
    async def withdraw(db: AsyncSession, item_id: int, seller_id: str) -> None:
        """Delete an unassigned item. Assigned items are part of an order and stay."""
        result = await db.execute(
            select(DeliveryItem).where(DeliveryItem.id == item_id).with_for_update()
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise SettlementNotFoundError("Delivery item", item_id)
        if item.seller_id != seller_id:
            raise NotAuthorizedError("Delivery item belongs to another seller")
        if item.state != DeliveryItemState.AVAILABLE:
            raise InvalidRequestError("Assigned delivery items cannot be withdrawn", details={"item_id": item_id})

        await db.execute(
            delete(DeliveryItem).where(
                DeliveryItem.id == item_id,
                DeliveryItem.state == DeliveryItemState.AVAILABLE,
            )
        )
        logger.info("Delivery item withdrawn: item=%s seller=%s", item_id, seller_id)
