"""
Admin Operations API Endpoints.

Endpoints for notification delivery, the dead letter queue and caches.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.enums import UserRole
from backend.app.schemas.notification import DispatchResponse, DeadLetterResponse
from backend.app.core.guards import require_role
from backend.app.core.dependencies import get_settlement_engine
from backend.app.domain.settlement.engine import SettlementEngine
from backend.app.services.cache import CacheService

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.get("/dlq", response_model=List[DeadLetterResponse])
async def list_dead_letters(
    status_filter: Optional[DLQStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    query = select(DeadLetterQueue).order_by(desc(DeadLetterQueue.created_at), desc(DeadLetterQueue.id))
    if status_filter:
        query = query.where(DeadLetterQueue.status == status_filter)
    result = await db.execute(query.limit(limit))
    return result.scalars().all()


@router.post("/dlq/{dlq_id}/retry")
async def retry_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """
    Put a dead-lettered notification back in the outbox.

    It is delivered by the next dispatch run with a fresh attempt budget.
    """
    if not await engine.dispatcher.requeue_dead_letter(dlq_id):
        raise HTTPException(status_code=404, detail="No failed DLQ item with this ID")
    return {"message": f"DLQ item {dlq_id} requeued"}


@router.post("/notifications/dispatch", response_model=DispatchResponse)
async def dispatch_notifications(
    limit: int = Query(100, ge=1, le=1000),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Deliver due notifications now instead of waiting for the scheduler."""
    return await engine.dispatcher.dispatch_pending(limit=limit)


@router.post("/clear-cache")
async def clear_system_cache(
    current_user: dict = Depends(require_role([UserRole.ADMIN]))
):
    """Drop every cached product snapshot."""
    removed = await CacheService.clear()
    return {"message": "Cache cleared successfully", "keys_removed": removed}
