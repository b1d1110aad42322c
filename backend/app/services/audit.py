"""
Audit logging service for admin and system settlement actions.

Entries are written inside the caller's transaction, so an audit row
exists exactly when the action it describes committed.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    WALLET_TOPPED_UP = "WALLET_TOPPED_UP"

    COMMISSION_POLICY_CREATED = "COMMISSION_POLICY_CREATED"
    COMMISSION_POLICY_DEACTIVATED = "COMMISSION_POLICY_DEACTIVATED"

    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_RESOLVED_REFUND = "DISPUTE_RESOLVED_REFUND"
    DISPUTE_RESOLVED_RELEASE = "DISPUTE_RESOLVED_RELEASE"

    ESCROW_AUTO_RELEASED = "ESCROW_AUTO_RELEASED"
    PRODUCT_AUTO_HIDDEN = "PRODUCT_AUTO_HIDDEN"

    WITHDRAWAL_APPROVED = "WITHDRAWAL_APPROVED"
    WITHDRAWAL_REJECTED = "WITHDRAWAL_REJECTED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[str] = None,
    target_user_id: Optional[str] = None,
    order_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Log an admin or system event to the audit log.

    Args:
        db: Database session (transaction managed by caller)
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action, None for the system
        target_user_id: ID of user being acted upon (if applicable)
        order_id: Order concerned (if applicable)
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        target_user_id=target_user_id,
        order_id=order_id,
        meta_data=metadata,
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    target_user_id: Optional[str] = None,
    action: Optional[str] = None,
    order_id: Optional[int] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if target_user_id:
        query = query.where(AuditLog.target_user_id == target_user_id)

    if action:
        query = query.where(AuditLog.action == action)

    if order_id:
        query = query.where(AuditLog.order_id == order_id)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
