"""
Audit Log Database Model.

Tracks admin and system actions that move money or change settlement policy.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.

    Events logged:
    - WALLET_TOPPED_UP
    - COMMISSION_POLICY_CREATED / COMMISSION_POLICY_DEACTIVATED
    - DISPUTE_RESOLVED_REFUND / DISPUTE_RESOLVED_RELEASE
    - ESCROW_AUTO_RELEASED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(String(64), index=True, nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # Who or what was acted upon
    target_user_id = Column(String(64), index=True, nullable=True)
    order_id = Column(Integer, index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_id}, order={self.order_id})>"
