"""
Notification Database Model.

Doubles as the dispatcher's outbox and the user's in-app inbox.
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON, Enum, Index
from sqlalchemy.sql import func
from backend.app.db.session import Base
import enum


class NotificationEvent(str, enum.Enum):
    NEW_ORDER = "new_order"
    DELIVERED = "delivered"
    APPROVED = "approved"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    WITHDRAWAL_APPROVED = "withdrawal_approved"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"  # Gave up, copied to the DLQ


class Notification(Base):
    """
    Notification.
    Written after the financial transaction commits; never part of it.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Recipient
    user_id = Column(String(64), nullable=False, index=True)
    order_id = Column(Integer, nullable=True, index=True)

    # Content
    event = Column(Enum(NotificationEvent, values_callable=lambda e: [m.value for m in e]), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    metadata_payload = Column(JSON, nullable=True)

    # Delivery state
    status = Column(Enum(NotificationStatus, values_callable=lambda e: [m.value for m in e]),
                    default=NotificationStatus.PENDING, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_error = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    # Inbox state
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_notifications_dispatch", "status", "next_attempt_at"),
    )

    def __repr__(self):
        return f"<Notification(id={self.id}, user='{self.user_id}', event='{self.event.value}', status='{self.status.value}')>"
