"""
Idempotency Record database model.

Remembers the result of a purchase per (buyer, idempotency key).
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base


class IdempotencyRecord(Base):
    """
    Idempotency Record.

    Inserted at the start of the purchase transaction, so two concurrent
    requests with the same key collide on the unique constraint and only
    one of them runs the purchase. Rolled back together with a failed
    purchase, which makes business failures safely retryable.
    """
    __tablename__ = "idempotency_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    buyer_id = Column(String(64), nullable=False)
    key = Column(String(255), nullable=False)
    product_id = Column(Integer, nullable=False)

    order_id = Column(Integer, nullable=True)
    response = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("buyer_id", "key", name="uq_idempotency_buyer_key"),
    )

    def __repr__(self):
        return f"<IdempotencyRecord(buyer='{self.buyer_id}', key='{self.key}', order={self.order_id})>"
