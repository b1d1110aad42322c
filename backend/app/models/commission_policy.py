"""
Commission Policy database model.

Global or seller-tier platform commission rate.
"""

from sqlalchemy import Column, Integer, String, Numeric, DateTime, Boolean, CheckConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base


class CommissionPolicy(Base):
    """
    Commission Policy model.

    seller_id None = global policy. The newest active policy that is already
    effective wins; a seller-tier policy overrides the global one.
    """
    __tablename__ = "commission_policies"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    seller_id = Column(String(64), nullable=True, index=True)
    rate = Column(Numeric(5, 4), nullable=False)

    # Validity
    effective_from = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Audit
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("rate >= 0 AND rate < 1", name="ck_commission_policies_rate_range"),
    )

    def __repr__(self):
        return f"<CommissionPolicy(id={self.id}, seller='{self.seller_id}', rate={self.rate})>"
