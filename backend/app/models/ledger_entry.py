"""
Ledger Entry database model.

Immutable, append-only record of every wallet balance change.
"""

from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime, Enum, UniqueConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.billing_enums import LedgerReason


class LedgerEntry(Base):
    """
    Ledger Entry model.

    Each entry carries a signed delta for both wallet buckets, so an escrow
    release is a single entry (pending -X, available +X).
    For every wallet: available_balance == sum(available_delta) and
    pending_balance == sum(pending_delta).
    NO updates or deletions allowed.
    """
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Linkage
    wallet_id = Column(Integer, ForeignKey("wallets.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)

    reason = Column(Enum(LedgerReason, values_callable=lambda e: [m.value for m in e]), nullable=False, index=True)

    # Financials
    available_delta = Column(Numeric(14, 2), nullable=False, default=0)
    pending_delta = Column(Numeric(14, 2), nullable=False, default=0)
    available_after = Column(Numeric(14, 2), nullable=False)
    pending_after = Column(Numeric(14, 2), nullable=False)

    reference = Column(String(255), nullable=True)  # e.g. gateway transaction id, unique per user and reason

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "reason", "reference", name="uq_ledger_entries_reference"),
    )

    def __repr__(self):
        return (
            f"<LedgerEntry(id={self.id}, reason='{self.reason.value}', "
            f"available_delta={self.available_delta}, pending_delta={self.pending_delta})>"
        )
