"""
Withdrawal database model.

A payout request that moves available wallet funds off the platform.
"""

from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime, Enum, Text, UniqueConstraint, Index, text
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.billing_enums import WithdrawalStatus


class Withdrawal(Base):
    """
    Withdrawal model.

    The amount leaves the wallet when the request is made (one `withdrawal`
    ledger entry) and comes back only if an admin rejects it (one
    `withdrawal-reversal` entry). Follows a strict review workflow:
    REQUESTED -> APPROVED | REJECTED.
    At most one REQUESTED withdrawal per user.
    """
    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)

    # Financials
    amount = Column(Numeric(14, 2), nullable=False)
    request_entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=True)
    reversal_entry_id = Column(Integer, ForeignKey("ledger_entries.id"), nullable=True)

    # Payout destination, free text for the admin paying it out
    payout_method = Column(String(64), nullable=False)
    account_details = Column(String(255), nullable=False)
    reference = Column(String(255), nullable=True)  # Client retry token

    # Review
    status = Column(
        Enum(WithdrawalStatus, values_callable=lambda e: [m.value for m in e]),
        default=WithdrawalStatus.REQUESTED, nullable=False, index=True,
    )
    processed_by = Column(String(64), nullable=True)
    admin_notes = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "reference", name="uq_withdrawals_reference"),
        Index(
            "uq_withdrawals_one_requested",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'requested'"),
            sqlite_where=text("status = 'requested'"),
        ),
    )

    def __repr__(self):
        return f"<Withdrawal(id={self.id}, user_id='{self.user_id}', status='{self.status.value}', amount={self.amount})>"
