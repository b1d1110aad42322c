"""
Wallet database model.

One wallet per user, holding an available and an escrow-pending balance.
"""

from sqlalchemy import Column, Integer, String, Numeric, DateTime, CheckConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base


class Wallet(Base):
    """
    Wallet model.

    Created lazily on first access and never deleted.
    Both balances are mutated only by the wallet ledger, which writes one
    LedgerEntry per mutation and bumps `version` on every write.
    """
    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String(64), unique=True, index=True, nullable=False)

    # Balances
    available_balance = Column(Numeric(14, 2), nullable=False, default=0)
    pending_balance = Column(Numeric(14, 2), nullable=False, default=0)  # Seller escrow

    # Optimistic lock token
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("available_balance >= 0", name="ck_wallets_available_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_wallets_pending_non_negative"),
    )

    def __repr__(self):
        return (
            f"<Wallet(user_id='{self.user_id}', available={self.available_balance}, "
            f"pending={self.pending_balance}, version={self.version})>"
        )
