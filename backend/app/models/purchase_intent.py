"""
Purchase Intent database model.

Server-persisted "buy this after login" record keyed by an opaque token.
"""

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey
from sqlalchemy.sql import func
from backend.app.db.session import Base


class PurchaseIntent(Base):
    """
    Purchase Intent model.

    Only the product id is trusted on resume; price_snapshot is for display
    on the login screen and is never charged.
    """
    __tablename__ = "purchase_intents"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    token = Column(String(64), unique=True, index=True, nullable=False)

    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    price_snapshot = Column(Numeric(14, 2), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_by = Column(String(64), nullable=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    order_id = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<PurchaseIntent(token='{self.token[:8]}...', product={self.product_id}, consumed={self.consumed_at is not None})>"
