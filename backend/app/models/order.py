"""
Order (purchase) database model.

Created in the same transaction as the buyer debit and seller escrow credit.
"""

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, JSON, Enum, Text, CheckConstraint
)
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.order_enums import OrderStatus
from backend.app.models.billing_enums import ReleaseSource


def _values(enum_cls):
    return [m.value for m in enum_cls]


class Order(Base):
    """
    Order model.

    The commission rate in effect at purchase time is frozen here and is
    never recomputed. seller_earning + commission_amount == amount.
    Status transitions are monotonic (see order_enums.ORDER_TRANSITIONS).
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Parties
    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=True, index=True)  # None = platform product
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)

    # Financials (frozen at purchase time)
    amount = Column(Numeric(14, 2), nullable=False)
    commission_rate = Column(Numeric(5, 4), nullable=False)
    commission_amount = Column(Numeric(14, 2), nullable=False)
    seller_earning = Column(Numeric(14, 2), nullable=False)

    status = Column(Enum(OrderStatus, values_callable=_values), nullable=False, index=True)

    # Delivery: pooled orders reference their item, manual orders carry the seller's payload
    delivery_item_id = Column(Integer, ForeignKey("delivery_items.id"), nullable=True, unique=True)
    manual_payload = Column(JSON, nullable=True)
    buyer_email = Column(String(255), nullable=True)

    # Escrow / disputes
    release_source = Column(Enum(ReleaseSource, values_callable=_values), nullable=True)
    dispute_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    delivered_at = Column(DateTime(timezone=True), nullable=True, index=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_orders_amount_non_negative"),
        CheckConstraint("seller_earning >= 0", name="ck_orders_earning_non_negative"),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, buyer='{self.buyer_id}', status='{self.status.value}', amount={self.amount})>"
