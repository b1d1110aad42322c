"""
Product database model.

Authoritative price and availability for the settlement engine.
"""

from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime, Enum, CheckConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.order_enums import StockPolicy, DeliveryMode


def _values(enum_cls):
    return [m.value for m in enum_cls]


class Product(Base):
    """
    Product model.

    seller_id is None for platform-owned products.
    Pooled products hand out one DeliveryItem per sale; when the pool drains
    and manual fallback is off the product is auto-hidden until restocked.
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    seller_id = Column(String(64), nullable=True, index=True)
    name = Column(String(255), nullable=False)

    price = Column(Numeric(14, 2), nullable=False)

    # Stock
    stock_policy = Column(Enum(StockPolicy, values_callable=_values), nullable=False, default=StockPolicy.UNLIMITED)
    stock = Column(Integer, nullable=True)  # Only for COUNTED
    delivery_mode = Column(Enum(DeliveryMode, values_callable=_values), nullable=False, default=DeliveryMode.MANUAL)
    allow_manual_fallback = Column(Boolean, default=False, nullable=False)

    # Availability
    is_available = Column(Boolean, default=True, nullable=False, index=True)
    auto_hidden = Column(Boolean, default=False, nullable=False)

    # Buyer interaction flags
    chat_allowed = Column(Boolean, default=True, nullable=False)
    requires_email = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        CheckConstraint("stock IS NULL OR stock >= 0", name="ck_products_stock_non_negative"),
    )

    def __repr__(self):
        return f"<Product(id={self.id}, name='{self.name}', price={self.price}, policy='{self.stock_policy.value}')>"
