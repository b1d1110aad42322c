"""
Delivery Item database model.

Single-use credential/license/token handed out by pooled auto-delivery.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Enum, UniqueConstraint, Index
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.order_enums import DeliveryItemState, DeliveryItemType


def _values(enum_cls):
    return [m.value for m in enum_cls]


class DeliveryItem(Base):
    """
    Delivery Item model.

    Moves AVAILABLE -> ASSIGNED exactly once, in the same statement that
    claims it for an order. Never recycled automatically.
    The (product_id, payload_hash) unique constraint stops the same
    credential being stored (and sold) twice.
    """
    __tablename__ = "delivery_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    seller_id = Column(String(64), nullable=True, index=True)

    item_type = Column(Enum(DeliveryItemType, values_callable=_values), nullable=False, default=DeliveryItemType.GENERIC)
    label = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=False)  # Opaque to the engine
    payload_hash = Column(String(64), nullable=False)
    display_order = Column(Integer, nullable=False, default=0)

    # Assignment
    state = Column(Enum(DeliveryItemState, values_callable=_values), nullable=False, default=DeliveryItemState.AVAILABLE)
    assigned_order_id = Column(Integer, nullable=True, index=True)
    assigned_to = Column(String(64), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("product_id", "payload_hash", name="uq_delivery_items_product_payload"),
        Index("ix_delivery_items_claim", "product_id", "state", "display_order"),
    )

    def __repr__(self):
        return f"<DeliveryItem(id={self.id}, product={self.product_id}, state='{self.state.value}')>"
