"""
Order, product and delivery enumerations.
"""

import enum


class OrderStatus(str, enum.Enum):
    """
    Order status enumeration.

    pending_delivery -> delivered -> completed
    pending_delivery | delivered -> disputed -> refunded | completed
    """
    PENDING_DELIVERY = "pending_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"  # Buyer approved (or auto released)
    DISPUTED = "disputed"
    REFUNDED = "refunded"


# Allowed forward transitions; nothing leaves COMPLETED or REFUNDED.
ORDER_TRANSITIONS = {
    OrderStatus.PENDING_DELIVERY: {OrderStatus.DELIVERED, OrderStatus.DISPUTED},
    OrderStatus.DELIVERED: {OrderStatus.COMPLETED, OrderStatus.DISPUTED},
    OrderStatus.DISPUTED: {OrderStatus.REFUNDED, OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.REFUNDED: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, set())


class StockPolicy(str, enum.Enum):
    """How a product's stock is tracked."""
    UNLIMITED = "unlimited"
    COUNTED = "counted"
    POOLED = "pooled"  # One DeliveryItem handed out per sale


class DeliveryMode(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"


class DeliveryItemState(str, enum.Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"


class DeliveryItemType(str, enum.Enum):
    ACCOUNT = "account"  # Credential pair
    LICENSE_KEY = "license_key"
    GENERIC = "generic"
