"""
User roles enumeration.

Defines the role types for the marketplace settlement engine.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles are asserted by the identity service in the JWT `role` claim.

    Roles:
        ADMIN: Platform operator (commission policy, disputes, top-ups)
        SELLER: Lists products and manages delivery inventory
        BUYER: Purchases products and approves deliveries (default role)
    """
    ADMIN = "ADMIN"
    SELLER = "SELLER"
    BUYER = "BUYER"
