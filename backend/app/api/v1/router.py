"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import (
    auth, products, purchases, orders, seller, wallet,
    withdrawals, admin_settlement, admin_ops, notifications
)

router = APIRouter()

# Identity
router.include_router(auth.router)

# Catalog and purchasing
router.include_router(products.router)
router.include_router(purchases.router)
router.include_router(orders.router)
router.include_router(wallet.router)
router.include_router(withdrawals.router)

# Sellers
router.include_router(seller.router)

# Admin
router.include_router(admin_settlement.router)
router.include_router(admin_ops.router)

# Inbox
router.include_router(notifications.router)
