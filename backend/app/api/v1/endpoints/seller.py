"""
Seller API Endpoints.

Product listings, pooled delivery inventory and manual fulfilment.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.models.delivery_item import DeliveryItem
from backend.app.models.enums import UserRole
from backend.app.models.order_enums import OrderStatus, StockPolicy, DeliveryMode, DeliveryItemState
from backend.app.models.product import Product
from backend.app.schemas.product import (
    ProductCreate, ProductUpdate, ProductResponse,
    DeliveryItemsAdd, AddItemsResponse, DeliveryItemResponse,
)
from backend.app.schemas.purchase import OrderResponse, DeliverRequest, OrderActionResponse
from backend.app.core.guards import require_role
from backend.app.core.dependencies import get_settlement_engine
from backend.app.core.exceptions import raise_for_result
from backend.app.domain.settlement.coordinator import PurchaseCoordinator
from backend.app.domain.settlement.engine import SettlementEngine
from backend.app.services.cache import invalidate_product

router = APIRouter(prefix="/seller", tags=["Seller"])


def validate_stock_settings(stock_policy: StockPolicy, delivery_mode: DeliveryMode, stock: Optional[int]) -> None:
    """Pooled stock is auto-delivered; every other policy is delivered by hand."""
    if stock_policy == StockPolicy.POOLED and delivery_mode != DeliveryMode.AUTO:
        raise HTTPException(status_code=400, detail="Pooled products must use auto delivery")
    if stock_policy != StockPolicy.POOLED and delivery_mode == DeliveryMode.AUTO:
        raise HTTPException(status_code=400, detail="Auto delivery requires pooled stock")
    if stock_policy == StockPolicy.COUNTED and stock is None:
        raise HTTPException(status_code=400, detail="Counted products need an initial stock")


def new_product(data: ProductCreate, seller_id: Optional[str]) -> Product:
    validate_stock_settings(data.stock_policy, data.delivery_mode, data.stock)
    return Product(
        seller_id=seller_id,
        name=data.name,
        price=data.price,
        stock_policy=data.stock_policy,
        stock=data.stock if data.stock_policy == StockPolicy.COUNTED else None,
        delivery_mode=data.delivery_mode,
        allow_manual_fallback=data.allow_manual_fallback,
        # A pooled product starts empty; it becomes buyable once items are added
        is_available=data.stock_policy != StockPolicy.POOLED,
        auto_hidden=data.stock_policy == StockPolicy.POOLED,
        chat_allowed=data.chat_allowed,
        requires_email=data.requires_email,
    )


async def get_own_product(db: AsyncSession, product_id: int, seller_id: str) -> Product:
    product = await db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if product.seller_id != seller_id:
        raise HTTPException(status_code=403, detail="Access denied. You do not own this product.")
    return product


@router.post("/products", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    data: ProductCreate,
    current_user: dict = Depends(require_role([UserRole.SELLER])),
    db: AsyncSession = Depends(get_db)
):
    """List a new product."""
    product = new_product(data, current_user["user_id"])
    db.add(product)
    await db.commit()
    await db.refresh(product)
    return product


@router.get("/products", response_model=List[ProductResponse])
async def list_my_products(
    current_user: dict = Depends(require_role([UserRole.SELLER])),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(Product).where(Product.seller_id == current_user["user_id"]).order_by(Product.id.desc())
    )
    return result.scalars().all()


@router.patch("/products/{product_id}", response_model=ProductResponse)
async def update_product(
    data: ProductUpdate,
    product_id: int = Path(..., description="Product ID"),
    current_user: dict = Depends(require_role([UserRole.SELLER])),
    db: AsyncSession = Depends(get_db)
):
    """
    Update a listing.

    Price changes apply to future purchases only; existing orders keep the
    amount and commission rate they were created with.
    """
    product = await get_own_product(db, product_id, current_user["user_id"])

    changes = data.model_dump(exclude_unset=True)
    if "stock" in changes and product.stock_policy != StockPolicy.COUNTED:
        raise HTTPException(status_code=400, detail="Only counted products have a stock figure")
    for field, value in changes.items():
        setattr(product, field, value)

    # Explicit seller choice overrides an automatic sold-out hide
    if "is_available" in changes:
        product.auto_hidden = False
    elif product.auto_hidden and product.stock_policy == StockPolicy.COUNTED and (product.stock or 0) > 0:
        product.auto_hidden = False
        product.is_available = True

    await db.commit()
    await db.refresh(product)
    await invalidate_product(product.id)
    return product


@router.post("/products/{product_id}/delivery-items", response_model=AddItemsResponse)
async def add_delivery_items(
    data: DeliveryItemsAdd,
    product_id: int = Path(..., description="Product ID"),
    current_user: dict = Depends(require_role([UserRole.SELLER])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """
    Bulk-add single-use delivery items to a pooled product.

    Exact duplicates (within the batch or already stored) are skipped.
    """
    result = raise_for_result(await engine.add_delivery_items(
        product_id, current_user["user_id"], [item.model_dump(mode="json") for item in data.items]
    ))
    await invalidate_product(product_id)
    return AddItemsResponse(
        product_id=product_id,
        added=result.added,
        duplicates_skipped=result.duplicates_skipped,
        available=result.available,
    )


@router.get("/products/{product_id}/delivery-items", response_model=List[DeliveryItemResponse])
async def list_delivery_items(
    product_id: int = Path(..., description="Product ID"),
    state: Optional[DeliveryItemState] = Query(None),
    current_user: dict = Depends(require_role([UserRole.SELLER])),
    db: AsyncSession = Depends(get_db)
):
    await get_own_product(db, product_id, current_user["user_id"])
    query = select(DeliveryItem).where(DeliveryItem.product_id == product_id)
    if state:
        query = query.where(DeliveryItem.state == state)
    result = await db.execute(query.order_by(DeliveryItem.display_order, DeliveryItem.id))
    return result.scalars().all()


@router.delete("/delivery-items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def withdraw_delivery_item(
    item_id: int = Path(..., description="Delivery item ID"),
    current_user: dict = Depends(require_role([UserRole.SELLER])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Remove an item that has not been handed out yet."""
    await engine.withdraw_delivery_item(item_id, current_user["user_id"])


@router.get("/orders", response_model=List[OrderResponse])
async def list_sales(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(require_role([UserRole.SELLER])),
    db: AsyncSession = Depends(get_db)
):
    """Orders for the current seller's products."""
    return await PurchaseCoordinator.list_orders(
        db, seller_id=current_user["user_id"], status=status_filter, limit=limit
    )


@router.post("/orders/{order_id}/deliver", response_model=OrderActionResponse)
async def deliver_order(
    request: DeliverRequest,
    order_id: int = Path(..., description="Order ID"),
    current_user: dict = Depends(require_role([UserRole.SELLER])),
    engine: SettlementEngine = Depends(get_settlement_engine)
):
    """Attach the delivered content to a manual order."""
    result = raise_for_result(await engine.deliver_order(order_id, current_user["user_id"], request.payload))
    return OrderActionResponse(order_id=result.order_id, status=result.status)
