"""
Public catalog API Endpoints.

Product snapshots for display, served through the Redis cache.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.models.product import Product
from backend.app.schemas.product import ProductResponse
from backend.app.services.cache import cached_product_snapshot

router = APIRouter(prefix="/products", tags=["Catalog"])


@router.get("", response_model=List[ProductResponse])
async def list_products(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db)
):
    """Products currently on sale."""
    result = await db.execute(
        select(Product)
        .where(Product.is_available == True)
        .order_by(Product.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return result.scalars().all()


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: int = Path(..., description="Product ID"),
    db: AsyncSession = Depends(get_db)
):
    """
    Product snapshot for display.

    May be up to `product_cache_ttl_seconds` stale; purchases never use it.
    """
    async def load():
        product = await db.get(Product, product_id)
        if product is None:
            return None
        return ProductResponse.model_validate(product).model_dump(mode="json")

    snapshot = await cached_product_snapshot(product_id, load)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return snapshot
