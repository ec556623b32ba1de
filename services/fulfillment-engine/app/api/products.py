"""
Fulfillment Engine — Product catalogue routes
"""
from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import product_ops
from app.db.database import get_db
from app.schemas.stock import ProductCreate, ProductResponse

router = APIRouter(prefix="/products", tags=["products"])


@router.post("", response_model=ProductResponse, status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreate,
    db: AsyncSession = Depends(get_db),
    actor_id: str | None = Header(None, alias="X-Actor-Id"),
):
    return await product_ops.create_product(
        db, payload.merchant_id, payload.sku, payload.name,
        category=payload.category, unit_price=payload.unit_price, actor_id=actor_id,
    )


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(product_id: str, db: AsyncSession = Depends(get_db)):
    return await product_ops.get_product(db, product_id)
