"""
Fulfillment Engine — Stock API routes
"""
import logging
import math
from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.redis_client import cache_available, get_redis
from app.db import stock_ops
from app.db.database import get_db
from app.schemas.stock import (
    AdjustRequest, AvailabilityResponse, MovementResponse, ReceiveRequest, ReconciliationResponse,
    StockItemResponse, StockListResponse, TransferRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/stock", tags=["stock"])


@router.get("", response_model=StockListResponse)
async def list_stock(
    warehouse_id: str | None = None,
    product_id: str | None = None,
    low_stock: bool = False,
    expired: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    items, total = await stock_ops.list_stock(
        db, warehouse_id=warehouse_id, product_id=product_id,
        low_stock=low_stock, expired=expired, page=page, limit=limit,
    )
    return StockListResponse(
        items=[StockItemResponse.model_validate(item) for item in items],
        page=page,
        limit=limit,
        total=total,
        pages=math.ceil(total / limit),
    )


@router.get("/availability/{product_id}", response_model=AvailabilityResponse)
async def get_availability(product_id: str, db: AsyncSession = Depends(get_db), redis=Depends(get_redis)):
    """Available units across all warehouses. Also warms the Redis cache."""
    available = await stock_ops.get_available(db, product_id)
    await cache_available(redis, product_id, available)
    return AvailabilityResponse(product_id=product_id, available_quantity=available)


@router.post("/receive", response_model=StockItemResponse, status_code=status.HTTP_201_CREATED)
async def receive_stock(
    payload: ReceiveRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    actor_id: str | None = Header(None, alias="X-Actor-Id"),
):
    item = await stock_ops.receive(
        db,
        payload.product_id,
        payload.warehouse_id,
        payload.batch_number,
        payload.quantity,
        performed_by=actor_id,
        expiry_date=payload.expiry_date,
        reorder_level=payload.reorder_level,
        notes=payload.notes,
    )
    await cache_available(redis, item.product_id, await stock_ops.get_available(db, item.product_id))
    return item


@router.post("/{stock_item_id}/adjust", response_model=StockItemResponse)
async def adjust_stock(
    stock_item_id: str,
    payload: AdjustRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    actor_id: str | None = Header(None, alias="X-Actor-Id"),
):
    item = await stock_ops.adjust(
        db, stock_item_id, payload.delta, payload.reason,
        movement_type=payload.movement_type, performed_by=actor_id,
    )
    await cache_available(redis, item.product_id, await stock_ops.get_available(db, item.product_id))
    return item


@router.post("/{stock_item_id}/transfer", response_model=list[StockItemResponse])
async def transfer_stock(
    stock_item_id: str,
    payload: TransferRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str | None = Header(None, alias="X-Actor-Id"),
):
    """Returns [source, destination]. Product availability is unchanged by a transfer."""
    source, target = await stock_ops.transfer(
        db, stock_item_id, payload.to_warehouse_id, payload.quantity,
        performed_by=actor_id, notes=payload.notes,
    )
    return [source, target]


@router.get("/{stock_item_id}", response_model=StockItemResponse)
async def get_stock_item(stock_item_id: str, db: AsyncSession = Depends(get_db)):
    return await stock_ops.get_stock_item(db, stock_item_id)


@router.get("/{stock_item_id}/movements", response_model=list[MovementResponse])
async def list_movements(stock_item_id: str, db: AsyncSession = Depends(get_db)):
    await stock_ops.get_stock_item(db, stock_item_id)
    return await stock_ops.list_movements(db, stock_item_id)


@router.get("/{stock_item_id}/reconcile", response_model=ReconciliationResponse)
async def reconcile_stock_item(stock_item_id: str, db: AsyncSession = Depends(get_db)):
    report = await stock_ops.reconcile(db, stock_item_id)
    return ReconciliationResponse(
        stock_item_id=report.stock_item_id,
        quantity=report.quantity,
        reserved_quantity=report.reserved_quantity,
        movement_quantity=report.movement_quantity,
        movement_reserved=report.movement_reserved,
        balanced=report.balanced,
    )
