"""
Fulfillment Engine — Order API routes

Every successful mutation refreshes the stock cache of the touched products
and publishes an order event on Redis after the transaction has committed.
"""
import logging
from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.redis_client import cache_available, get_redis, publish_order_event
from app.db import order_ops, stock_ops
from app.db.database import get_db
from app.models.order import Order
from app.schemas.order import (
    AllocationResponse, AssignWarehouseRequest, OrderCreate, OrderResponse, OrderTransitionRequest,
    StatusHistoryResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


async def _sync_stock_cache(db: AsyncSession, redis, order: Order) -> None:
    for product_id in dict.fromkeys(item.product_id for item in order.items):
        await cache_available(redis, product_id, await stock_ops.get_available(db, product_id))


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    actor_id: str | None = Header(None, alias="X-Actor-Id"),
):
    """
    Create an order and reserve its stock.
    409 when any item cannot be covered; nothing is reserved in that case.
    """
    order = await order_ops.create_order(db, payload, actor_id)
    await _sync_stock_cache(db, redis, order)
    await publish_order_event(redis, "order.created", {
        "order_id": order.id,
        "order_number": order.order_number,
        "merchant_id": order.merchant_id,
        "status": order.status,
    })
    return order


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)):
    return await order_ops.get_order(db, order_id)


@router.get("/{order_id}/history", response_model=list[StatusHistoryResponse])
async def get_status_history(order_id: str, db: AsyncSession = Depends(get_db)):
    return await order_ops.get_status_history(db, order_id)


@router.get("/{order_id}/allocations", response_model=list[AllocationResponse])
async def list_allocations(order_id: str, db: AsyncSession = Depends(get_db)):
    await order_ops.get_order(db, order_id)
    return await order_ops.list_allocations(db, order_id)


@router.post("/{order_id}/status", response_model=OrderResponse)
async def transition_order(
    order_id: str,
    payload: OrderTransitionRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    actor_id: str | None = Header(None, alias="X-Actor-Id"),
):
    order = await order_ops.transition(db, order_id, payload.status, actor_id, payload.notes)
    await _sync_stock_cache(db, redis, order)
    await publish_order_event(redis, "order.status_changed", {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
    })
    return order


@router.post("/{order_id}/warehouse", response_model=OrderResponse)
async def assign_warehouse(
    order_id: str,
    payload: AssignWarehouseRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    actor_id: str | None = Header(None, alias="X-Actor-Id"),
):
    order = await order_ops.assign_warehouse(db, order_id, payload.warehouse_id, actor_id, payload.policy)
    await _sync_stock_cache(db, redis, order)
    await publish_order_event(redis, "order.warehouse_assigned", {
        "order_id": order.id,
        "order_number": order.order_number,
        "warehouse_id": order.warehouse_id,
    })
    return order
