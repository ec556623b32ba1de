"""
Fulfillment Engine — Order lifecycle

State machine: PENDING → CONFIRMED → PROCESSING → PICKED → PACKED → SHIPPED → DELIVERED
CANCELLED is reachable from every state except DELIVERED.

Side effects per transition:
  - CANCELLED from PENDING / CONFIRMED / PROCESSING → release every active reservation
  - CANCELLED from PICKED / PACKED / SHIPPED        → recorded only (goods in motion)
  - SHIPPED                                         → reserved units leave the ledger
Every transition writes exactly one OrderStatusHistory row and one audit entry.
Status writes are compare-and-swap on orders.version_id.
"""
import logging
import random
import string
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.errors import (
    ConcurrencyConflict, DuplicateConstraint, InsufficientStock, InvalidTransition, NotFound, ValidationError,
)
from app.core.optimistic_lock import with_optimistic_retry
from app.db import stock_ops
from app.db.allocator import AllocationResult, allocate
from app.db.audit import record_audit
from app.models.inventory import Product
from app.models.order import (
    AllocationStatus, Order, OrderAllocation, OrderItem, OrderStatus, OrderStatusHistory,
)
from app.schemas.order import OrderCreate

settings = get_settings()
logger = logging.getLogger(__name__)

# ── Transition maps ───────────────────────────────────────────────────────────
NEXT_STATUS: dict[OrderStatus, OrderStatus] = {
    OrderStatus.PENDING:    OrderStatus.CONFIRMED,
    OrderStatus.CONFIRMED:  OrderStatus.PROCESSING,
    OrderStatus.PROCESSING: OrderStatus.PICKED,
    OrderStatus.PICKED:     OrderStatus.PACKED,
    OrderStatus.PACKED:     OrderStatus.SHIPPED,
    OrderStatus.SHIPPED:    OrderStatus.DELIVERED,
}
NOT_CANCELLABLE = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
RELEASE_ON_CANCEL = {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}
WAREHOUSE_POLICIES = {"record_only", "reallocate"}


def generate_order_number() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def check_transition(current: OrderStatus, new_status: OrderStatus) -> None:
    if new_status is OrderStatus.CANCELLED:
        if current in NOT_CANCELLABLE:
            raise InvalidTransition(current.value, new_status.value)
    elif NEXT_STATUS.get(current) is not new_status:
        raise InvalidTransition(current.value, new_status.value)


def _coerce_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status {value!r}")


# ── Reads ─────────────────────────────────────────────────────────────────────
async def get_order(db: AsyncSession, order_id: str) -> Order:
    result = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise NotFound("order", order_id)
    return order


async def get_status_history(db: AsyncSession, order_id: str) -> list[OrderStatusHistory]:
    await get_order(db, order_id)
    result = await db.execute(
        select(OrderStatusHistory)
        .where(OrderStatusHistory.order_id == order_id)
        .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
    )
    return list(result.scalars().all())


async def list_allocations(
    db: AsyncSession, order_id: str, status: AllocationStatus | None = None
) -> list[OrderAllocation]:
    query = select(OrderAllocation).where(OrderAllocation.order_id == order_id)
    if status is not None:
        query = query.where(OrderAllocation.status == status)
    result = await db.execute(query.order_by(OrderAllocation.created_at, OrderAllocation.id))
    return list(result.scalars().all())


# ── Helpers ───────────────────────────────────────────────────────────────────
def _add_allocation_rows(db: AsyncSession, order_id: str, allocation: AllocationResult) -> None:
    for line in allocation.lines:
        db.add(OrderAllocation(
            order_id=order_id,
            product_id=line.product_id,
            stock_item_id=line.stock_item_id,
            warehouse_id=line.warehouse_id,
            quantity=line.amount,
        ))


async def _release_allocations(db: AsyncSession, order: Order, actor_id: str | None, reason: str) -> int:
    released = 0
    for allocation in await list_allocations(db, order.id, AllocationStatus.ACTIVE):
        await stock_ops.release(
            db,
            allocation.stock_item_id,
            allocation.quantity,
            reference_type=reason,
            reference_id=order.id,
            performed_by=actor_id,
            notes=f"Released from order {order.order_number}",
        )
        allocation.status = AllocationStatus.RELEASED
        released += allocation.quantity
    return released


async def _commit_allocations(db: AsyncSession, order: Order, actor_id: str | None) -> int:
    shipped = 0
    for allocation in await list_allocations(db, order.id, AllocationStatus.ACTIVE):
        await stock_ops.commit(
            db,
            allocation.stock_item_id,
            allocation.quantity,
            reference_type="SHIPMENT",
            reference_id=order.id,
            performed_by=actor_id,
            notes=f"Shipped with order {order.order_number}",
        )
        allocation.status = AllocationStatus.COMMITTED
        shipped += allocation.quantity
    return shipped


async def _swap_order(db: AsyncSession, order: Order, **values) -> None:
    """Optimistically update the order row: WHERE version_id = <snapshot_version>."""
    order_id, current_version = order.id, order.version_id
    result = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.version_id == current_version)
        .values(version_id=current_version + 1, updated_at=datetime.now(timezone.utc), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise ConcurrencyConflict(f"Order '{order_id}' changed concurrently (version {current_version}).")


# ── Operations ────────────────────────────────────────────────────────────────
@with_optimistic_retry()
async def create_order(db: AsyncSession, payload: OrderCreate, actor_id: str | None = None) -> Order:
    """
    Create an order and reserve its stock in one transaction.
    If allocation fails nothing is persisted.
    """
    product_ids = list(dict.fromkeys(item.product_id for item in payload.items))
    result = await db.execute(
        select(Product.id).where(
            Product.id.in_(product_ids),
            Product.merchant_id == payload.merchant_id,
            Product.is_active.is_(True),
        )
    )
    found = set(result.scalars().all())
    missing = [product_id for product_id in product_ids if product_id not in found]
    if missing:
        raise ValidationError(f"Some products not found or inactive: {', '.join(missing)}")

    order_id = str(uuid.uuid4())
    order_number = generate_order_number()
    order_value = sum((item.unit_price * item.quantity for item in payload.items), Decimal("0"))

    try:
        allocation = await allocate(
            db,
            order_id,
            [(item.product_id, item.quantity) for item in payload.items],
            performed_by=actor_id,
            order_number=order_number,
        )
    except InsufficientStock:
        await db.rollback()
        raise

    warehouses = allocation.warehouse_ids
    order = Order(
        id=order_id,
        order_number=order_number,
        merchant_id=payload.merchant_id,
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
        customer_phone=payload.customer_phone,
        shipping_address=payload.shipping_address.model_dump() if payload.shipping_address else None,
        order_value=order_value,
        delivery_fee=payload.delivery_fee,
        total_amount=order_value + payload.delivery_fee,
        payment_method=payload.payment_method,
        notes=payload.notes,
        status=OrderStatus.PENDING,
        warehouse_id=warehouses[0] if len(warehouses) == 1 else None,
        items=[
            OrderItem(
                product_id=item.product_id,
                position=position,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=item.unit_price * item.quantity,
            )
            for position, item in enumerate(payload.items)
        ],
    )
    db.add(order)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise DuplicateConstraint(f"Order number {order_number} already exists")

    _add_allocation_rows(db, order_id, allocation)
    db.add(OrderStatusHistory(
        order_id=order_id, status=OrderStatus.PENDING, updated_by=actor_id, notes="Order created",
    ))
    record_audit(db, actor_id, "CREATE_ORDER", "orders", order_id, new_values=payload.model_dump(mode="json"))
    await db.commit()

    logger.info(
        "Order %s created for merchant %s: %d item(s), total %s",
        order_number, payload.merchant_id, len(payload.items), order.total_amount,
    )
    return order


@with_optimistic_retry()
async def transition(
    db: AsyncSession,
    order_id: str,
    new_status: OrderStatus | str,
    actor_id: str | None = None,
    notes: str | None = None,
) -> Order:
    """Move an order one step along the lifecycle, or cancel it."""
    new_status = _coerce_status(new_status)
    order = await get_order(db, order_id)
    current = order.status
    check_transition(current, new_status)

    now = datetime.now(timezone.utc)
    values: dict = {"status": new_status}
    if new_status is OrderStatus.DELIVERED:
        values["delivered_at"] = now
    elif new_status is OrderStatus.CANCELLED:
        values["cancelled_at"] = now
    await _swap_order(db, order, **values)

    if new_status is OrderStatus.CANCELLED and current in RELEASE_ON_CANCEL:
        released = await _release_allocations(db, order, actor_id, "ORDER_CANCELLED")
        logger.info("Order %s cancelled: %d unit(s) released", order.order_number, released)
    elif new_status is OrderStatus.CANCELLED:
        logger.warning(
            "Order %s cancelled from %s: reservations kept for manual reconciliation",
            order.order_number, current.value,
        )
    elif new_status is OrderStatus.SHIPPED:
        await _commit_allocations(db, order, actor_id)

    db.add(OrderStatusHistory(
        order_id=order.id,
        status=new_status,
        updated_by=actor_id,
        notes=notes or f"Status updated to {new_status.value}",
    ))
    record_audit(
        db, actor_id, "UPDATE_ORDER_STATUS", "orders", order.id,
        old_values={"status": current.value},
        new_values={"status": new_status.value, "notes": notes},
    )
    await db.commit()
    await db.refresh(order)

    logger.info("Order %s: %s → %s", order.order_number, current.value, new_status.value)
    return order


@with_optimistic_retry()
async def assign_warehouse(
    db: AsyncSession,
    order_id: str,
    warehouse_id: str,
    actor_id: str | None = None,
    policy: str | None = None,
) -> Order:
    """
    Record the fulfilling warehouse of an order.

    record_only: the reservations stay where they are.
    reallocate:  active reservations are released and the order is allocated
                 again from the new warehouse only, all-or-nothing.
    """
    policy = policy or settings.WAREHOUSE_ASSIGNMENT_POLICY
    if policy not in WAREHOUSE_POLICIES:
        raise ValidationError(f"Unknown warehouse assignment policy {policy!r}")
    if not warehouse_id:
        raise ValidationError("Warehouse ID is required")

    order = await get_order(db, order_id)
    if order.status in NOT_CANCELLABLE:
        raise ValidationError(f"Cannot assign a warehouse to a {order.status.value} order")
    if policy == "reallocate" and order.status not in RELEASE_ON_CANCEL:
        raise ValidationError(f"Cannot reallocate a {order.status.value} order")

    old_warehouse = order.warehouse_id
    await _swap_order(db, order, warehouse_id=warehouse_id)

    if policy == "reallocate":
        requests = [
            (allocation.product_id, allocation.quantity)
            for allocation in await list_allocations(db, order.id, AllocationStatus.ACTIVE)
        ]
        await _release_allocations(db, order, actor_id, "REALLOCATION")
        try:
            allocation = await allocate(
                db, order.id, requests,
                performed_by=actor_id,
                order_number=order.order_number,
                warehouse_id=warehouse_id,
            )
        except InsufficientStock:
            await db.rollback()
            raise
        _add_allocation_rows(db, order.id, allocation)

    record_audit(
        db, actor_id, "ASSIGN_WAREHOUSE", "orders", order.id,
        old_values={"warehouse_id": old_warehouse},
        new_values={"warehouse_id": warehouse_id, "policy": policy},
    )
    await db.commit()
    await db.refresh(order)

    logger.info("Order %s assigned to warehouse %s (%s)", order.order_number, warehouse_id, policy)
    return order
