"""
Fulfillment Engine — Reservation allocator

Turns an order's line items into reservations against the stock ledger.

Two phases inside the caller's transaction:
  1. PLAN:    walk each product's candidate rows in allocation order and
              take min(remaining, available) from each; any shortfall
              raises InsufficientStock before a single write happens.
  2. RESERVE: reserve every planned line. Each reserve is a version-checked
              UPDATE, so a plan built on a stale read can never commit.
              Any failure here rolls back the whole transaction, so no
              partial reservation survives, and the caller retries the
              entire operation.
"""
import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.errors import ConcurrencyConflict, InsufficientStock, ValidationError
from app.db import stock_ops

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class AllocationLine:
    product_id: str
    stock_item_id: str
    warehouse_id: str
    amount: int


@dataclass
class AllocationResult:
    order_id: str
    lines: list[AllocationLine] = field(default_factory=list)

    @property
    def warehouse_ids(self) -> list[str]:
        seen: list[str] = []
        for line in self.lines:
            if line.warehouse_id not in seen:
                seen.append(line.warehouse_id)
        return seen

    def reserved_for(self, product_id: str) -> int:
        return sum(line.amount for line in self.lines if line.product_id == product_id)


def merge_requests(items) -> dict[str, int]:
    """Collapse (product_id, quantity) requests per product, keeping first-seen order."""
    required: dict[str, int] = {}
    for product_id, quantity in items:
        if not product_id:
            raise ValidationError("Every line item needs a product_id")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError(f"Quantity for product '{product_id}' must be a positive integer")
        required[product_id] = required.get(product_id, 0) + quantity
    if not required:
        raise ValidationError("At least one line item is required")
    return required


async def plan_allocation(
    db: AsyncSession,
    order_id: str,
    required: dict[str, int],
    *,
    strategy: str | None = None,
    warehouse_id: str | None = None,
) -> AllocationResult:
    """Greedy plan over current candidates. Read-only."""
    strategy = strategy or settings.ALLOCATION_STRATEGY
    plan = AllocationResult(order_id=order_id)

    for product_id, needed in required.items():
        remaining = needed
        for candidate in await stock_ops.list_candidates(db, product_id, strategy, warehouse_id):
            if remaining <= 0:
                break
            take = min(remaining, candidate.available_quantity)
            plan.lines.append(AllocationLine(
                product_id=product_id,
                stock_item_id=candidate.id,
                warehouse_id=candidate.warehouse_id,
                amount=take,
            ))
            remaining -= take

        if remaining > 0:
            logger.info(
                "Allocation for order %s short by %d on product %s", order_id, remaining, product_id
            )
            raise InsufficientStock(product_id, remaining)

    return plan


async def allocate(
    db: AsyncSession,
    order_id: str,
    items,
    *,
    performed_by: str | None = None,
    order_number: str | None = None,
    strategy: str | None = None,
    warehouse_id: str | None = None,
) -> AllocationResult:
    """
    Reserve every requested unit or none of them.

    items: iterable of (product_id, quantity).
    Does not commit; the caller commits once its own rows are written.
    """
    required = merge_requests(items)
    plan = await plan_allocation(db, order_id, required, strategy=strategy, warehouse_id=warehouse_id)

    try:
        for line in plan.lines:
            await stock_ops.reserve(
                db,
                line.stock_item_id,
                line.amount,
                reference_type="ORDER",
                reference_id=order_id,
                performed_by=performed_by,
                notes=f"Reserved for order {order_number or order_id}",
            )
    except InsufficientStock:
        # Candidate drained between plan and reserve; nothing of this order may survive
        await db.rollback()
        raise ConcurrencyConflict(f"Stock for order {order_id} changed during allocation.")

    logger.info(
        "Allocated order %s: %d line(s) across warehouses %s",
        order_id, len(plan.lines), ", ".join(plan.warehouse_ids),
    )
    return plan
