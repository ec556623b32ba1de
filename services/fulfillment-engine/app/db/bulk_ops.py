"""
Fulfillment Engine — Bulk operation executor

Applies one action to many orders or products. The whole request is validated
before anything is touched; afterwards every target runs in its own
transaction, so one failing target never undoes the others.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import EngineError, NotFound, ValidationError
from app.db import order_ops, product_ops
from app.db.audit import record_audit
from app.models.order import Order, OrderStatus

logger = logging.getLogger(__name__)

ENTITY_TYPES = {
    "order": "order",
    "orders": "order",
    "product": "product",
    "products": "product",
}

# action → keys that must be present in action_data
ORDER_ACTIONS: dict[str, tuple[str, ...]] = {
    "update_status": ("status",),
    "cancel": (),
    "assign_warehouse": ("warehouse_id",),
    "export": (),
}
PRODUCT_ACTIONS: dict[str, tuple[str, ...]] = {
    "activate": (),
    "deactivate": (),
    "update_category": ("category",),
    "update_price": ("price",),
    "delete": (),
}


@dataclass
class BulkResult:
    processed: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)

    def fail(self, target_id: str, message: str) -> None:
        self.failed += 1
        self.errors.append({"id": target_id, "error": message})


def _validate(entity_type: str, action: str, target_ids, action_data: dict) -> tuple[str, list[str]]:
    kind = ENTITY_TYPES.get((entity_type or "").lower())
    if kind is None:
        raise ValidationError(f"Invalid entity type {entity_type!r}")
    if not target_ids:
        raise ValidationError("No item IDs provided")

    actions = ORDER_ACTIONS if kind == "order" else PRODUCT_ACTIONS
    if action not in actions:
        raise ValidationError(f"Invalid action {action!r} for {kind}s")
    missing = [key for key in actions[action] if action_data.get(key) in (None, "")]
    if missing:
        raise ValidationError(f"Action {action!r} requires: {', '.join(missing)}")

    if action == "update_status":
        try:
            OrderStatus(action_data["status"])
        except ValueError:
            raise ValidationError(f"Unknown order status {action_data['status']!r}")
    if action == "update_price":
        try:
            price = Decimal(str(action_data["price"]))
        except InvalidOperation:
            raise ValidationError(f"Invalid price {action_data['price']!r}")
        if price <= 0:
            raise ValidationError("Price must be positive")

    # duplicates are processed once, first occurrence wins the position
    return kind, list(dict.fromkeys(str(target_id) for target_id in target_ids))


# ── Per-target handlers ───────────────────────────────────────────────────────
async def _apply_order_action(db: AsyncSession, order_id: str, action: str, data: dict, actor_id) -> None:
    if action == "update_status":
        await order_ops.transition(db, order_id, data["status"], actor_id, data.get("notes"))
    elif action == "cancel":
        await order_ops.transition(db, order_id, OrderStatus.CANCELLED, actor_id,
                                   data.get("notes") or "Cancelled by bulk operation")
    elif action == "assign_warehouse":
        await order_ops.assign_warehouse(db, order_id, data["warehouse_id"], actor_id, data.get("policy"))


async def _apply_product_action(db: AsyncSession, product_id: str, action: str, data: dict, actor_id) -> None:
    if action == "delete":
        await product_ops.delete_product(db, product_id, actor_id)
    else:
        changes = {
            "activate": lambda: {"is_active": True},
            "deactivate": lambda: {"is_active": False},
            "update_category": lambda: {"category": data["category"]},
            "update_price": lambda: {"unit_price": Decimal(str(data["price"]))},
        }[action]()
        await product_ops.update_product(db, product_id, changes, actor_id)
    await db.commit()


async def _existing_order_ids(db: AsyncSession, order_ids: list[str]) -> set[str]:
    result = await db.execute(select(Order.id).where(Order.id.in_(order_ids)))
    return set(result.scalars().all())


# ── Entry point ───────────────────────────────────────────────────────────────
async def execute_bulk(
    db: AsyncSession,
    entity_type: str,
    action: str,
    target_ids,
    action_data: dict | None = None,
    actor_id: str | None = None,
) -> BulkResult:
    action_data = action_data or {}
    kind, ids = _validate(entity_type, action, target_ids, action_data)
    result = BulkResult()

    if kind == "order" and action == "export":
        # read-only: existing orders count as processed, unknown ids fail per item
        found = await _existing_order_ids(db, ids)
        for target_id in ids:
            if target_id in found:
                result.processed += 1
            else:
                result.fail(target_id, NotFound("order", target_id).message)
    else:
        for target_id in ids:
            try:
                if kind == "order":
                    await _apply_order_action(db, target_id, action, action_data, actor_id)
                else:
                    await _apply_product_action(db, target_id, action, action_data, actor_id)
                result.processed += 1
            except EngineError as exc:
                await db.rollback()
                result.fail(target_id, exc.message)
                logger.info("Bulk %s on %s %s failed: %s", action, kind, target_id, exc.message)

    record_audit(
        db, actor_id, f"BULK_{action.upper()}_{kind.upper()}", f"{kind}s", ",".join(ids),
        new_values={
            "ids": ids,
            "action": action,
            "data": action_data,
            "processed": result.processed,
            "failed": result.failed,
        },
    )
    await db.commit()

    logger.info(
        "Bulk %s on %d %s(s): %d processed, %d failed",
        action, len(ids), kind, result.processed, result.failed,
    )
    return result
