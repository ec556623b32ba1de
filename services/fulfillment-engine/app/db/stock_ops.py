"""
Fulfillment Engine — Stock ledger with optimistic locking

Every mutation of a stock_items row is a compare-and-swap on version_id:
  - READ:  fetch quantities + version_id
  - CHECK: reject anything that would break the ledger invariants
  - WRITE: UPDATE ... WHERE id = :id AND version_id = <read_version>
  - If another transaction committed first → ConcurrencyConflict → caller retries

reserve/release/commit join the caller's transaction and never commit;
receive/adjust/transfer are complete units of work and commit themselves.
Each mutation appends exactly one StockMovement per touched row.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConcurrencyConflict, InsufficientStock, NotFound, ValidationError
from app.core.optimistic_lock import with_optimistic_retry
from app.db.audit import record_audit
from app.models.inventory import MovementType, Product, StockItem, StockMovement

logger = logging.getLogger(__name__)

ADJUSTABLE_TYPES = {MovementType.ADJUSTMENT, MovementType.DAMAGE, MovementType.RETURN}


@dataclass
class Reconciliation:
    stock_item_id: str
    quantity: int
    reserved_quantity: int
    movement_quantity: int
    movement_reserved: int

    @property
    def balanced(self) -> bool:
        return self.quantity == self.movement_quantity and self.reserved_quantity == self.movement_reserved


# ── Reads ─────────────────────────────────────────────────────────────────────
async def get_stock_item(db: AsyncSession, stock_item_id: str) -> StockItem:
    """Load the row as it is in the database right now, bypassing the identity map."""
    result = await db.execute(
        select(StockItem)
        .where(StockItem.id == stock_item_id)
        .execution_options(populate_existing=True)
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise NotFound("stock_item", stock_item_id)
    return item


async def get_available(db: AsyncSession, product_id: str) -> int:
    """Sum of available units for a product across every warehouse and batch."""
    result = await db.execute(
        select(func.coalesce(func.sum(StockItem.available_quantity), 0))
        .where(StockItem.product_id == product_id)
    )
    return int(result.scalar_one())


async def count_stock_items(db: AsyncSession, product_id: str) -> int:
    result = await db.execute(select(func.count(StockItem.id)).where(StockItem.product_id == product_id))
    return int(result.scalar_one())


async def list_candidates(
    db: AsyncSession,
    product_id: str,
    strategy: str = "fifo",
    warehouse_id: str | None = None,
) -> list[StockItem]:
    """Stock items that can still give units, in allocation order."""
    query = select(StockItem).where(
        StockItem.product_id == product_id,
        StockItem.available_quantity > 0,
    )
    if warehouse_id is not None:
        query = query.where(StockItem.warehouse_id == warehouse_id)
    if strategy == "fefo":
        query = query.order_by(
            StockItem.expiry_date.is_(None),
            StockItem.expiry_date,
            StockItem.created_at,
            StockItem.id,
        )
    else:
        query = query.order_by(StockItem.created_at, StockItem.id)
    result = await db.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def list_stock(
    db: AsyncSession,
    *,
    warehouse_id: str | None = None,
    product_id: str | None = None,
    low_stock: bool = False,
    expired: bool = False,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[StockItem], int]:
    """Paginated stock listing. Low stock compares two columns of the same row in SQL."""
    conditions = []
    if warehouse_id:
        conditions.append(StockItem.warehouse_id == warehouse_id)
    if product_id:
        conditions.append(StockItem.product_id == product_id)
    if low_stock:
        conditions.append(StockItem.quantity <= StockItem.reorder_level)
    if expired:
        conditions.append(StockItem.expiry_date < date.today())

    total = (await db.execute(select(func.count(StockItem.id)).where(*conditions))).scalar_one()
    result = await db.execute(
        select(StockItem)
        .where(*conditions)
        .order_by(StockItem.updated_at.desc(), StockItem.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total)


async def list_movements(db: AsyncSession, stock_item_id: str) -> list[StockMovement]:
    result = await db.execute(
        select(StockMovement)
        .where(StockMovement.stock_item_id == stock_item_id)
        .order_by(StockMovement.created_at, StockMovement.id)
    )
    return list(result.scalars().all())


async def reconcile(db: AsyncSession, stock_item_id: str) -> Reconciliation:
    """Replay the movement log against the row's current quantities."""
    item = await get_stock_item(db, stock_item_id)
    sums = (await db.execute(
        select(
            func.coalesce(func.sum(StockMovement.quantity_change), 0),
            func.coalesce(func.sum(StockMovement.reserved_change), 0),
        ).where(StockMovement.stock_item_id == stock_item_id)
    )).one()
    report = Reconciliation(
        stock_item_id=item.id,
        quantity=item.quantity,
        reserved_quantity=item.reserved_quantity,
        movement_quantity=int(sums[0]),
        movement_reserved=int(sums[1]),
    )
    if not report.balanced:
        logger.error("Stock item %s does not reconcile: %s", stock_item_id, report)
    return report


# ── Row mutation primitive ─────────────────────────────────────────────────────
async def _apply_delta(
    db: AsyncSession,
    item: StockItem,
    *,
    quantity_change: int = 0,
    reserved_change: int = 0,
) -> StockItem:
    """
    Optimistically update one stock row: WHERE version_id = <snapshot_version>.
    Invariants are checked against the snapshot before the write is attempted.
    """
    new_quantity = item.quantity + quantity_change
    new_reserved = item.reserved_quantity + reserved_change
    if new_reserved < 0 or new_reserved > new_quantity:
        raise ValidationError(
            f"Stock item '{item.id}' would end with quantity={new_quantity}, reserved={new_reserved}"
        )

    item_id, current_version = item.id, item.version_id
    result = await db.execute(
        update(StockItem)
        .where(StockItem.id == item_id, StockItem.version_id == current_version)
        .values(
            quantity=new_quantity,
            reserved_quantity=new_reserved,
            available_quantity=new_quantity - new_reserved,
            version_id=current_version + 1,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        # Lost the race; item is expired after the rollback
        await db.rollback()
        raise ConcurrencyConflict(f"Stock item '{item_id}' changed concurrently (version {current_version}).")

    await db.refresh(item)
    return item


def _movement(
    item: StockItem,
    movement_type: MovementType,
    quantity: int,
    *,
    quantity_change: int = 0,
    reserved_change: int = 0,
    reference_type: str | None = None,
    reference_id: str | None = None,
    performed_by: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    return StockMovement(
        stock_item_id=item.id,
        movement_type=movement_type,
        quantity=quantity,
        quantity_change=quantity_change,
        reserved_change=reserved_change,
        reference_type=reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
        notes=notes,
    )


def _require_positive(amount: int, what: str) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError(f"{what} must be a positive integer, got {amount!r}")


# ── Reservation primitives (caller owns the transaction) ──────────────────────
async def reserve(
    db: AsyncSession,
    stock_item_id: str,
    amount: int,
    *,
    reference_type: str = "ORDER",
    reference_id: str | None = None,
    performed_by: str | None = None,
    notes: str | None = None,
) -> StockItem:
    """Move units from available to reserved on one stock item."""
    _require_positive(amount, "Reservation amount")
    item = await get_stock_item(db, stock_item_id)
    if amount > item.available_quantity:
        raise InsufficientStock(item.product_id, amount - item.available_quantity)

    await _apply_delta(db, item, reserved_change=amount)
    db.add(_movement(
        item, MovementType.STOCK_OUT, amount,
        reserved_change=amount,
        reference_type=reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
        notes=notes,
    ))
    return item


async def release(
    db: AsyncSession,
    stock_item_id: str,
    amount: int,
    *,
    reference_type: str = "ORDER_CANCELLED",
    reference_id: str | None = None,
    performed_by: str | None = None,
    notes: str | None = None,
) -> StockItem:
    """Inverse of reserve: reserved units become available again."""
    _require_positive(amount, "Release amount")
    item = await get_stock_item(db, stock_item_id)
    if amount > item.reserved_quantity:
        raise ValidationError(
            f"Cannot release {amount} from stock item '{item.id}': only {item.reserved_quantity} reserved"
        )

    await _apply_delta(db, item, reserved_change=-amount)
    db.add(_movement(
        item, MovementType.RETURN, amount,
        reserved_change=-amount,
        reference_type=reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
        notes=notes,
    ))
    return item


async def commit(
    db: AsyncSession,
    stock_item_id: str,
    amount: int,
    *,
    reference_type: str = "SHIPMENT",
    reference_id: str | None = None,
    performed_by: str | None = None,
    notes: str | None = None,
) -> StockItem:
    """Reserved units physically leave the warehouse."""
    _require_positive(amount, "Commit amount")
    item = await get_stock_item(db, stock_item_id)
    if amount > item.reserved_quantity:
        raise ValidationError(
            f"Cannot ship {amount} from stock item '{item.id}': only {item.reserved_quantity} reserved"
        )

    await _apply_delta(db, item, quantity_change=-amount, reserved_change=-amount)
    db.add(_movement(
        item, MovementType.STOCK_OUT, amount,
        quantity_change=-amount,
        reserved_change=-amount,
        reference_type=reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
        notes=notes,
    ))
    return item


# ── Units of work (commit themselves, retried on conflict) ────────────────────
async def _find_slot(
    db: AsyncSession, product_id: str, warehouse_id: str, batch_number: str | None
) -> StockItem | None:
    query = select(StockItem).where(
        StockItem.product_id == product_id,
        StockItem.warehouse_id == warehouse_id,
    )
    if batch_number is None:
        query = query.where(StockItem.batch_number.is_(None))
    else:
        query = query.where(StockItem.batch_number == batch_number)
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def _open_slot(db: AsyncSession, item: StockItem) -> StockItem:
    """Insert a new stock row; losing the insert race is a concurrency conflict."""
    product_id, warehouse_id = item.product_id, item.warehouse_id
    db.add(item)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise ConcurrencyConflict(
            f"Stock slot for product '{product_id}' at '{warehouse_id}' created concurrently."
        )
    return item


@with_optimistic_retry()
async def receive(
    db: AsyncSession,
    product_id: str,
    warehouse_id: str,
    batch_number: str | None,
    amount: int,
    *,
    performed_by: str | None = None,
    expiry_date: date | None = None,
    reorder_level: int | None = None,
    notes: str | None = None,
    reference_id: str | None = None,
) -> StockItem:
    """Book incoming units, creating the (product, warehouse, batch) row on first intake."""
    _require_positive(amount, "Received amount")
    if (await db.get(Product, product_id)) is None:
        raise NotFound("product", product_id)

    item = await _find_slot(db, product_id, warehouse_id, batch_number)
    if item is None:
        item = await _open_slot(db, StockItem(
            product_id=product_id,
            warehouse_id=warehouse_id,
            batch_number=batch_number,
            quantity=amount,
            reserved_quantity=0,
            available_quantity=amount,
            reorder_level=reorder_level if reorder_level is not None else 10,
            expiry_date=expiry_date,
        ))
        reference_type = "INITIAL_STOCK"
    else:
        await _apply_delta(db, item, quantity_change=amount)
        reference_type = "RECEIPT"

    db.add(_movement(
        item, MovementType.STOCK_IN, amount,
        quantity_change=amount,
        reference_type=reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
        notes=notes or ("Initial stock entry" if reference_type == "INITIAL_STOCK" else None),
    ))
    record_audit(
        db, performed_by, "RECEIVE_STOCK", "stock_items", item.id,
        new_values={"product_id": product_id, "warehouse_id": warehouse_id,
                    "batch_number": batch_number, "amount": amount, "quantity": item.quantity},
    )
    await db.commit()
    logger.info("Received %d of %s into %s (batch=%s)", amount, product_id, warehouse_id, batch_number)
    return item


@with_optimistic_retry()
async def adjust(
    db: AsyncSession,
    stock_item_id: str,
    delta: int,
    reason: str,
    *,
    movement_type: MovementType = MovementType.ADJUSTMENT,
    performed_by: str | None = None,
) -> StockItem:
    """Correct a row outside the order flow (count, write-off, damage, restock)."""
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise ValidationError("Adjustment delta must be a non-zero integer")
    movement_type = MovementType(movement_type)
    if movement_type not in ADJUSTABLE_TYPES:
        raise ValidationError(f"{movement_type.value} is not an adjustment movement type")
    if movement_type is MovementType.DAMAGE and delta > 0:
        raise ValidationError("Damage write-offs must reduce stock")
    if not reason:
        raise ValidationError("Adjustment reason is required")

    item = await get_stock_item(db, stock_item_id)
    old_quantity = item.quantity
    if old_quantity + delta < item.reserved_quantity:
        raise ValidationError(
            f"Adjustment of {delta} would leave {old_quantity + delta} units "
            f"but {item.reserved_quantity} are reserved"
        )

    await _apply_delta(db, item, quantity_change=delta)
    db.add(_movement(
        item, movement_type, abs(delta),
        quantity_change=delta,
        reference_type=movement_type.value,
        performed_by=performed_by,
        notes=reason,
    ))
    record_audit(
        db, performed_by, "ADJUST_STOCK", "stock_items", item.id,
        old_values={"quantity": old_quantity},
        new_values={"quantity": item.quantity, "delta": delta, "reason": reason,
                    "movement_type": movement_type.value},
    )
    await db.commit()
    logger.info("Adjusted stock item %s by %d (%s)", stock_item_id, delta, reason)
    return item


@with_optimistic_retry()
async def transfer(
    db: AsyncSession,
    stock_item_id: str,
    to_warehouse_id: str,
    amount: int,
    *,
    performed_by: str | None = None,
    notes: str | None = None,
) -> tuple[StockItem, StockItem]:
    """Move available units of one batch to another warehouse in one transaction."""
    _require_positive(amount, "Transfer amount")
    source = await get_stock_item(db, stock_item_id)
    if source.warehouse_id == to_warehouse_id:
        raise ValidationError("Source and destination warehouse are the same")
    if amount > source.available_quantity:
        raise InsufficientStock(source.product_id, amount - source.available_quantity)

    await _apply_delta(db, source, quantity_change=-amount)

    target = await _find_slot(db, source.product_id, to_warehouse_id, source.batch_number)
    if target is None:
        target = await _open_slot(db, StockItem(
            product_id=source.product_id,
            warehouse_id=to_warehouse_id,
            batch_number=source.batch_number,
            quantity=amount,
            reserved_quantity=0,
            available_quantity=amount,
            reorder_level=source.reorder_level,
            expiry_date=source.expiry_date,
        ))
    else:
        await _apply_delta(db, target, quantity_change=amount)

    db.add(_movement(
        source, MovementType.TRANSFER, amount, quantity_change=-amount,
        reference_type="TRANSFER", reference_id=target.id, performed_by=performed_by, notes=notes,
    ))
    db.add(_movement(
        target, MovementType.TRANSFER, amount, quantity_change=amount,
        reference_type="TRANSFER", reference_id=source.id, performed_by=performed_by, notes=notes,
    ))
    record_audit(
        db, performed_by, "TRANSFER_STOCK", "stock_items", source.id,
        new_values={"to_stock_item_id": target.id, "to_warehouse_id": to_warehouse_id, "amount": amount},
    )
    await db.commit()
    logger.info("Transferred %d of %s from %s to %s", amount, source.product_id, source.warehouse_id, to_warehouse_id)
    return source, target
