"""
Stock ledger tests

Tests:
  1. Receive opens a slot once per (product, warehouse, batch), NULL batch included
  2. reserve / release / commit keep quantity, reserved and available in balance
  3. Every row reconciles against its movement log
  4. Adjustment guards (reserved floor, damage sign, movement type)
  5. Transfer between warehouses
  6. Low-stock listing compares quantity with each row's own reorder level
"""
import pytest
from sqlalchemy import func, select

from app.core.errors import ConcurrencyConflict, InsufficientStock, NotFound, ValidationError
from app.db import stock_ops
from app.models.audit import AuditLog
from app.models.inventory import MovementType, StockItem, StockMovement


def assert_balanced(item: StockItem):
    assert item.reserved_quantity >= 0
    assert item.reserved_quantity <= item.quantity
    assert item.available_quantity == item.quantity - item.reserved_quantity


# ─── Test 1: Receive ───────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_receive_creates_then_tops_up_same_slot(db, make_product, make_stock):
    product = await make_product()
    first = await make_stock(product.id, "wh-a", 10)
    second = await make_stock(product.id, "wh-a", 5)

    assert first.id == second.id
    assert second.quantity == 15
    assert second.available_quantity == 15
    assert await stock_ops.count_stock_items(db, product.id) == 1

    movements = await stock_ops.list_movements(db, first.id)
    assert [m.reference_type for m in movements] == ["INITIAL_STOCK", "RECEIPT"]
    assert all(m.movement_type is MovementType.STOCK_IN for m in movements)


@pytest.mark.asyncio
async def test_receive_separates_batches(db, make_product, make_stock):
    product = await make_product()
    await make_stock(product.id, "wh-a", 10, batch_number="B1")
    await make_stock(product.id, "wh-a", 10, batch_number="B2")
    await make_stock(product.id, "wh-a", 10)

    assert await stock_ops.count_stock_items(db, product.id) == 3
    assert await stock_ops.get_available(db, product.id) == 30


@pytest.mark.asyncio
async def test_receive_unknown_product(db):
    with pytest.raises(NotFound):
        await stock_ops.receive(db, "missing-product", "wh-a", None, 5)


@pytest.mark.asyncio
async def test_receive_rejects_non_positive_amount(db, make_product):
    product = await make_product()
    with pytest.raises(ValidationError):
        await stock_ops.receive(db, product.id, "wh-a", None, 0)


@pytest.mark.asyncio
async def test_receive_writes_audit_entry(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 10, performed_by="user-1")

    entries = (await db.execute(
        select(AuditLog).where(AuditLog.action == "RECEIVE_STOCK", AuditLog.entity_id == item.id)
    )).scalars().all()
    assert len(entries) == 1
    assert entries[0].actor_id == "user-1"
    assert entries[0].new_values["amount"] == 10


# ─── Test 2: Reservation primitives ────────────────────────────────────────────
@pytest.mark.asyncio
async def test_reserve_moves_units_to_reserved(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 10)

    await stock_ops.reserve(db, item.id, 4, reference_id="order-1")
    await db.commit()

    item = await stock_ops.get_stock_item(db, item.id)
    assert (item.quantity, item.reserved_quantity, item.available_quantity) == (10, 4, 6)
    assert item.version_id == 2
    assert_balanced(item)

    movements = await stock_ops.list_movements(db, item.id)
    assert movements[-1].movement_type is MovementType.STOCK_OUT
    assert movements[-1].quantity == 4
    assert movements[-1].reserved_change == 4
    assert movements[-1].quantity_change == 0


@pytest.mark.asyncio
async def test_reserve_more_than_available(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 3)

    with pytest.raises(InsufficientStock) as exc_info:
        await stock_ops.reserve(db, item.id, 5)
    assert exc_info.value.shortfall == 2
    assert exc_info.value.product_id == product.id


@pytest.mark.asyncio
async def test_release_restores_availability(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 10)
    await stock_ops.reserve(db, item.id, 4)
    await stock_ops.release(db, item.id, 4)
    await db.commit()

    item = await stock_ops.get_stock_item(db, item.id)
    assert (item.quantity, item.reserved_quantity, item.available_quantity) == (10, 0, 10)


@pytest.mark.asyncio
async def test_release_more_than_reserved(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 10)
    await stock_ops.reserve(db, item.id, 2)

    with pytest.raises(ValidationError):
        await stock_ops.release(db, item.id, 3)


@pytest.mark.asyncio
async def test_commit_ships_reserved_units(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 10)
    await stock_ops.reserve(db, item.id, 4)
    await stock_ops.commit(db, item.id, 4)
    await db.commit()

    item = await stock_ops.get_stock_item(db, item.id)
    assert (item.quantity, item.reserved_quantity, item.available_quantity) == (6, 0, 6)


@pytest.mark.asyncio
async def test_stale_snapshot_is_a_conflict(db, session_factory, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 10)

    async with session_factory() as other:
        await stock_ops.reserve(other, item.id, 1)
        await other.commit()

    # item still carries version 1; the row is at version 2
    with pytest.raises(ConcurrencyConflict):
        await stock_ops._apply_delta(db, item, reserved_change=1)


# ─── Test 3: Reconciliation ────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_movement_log_reconciles_after_mixed_operations(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 20)
    await stock_ops.reserve(db, item.id, 5)
    await stock_ops.release(db, item.id, 2)
    await stock_ops.commit(db, item.id, 3)
    await db.commit()
    await stock_ops.adjust(db, item.id, -4, "cycle count")
    await stock_ops.adjust(db, item.id, -1, "dropped", movement_type=MovementType.DAMAGE)
    await make_stock(product.id, "wh-a", 7)

    report = await stock_ops.reconcile(db, item.id)
    assert report.balanced
    assert report.quantity == 20 - 3 - 4 - 1 + 7
    assert report.reserved_quantity == 0

    movement_count = (await db.execute(
        select(func.count(StockMovement.id)).where(StockMovement.stock_item_id == item.id)
    )).scalar_one()
    assert movement_count == 7


# ─── Test 4: Adjustments ───────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_adjust_cannot_go_below_reserved(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 10)
    await stock_ops.reserve(db, item.id, 8)
    await db.commit()

    with pytest.raises(ValidationError):
        await stock_ops.adjust(db, item.id, -3, "shrinkage")

    item = await stock_ops.get_stock_item(db, item.id)
    assert item.quantity == 10


@pytest.mark.asyncio
async def test_adjust_rejects_positive_damage(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 10)
    with pytest.raises(ValidationError):
        await stock_ops.adjust(db, item.id, 2, "found", movement_type=MovementType.DAMAGE)


@pytest.mark.asyncio
async def test_adjust_rejects_order_movement_types(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 10)
    with pytest.raises(ValidationError):
        await stock_ops.adjust(db, item.id, -2, "manual", movement_type=MovementType.STOCK_OUT)


@pytest.mark.asyncio
async def test_adjust_return_adds_units(db, make_product, make_stock):
    product = await make_product()
    item = await make_stock(product.id, "wh-a", 10)
    item = await stock_ops.adjust(db, item.id, 3, "customer return", movement_type=MovementType.RETURN)
    assert item.quantity == 13
    assert item.available_quantity == 13


# ─── Test 5: Transfers ─────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_transfer_moves_available_units(db, make_product, make_stock):
    product = await make_product()
    source = await make_stock(product.id, "wh-a", 10, batch_number="B1")

    source, target = await stock_ops.transfer(db, source.id, "wh-b", 4)

    assert source.quantity == 6
    assert target.quantity == 4
    assert target.warehouse_id == "wh-b"
    assert target.batch_number == "B1"
    assert await stock_ops.get_available(db, product.id) == 10
    assert (await stock_ops.reconcile(db, source.id)).balanced
    assert (await stock_ops.reconcile(db, target.id)).balanced


@pytest.mark.asyncio
async def test_transfer_cannot_take_reserved_units(db, make_product, make_stock):
    product = await make_product()
    source = await make_stock(product.id, "wh-a", 10)
    await stock_ops.reserve(db, source.id, 8)
    await db.commit()

    with pytest.raises(InsufficientStock):
        await stock_ops.transfer(db, source.id, "wh-b", 3)


@pytest.mark.asyncio
async def test_transfer_to_same_warehouse(db, make_product, make_stock):
    product = await make_product()
    source = await make_stock(product.id, "wh-a", 10)
    with pytest.raises(ValidationError):
        await stock_ops.transfer(db, source.id, "wh-a", 1)


# ─── Test 6: Listing ───────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_low_stock_uses_row_reorder_level(db, make_product, make_stock):
    product = await make_product()
    low = await make_stock(product.id, "wh-a", 5, reorder_level=10)
    await make_stock(product.id, "wh-b", 50, reorder_level=10)
    at_level = await make_stock(product.id, "wh-c", 3, reorder_level=3)

    items, total = await stock_ops.list_stock(db, low_stock=True)
    assert total == 2
    assert {item.id for item in items} == {low.id, at_level.id}


@pytest.mark.asyncio
async def test_list_stock_paginates(db, make_product, make_stock):
    product = await make_product()
    for warehouse in ("wh-a", "wh-b", "wh-c"):
        await make_stock(product.id, warehouse, 5)

    items, total = await stock_ops.list_stock(db, product_id=product.id, page=2, limit=2)
    assert total == 3
    assert len(items) == 1
