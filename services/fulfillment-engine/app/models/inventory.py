"""
Fulfillment Engine — Catalogue and stock ledger models

[CONFIG DATA]        products — merchant catalogue
[TRANSACTIONAL DATA] stock_items — one row per (product, warehouse, batch)
[TRANSACTIONAL DATA] stock_movements — append-only ledger, never updated
"""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from sqlalchemy import (
    CheckConstraint, Date, DateTime, Enum, Index, Integer, Numeric, String, Text, func,
)
from sqlalchemy.orm import Mapped, mapped_column
from app.db.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MovementType(str, PyEnum):
    STOCK_IN = "STOCK_IN"
    STOCK_OUT = "STOCK_OUT"
    ADJUSTMENT = "ADJUSTMENT"
    TRANSFER = "TRANSFER"
    DAMAGE = "DAMAGE"
    RETURN = "RETURN"


class Product(Base):
    """
    [CONFIG DATA] — Catalogue entry owned by a merchant.
    Deleted only while no stock item and no order item references it.
    """
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    merchant_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    sku: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class StockItem(Base):
    """
    [TRANSACTIONAL DATA] — the ledger's unit of truth.
    available_quantity is always quantity - reserved_quantity.
    version_id is the optimistic locking column — incremented on every update.
    """
    __tablename__ = "stock_items"
    __table_args__ = (
        CheckConstraint("reserved_quantity >= 0", name="ck_stock_items_reserved_non_negative"),
        CheckConstraint("reserved_quantity <= quantity", name="ck_stock_items_reserved_within_quantity"),
        CheckConstraint(
            "available_quantity = quantity - reserved_quantity", name="ck_stock_items_available_balance"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    product_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    warehouse_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    batch_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reorder_level: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # optimistic lock
    # FIFO allocation order
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


# "no batch" is its own bucket, so NULL batches must collide as well
Index(
    "uq_stock_items_slot",
    StockItem.product_id,
    StockItem.warehouse_id,
    func.coalesce(StockItem.batch_number, ""),
    unique=True,
)


class StockMovement(Base):
    """
    [TRANSACTIONAL DATA] — append-only audit trail of every stock mutation.
    sum(quantity_change) == stock_items.quantity and
    sum(reserved_change) == stock_items.reserved_quantity at any audit point.
    """
    __tablename__ = "stock_movements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    stock_item_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    movement_type: Mapped[MovementType] = mapped_column(
        Enum(MovementType, name="movement_type"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)  # units moved, as recorded
    quantity_change: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_change: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    performed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
