"""
Fulfillment Engine — Stock and product schemas
"""
from datetime import date, datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field

from app.models.inventory import MovementType


class ProductCreate(BaseModel):
    merchant_id: str = Field(..., min_length=1)
    sku: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9]+$")
    name: str = Field(..., min_length=1)
    category: str | None = None
    unit_price: Decimal | None = Field(None, gt=0)


class ProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    merchant_id: str
    sku: str
    name: str
    category: str | None
    unit_price: Decimal | None
    is_active: bool


class ReceiveRequest(BaseModel):
    product_id: str
    warehouse_id: str
    quantity: int = Field(..., ge=1)
    batch_number: str | None = None
    expiry_date: date | None = None
    reorder_level: int | None = Field(None, ge=0)
    notes: str | None = None


class AdjustRequest(BaseModel):
    delta: int
    reason: str = Field(..., min_length=1)
    movement_type: MovementType = MovementType.ADJUSTMENT


class TransferRequest(BaseModel):
    to_warehouse_id: str
    quantity: int = Field(..., ge=1)
    notes: str | None = None


class StockItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_id: str
    warehouse_id: str
    batch_number: str | None
    quantity: int
    reserved_quantity: int
    available_quantity: int
    reorder_level: int
    expiry_date: date | None
    version_id: int


class StockListResponse(BaseModel):
    items: list[StockItemResponse]
    page: int
    limit: int
    total: int
    pages: int


class AvailabilityResponse(BaseModel):
    product_id: str
    available_quantity: int


class MovementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    movement_type: MovementType
    quantity: int
    quantity_change: int
    reserved_change: int
    reference_type: str | None
    reference_id: str | None
    performed_by: str | None
    notes: str | None
    created_at: datetime


class ReconciliationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stock_item_id: str
    quantity: int
    reserved_quantity: int
    movement_quantity: int
    movement_reserved: int
    balanced: bool
