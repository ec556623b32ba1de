"""
Fulfillment Engine — Order schemas
"""
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.order import AllocationStatus, OrderStatus, PaymentMethod


class ShippingAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    country: str = "Nigeria"
    postal_code: str | None = None


class OrderItemRequest(BaseModel):
    product_id: str = Field(..., min_length=1, examples=["prod-001"])
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., gt=0)


class OrderCreate(BaseModel):
    merchant_id: str = Field(..., min_length=1)
    customer_name: str = Field(..., min_length=1)
    customer_email: EmailStr | None = None
    customer_phone: str = Field(..., min_length=1)
    shipping_address: ShippingAddress | None = None
    items: list[OrderItemRequest] = Field(..., min_length=1)
    delivery_fee: Decimal = Field(Decimal("0"), ge=0)
    payment_method: PaymentMethod = PaymentMethod.COD
    notes: str | None = Field(None, max_length=1000)


class OrderTransitionRequest(BaseModel):
    status: OrderStatus
    notes: str | None = Field(None, max_length=500)


class AssignWarehouseRequest(BaseModel):
    warehouse_id: str = Field(..., min_length=1)
    policy: str | None = Field(None, pattern="^(record_only|reallocate)$")


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: str
    merchant_id: str
    customer_name: str
    customer_email: str | None
    customer_phone: str
    shipping_address: dict | None
    order_value: Decimal
    delivery_fee: Decimal
    total_amount: Decimal
    payment_method: PaymentMethod
    status: OrderStatus
    warehouse_id: str | None
    notes: str | None
    delivered_at: datetime | None
    cancelled_at: datetime | None
    items: list[OrderItemResponse]


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: OrderStatus
    updated_by: str | None
    notes: str | None
    created_at: datetime


class AllocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    stock_item_id: str
    warehouse_id: str
    quantity: int
    status: AllocationStatus
