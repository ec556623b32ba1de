"""
Fulfillment Engine — Billing schemas
"""
from datetime import date, datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field

from app.models.billing import BillingStatus, BillingType


class AccrualRequest(BaseModel):
    date: date
    merchant_ids: list[str] | None = None


class BillingRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    merchant_id: str
    billing_type: BillingType
    description: str | None
    amount: Decimal
    due_date: date
    status: BillingStatus
    paid_at: datetime | None
    payment_id: str | None


class AccrualResponse(BaseModel):
    billing_date: date
    total_records: int
    billing_records: list[BillingRecordResponse]


class MarkPaidRequest(BaseModel):
    payment_id: str = Field(..., min_length=1)


class DailyCharge(BaseModel):
    service_id: str
    service_name: str | None
    quantity: int
    daily_price: Decimal
    total_daily_charge: Decimal


class DailyChargeSummary(BaseModel):
    merchant_id: str
    date: date
    daily_charges: list[DailyCharge]
    total_daily_charge: Decimal
    accumulated_charges: Decimal
    subscriptions: int
