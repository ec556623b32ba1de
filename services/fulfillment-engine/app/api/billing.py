"""
Fulfillment Engine — Billing routes

POST /billing/daily-charges runs the same accrual the nightly beat job runs;
repeating it for a date returns the existing records.
"""
from datetime import date
from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import billing_ops
from app.db.database import get_db
from app.schemas.billing import (
    AccrualRequest, AccrualResponse, BillingRecordResponse, DailyChargeSummary, MarkPaidRequest,
)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/daily-charges", response_model=AccrualResponse, status_code=status.HTTP_201_CREATED)
async def accrue_daily_charges(
    payload: AccrualRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str | None = Header(None, alias="X-Actor-Id"),
):
    records = await billing_ops.accrue_daily_charges(db, payload.date, payload.merchant_ids, actor_id)
    return AccrualResponse(
        billing_date=payload.date,
        total_records=len(records),
        billing_records=[BillingRecordResponse.model_validate(record) for record in records],
    )


@router.get("/daily-charges/{merchant_id}", response_model=DailyChargeSummary)
async def get_daily_charges(
    merchant_id: str,
    billing_date: date | None = Query(None, alias="date"),
    db: AsyncSession = Depends(get_db),
):
    return await billing_ops.daily_charge_summary(db, merchant_id, billing_date or date.today())


@router.post("/records/{billing_record_id}/paid", response_model=BillingRecordResponse)
async def mark_paid(
    billing_record_id: str,
    payload: MarkPaidRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str | None = Header(None, alias="X-Actor-Id"),
):
    return await billing_ops.mark_paid(db, billing_record_id, payload.payment_id, actor_id)
