"""
Fulfillment Engine — Daily service charge accrual

One DAILY_SERVICE_FEE billing record per merchant per day, priced from the
merchant's active service subscriptions. Re-running a day is harmless: the
partial unique index on (merchant_id, due_date) makes the second insert fail,
and that failure means "already billed".
"""
import calendar
import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound, ValidationError
from app.db.audit import record_audit
from app.models.billing import (
    BillingRecord, BillingStatus, BillingType, MerchantServiceSubscription, SubscriptionStatus,
)

logger = logging.getLogger(__name__)


async def active_subscriptions(
    db: AsyncSession, billing_date: date, merchant_ids: list[str] | None = None
) -> list[MerchantServiceSubscription]:
    """Subscriptions billable on billing_date: ACTIVE, started, not yet ended."""
    query = select(MerchantServiceSubscription).where(
        MerchantServiceSubscription.status == SubscriptionStatus.ACTIVE,
        MerchantServiceSubscription.start_date <= billing_date,
        or_(
            MerchantServiceSubscription.end_date.is_(None),
            MerchantServiceSubscription.end_date >= billing_date,
        ),
    )
    if merchant_ids:
        query = query.where(MerchantServiceSubscription.merchant_id.in_(merchant_ids))
    result = await db.execute(query.order_by(MerchantServiceSubscription.merchant_id))
    return list(result.scalars().all())


async def _existing_daily_fee(db: AsyncSession, merchant_id: str, billing_date: date) -> BillingRecord | None:
    result = await db.execute(
        select(BillingRecord)
        .where(
            BillingRecord.merchant_id == merchant_id,
            BillingRecord.due_date == billing_date,
            BillingRecord.billing_type == BillingType.DAILY_SERVICE_FEE,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _daily_amount(subscriptions: list[MerchantServiceSubscription]) -> Decimal:
    return sum((sub.price_at_subscription * sub.quantity for sub in subscriptions), Decimal("0"))


async def accrue_daily_charges(
    db: AsyncSession,
    billing_date: date,
    merchant_ids: list[str] | None = None,
    actor_id: str | None = None,
) -> list[BillingRecord]:
    """
    Bill every target merchant for billing_date.
    Returns the day's fee record of each billed merchant, created now or earlier.
    """
    if billing_date is None:
        raise ValidationError("Billing date is required")

    by_merchant: dict[str, list[MerchantServiceSubscription]] = defaultdict(list)
    for subscription in await active_subscriptions(db, billing_date, merchant_ids):
        by_merchant[subscription.merchant_id].append(subscription)

    # priced up front: a rollback below expires the loaded subscriptions
    amounts = {merchant_id: _daily_amount(subs) for merchant_id, subs in by_merchant.items()}

    records: list[BillingRecord] = []
    created = 0
    rolled_back = False
    for merchant_id, amount in amounts.items():
        if amount <= 0:
            continue

        existing = await _existing_daily_fee(db, merchant_id, billing_date)
        if existing is not None:
            records.append(existing)
            continue

        record = BillingRecord(
            merchant_id=merchant_id,
            billing_type=BillingType.DAILY_SERVICE_FEE,
            description=f"Daily service charges for {billing_date.isoformat()}",
            amount=amount,
            due_date=billing_date,
            status=BillingStatus.PENDING,
        )
        db.add(record)
        try:
            await db.flush()
            record_audit(
                db, actor_id, "ACCRUE_DAILY_CHARGE", "billing_records", record.id,
                new_values={
                    "merchant_id": merchant_id,
                    "due_date": billing_date,
                    "amount": str(amount),
                    "subscriptions": len(by_merchant[merchant_id]),
                },
            )
            await db.commit()
        except IntegrityError:
            # a concurrent run billed this merchant first
            await db.rollback()
            rolled_back = True
            existing = await _existing_daily_fee(db, merchant_id, billing_date)
            if existing is None:
                raise
            logger.info("Merchant %s already billed for %s", merchant_id, billing_date)
            records.append(existing)
            continue
        created += 1
        records.append(record)

    if rolled_back:
        # the rollback expired every record collected before it
        for record in records:
            await db.refresh(record)

    logger.info(
        "Daily accrual for %s: %d merchant(s) with subscriptions, %d record(s) created, %d already billed",
        billing_date, len(by_merchant), created, len(records) - created,
    )
    return records


async def daily_charge_summary(db: AsyncSession, merchant_id: str, billing_date: date) -> dict:
    """Per-subscription breakdown for one day plus the month's unpaid daily fees."""
    subscriptions = await active_subscriptions(db, billing_date, [merchant_id])
    daily_charges = [
        {
            "service_id": sub.service_id,
            "service_name": sub.service_name,
            "quantity": sub.quantity,
            "daily_price": sub.price_at_subscription,
            "total_daily_charge": sub.price_at_subscription * sub.quantity,
        }
        for sub in subscriptions
    ]

    month_start = billing_date.replace(day=1)
    month_end = billing_date.replace(day=calendar.monthrange(billing_date.year, billing_date.month)[1])
    result = await db.execute(
        select(BillingRecord.amount).where(
            BillingRecord.merchant_id == merchant_id,
            BillingRecord.billing_type == BillingType.DAILY_SERVICE_FEE,
            BillingRecord.status == BillingStatus.PENDING,
            BillingRecord.due_date >= month_start,
            BillingRecord.due_date <= month_end,
        )
    )
    accumulated = sum(result.scalars().all(), Decimal("0"))

    return {
        "merchant_id": merchant_id,
        "date": billing_date,
        "daily_charges": daily_charges,
        "total_daily_charge": _daily_amount(subscriptions),
        "accumulated_charges": accumulated,
        "subscriptions": len(subscriptions),
    }


async def mark_paid(
    db: AsyncSession, billing_record_id: str, payment_id: str, actor_id: str | None = None
) -> BillingRecord:
    """PENDING → PAID, the only transition a billing record ever makes."""
    if not payment_id:
        raise ValidationError("Payment ID is required")
    record = await db.get(BillingRecord, billing_record_id)
    if record is None:
        raise NotFound("billing_record", billing_record_id)
    if record.status is not BillingStatus.PENDING:
        raise ValidationError(f"Billing record '{billing_record_id}' is already {record.status.value}")

    record.status = BillingStatus.PAID
    record.paid_at = datetime.now(timezone.utc)
    record.payment_id = payment_id
    record_audit(
        db, actor_id, "MARK_BILLING_PAID", "billing_records", record.id,
        old_values={"status": BillingStatus.PENDING.value},
        new_values={"status": BillingStatus.PAID.value, "payment_id": payment_id},
    )
    await db.commit()
    logger.info("Billing record %s paid by %s", record.id, payment_id)
    return record
