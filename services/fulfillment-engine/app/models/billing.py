"""
Fulfillment Engine — Billing models

[CONFIG DATA]        merchant_service_subscriptions — read model, written by the subscription service
[TRANSACTIONAL DATA] billing_records — one DAILY_SERVICE_FEE per merchant per due date
"""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from sqlalchemy import Date, DateTime, Enum, Index, Integer, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from app.db.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class BillingType(str, PyEnum):
    DAILY_SERVICE_FEE = "DAILY_SERVICE_FEE"
    SUBSCRIPTION = "SUBSCRIPTION"


class BillingStatus(str, PyEnum):
    PENDING = "PENDING"
    PAID = "PAID"


class MerchantServiceSubscription(Base):
    """
    [CONFIG DATA] — A merchant's subscription to a billable service.
    price_at_subscription is the per-day price captured when subscribing.
    """
    __tablename__ = "merchant_service_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    merchant_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    service_id: Mapped[str] = mapped_column(String(36), nullable=False)
    service_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, name="subscription_status"), default=SubscriptionStatus.ACTIVE, nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    price_at_subscription: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class BillingRecord(Base):
    """
    [TRANSACTIONAL DATA] — created PENDING by the accrual engine,
    moved to PAID only by the payment collaborator.
    """
    __tablename__ = "billing_records"
    __table_args__ = (
        Index(
            "uq_billing_records_daily_fee",
            "merchant_id",
            "due_date",
            unique=True,
            postgresql_where=text("billing_type = 'DAILY_SERVICE_FEE'"),
            sqlite_where=text("billing_type = 'DAILY_SERVICE_FEE'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    merchant_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    billing_type: Mapped[BillingType] = mapped_column(Enum(BillingType, name="billing_type"), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BillingStatus] = mapped_column(
        Enum(BillingStatus, name="billing_status"), default=BillingStatus.PENDING, nullable=False
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
