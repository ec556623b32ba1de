"""
Fulfillment Engine — Celery tasks (daily billing accrual)

Beat fires accrue_daily_charges once a day; a worker in its own container
runs the async accrual on a short-lived engine and reports what was billed.
"""
import asyncio
import logging
from datetime import date, datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.db.billing_ops import accrue_daily_charges

settings = get_settings()
logger = logging.getLogger(__name__)

BILLING_ACTOR = "system:billing-cron"


async def _run_accrual(billing_date: date, merchant_ids: list[str] | None) -> list[str]:
    # Each asyncio.run() gets its own loop, so connections must not outlive it
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    try:
        session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
        async with session_factory() as session:
            records = await accrue_daily_charges(session, billing_date, merchant_ids, BILLING_ACTOR)
            return [record.id for record in records]
    finally:
        await engine.dispose()


@celery_app.task(
    name="billing.accrue_daily_charges",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
)
def accrue_daily_charges_task(self, billing_date: str | None = None, merchant_ids: list[str] | None = None):
    """
    billing_date: ISO date, defaults to today (UTC).
    Safe to retry: merchants already billed for the date are skipped.
    """
    day = date.fromisoformat(billing_date) if billing_date else datetime.now(timezone.utc).date()
    try:
        record_ids = asyncio.run(_run_accrual(day, merchant_ids))
    except Exception as exc:
        logger.exception("Daily accrual for %s failed", day)
        raise self.retry(exc=exc)

    logger.info("Daily accrual for %s: %d billing record(s)", day, len(record_ids))
    return {"billing_date": day.isoformat(), "billing_record_ids": record_ids}
