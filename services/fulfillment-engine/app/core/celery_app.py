"""
Fulfillment Engine — Celery application

Uses Redis as both broker and result backend.
Beat triggers the daily billing accrual; workers run in separate containers.
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "fulfillment_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.billing_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,           # Only ack after task completes (fault-tolerant)
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,  # One task at a time per worker
    task_track_started=True,
    beat_schedule={
        "accrue-daily-service-charges": {
            "task": "billing.accrue_daily_charges",
            "schedule": crontab(hour=settings.BILLING_CRON_HOUR, minute=settings.BILLING_CRON_MINUTE),
        },
    },
)
