"""Celery task definitions for scheduled ledger maintenance."""

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from microledger.config import settings
from microledger.logging_config import setup_logging

celery_app = Celery(
    "microledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.business_timezone,
    enable_utc=True,
)

# Periodic beat schedule (business timezone)
celery_app.conf.beat_schedule = {
    "mark-overdue-sub-loans": {
        "task": "microledger.tasks.ledger_tasks.mark_overdue",
        "schedule": crontab(hour=0, minute=5),  # just after midnight
    },
    "repair-wallet-balances": {
        "task": "microledger.tasks.ledger_tasks.repair_balances",
        "schedule": crontab(hour=3, minute=0, day_of_week=0),  # Weekly Sunday 3 AM
    },
}


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    setup_logging(settings.log_level, settings.log_format)


# Import tasks so they get registered
from microledger.tasks.ledger_tasks import *  # noqa
