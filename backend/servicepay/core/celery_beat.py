# core/celery_beat.py
from celery.schedules import crontab

from servicepay.core.celery_app import celery_app
from servicepay.core.config import settings

celery_app.conf.beat_schedule = {}

if settings.CLEANUP_INTERVAL_MINUTES > 0:
    celery_app.conf.beat_schedule["sweep-stale-payments"] = {
        "task": "servicepay.tasks.cleanup_celery.sweep_payments_task",
        "schedule": crontab(minute=f"*/{settings.CLEANUP_INTERVAL_MINUTES}"),
    }
