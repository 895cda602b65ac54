from celery import Celery
from celery.schedules import crontab

from ledgerflow.core.config import settings

celery_app = Celery(
    "ledgerflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "incremental-sync-daily": {
        "task": "ledgerflow.services.sync.sync_all_tenants",
        "schedule": crontab(hour=5, minute=30),
        "args": ("incremental",),
    },
    # Reconciliation is the most upstream-expensive mode: weekly, off-peak
    "reconciliation-weekly": {
        "task": "ledgerflow.services.sync.sync_all_tenants",
        "schedule": crontab(hour=2, minute=0, day_of_week=0),
        "args": ("reconciliation",),
    },
}

# Explicitly include task modules so the worker registers them on startup.
# autodiscover_tasks() only looks for a "tasks.py" file, which we don't use.
celery_app.conf.include = [
    "ledgerflow.services.sync",
]
