"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from wms_sync.core.config import settings

celery_app = Celery(
    "wms_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["wms_sync.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.conf.beat_schedule = {
    "process-webhook-queue-every-minute": {
        "task": "wms_sync.workers.tasks.process_webhook_queue",
        "schedule": 60.0,
    },
    # jobs שנתקעו ב-processing חוזרים לתור
    "reset-stuck-webhooks-every-5-minutes": {
        "task": "wms_sync.workers.tasks.reset_stuck_webhooks",
        "schedule": 300.0,
    },
    "cleanup-webhook-jobs-daily": {
        "task": "wms_sync.workers.tasks.cleanup_webhook_jobs",
        "schedule": crontab(hour="2", minute="15"),
    },
    "cleanup-sync-jobs-daily": {
        "task": "wms_sync.workers.tasks.cleanup_sync_jobs",
        "schedule": crontab(hour="2", minute="45"),
    },
    "cron-order-sync-hourly": {
        "task": "wms_sync.workers.tasks.cron_order_sync",
        "schedule": crontab(minute="5"),
    },
    # ממשיך באצ'ים של "sync everything" שנשארו עם jobs ממתינים
    "process-sync-jobs-every-5-minutes": {
        "task": "wms_sync.workers.tasks.process_sync_jobs",
        "schedule": 300.0,
    },
}


@worker_process_init.connect
def configure_worker_process(**kwargs) -> None:
    """Every worker process validates the event tables and subscribes the export listener"""
    from wms_sync.core.logging import setup_logging
    from wms_sync.domain.setup import configure_sync_engine

    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=f"{settings.APP_NAME} worker",
    )
    configure_sync_engine()
