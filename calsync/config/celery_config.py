# calsync/config/celery_config.py
"""Celery configuration, task routing and the reconciliation schedule"""
from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from calsync.config.settings import get_settings

settings = get_settings()


def create_celery_app() -> Celery:
    """Create and configure Celery application"""

    celery_app = Celery(
        "calsync",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
        include=["calsync.tasks.calendar_tasks"],
    )

    # Configure Celery
    celery_app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,

        # Task routing
        task_routes={
            "calsync.tasks.calendar_tasks.*": {"queue": "calendar-sync"},
        },

        # Queue definitions
        task_queues=(
            Queue("calendar-sync", routing_key="calendar-sync"),
        ),
        task_default_queue="calendar-sync",

        # Worker settings
        worker_max_tasks_per_child=1000,
        worker_prefetch_multiplier=1,
        task_acks_late=True,

        # Periodic reconciliation (run `celery beat` alongside the worker)
        beat_schedule={
            "process-scheduled-calendar-syncs": {
                "task": "calsync.tasks.calendar_tasks.process_scheduled_syncs",
                "schedule": crontab(minute="*/5"),
            },
            "refresh-expiring-calendar-tokens": {
                "task": "calsync.tasks.calendar_tasks.refresh_expiring_tokens",
                "schedule": crontab(minute="*/10"),
            },
            "cleanup-old-calendar-events": {
                "task": "calsync.tasks.calendar_tasks.cleanup_old_calendar_events",
                "schedule": crontab(hour=3, minute=0),
            },
        },

        broker_connection_retry_on_startup=True,
    )

    return celery_app


# Create the Celery app instance
celery_app = create_celery_app()
