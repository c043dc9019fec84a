"""
Celery application for the outbox relay.

Run a worker with ``celery -A marketplace.worker worker --beat``; beat triggers
the relay every ``outbox_poll_interval_seconds``.
"""

from celery import Celery

from marketplace.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "marketplace",
    broker=settings.celery_broker_url,
    include=["marketplace.services.side_effects.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_ignore_result=True,
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "outbox-relay": {
            "task": "outbox.process_pending",
            "schedule": float(settings.outbox_poll_interval_seconds),
        },
    },
)
