from celery import Celery
from celery.schedules import crontab
from pharmstock.core.config import settings

# Create Celery app
celery_app = Celery(
    "pharmstock",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["pharmstock.workers.tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,

    # Task routing
    task_routes={
        "pharmstock.workers.tasks.deliver_requisition_event": {"queue": "notifications"},
        "pharmstock.workers.tasks.*": {"queue": "default"},
    },

    # Beat schedule (periodic tasks)
    beat_schedule={
        "daily-expire-stock-batches": {
            "task": "pharmstock.workers.tasks.expire_stock_batches",
            "schedule": crontab(hour=0, minute=15),  # 00:15 UTC
        },
    },

    # Result backend settings
    result_expires=3600,

    # Error handling
    task_reject_on_worker_lost=True,

    broker_connection_retry_on_startup=True,
)
