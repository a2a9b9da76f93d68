"""
Celery application configuration.

Redis is both the message broker and result backend. The worker runs the
outbound WhatsApp sends and the daily cleanup of expired verification codes.
"""

from celery import Celery
from celery.schedules import crontab
from app.core.config import settings

# Create Celery instance
celery_app = Celery(
    "verify_auth_worker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL
)

# Configure Celery
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task behavior
    task_track_started=True,  # Track when tasks start (for monitoring)
    task_time_limit=60,  # Sends are short; 1 minute max per task
    task_soft_time_limit=45,

    # Result backend
    result_expires=3600,  # Results expire after 1 hour

    # Worker behavior
    worker_prefetch_multiplier=1,  # Only fetch 1 task at a time
    worker_max_tasks_per_child=200,

    beat_schedule={
        "cleanup-expired-codes": {
            "task": "cleanup_expired_verification_codes",
            "schedule": crontab(hour=2, minute=0),  # Run at 2 AM daily
        },
    },
)

# Auto-discover tasks from app.tasks module
celery_app.autodiscover_tasks(['app'])
