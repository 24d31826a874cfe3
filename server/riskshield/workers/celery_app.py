"""Celery application configuration."""

import os
from celery import Celery
from celery.schedules import crontab
from dotenv import load_dotenv

# Load environment variables for worker process
load_dotenv()

# Get Redis URL from environment
redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
celery_broker_url = os.getenv("CELERY_BROKER_URL", redis_url)
celery_result_backend = os.getenv("CELERY_RESULT_BACKEND", redis_url)

celery_app = Celery(
    "riskshield",
    broker=celery_broker_url,
    backend=celery_result_backend,
    include=[
        "riskshield.workers.tasks.expiration_check",
        "riskshield.workers.tasks.morning_brief",
        "riskshield.workers.tasks.follow_up_sequence",
        "riskshield.workers.tasks.stop_work_alerts",
        "riskshield.workers.tasks.exception_expiry",
    ],
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task execution
    task_track_started=True,
    task_time_limit=600,  # 10 minutes max per task
    task_soft_time_limit=540,  # Soft limit 9 minutes

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    task_acks_late=True,  # Acknowledge after completion for reliability

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Retry settings
    task_default_retry_delay=60,  # 1 minute between retries
    task_max_retries=1,
)

# Times are UTC; they land early morning in Australian Eastern time.
celery_app.conf.beat_schedule = {
    "daily-expiration-check": {
        "task": "riskshield.workers.tasks.expiration_check.run_expiration_check_task",
        "schedule": crontab(hour=19, minute=0),
    },
    "exception-expiry-check": {
        "task": "riskshield.workers.tasks.exception_expiry.run_exception_expiry_task",
        "schedule": crontab(hour=19, minute=30),
    },
    "morning-brief-email": {
        "task": "riskshield.workers.tasks.morning_brief.run_morning_brief_task",
        "schedule": crontab(hour=20, minute=0),
    },
    "automated-follow-ups": {
        "task": "riskshield.workers.tasks.follow_up_sequence.run_follow_up_sequence_task",
        "schedule": crontab(hour=21, minute=0),
    },
    "stop-work-risk-alerts": {
        "task": "riskshield.workers.tasks.stop_work_alerts.run_stop_work_alerts_task",
        "schedule": crontab(hour=22, minute=0),
    },
}
