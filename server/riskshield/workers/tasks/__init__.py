# Import all tasks for Celery autodiscovery
from .expiration_check import run_expiration_check_task
from .morning_brief import run_morning_brief_task
from .follow_up_sequence import run_follow_up_sequence_task
from .stop_work_alerts import run_stop_work_alerts_task
from .exception_expiry import run_exception_expiry_task

TASKS_BY_JOB_KEY = {
    "expiration_check": run_expiration_check_task,
    "morning_brief": run_morning_brief_task,
    "follow_up_sequence": run_follow_up_sequence_task,
    "stop_work_alerts": run_stop_work_alerts_task,
    "exception_expiry": run_exception_expiry_task,
}

__all__ = [
    "run_expiration_check_task",
    "run_morning_brief_task",
    "run_follow_up_sequence_task",
    "run_stop_work_alerts_task",
    "run_exception_expiry_task",
    "TASKS_BY_JOB_KEY",
]
