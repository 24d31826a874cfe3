"""
Celery task for expiring time-limited compliance exceptions.

Scheduled by celery beat at 19:30 UTC; can also be queued on demand with force=True.
"""

import asyncio

from ..celery_app import celery_app
from ..notifications import publish_job_complete, publish_job_failed
from ..utils import run_scheduled_job

JOB_KEY = "exception_expiry"


@celery_app.task(bind=True, max_retries=1)
def run_exception_expiry_task(self, force: bool = False) -> dict:
    """Run the Exception Expiry job for every active company."""
    print("[Exception Expiry] Running scheduler...")

    try:
        result = asyncio.run(run_scheduled_job(JOB_KEY, "Exception Expiry", force=force))
    except Exception as exc:
        print(f"[Exception Expiry] Failed: {exc}")
        publish_job_failed(
            JOB_KEY,
            self.request.id,
            str(exc),
            will_retry=self.request.retries < self.max_retries,
        )
        raise self.retry(exc=exc, countdown=60)

    print(f"[Exception Expiry] Completed: {result}")
    if not result.get("skipped"):
        publish_job_complete(JOB_KEY, self.request.id, result)
    return {"status": "success", **result}
