"""
Celery task for certificate expiration reminders.

Scheduled by celery beat at 19:00 UTC; can also be queued on demand with force=True.
"""

import asyncio

from ..celery_app import celery_app
from ..notifications import publish_job_complete, publish_job_failed
from ..utils import run_scheduled_job

JOB_KEY = "expiration_check"


@celery_app.task(bind=True, max_retries=1)
def run_expiration_check_task(self, force: bool = False) -> dict:
    """Run the Expiration Check job for every active company."""
    print("[Expiration Check] Running scheduler...")

    try:
        result = asyncio.run(run_scheduled_job(JOB_KEY, "Expiration Check", force=force))
    except Exception as exc:
        print(f"[Expiration Check] Failed: {exc}")
        publish_job_failed(
            JOB_KEY,
            self.request.id,
            str(exc),
            will_retry=self.request.retries < self.max_retries,
        )
        raise self.retry(exc=exc, countdown=60)

    print(f"[Expiration Check] Completed: {result}")
    if not result.get("skipped"):
        publish_job_complete(JOB_KEY, self.request.id, result)
    return {"status": "success", **result}
