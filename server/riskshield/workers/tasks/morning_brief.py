"""
Celery task for the daily morning brief email to company admins.

Scheduled by celery beat at 20:00 UTC; can also be queued on demand with force=True.
"""

import asyncio

from ..celery_app import celery_app
from ..notifications import publish_job_complete, publish_job_failed
from ..utils import run_scheduled_job

JOB_KEY = "morning_brief"


@celery_app.task(bind=True, max_retries=1)
def run_morning_brief_task(self, force: bool = False) -> dict:
    """Run the Morning Brief job for every active company."""
    print("[Morning Brief] Running scheduler...")

    try:
        result = asyncio.run(run_scheduled_job(JOB_KEY, "Morning Brief", force=force))
    except Exception as exc:
        print(f"[Morning Brief] Failed: {exc}")
        publish_job_failed(
            JOB_KEY,
            self.request.id,
            str(exc),
            will_retry=self.request.retries < self.max_retries,
        )
        raise self.retry(exc=exc, countdown=60)

    print(f"[Morning Brief] Completed: {result}")
    if not result.get("skipped"):
        publish_job_complete(JOB_KEY, self.request.id, result)
    return {"status": "success", **result}
