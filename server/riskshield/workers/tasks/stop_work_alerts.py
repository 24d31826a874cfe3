"""
Celery task for stop-work risk alerts to admins and project managers.

Scheduled by celery beat at 22:00 UTC; can also be queued on demand with force=True.
"""

import asyncio

from ..celery_app import celery_app
from ..notifications import publish_job_complete, publish_job_failed
from ..utils import run_scheduled_job

JOB_KEY = "stop_work_alerts"


@celery_app.task(bind=True, max_retries=1)
def run_stop_work_alerts_task(self, force: bool = False) -> dict:
    """Run the Stop-work Alerts job for every active company."""
    print("[Stop-work Alerts] Running scheduler...")

    try:
        result = asyncio.run(run_scheduled_job(JOB_KEY, "Stop-work Alerts", force=force))
    except Exception as exc:
        print(f"[Stop-work Alerts] Failed: {exc}")
        publish_job_failed(
            JOB_KEY,
            self.request.id,
            str(exc),
            will_retry=self.request.retries < self.max_retries,
        )
        raise self.retry(exc=exc, countdown=60)

    print(f"[Stop-work Alerts] Completed: {result}")
    if not result.get("skipped"):
        publish_job_complete(JOB_KEY, self.request.id, result)
    return {"status": "success", **result}
