"""
Celery task for staged follow-ups on unanswered deficiency notices.

Scheduled by celery beat at 21:00 UTC; can also be queued on demand with force=True.
"""

import asyncio

from ..celery_app import celery_app
from ..notifications import publish_job_complete, publish_job_failed
from ..utils import run_scheduled_job

JOB_KEY = "follow_up_sequence"


@celery_app.task(bind=True, max_retries=1)
def run_follow_up_sequence_task(self, force: bool = False) -> dict:
    """Run the Follow-up Sequence job for every active company."""
    print("[Follow-up Sequence] Running scheduler...")

    try:
        result = asyncio.run(run_scheduled_job(JOB_KEY, "Follow-up Sequence", force=force))
    except Exception as exc:
        print(f"[Follow-up Sequence] Failed: {exc}")
        publish_job_failed(
            JOB_KEY,
            self.request.id,
            str(exc),
            will_retry=self.request.retries < self.max_retries,
        )
        raise self.retry(exc=exc, countdown=60)

    print(f"[Follow-up Sequence] Completed: {result}")
    if not result.get("skipped"):
        publish_job_complete(JOB_KEY, self.request.id, result)
    return {"status": "success", **result}
