"""Manual job triggers and the job run ledger."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ..dependencies import get_store
from ..models import JobRunLog
from ..services.job_ledger import JobRunLedger
from ..services.store import EntityStore
from ..workers.tasks import TASKS_BY_JOB_KEY

logger = logging.getLogger(__name__)

router = APIRouter()


class JobQueuedResponse(BaseModel):
    job_key: str
    task_id: str
    status: str = "queued"


@router.post("/{job_key}/run", response_model=JobQueuedResponse, status_code=202)
async def run_job(job_key: str):
    """Queue a job run now, bypassing its scheduler switch."""
    task = TASKS_BY_JOB_KEY.get(job_key)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_key}")

    result = task.delay(force=True)
    logger.info("Queued %s as task %s", job_key, result.id)
    return JobQueuedResponse(job_key=job_key, task_id=str(result.id))


@router.get("/runs", response_model=List[JobRunLog])
async def list_job_runs(
    job_name: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    store: EntityStore = Depends(get_store),
):
    return await JobRunLedger(store).recent_runs(job_name, limit)
