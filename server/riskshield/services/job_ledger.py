"""Append-only record of scheduled job invocations."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from ..models import JobRunLog, JobRunStatus
from .store import EntityStore

logger = logging.getLogger(__name__)


def derive_status(processed: int, errors: list[str]) -> JobRunStatus:
    if not errors:
        return JobRunStatus.success
    if len(errors) < processed:
        return JobRunStatus.partial
    return JobRunStatus.failed


class JobRunLedger:

    def __init__(self, store: EntityStore):
        self.store = store

    async def start_job(self, job_name: str, now: Optional[datetime] = None) -> UUID:
        started_at = now or datetime.now(timezone.utc)
        log_id = await self.store.insert_job_run(job_name, started_at)
        logger.info("Job %s started (run %s)", job_name, log_id)
        return log_id

    async def complete_job(
        self,
        log_id: UUID,
        status: JobRunStatus,
        processed: int,
        errors: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        errors = errors or []
        await self.store.finish_job_run(
            log_id,
            status=status,
            completed_at=now or datetime.now(timezone.utc),
            records_processed=processed,
            errors=errors,
            metadata=metadata or {},
        )
        log = logger.info if status == JobRunStatus.success else logger.warning
        log("Job run %s finished %s: processed=%d errors=%d", log_id, status.value, processed, len(errors))

    async def recent_runs(self, job_name: Optional[str] = None, limit: int = 20) -> list[JobRunLog]:
        return await self.store.list_job_runs(job_name, limit)
