"""Shared utilities for Celery worker tasks."""

import json
import os
from typing import Any

import asyncpg
from dotenv import load_dotenv

load_dotenv()


async def get_db_connection() -> asyncpg.Connection:
    """Create a single database connection for a worker check."""
    database_url = os.getenv("DATABASE_URL", "")
    return await asyncpg.connect(database_url)


def parse_jsonb(value: Any) -> Any:
    """Parse JSONB value from database."""
    if value is None:
        return None
    if isinstance(value, str):
        return json.loads(value)
    return value


async def is_scheduler_enabled(task_key: str) -> bool:
    """Read the enable switch for a scheduled task.

    A missing row or a missing table reads as disabled.
    """
    conn = await get_db_connection()
    try:
        try:
            row = await conn.fetchrow(
                "SELECT enabled FROM scheduler_settings WHERE task_key = $1",
                task_key,
            )
        except asyncpg.UndefinedTableError:
            return False
        return bool(row["enabled"]) if row else False
    finally:
        await conn.close()


async def run_scheduled_job(job_key: str, label: str, *, force: bool = False) -> dict:
    """Run one compliance job against the database with the production messenger.

    Skips when the job's scheduler switch is off, unless ``force`` is set.
    """
    from riskshield.config import load_settings
    from riskshield.database import close_pool, init_pool
    from riskshield.services.messaging import ChannelMessenger
    from riskshield.services.notification_jobs import JOBS
    from riskshield.services.postgres_store import PostgresEntityStore

    if not force and not await is_scheduler_enabled(job_key):
        print(f"[{label}] Scheduler disabled, skipping.")
        return {"skipped": True, "reason": "scheduler_disabled"}

    settings = load_settings()
    await init_pool(settings.database_url)
    try:
        return await JOBS[job_key](
            PostgresEntityStore(),
            ChannelMessenger(),
            timezone_name=settings.compliance_timezone,
        )
    finally:
        await close_pool()
