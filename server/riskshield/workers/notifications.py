"""Redis pub/sub events for scheduled compliance job runs.

Subscribers on ``JOB_EVENTS_CHANNEL`` get one message per finished run:
``job_complete`` carrying the run's counts, or ``job_failed`` carrying the
error that sent the task into retry. Item-level error text stays in the job
ledger; events only carry how many there were.
"""

import json
import os
from datetime import datetime, timezone
from typing import Any, Optional

import redis
from dotenv import load_dotenv

load_dotenv()

JOB_EVENTS_CHANNEL = "compliance:jobs"


def get_redis_client() -> redis.Redis:
    """Get a synchronous Redis client for worker processes."""
    return redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"))


def summarize_result(result: dict[str, Any]) -> dict[str, Any]:
    summary = {key: value for key, value in result.items() if key != "errors"}
    summary["error_count"] = len(result.get("errors") or [])
    return summary


def _publish(event: dict[str, Any], channel: str) -> None:
    event["published_at"] = datetime.now(timezone.utc).isoformat()
    client = get_redis_client()
    try:
        client.publish(channel, json.dumps(event, default=str))
    finally:
        client.close()


def publish_job_complete(
    job_key: str,
    task_id: Optional[str],
    result: dict[str, Any],
    channel: str = JOB_EVENTS_CHANNEL,
) -> None:
    _publish(
        {
            "type": "job_complete",
            "job_key": job_key,
            "task_id": task_id,
            "summary": summarize_result(result),
        },
        channel,
    )


def publish_job_failed(
    job_key: str,
    task_id: Optional[str],
    error: str,
    *,
    will_retry: bool,
    channel: str = JOB_EVENTS_CHANNEL,
) -> None:
    """Announce a run that raised; ``will_retry`` is False once retries are spent."""
    _publish(
        {
            "type": "job_failed",
            "job_key": job_key,
            "task_id": task_id,
            "error": error,
            "will_retry": will_retry,
        },
        channel,
    )
