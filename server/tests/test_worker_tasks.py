import asyncio
import json

import pytest

from riskshield import config, database
from riskshield.services import messaging, notification_jobs
from riskshield.workers import notifications
from riskshield.workers import utils as worker_utils
from riskshield.workers.celery_app import celery_app
from riskshield.workers.tasks import TASKS_BY_JOB_KEY
from riskshield.workers.tasks import stop_work_alerts as stop_work_task_module

from store_fakes import make_settings


def test_every_job_has_a_task_and_beat_entry():
    assert set(TASKS_BY_JOB_KEY) == set(notification_jobs.JOBS)
    scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert scheduled == {task.name for task in TASKS_BY_JOB_KEY.values()}


def test_run_scheduled_job_skips_when_disabled(monkeypatch):
    async def _disabled(task_key):
        return False

    monkeypatch.setattr(worker_utils, "is_scheduler_enabled", _disabled)

    result = asyncio.run(worker_utils.run_scheduled_job("morning_brief", "Morning Brief"))

    assert result == {"skipped": True, "reason": "scheduler_disabled"}


def test_run_scheduled_job_forced_runs_job_and_closes_pool(monkeypatch):
    events = []

    async def _enabled_check(task_key):
        raise AssertionError("scheduler switch should not be read when forced")

    async def _init_pool(url):
        events.append(("init", url))

    async def _close_pool():
        events.append(("close",))

    async def _job(store, messenger, *, timezone_name):
        events.append(("job", timezone_name))
        return {"processed": 2, "errors": []}

    class _Messenger:
        pass

    monkeypatch.setattr(worker_utils, "is_scheduler_enabled", _enabled_check)
    monkeypatch.setattr(config, "load_settings", lambda: make_settings(compliance_timezone="Australia/Sydney"))
    monkeypatch.setattr(database, "init_pool", _init_pool)
    monkeypatch.setattr(database, "close_pool", _close_pool)
    monkeypatch.setattr(messaging, "ChannelMessenger", _Messenger)
    monkeypatch.setitem(notification_jobs.JOBS, "morning_brief", _job)

    result = asyncio.run(worker_utils.run_scheduled_job("morning_brief", "Morning Brief", force=True))

    assert result == {"processed": 2, "errors": []}
    assert events == [
        ("init", "postgresql://localhost/riskshield_test"),
        ("job", "Australia/Sydney"),
        ("close",),
    ]


def test_task_publishes_completion(monkeypatch):
    published = []

    async def _run(job_key, label, *, force=False):
        return {"processed": 1, "sms_sent": 1, "errors": []}

    monkeypatch.setattr(stop_work_task_module, "run_scheduled_job", _run)
    monkeypatch.setattr(
        stop_work_task_module, "publish_job_complete", lambda *args, **kwargs: published.append(args)
    )

    result = stop_work_task_module.run_stop_work_alerts_task(force=True)

    assert result == {"status": "success", "processed": 1, "sms_sent": 1, "errors": []}
    job_key, task_id, run_result = published[0]
    assert job_key == "stop_work_alerts"
    assert run_result["sms_sent"] == 1


def test_task_does_not_publish_skipped_runs(monkeypatch):
    published = []

    async def _run(job_key, label, *, force=False):
        return {"skipped": True, "reason": "scheduler_disabled"}

    monkeypatch.setattr(stop_work_task_module, "run_scheduled_job", _run)
    monkeypatch.setattr(
        stop_work_task_module, "publish_job_complete", lambda *args, **kwargs: published.append(args)
    )

    result = stop_work_task_module.run_stop_work_alerts_task()

    assert result["status"] == "success"
    assert result["skipped"] is True
    assert published == []


def test_task_failure_publishes_error_and_reraises(monkeypatch):
    errors = []

    async def _run(job_key, label, *, force=False):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(stop_work_task_module, "run_scheduled_job", _run)
    monkeypatch.setattr(
        stop_work_task_module,
        "publish_job_failed",
        lambda job_key, task_id, error, **kwargs: errors.append((error, kwargs)),
    )

    with pytest.raises(RuntimeError, match="database unavailable"):
        stop_work_task_module.run_stop_work_alerts_task()

    assert errors == [("database unavailable", {"will_retry": True})]


def test_job_events_carry_counts_not_error_text(monkeypatch):
    published = []

    class _FakeRedis:
        def publish(self, channel, message):
            published.append((channel, json.loads(message)))

        def close(self):
            pass

    monkeypatch.setattr(notifications, "get_redis_client", lambda: _FakeRedis())

    notifications.publish_job_complete(
        "follow_up_sequence",
        "task-9",
        {"processed": 4, "escalated": 1, "errors": ["Follow-up for Bravo Glass: provider rejected message"]},
    )

    channel, event = published[0]
    assert channel == notifications.JOB_EVENTS_CHANNEL
    assert event["type"] == "job_complete"
    assert event["summary"] == {"processed": 4, "escalated": 1, "error_count": 1}
    assert "published_at" in event
