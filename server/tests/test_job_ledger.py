import asyncio
from datetime import timedelta

from riskshield.models import JobRunStatus
from riskshield.services.job_ledger import JobRunLedger, derive_status

from store_fakes import NOW, InMemoryStore


def test_derive_status_success_without_errors():
    assert derive_status(5, []) == JobRunStatus.success
    assert derive_status(0, []) == JobRunStatus.success


def test_derive_status_partial_when_fewer_errors_than_processed():
    assert derive_status(4, ["one failure"]) == JobRunStatus.partial


def test_derive_status_failed_when_errors_reach_processed():
    assert derive_status(1, ["a", "b"]) == JobRunStatus.failed
    assert derive_status(0, ["Company Acme: boom"]) == JobRunStatus.failed


def test_ledger_records_start_and_completion():
    store = InMemoryStore()
    ledger = JobRunLedger(store)

    log_id = asyncio.run(ledger.start_job("daily-expiration-check", NOW))
    run = store.job_runs[log_id]
    assert run.status == JobRunStatus.running
    assert run.started_at == NOW

    asyncio.run(ledger.complete_job(log_id, JobRunStatus.partial, 3, ["x"], {"urgent": 2}))

    run = store.job_runs[log_id]
    assert run.status == JobRunStatus.partial
    assert run.records_processed == 3
    assert run.errors == ["x"]
    assert run.metadata == {"urgent": 2}
    assert run.completed_at is not None


def test_ledger_stamps_completion_with_supplied_clock():
    store = InMemoryStore()
    ledger = JobRunLedger(store)
    log_id = asyncio.run(ledger.start_job("exception-expiry-check", NOW))

    asyncio.run(ledger.complete_job(log_id, JobRunStatus.success, 2, now=NOW + timedelta(minutes=3)))

    assert store.job_runs[log_id].completed_at == NOW + timedelta(minutes=3)


def test_recent_runs_filters_by_job_name():
    store = InMemoryStore()
    ledger = JobRunLedger(store)
    asyncio.run(ledger.start_job("morning-brief-email", NOW))
    asyncio.run(ledger.start_job("automated-follow-ups", NOW))

    runs = asyncio.run(ledger.recent_runs("morning-brief-email"))

    assert [r.job_name for r in runs] == ["morning-brief-email"]
