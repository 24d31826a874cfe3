import asyncio
import json
from datetime import date, datetime, timezone
from uuid import uuid4

import pytest

from riskshield.models import CommunicationType, ComplianceSnapshot, ExceptionStatus, VerificationStatus
from riskshield.services import postgres_store
from riskshield.services.postgres_store import PostgresEntityStore
from riskshield.services.store import StoreError


class _ConnectionContext:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        return self._conn

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _connection_factory(conn):
    return lambda: _ConnectionContext(conn)


class _FakeConnection:
    def __init__(self, rows=None, row=None, execute_result="UPDATE 1", error=None):
        self.rows = rows or []
        self.row = row
        self.execute_result = execute_result
        self.error = error
        self.executed: list[tuple[str, tuple]] = []

    async def fetch(self, query, *args):
        if self.error:
            raise self.error
        self.executed.append((query, args))
        return self.rows

    async def fetchrow(self, query, *args):
        self.executed.append((query, args))
        return self.row

    async def execute(self, query, *args):
        self.executed.append((query, args))
        return self.execute_result


def test_update_exception_patches_only_given_columns(monkeypatch):
    conn = _FakeConnection()
    monkeypatch.setattr(postgres_store, "get_connection", _connection_factory(conn))
    exception_id = uuid4()
    resolved_at = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    asyncio.run(PostgresEntityStore().update_exception(
        exception_id, ExceptionStatus.resolved, resolved_at=resolved_at, resolution_type="new_coc_received"
    ))

    query, args = conn.executed[0]
    assert query == (
        "UPDATE compliance_exceptions SET status = $2, resolved_at = $3, resolution_type = $4 WHERE id = $1"
    )
    assert args == (exception_id, "resolved", resolved_at, "new_coc_received")


def test_update_exception_rejects_unknown_columns(monkeypatch):
    conn = _FakeConnection()
    monkeypatch.setattr(postgres_store, "get_connection", _connection_factory(conn))

    with pytest.raises(ValueError, match="Cannot patch exception fields"):
        asyncio.run(PostgresEntityStore().update_exception(uuid4(), ExceptionStatus.closed, reason="x"))
    assert conn.executed == []


def test_mark_communications_escalated_reads_command_tag(monkeypatch):
    conn = _FakeConnection(execute_result="UPDATE 3")
    monkeypatch.setattr(postgres_store, "get_connection", _connection_factory(conn))

    marked = asyncio.run(PostgresEntityStore().mark_communications_escalated(uuid4(), datetime.now(timezone.utc)))

    assert marked == 3


def test_database_errors_surface_as_store_errors(monkeypatch):
    conn = _FakeConnection(error=OSError("connection refused"))
    monkeypatch.setattr(postgres_store, "get_connection", _connection_factory(conn))

    with pytest.raises(StoreError, match="connection refused"):
        asyncio.run(PostgresEntityStore().list_projects(uuid4()))


def test_verification_rows_parse_jsonb_columns(monkeypatch):
    verification_id = uuid4()
    conn = _FakeConnection(row={
        "id": verification_id,
        "document_id": uuid4(),
        "project_id": uuid4(),
        "status": "fail",
        "confidence_score": 0.82,
        "extracted_data": json.dumps({
            "policy_number": "POL-1001",
            "period_of_insurance_end": "2026-06-30",
            "broker_reference": "BR-77",
        }),
        "deficiencies": json.dumps([{"field": "workers_comp", "message": "Missing"}]),
        "verified_by_user_id": None,
        "verified_at": None,
        "created_at": datetime(2026, 3, 1, tzinfo=timezone.utc),
    })
    monkeypatch.setattr(postgres_store, "get_connection", _connection_factory(conn))

    verification = asyncio.run(PostgresEntityStore().get_verification(verification_id))

    assert verification.status == VerificationStatus.failed
    assert verification.extracted_data.period_of_insurance_end == date(2026, 6, 30)
    assert verification.extracted_data.model_extra == {"broker_reference": "BR-77"}
    assert verification.deficiencies == [{"field": "workers_comp", "message": "Missing"}]


def test_communication_sent_since_only_counts_outbound_statuses(monkeypatch):
    class _ExistsConnection(_FakeConnection):
        async def fetchval(self, query, *args):
            self.executed.append((query, args))
            return True

    conn = _ExistsConnection()
    monkeypatch.setattr(postgres_store, "get_connection", _connection_factory(conn))
    since = datetime(2026, 3, 2, tzinfo=timezone.utc)

    found = asyncio.run(PostgresEntityStore().communication_sent_since(
        uuid4(), CommunicationType.expiration_reminder, since
    ))

    assert found is True
    _, args = conn.executed[0]
    assert sorted(args[2]) == ["delivered", "opened", "sent"]
    assert args[3] == since


def _verification_row(extracted):
    return {
        "id": uuid4(),
        "document_id": uuid4(),
        "project_id": uuid4(),
        "status": "pass",
        "confidence_score": 0.9,
        "extracted_data": json.dumps(extracted),
        "deficiencies": None,
        "verified_by_user_id": None,
        "verified_at": None,
        "created_at": datetime(2026, 3, 1, tzinfo=timezone.utc),
    }


def test_verification_rows_read_extractor_dates_leniently(monkeypatch):
    conn = _FakeConnection(rows=[
        _verification_row({"period_of_insurance_end": "30/06/2026"}),
        _verification_row({"period_of_insurance_end": "2026-06-30T14:00:00Z"}),
        _verification_row({"period_of_insurance_end": "end of financial year", "policy_number": 1001}),
        _verification_row({"field_confidences": {"insurer_name": None, "policy_number": 0.97}}),
    ])
    monkeypatch.setattr(postgres_store, "get_connection", _connection_factory(conn))

    day_first, timestamped, unreadable, confidences = asyncio.run(PostgresEntityStore().list_verifications(uuid4()))

    assert day_first.extracted_data.period_of_insurance_end == date(2026, 6, 30)
    assert timestamped.extracted_data.period_of_insurance_end == date(2026, 6, 30)
    assert unreadable.extracted_data.period_of_insurance_end is None
    assert unreadable.extracted_data.policy_number == "1001"
    assert confidences.extracted_data.field_confidences == {"policy_number": 0.97}


def test_verification_row_with_non_object_extraction_keeps_raw_value(monkeypatch):
    conn = _FakeConnection(rows=[_verification_row(["page 1", "page 2"])])
    monkeypatch.setattr(postgres_store, "get_connection", _connection_factory(conn))

    (verification,) = asyncio.run(PostgresEntityStore().list_verifications(uuid4()))

    assert verification.extracted_data.period_of_insurance_end is None
    assert verification.extracted_data.model_extra == {"unparsed": ["page 1", "page 2"]}


def test_insert_compliance_snapshot_returns_existing_row_on_conflict(monkeypatch):
    company_id = uuid4()
    stored = {
        "id": uuid4(),
        "company_id": company_id,
        "snapshot_date": date(2026, 3, 2),
        "total": 4,
        "compliant": 3,
        "non_compliant": 1,
        "pending": 0,
        "exception": 0,
        "compliance_rate": 75.0,
    }

    class _ConflictConnection(_FakeConnection):
        def __init__(self):
            super().__init__()
            self.responses = [None, stored]

        async def fetchrow(self, query, *args):
            self.executed.append((query, args))
            return self.responses.pop(0)

    conn = _ConflictConnection()
    monkeypatch.setattr(postgres_store, "get_connection", _connection_factory(conn))

    snapshot = asyncio.run(PostgresEntityStore().insert_compliance_snapshot(ComplianceSnapshot(
        company_id=company_id, snapshot_date=date(2026, 3, 2), total=5, compliant=5, compliance_rate=100.0
    )))

    insert_query, insert_args = conn.executed[0]
    assert "ON CONFLICT (company_id, snapshot_date) DO NOTHING" in insert_query
    assert insert_args[:3] == (company_id, date(2026, 3, 2), 5)
    assert snapshot.id == stored["id"]
    assert snapshot.compliance_rate == 75.0
