"""PostgreSQL implementation of the entity store on the shared asyncpg pool."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

import asyncpg
from pydantic import ValidationError

from ..database import get_connection
from ..models import (
    ALERT_ROLES,
    OUTBOUND_STATUSES,
    AuditLogEntry,
    CocDocument,
    Communication,
    CommunicationStatus,
    CommunicationType,
    Company,
    ComplianceException,
    ComplianceSnapshot,
    ComplianceStatus,
    ExceptionStatus,
    ExtractedCertificateData,
    JobRunLog,
    JobRunStatus,
    Notification,
    Project,
    ProjectSubcontractor,
    Subcontractor,
    User,
    Verification,
    VerificationStatus,
)
from ..workers.utils import parse_jsonb
from .store import EntityStore, StoreError

logger = logging.getLogger(__name__)

_OUTBOUND = [s.value for s in OUTBOUND_STATUSES]
_ALERT_ROLES = [r.value for r in ALERT_ROLES]

_EXCEPTION_PATCH_COLUMNS = (
    "approved_by_user_id",
    "approved_at",
    "resolved_at",
    "resolution_type",
    "resolution_notes",
)


@asynccontextmanager
async def _connection():
    try:
        async with get_connection() as conn:
            yield conn
    except (asyncpg.PostgresError, OSError) as exc:
        logger.error("Store query failed: %s", exc)
        raise StoreError(str(exc)) from exc


def _row_to_company(row: asyncpg.Record) -> Company:
    return Company(id=row["id"], name=row["name"], subscription_status=row["subscription_status"])


def _row_to_user(row: asyncpg.Record) -> User:
    return User(
        id=row["id"],
        company_id=row["company_id"],
        name=row["name"],
        email=row["email"],
        phone=row["phone"],
        role=row["role"],
    )


def _row_to_project(row: asyncpg.Record) -> Project:
    return Project(
        id=row["id"],
        company_id=row["company_id"],
        name=row["name"],
        status=row["status"],
        project_manager_id=row["project_manager_id"],
        end_date=row["end_date"],
    )


def _row_to_subcontractor(row: asyncpg.Record) -> Subcontractor:
    return Subcontractor(
        id=row["id"],
        company_id=row["company_id"],
        name=row["name"],
        abn=row["abn"] or "",
        contact_name=row["contact_name"],
        contact_email=row["contact_email"],
        contact_phone=row["contact_phone"],
        broker_name=row["broker_name"],
        broker_email=row["broker_email"],
        broker_phone=row["broker_phone"],
    )


def _row_to_assignment(row: asyncpg.Record) -> ProjectSubcontractor:
    return ProjectSubcontractor(
        id=row["id"],
        project_id=row["project_id"],
        subcontractor_id=row["subcontractor_id"],
        status=row["status"],
        on_site_date=row["on_site_date"],
    )


def _row_to_document(row: asyncpg.Record) -> CocDocument:
    return CocDocument(
        id=row["id"],
        subcontractor_id=row["subcontractor_id"],
        project_id=row["project_id"],
        file_name=row["file_name"],
        received_at=row["received_at"],
        processing_status=row["processing_status"],
    )


def _parse_extracted_data(verification_id: UUID, raw: Any) -> ExtractedCertificateData:
    try:
        return ExtractedCertificateData.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Unreadable extracted data on verification %s: %s", verification_id, exc)
        return ExtractedCertificateData(unparsed=raw)


def _row_to_verification(row: asyncpg.Record) -> Verification:
    extracted = parse_jsonb(row["extracted_data"]) or {}
    return Verification(
        id=row["id"],
        document_id=row["document_id"],
        project_id=row["project_id"],
        status=row["status"],
        confidence_score=row["confidence_score"],
        extracted_data=_parse_extracted_data(row["id"], extracted),
        deficiencies=parse_jsonb(row["deficiencies"]) or [],
        verified_by_user_id=row["verified_by_user_id"],
        verified_at=row["verified_at"],
        created_at=row["created_at"],
    )


def _row_to_communication(row: asyncpg.Record) -> Communication:
    return Communication(
        id=row["id"],
        subcontractor_id=row["subcontractor_id"],
        project_id=row["project_id"],
        verification_id=row["verification_id"],
        type=row["type"],
        channel=row["channel"],
        recipient_email=row["recipient_email"],
        recipient_phone=row["recipient_phone"],
        cc_emails=parse_jsonb(row["cc_emails"]) or [],
        subject=row["subject"],
        status=row["status"],
        sent_at=row["sent_at"],
        follow_up_count=row["follow_up_count"] or 0,
        escalated_at=row["escalated_at"],
    )


def _row_to_exception(row: asyncpg.Record) -> ComplianceException:
    return ComplianceException(
        id=row["id"],
        project_subcontractor_id=row["project_subcontractor_id"],
        verification_id=row["verification_id"],
        issue_summary=row["issue_summary"] or "",
        reason=row["reason"],
        risk_level=row["risk_level"],
        created_by_user_id=row["created_by_user_id"],
        approved_by_user_id=row["approved_by_user_id"],
        approved_at=row["approved_at"],
        expiration_type=row["expiration_type"],
        expires_at=row["expires_at"],
        status=row["status"],
        resolved_at=row["resolved_at"],
        resolution_type=row["resolution_type"],
        resolution_notes=row["resolution_notes"],
    )


_SNAPSHOT_COLUMNS = (
    "id, company_id, snapshot_date, total, compliant, non_compliant, pending, exception, compliance_rate"
)


def _row_to_snapshot(row: asyncpg.Record) -> ComplianceSnapshot:
    return ComplianceSnapshot(**dict(row))


def _row_to_job_run(row: asyncpg.Record) -> JobRunLog:
    return JobRunLog(
        id=row["id"],
        job_name=row["job_name"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        status=row["status"],
        records_processed=row["records_processed"],
        errors=parse_jsonb(row["errors"]) or [],
        metadata=parse_jsonb(row["metadata"]) or {},
    )


class PostgresEntityStore(EntityStore):
    """Entity store backed by the asyncpg pool.

    Each call acquires its own pooled connection, so callers can fan out
    reads with ``asyncio.gather``.
    """

    async def list_active_companies(self) -> list[Company]:
        async with _connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, name, subscription_status
                FROM companies
                WHERE subscription_status IN ('active', 'trialing')
                ORDER BY name
                """
            )
        return [_row_to_company(r) for r in rows]

    async def list_company_admins(self, company_id: UUID) -> list[User]:
        async with _connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, company_id, name, email, phone, role
                FROM users
                WHERE company_id = $1 AND role = ANY($2::text[])
                """,
                company_id,
                _ALERT_ROLES,
            )
        return [_row_to_user(r) for r in rows]

    async def get_user(self, user_id: UUID) -> Optional[User]:
        async with _connection() as conn:
            row = await conn.fetchrow(
                "SELECT id, company_id, name, email, phone, role FROM users WHERE id = $1",
                user_id,
            )
        return _row_to_user(row) if row else None

    async def list_projects(self, company_id: UUID) -> list[Project]:
        async with _connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, company_id, name, status, project_manager_id, end_date
                FROM projects
                WHERE company_id = $1
                """,
                company_id,
            )
        return [_row_to_project(r) for r in rows]

    async def get_project(self, project_id: UUID) -> Optional[Project]:
        async with _connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, company_id, name, status, project_manager_id, end_date
                FROM projects
                WHERE id = $1
                """,
                project_id,
            )
        return _row_to_project(row) if row else None

    async def get_subcontractor(self, subcontractor_id: UUID) -> Optional[Subcontractor]:
        async with _connection() as conn:
            row = await conn.fetchrow("SELECT * FROM subcontractors WHERE id = $1", subcontractor_id)
        return _row_to_subcontractor(row) if row else None

    async def list_project_subcontractors(self, project_id: UUID) -> list[ProjectSubcontractor]:
        async with _connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, project_id, subcontractor_id, status, on_site_date
                FROM project_subcontractors
                WHERE project_id = $1
                """,
                project_id,
            )
        return [_row_to_assignment(r) for r in rows]

    async def get_project_subcontractor(self, assignment_id: UUID) -> Optional[ProjectSubcontractor]:
        async with _connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, project_id, subcontractor_id, status, on_site_date
                FROM project_subcontractors
                WHERE id = $1
                """,
                assignment_id,
            )
        return _row_to_assignment(row) if row else None

    async def find_project_subcontractor(
        self, project_id: UUID, subcontractor_id: UUID
    ) -> Optional[ProjectSubcontractor]:
        async with _connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, project_id, subcontractor_id, status, on_site_date
                FROM project_subcontractors
                WHERE project_id = $1 AND subcontractor_id = $2
                """,
                project_id,
                subcontractor_id,
            )
        return _row_to_assignment(row) if row else None

    async def update_project_subcontractor_status(
        self, assignment_id: UUID, status: ComplianceStatus
    ) -> None:
        async with _connection() as conn:
            await conn.execute(
                """
                UPDATE project_subcontractors
                SET status = $2, updated_at = NOW()
                WHERE id = $1
                """,
                assignment_id,
                status.value,
            )

    async def list_documents(self, project_id: UUID) -> list[CocDocument]:
        async with _connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, subcontractor_id, project_id, file_name, received_at, processing_status
                FROM coc_documents
                WHERE project_id = $1
                """,
                project_id,
            )
        return [_row_to_document(r) for r in rows]

    async def get_document(self, document_id: UUID) -> Optional[CocDocument]:
        async with _connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, subcontractor_id, project_id, file_name, received_at, processing_status
                FROM coc_documents
                WHERE id = $1
                """,
                document_id,
            )
        return _row_to_document(row) if row else None

    async def list_verifications(self, project_id: UUID) -> list[Verification]:
        async with _connection() as conn:
            rows = await conn.fetch("SELECT * FROM verifications WHERE project_id = $1", project_id)
        return [_row_to_verification(r) for r in rows]

    async def get_verification(self, verification_id: UUID) -> Optional[Verification]:
        async with _connection() as conn:
            row = await conn.fetchrow("SELECT * FROM verifications WHERE id = $1", verification_id)
        return _row_to_verification(row) if row else None

    async def get_latest_verification_for_pair(
        self, project_id: UUID, subcontractor_id: UUID
    ) -> Optional[Verification]:
        async with _connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT v.*
                FROM verifications v
                JOIN coc_documents d ON d.id = v.document_id
                WHERE d.project_id = $1 AND d.subcontractor_id = $2
                ORDER BY d.received_at DESC, v.created_at DESC
                LIMIT 1
                """,
                project_id,
                subcontractor_id,
            )
        return _row_to_verification(row) if row else None

    async def update_verification_status(
        self,
        verification_id: UUID,
        status: VerificationStatus,
        *,
        verified_by_user_id: Optional[UUID],
        verified_at: datetime,
        deficiencies: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        async with _connection() as conn:
            await conn.execute(
                """
                UPDATE verifications
                SET status = $2,
                    verified_by_user_id = $3,
                    verified_at = $4,
                    deficiencies = COALESCE($5::jsonb, deficiencies)
                WHERE id = $1
                """,
                verification_id,
                status.value,
                verified_by_user_id,
                verified_at,
                json.dumps(deficiencies) if deficiencies is not None else None,
            )

    async def list_communications_for_verification(self, verification_id: UUID) -> list[Communication]:
        async with _connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM communications WHERE verification_id = $1 ORDER BY created_at",
                verification_id,
            )
        return [_row_to_communication(r) for r in rows]

    async def count_follow_ups(self, verification_id: UUID) -> int:
        async with _connection() as conn:
            count = await conn.fetchval(
                """
                SELECT COUNT(*)
                FROM communications
                WHERE verification_id = $1 AND type = 'follow_up'
                """,
                verification_id,
            )
        return int(count or 0)

    async def communication_sent_since(
        self,
        subcontractor_id: UUID,
        comm_type: CommunicationType,
        since: datetime,
    ) -> bool:
        async with _connection() as conn:
            found = await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1
                    FROM communications
                    WHERE subcontractor_id = $1
                      AND type = $2
                      AND status = ANY($3::text[])
                      AND sent_at >= $4
                )
                """,
                subcontractor_id,
                comm_type.value,
                _OUTBOUND,
                since,
            )
        return bool(found)

    async def insert_communication(self, communication: Communication) -> Communication:
        async with _connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO communications (
                    subcontractor_id, project_id, verification_id, type, channel,
                    recipient_email, recipient_phone, cc_emails, subject, status,
                    sent_at, follow_up_count, escalated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10, $11, $12, $13)
                RETURNING id
                """,
                communication.subcontractor_id,
                communication.project_id,
                communication.verification_id,
                communication.type.value,
                communication.channel.value,
                communication.recipient_email,
                communication.recipient_phone,
                json.dumps(communication.cc_emails),
                communication.subject,
                communication.status.value,
                communication.sent_at,
                communication.follow_up_count,
                communication.escalated_at,
            )
        return communication.model_copy(update={"id": row["id"]})

    async def update_communication_status(
        self,
        communication_id: UUID,
        status: CommunicationStatus,
        sent_at: Optional[datetime] = None,
    ) -> None:
        async with _connection() as conn:
            await conn.execute(
                """
                UPDATE communications
                SET status = $2, sent_at = COALESCE($3, sent_at)
                WHERE id = $1
                """,
                communication_id,
                status.value,
                sent_at,
            )

    async def mark_communications_escalated(self, verification_id: UUID, escalated_at: datetime) -> int:
        async with _connection() as conn:
            result = await conn.execute(
                """
                UPDATE communications
                SET escalated_at = $2
                WHERE verification_id = $1 AND escalated_at IS NULL
                """,
                verification_id,
                escalated_at,
            )
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        return int(result.split()[-1]) if result else 0

    async def list_exceptions_for_assignment(self, assignment_id: UUID) -> list[ComplianceException]:
        async with _connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM compliance_exceptions WHERE project_subcontractor_id = $1",
                assignment_id,
            )
        return [_row_to_exception(r) for r in rows]

    async def get_exception(self, exception_id: UUID) -> Optional[ComplianceException]:
        async with _connection() as conn:
            row = await conn.fetchrow("SELECT * FROM compliance_exceptions WHERE id = $1", exception_id)
        return _row_to_exception(row) if row else None

    async def list_expired_active_exceptions(self, now: datetime) -> list[ComplianceException]:
        async with _connection() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM compliance_exceptions
                WHERE status = 'active'
                  AND expires_at IS NOT NULL
                  AND expires_at < $1
                ORDER BY expires_at
                """,
                now,
            )
        return [_row_to_exception(r) for r in rows]

    async def insert_exception(self, exception: ComplianceException) -> ComplianceException:
        async with _connection() as conn:
            await conn.execute(
                """
                INSERT INTO compliance_exceptions (
                    id, project_subcontractor_id, verification_id, issue_summary, reason,
                    risk_level, created_by_user_id, approved_by_user_id, approved_at,
                    expiration_type, expires_at, status
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                exception.id,
                exception.project_subcontractor_id,
                exception.verification_id,
                exception.issue_summary,
                exception.reason,
                exception.risk_level.value,
                exception.created_by_user_id,
                exception.approved_by_user_id,
                exception.approved_at,
                exception.expiration_type.value,
                exception.expires_at,
                exception.status.value,
            )
        return exception

    async def update_exception(
        self,
        exception_id: UUID,
        status: ExceptionStatus,
        **fields: Any,
    ) -> None:
        unknown = set(fields) - set(_EXCEPTION_PATCH_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot patch exception fields: {sorted(unknown)}")

        assignments = ["status = $2"]
        values: list[Any] = [exception_id, status.value]
        for column in _EXCEPTION_PATCH_COLUMNS:
            if column in fields:
                values.append(fields[column])
                assignments.append(f"{column} = ${len(values)}")

        async with _connection() as conn:
            await conn.execute(
                f"UPDATE compliance_exceptions SET {', '.join(assignments)} WHERE id = $1",
                *values,
            )

    async def insert_notification(self, notification: Notification) -> Notification:
        async with _connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO notifications (
                    user_id, company_id, type, title, message, link, entity_type, entity_id, read
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING id
                """,
                notification.user_id,
                notification.company_id,
                notification.type.value,
                notification.title,
                notification.message,
                notification.link,
                notification.entity_type,
                notification.entity_id,
                notification.read,
            )
        return notification.model_copy(update={"id": row["id"]})

    async def insert_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        async with _connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO audit_logs (company_id, user_id, entity_type, entity_id, action, details)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                RETURNING id, created_at
                """,
                entry.company_id,
                entry.user_id,
                entry.entity_type,
                entry.entity_id,
                entry.action,
                json.dumps(entry.details, default=str),
            )
        return entry.model_copy(update={"id": row["id"], "created_at": row["created_at"]})

    async def audit_entry_exists_since(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        since: datetime,
    ) -> bool:
        async with _connection() as conn:
            found = await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1
                    FROM audit_logs
                    WHERE entity_type = $1 AND entity_id = $2 AND action = $3 AND created_at >= $4
                )
                """,
                entity_type,
                entity_id,
                action,
                since,
            )
        return bool(found)

    async def get_compliance_snapshot(self, company_id: UUID, snapshot_date: date) -> Optional[ComplianceSnapshot]:
        async with _connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM compliance_snapshots WHERE company_id = $1 AND snapshot_date = $2",
                company_id,
                snapshot_date,
            )
        return _row_to_snapshot(row) if row else None

    async def insert_compliance_snapshot(self, snapshot: ComplianceSnapshot) -> ComplianceSnapshot:
        async with _connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO compliance_snapshots
                    (company_id, snapshot_date, total, compliant, non_compliant, pending, exception, compliance_rate)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (company_id, snapshot_date) DO NOTHING
                RETURNING {_SNAPSHOT_COLUMNS}
                """,
                snapshot.company_id,
                snapshot.snapshot_date,
                snapshot.total,
                snapshot.compliant,
                snapshot.non_compliant,
                snapshot.pending,
                snapshot.exception,
                snapshot.compliance_rate,
            )
        if row is None:
            # Lost the race to another writer for the same day
            return await self.get_compliance_snapshot(snapshot.company_id, snapshot.snapshot_date)
        return _row_to_snapshot(row)

    async def list_compliance_snapshots(self, company_id: UUID, since: date) -> list[ComplianceSnapshot]:
        async with _connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SNAPSHOT_COLUMNS}
                FROM compliance_snapshots
                WHERE company_id = $1 AND snapshot_date >= $2
                ORDER BY snapshot_date
                """,
                company_id,
                since,
            )
        return [_row_to_snapshot(r) for r in rows]

    async def insert_job_run(self, job_name: str, started_at: datetime) -> UUID:
        async with _connection() as conn:
            return await conn.fetchval(
                """
                INSERT INTO cron_job_logs (job_name, started_at, status)
                VALUES ($1, $2, 'running')
                RETURNING id
                """,
                job_name,
                started_at,
            )

    async def finish_job_run(
        self,
        log_id: UUID,
        *,
        status: JobRunStatus,
        completed_at: datetime,
        records_processed: int,
        errors: list[str],
        metadata: dict[str, Any],
    ) -> None:
        async with _connection() as conn:
            await conn.execute(
                """
                UPDATE cron_job_logs
                SET status = $2,
                    completed_at = $3,
                    records_processed = $4,
                    errors = $5::jsonb,
                    metadata = $6::jsonb
                WHERE id = $1
                """,
                log_id,
                status.value,
                completed_at,
                records_processed,
                json.dumps(errors),
                json.dumps(metadata, default=str),
            )

    async def list_job_runs(self, job_name: Optional[str] = None, limit: int = 20) -> list[JobRunLog]:
        async with _connection() as conn:
            if job_name:
                rows = await conn.fetch(
                    """
                    SELECT * FROM cron_job_logs
                    WHERE job_name = $1
                    ORDER BY started_at DESC
                    LIMIT $2
                    """,
                    job_name,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM cron_job_logs ORDER BY started_at DESC LIMIT $1",
                    limit,
                )
        return [_row_to_job_run(r) for r in rows]
