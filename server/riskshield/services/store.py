"""Entity store contract used by the aggregation engine, state machine and jobs.

Every method is a single indexed lookup or a single-record write. There are
no multi-record transactions; callers that need several rows fan out.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from ..models import (
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


class StoreError(RuntimeError):
    """Raised when the underlying store cannot serve a read or write."""


class EntityStore(ABC):

    # Companies & users

    @abstractmethod
    async def list_active_companies(self) -> list[Company]:
        ...

    @abstractmethod
    async def list_company_admins(self, company_id: UUID) -> list[User]:
        """Users with an alerting role (admin, risk manager) in the company."""

    @abstractmethod
    async def get_user(self, user_id: UUID) -> Optional[User]:
        ...

    # Projects & assignments

    @abstractmethod
    async def list_projects(self, company_id: UUID) -> list[Project]:
        ...

    @abstractmethod
    async def get_project(self, project_id: UUID) -> Optional[Project]:
        ...

    @abstractmethod
    async def get_subcontractor(self, subcontractor_id: UUID) -> Optional[Subcontractor]:
        ...

    @abstractmethod
    async def list_project_subcontractors(self, project_id: UUID) -> list[ProjectSubcontractor]:
        ...

    @abstractmethod
    async def get_project_subcontractor(self, assignment_id: UUID) -> Optional[ProjectSubcontractor]:
        ...

    @abstractmethod
    async def find_project_subcontractor(
        self, project_id: UUID, subcontractor_id: UUID
    ) -> Optional[ProjectSubcontractor]:
        ...

    @abstractmethod
    async def update_project_subcontractor_status(
        self, assignment_id: UUID, status: ComplianceStatus
    ) -> None:
        ...

    # Documents & verifications

    @abstractmethod
    async def list_documents(self, project_id: UUID) -> list[CocDocument]:
        ...

    @abstractmethod
    async def get_document(self, document_id: UUID) -> Optional[CocDocument]:
        ...

    @abstractmethod
    async def list_verifications(self, project_id: UUID) -> list[Verification]:
        ...

    @abstractmethod
    async def get_verification(self, verification_id: UUID) -> Optional[Verification]:
        ...

    @abstractmethod
    async def get_latest_verification_for_pair(
        self, project_id: UUID, subcontractor_id: UUID
    ) -> Optional[Verification]:
        """Most recent verification of any document submitted for the pair."""

    @abstractmethod
    async def update_verification_status(
        self,
        verification_id: UUID,
        status: VerificationStatus,
        *,
        verified_by_user_id: Optional[UUID],
        verified_at: datetime,
        deficiencies: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        ...

    # Communications

    @abstractmethod
    async def list_communications_for_verification(self, verification_id: UUID) -> list[Communication]:
        ...

    @abstractmethod
    async def count_follow_ups(self, verification_id: UUID) -> int:
        ...

    @abstractmethod
    async def communication_sent_since(
        self,
        subcontractor_id: UUID,
        comm_type: CommunicationType,
        since: datetime,
    ) -> bool:
        """True when an outbound communication of this type exists for the subject since `since`."""

    @abstractmethod
    async def insert_communication(self, communication: Communication) -> Communication:
        ...

    @abstractmethod
    async def update_communication_status(
        self,
        communication_id: UUID,
        status: CommunicationStatus,
        sent_at: Optional[datetime] = None,
    ) -> None:
        ...

    @abstractmethod
    async def mark_communications_escalated(self, verification_id: UUID, escalated_at: datetime) -> int:
        ...

    # Exceptions

    @abstractmethod
    async def list_exceptions_for_assignment(self, assignment_id: UUID) -> list[ComplianceException]:
        ...

    @abstractmethod
    async def get_exception(self, exception_id: UUID) -> Optional[ComplianceException]:
        ...

    @abstractmethod
    async def list_expired_active_exceptions(self, now: datetime) -> list[ComplianceException]:
        ...

    @abstractmethod
    async def insert_exception(self, exception: ComplianceException) -> ComplianceException:
        ...

    @abstractmethod
    async def update_exception(
        self,
        exception_id: UUID,
        status: ExceptionStatus,
        **fields: Any,
    ) -> None:
        """Patch status plus any of: approved_by_user_id, approved_at, resolved_at,
        resolution_type, resolution_notes."""

    # Notifications & audit

    @abstractmethod
    async def insert_notification(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    async def insert_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        ...

    @abstractmethod
    async def audit_entry_exists_since(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        since: datetime,
    ) -> bool:
        ...

    # Compliance history

    @abstractmethod
    async def get_compliance_snapshot(self, company_id: UUID, snapshot_date: date) -> Optional[ComplianceSnapshot]:
        ...

    @abstractmethod
    async def insert_compliance_snapshot(self, snapshot: ComplianceSnapshot) -> ComplianceSnapshot:
        """Store the day's row; if one already exists for (company, date), return that one."""

    @abstractmethod
    async def list_compliance_snapshots(self, company_id: UUID, since: date) -> list[ComplianceSnapshot]:
        """Rows dated on or after `since`, oldest first."""

    # Job run ledger

    @abstractmethod
    async def insert_job_run(self, job_name: str, started_at: datetime) -> UUID:
        ...

    @abstractmethod
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
        ...

    @abstractmethod
    async def list_job_runs(self, job_name: Optional[str] = None, limit: int = 20) -> list[JobRunLog]:
        ...
