"""Read models produced by the aggregation engine.

Only ``ComplianceSnapshot`` is persisted, one row per company per day.
"""

from datetime import date, datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ComplianceStats(BaseModel):
    total: int = 0
    compliant: int = 0
    non_compliant: int = 0
    pending: int = 0
    exception: int = 0
    compliance_rate: Optional[float] = None
    active_projects: int = 0
    pending_reviews: int = 0


class ComplianceSnapshot(BaseModel):
    id: Optional[UUID] = None
    company_id: UUID
    snapshot_date: date
    total: int = 0
    compliant: int = 0
    non_compliant: int = 0
    pending: int = 0
    exception: int = 0
    compliance_rate: Optional[float] = None


class ComplianceHistory(BaseModel):
    days: int
    history: list[ComplianceSnapshot]


class StopWorkRisk(BaseModel):
    id: UUID
    status: str
    on_site_date: Optional[date] = None
    project_id: UUID
    project_name: str
    subcontractor_id: UUID
    subcontractor_name: str
    subcontractor_abn: str = ""
    contact_phone: Optional[str] = None
    broker_phone: Optional[str] = None
    active_exceptions: Optional[int] = None


class PendingResponse(BaseModel):
    verification_id: UUID
    verification_status: str
    verification_date: Optional[datetime] = None
    document_id: UUID
    file_name: Optional[str] = None
    subcontractor_id: UUID
    subcontractor_name: str
    contact_email: Optional[str] = None
    project_id: UUID
    project_name: str
    communication_id: Optional[UUID] = None
    last_communication_date: datetime
    communication_type: str
    days_waiting: int


class PendingFollowUp(BaseModel):
    verification_id: UUID
    deficiencies: list[dict] = Field(default_factory=list)
    document_id: UUID
    file_name: Optional[str] = None
    subcontractor_id: UUID
    subcontractor_name: str
    contact_email: Optional[str] = None
    broker_email: Optional[str] = None
    project_id: UUID
    project_name: str
    last_communication_id: Optional[UUID] = None
    last_sent_at: datetime
    last_type: str
    days_since_last: float
    follow_up_count: int = 0


class ExpiringCertificate(BaseModel):
    verification_id: UUID
    document_id: UUID
    subcontractor_id: UUID
    subcontractor_name: str
    project_id: UUID
    project_name: str
    policy_number: str = "Unknown"
    insurer_name: str = "Unknown"
    expiry_date: date
    days_until_expiry: int
    status: Literal["expired", "expiring_soon", "valid"]


class NewDocument(BaseModel):
    id: UUID
    file_name: Optional[str] = None
    received_at: datetime
    processing_status: str
    subcontractor_name: str
    project_name: str
    verification_status: Optional[str] = None


class DocumentIntakeStats(BaseModel):
    total: int = 0
    auto_approved: int = 0
    needs_review: int = 0


class MorningBriefStats(ComplianceStats):
    stop_work_count: int = 0
    pending_responses_count: int = 0


class MorningBrief(BaseModel):
    stats: MorningBriefStats = Field(default_factory=MorningBriefStats)
    stop_work_risks: list[StopWorkRisk] = Field(default_factory=list)
    pending_responses: list[PendingResponse] = Field(default_factory=list)
    new_documents: list[NewDocument] = Field(default_factory=list)
    document_stats: DocumentIntakeStats = Field(default_factory=DocumentIntakeStats)


class FollowUpCandidate(BaseModel):
    subcontractor_name: str
    project_name: str
    days_waiting: int
    follow_up_count: int
    recipient_email: Optional[str] = None


class FollowUpNotYetDue(BaseModel):
    subcontractor_name: str
    project_name: str
    days_waiting: int
    days_until_followup: int


class FollowUpPreview(BaseModel):
    would_get_followup: list[FollowUpCandidate] = Field(default_factory=list)
    not_yet_due: list[FollowUpNotYetDue] = Field(default_factory=list)
    summary: dict[str, int] = Field(default_factory=dict)
