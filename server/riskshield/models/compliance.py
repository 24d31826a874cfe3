import logging
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from uuid import UUID
from datetime import datetime, date

logger = logging.getLogger(__name__)


class ProjectStatus(str, Enum):
    active = "active"
    completed = "completed"
    on_hold = "on_hold"


class ComplianceStatus(str, Enum):
    pending = "pending"
    compliant = "compliant"
    non_compliant = "non_compliant"
    exception = "exception"


class ProcessingStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class VerificationStatus(str, Enum):
    passed = "pass"
    failed = "fail"
    review = "review"


class CommunicationType(str, Enum):
    deficiency = "deficiency"
    follow_up = "follow_up"
    confirmation = "confirmation"
    expiration_reminder = "expiration_reminder"
    critical_alert = "critical_alert"


class CommunicationChannel(str, Enum):
    email = "email"
    sms = "sms"


class CommunicationStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    delivered = "delivered"
    opened = "opened"
    failed = "failed"


# A communication in one of these states actually left the building.
OUTBOUND_STATUSES = frozenset({
    CommunicationStatus.sent,
    CommunicationStatus.delivered,
    CommunicationStatus.opened,
})


class ExceptionStatus(str, Enum):
    pending_approval = "pending_approval"
    active = "active"
    expired = "expired"
    resolved = "resolved"
    closed = "closed"


class ExpirationType(str, Enum):
    until_resolved = "until_resolved"
    fixed_duration = "fixed_duration"
    specific_date = "specific_date"
    permanent = "permanent"


class RiskLevel(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class UserRole(str, Enum):
    admin = "admin"
    risk_manager = "risk_manager"
    project_manager = "project_manager"
    project_administrator = "project_administrator"
    read_only = "read_only"
    subcontractor = "subcontractor"
    broker = "broker"


ALERT_ROLES = frozenset({UserRole.admin, UserRole.risk_manager})


class NotificationType(str, Enum):
    expiration_warning = "expiration_warning"
    communication_sent = "communication_sent"
    stop_work_risk = "stop_work_risk"
    exception_expired = "exception_expired"
    coc_received = "coc_received"
    coc_verified = "coc_verified"
    coc_failed = "coc_failed"


class Company(BaseModel):
    id: UUID
    name: str
    subscription_status: str = "active"


class User(BaseModel):
    id: UUID
    company_id: Optional[UUID] = None
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    role: UserRole


class Project(BaseModel):
    id: UUID
    company_id: UUID
    name: str
    status: ProjectStatus = ProjectStatus.active
    project_manager_id: Optional[UUID] = None
    end_date: Optional[date] = None

    @property
    def is_active(self) -> bool:
        return self.status != ProjectStatus.completed


class Subcontractor(BaseModel):
    id: UUID
    company_id: UUID
    name: str
    abn: str = ""
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    broker_name: Optional[str] = None
    broker_email: Optional[str] = None
    broker_phone: Optional[str] = None


class ProjectSubcontractor(BaseModel):
    id: UUID
    project_id: UUID
    subcontractor_id: UUID
    status: ComplianceStatus = ComplianceStatus.pending
    on_site_date: Optional[date] = None


class CocDocument(BaseModel):
    id: UUID
    subcontractor_id: UUID
    project_id: UUID
    file_name: Optional[str] = None
    received_at: Optional[datetime] = None
    processing_status: ProcessingStatus = ProcessingStatus.pending


_CERTIFICATE_DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%b %d, %Y",
)


def parse_certificate_date(value: Any) -> Optional[date]:
    """Best-effort date from extractor output; None when it can't be read.

    Slash and dash dates are read day-first, as printed on Australian
    certificates. Datetimes keep their calendar date.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _CERTIFICATE_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


class ExtractedCertificateData(BaseModel):
    """Structured output of the certificate extraction step.

    Only the fields below are ever read by the engine. Anything else the
    extractor produced is kept as-is so it round-trips through storage.
    """

    model_config = ConfigDict(extra="allow")

    policy_number: Optional[str] = None
    insurer_name: Optional[str] = None
    insured_party_name: Optional[str] = None
    insured_party_abn: Optional[str] = None
    period_of_insurance_start: Optional[date] = None
    period_of_insurance_end: Optional[date] = None
    field_confidences: dict[str, float] = Field(default_factory=dict)

    @field_validator("policy_number", "insurer_name", "insured_party_name", "insured_party_abn", mode="before")
    @classmethod
    def stringify_identifiers(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, (int, float)):
            return str(v)
        return None

    @field_validator("period_of_insurance_start", "period_of_insurance_end", mode="before")
    @classmethod
    def parse_policy_date(cls, v: Any) -> Optional[date]:
        parsed = parse_certificate_date(v)
        if v not in (None, "") and parsed is None:
            logger.warning("Dropping unparseable policy date %r", v)
        return parsed

    @field_validator("field_confidences", mode="before")
    @classmethod
    def drop_non_numeric_confidences(cls, v: Any) -> dict[str, float]:
        if not isinstance(v, dict):
            return {}
        confidences = {}
        for field_name, score in v.items():
            if isinstance(score, (int, float)) and not isinstance(score, bool):
                confidences[field_name] = float(score)
        return confidences


class Verification(BaseModel):
    id: UUID
    document_id: UUID
    project_id: UUID
    status: VerificationStatus
    confidence_score: Optional[float] = None
    extracted_data: ExtractedCertificateData = Field(default_factory=ExtractedCertificateData)
    deficiencies: list[dict[str, Any]] = Field(default_factory=list)
    verified_by_user_id: Optional[UUID] = None
    verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class Communication(BaseModel):
    id: Optional[UUID] = None
    subcontractor_id: UUID
    project_id: UUID
    verification_id: Optional[UUID] = None
    type: CommunicationType
    channel: CommunicationChannel = CommunicationChannel.email
    recipient_email: Optional[str] = None
    recipient_phone: Optional[str] = None
    cc_emails: list[str] = Field(default_factory=list)
    subject: Optional[str] = None
    status: CommunicationStatus = CommunicationStatus.pending
    sent_at: Optional[datetime] = None
    follow_up_count: int = 0
    escalated_at: Optional[datetime] = None


class ComplianceException(BaseModel):
    id: UUID
    project_subcontractor_id: UUID
    verification_id: Optional[UUID] = None
    issue_summary: str = ""
    reason: str
    risk_level: RiskLevel = RiskLevel.medium
    created_by_user_id: UUID
    approved_by_user_id: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    expiration_type: ExpirationType = ExpirationType.until_resolved
    expires_at: Optional[datetime] = None
    status: ExceptionStatus = ExceptionStatus.pending_approval
    resolved_at: Optional[datetime] = None
    resolution_type: Optional[str] = None
    resolution_notes: Optional[str] = None


class Notification(BaseModel):
    id: Optional[UUID] = None
    user_id: UUID
    company_id: UUID
    type: NotificationType
    title: str
    message: str
    link: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    read: bool = False


class AuditLogEntry(BaseModel):
    id: Optional[UUID] = None
    company_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    entity_type: str
    entity_id: str
    action: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
