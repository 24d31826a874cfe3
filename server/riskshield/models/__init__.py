from .compliance import (
    ALERT_ROLES,
    OUTBOUND_STATUSES,
    AuditLogEntry,
    CocDocument,
    Communication,
    CommunicationChannel,
    CommunicationStatus,
    CommunicationType,
    Company,
    ComplianceException,
    ComplianceStatus,
    ExceptionStatus,
    ExpirationType,
    ExtractedCertificateData,
    Notification,
    NotificationType,
    ProcessingStatus,
    Project,
    ProjectStatus,
    ProjectSubcontractor,
    RiskLevel,
    Subcontractor,
    User,
    UserRole,
    Verification,
    VerificationStatus,
)
from .dashboard import (
    ComplianceHistory,
    ComplianceSnapshot,
    ComplianceStats,
    DocumentIntakeStats,
    ExpiringCertificate,
    FollowUpCandidate,
    FollowUpNotYetDue,
    FollowUpPreview,
    MorningBrief,
    MorningBriefStats,
    NewDocument,
    PendingFollowUp,
    PendingResponse,
    StopWorkRisk,
)
from .jobs import JobRunLog, JobRunStatus
