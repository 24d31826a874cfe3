"""Company-wide compliance aggregation.

Reads are staged: active projects first, then one parallel fetch per project
for each child collection, then a second parallel stage restricted to the ids
the first stage actually referenced. The result is a ``CompanySnapshot``;
every view below is a pure function of a snapshot plus the current time, so a
combined view (the morning brief) sees one consistent set of rows.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models import (
    OUTBOUND_STATUSES,
    CocDocument,
    Communication,
    CommunicationType,
    ComplianceException,
    ComplianceSnapshot,
    ComplianceStats,
    ComplianceStatus,
    DocumentIntakeStats,
    ExceptionStatus,
    ExpiringCertificate,
    FollowUpCandidate,
    FollowUpNotYetDue,
    FollowUpPreview,
    MorningBrief,
    MorningBriefStats,
    NewDocument,
    PendingFollowUp,
    PendingResponse,
    Project,
    ProjectSubcontractor,
    StopWorkRisk,
    Subcontractor,
    Verification,
    VerificationStatus,
)
from .store import EntityStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
STOP_WORK_STATUSES = frozenset({ComplianceStatus.non_compliant, ComplianceStatus.pending})
FOLLOW_UP_SOURCE_TYPES = frozenset({CommunicationType.deficiency, CommunicationType.follow_up})
EXPIRY_TRACKED_STATUSES = frozenset({VerificationStatus.passed, VerificationStatus.review})
EXPIRING_SOON_DAYS = 30
DEFAULT_MIN_DAYS_WAITING = 2
DEFAULT_MAX_FOLLOWUPS = 10
BRIEF_LIST_LIMIT = 10
DEFAULT_HISTORY_DAYS = 30


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except ZoneInfoNotFoundError:
        logger.warning("Unknown compliance timezone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _days_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / SECONDS_PER_DAY


@dataclass
class CompanySnapshot:
    """Everything the views need for one company, fetched once."""

    company_id: UUID
    projects: list[Project] = field(default_factory=list)
    assignments: list[ProjectSubcontractor] = field(default_factory=list)
    documents: list[CocDocument] = field(default_factory=list)
    verifications: list[Verification] = field(default_factory=list)
    subcontractors: dict[UUID, Subcontractor] = field(default_factory=dict)
    exceptions_by_assignment: dict[UUID, list[ComplianceException]] = field(default_factory=dict)
    communications_by_verification: dict[UUID, list[Communication]] = field(default_factory=dict)

    def project_map(self) -> dict[UUID, Project]:
        return {p.id: p for p in self.projects}

    def document_map(self) -> dict[UUID, CocDocument]:
        return {d.id: d for d in self.documents}

    def verification_by_document(self) -> dict[UUID, Verification]:
        return {v.document_id: v for v in self.verifications}

    def documents_by_pair(self) -> dict[tuple[UUID, UUID], list[CocDocument]]:
        grouped: dict[tuple[UUID, UUID], list[CocDocument]] = {}
        for doc in self.documents:
            grouped.setdefault((doc.subcontractor_id, doc.project_id), []).append(doc)
        return grouped

    def failed_verifications(self) -> list[Verification]:
        return [v for v in self.verifications if v.status == VerificationStatus.failed]


# ---------------------------------------------------------------------------
# Pure views
# ---------------------------------------------------------------------------


def compliance_rate(compliant: int, exception: int, total: int) -> Optional[float]:
    """Share of assignments counted as covered, as a percentage to one decimal."""
    if total <= 0:
        return None
    return round((compliant + exception) / total * 100, 1)


def snapshot_from_stats(company_id: UUID, snapshot_date: date, stats: ComplianceStats) -> ComplianceSnapshot:
    return ComplianceSnapshot(
        company_id=company_id,
        snapshot_date=snapshot_date,
        **stats.model_dump(include={"total", "compliant", "non_compliant", "pending", "exception", "compliance_rate"}),
    )


def compute_compliance_stats(snapshot: CompanySnapshot) -> ComplianceStats:
    counts = {status: 0 for status in ComplianceStatus}
    for assignment in snapshot.assignments:
        counts[assignment.status] += 1

    total = len(snapshot.assignments)
    return ComplianceStats(
        total=total,
        compliant=counts[ComplianceStatus.compliant],
        non_compliant=counts[ComplianceStatus.non_compliant],
        pending=counts[ComplianceStatus.pending],
        exception=counts[ComplianceStatus.exception],
        compliance_rate=compliance_rate(
            counts[ComplianceStatus.compliant], counts[ComplianceStatus.exception], total
        ),
        active_projects=len(snapshot.projects),
        pending_reviews=sum(1 for v in snapshot.verifications if v.status == VerificationStatus.review),
    )


def sort_by_on_site_date(risks: Iterable[StopWorkRisk]) -> list[StopWorkRisk]:
    """Earliest on-site date first; rows without a date go last."""
    return sorted(
        risks,
        key=lambda r: (r.on_site_date is None, r.on_site_date or date.min),
    )


def compute_stop_work_risks(
    snapshot: CompanySnapshot,
    today: date,
    include_exception_count: bool = False,
) -> list[StopWorkRisk]:
    projects = snapshot.project_map()
    risks = []
    for assignment in snapshot.assignments:
        if assignment.status not in STOP_WORK_STATUSES:
            continue
        if assignment.on_site_date is None or assignment.on_site_date > today:
            continue
        project = projects.get(assignment.project_id)
        subcontractor = snapshot.subcontractors.get(assignment.subcontractor_id)
        if project is None or subcontractor is None:
            continue

        active_exceptions = None
        if include_exception_count:
            active_exceptions = sum(
                1
                for exc in snapshot.exceptions_by_assignment.get(assignment.id, [])
                if exc.status == ExceptionStatus.active
            )

        risks.append(StopWorkRisk(
            id=assignment.id,
            status=assignment.status.value,
            on_site_date=assignment.on_site_date,
            project_id=project.id,
            project_name=project.name,
            subcontractor_id=subcontractor.id,
            subcontractor_name=subcontractor.name,
            subcontractor_abn=subcontractor.abn,
            contact_phone=subcontractor.contact_phone,
            broker_phone=subcontractor.broker_phone,
            active_exceptions=active_exceptions,
        ))
    return sort_by_on_site_date(risks)


def _latest_outbound(
    communications: list[Communication],
    types: Optional[frozenset] = None,
) -> Optional[Communication]:
    candidates = [
        c for c in communications
        if c.status in OUTBOUND_STATUSES
        and c.sent_at is not None
        and (types is None or c.type in types)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda c: c.sent_at)


def _has_newer_document(docs: list[CocDocument], after: datetime) -> bool:
    return any(d.received_at is not None and d.received_at > after for d in docs)


@dataclass
class _OpenCase:
    verification: Verification
    document: CocDocument
    subcontractor: Subcontractor
    project: Project
    last: Communication
    communications: list[Communication]


def _open_cases(snapshot: CompanySnapshot, types: Optional[frozenset] = None) -> list[_OpenCase]:
    """Failed verifications still waiting on the subcontractor after our last message."""
    documents = snapshot.document_map()
    projects = snapshot.project_map()
    docs_by_pair = snapshot.documents_by_pair()

    cases = []
    for verification in snapshot.failed_verifications():
        communications = snapshot.communications_by_verification.get(verification.id, [])
        last = _latest_outbound(communications, types)
        if last is None:
            continue
        document = documents.get(verification.document_id)
        if document is None:
            continue
        pair_docs = docs_by_pair.get((document.subcontractor_id, document.project_id), [])
        if _has_newer_document(pair_docs, last.sent_at):
            continue
        subcontractor = snapshot.subcontractors.get(document.subcontractor_id)
        project = projects.get(document.project_id)
        if subcontractor is None or project is None:
            continue
        cases.append(_OpenCase(verification, document, subcontractor, project, last, communications))
    return cases


def compute_pending_responses(
    snapshot: CompanySnapshot,
    now: datetime,
    limit: Optional[int] = BRIEF_LIST_LIMIT,
) -> list[PendingResponse]:
    responses = [
        PendingResponse(
            verification_id=case.verification.id,
            verification_status=case.verification.status.value,
            verification_date=case.verification.created_at,
            document_id=case.document.id,
            file_name=case.document.file_name,
            subcontractor_id=case.subcontractor.id,
            subcontractor_name=case.subcontractor.name,
            contact_email=case.subcontractor.contact_email,
            project_id=case.project.id,
            project_name=case.project.name,
            communication_id=case.last.id,
            last_communication_date=case.last.sent_at,
            communication_type=case.last.type.value,
            days_waiting=math.floor(_days_between(now, case.last.sent_at)),
        )
        for case in _open_cases(snapshot)
    ]
    responses.sort(key=lambda r: r.days_waiting, reverse=True)
    return responses if limit is None else responses[:limit]


def _follow_up_count(communications: list[Communication]) -> int:
    return sum(1 for c in communications if c.type == CommunicationType.follow_up)


def _recent_follow_up(communications: list[Communication], since: datetime) -> bool:
    return any(
        c.type == CommunicationType.follow_up and c.sent_at is not None and c.sent_at > since
        for c in communications
    )


def compute_pending_followups(
    snapshot: CompanySnapshot,
    now: datetime,
    min_days_waiting: float = DEFAULT_MIN_DAYS_WAITING,
    max_followups: int = DEFAULT_MAX_FOLLOWUPS,
) -> list[PendingFollowUp]:
    one_day_ago = now - timedelta(days=1)
    followups = []
    for case in _open_cases(snapshot, FOLLOW_UP_SOURCE_TYPES):
        if _recent_follow_up(case.communications, one_day_ago):
            continue
        days_since_last = _days_between(now, case.last.sent_at)
        if days_since_last < min_days_waiting:
            continue
        followups.append(PendingFollowUp(
            verification_id=case.verification.id,
            deficiencies=case.verification.deficiencies,
            document_id=case.document.id,
            file_name=case.document.file_name,
            subcontractor_id=case.subcontractor.id,
            subcontractor_name=case.subcontractor.name,
            contact_email=case.subcontractor.contact_email,
            broker_email=case.subcontractor.broker_email,
            project_id=case.project.id,
            project_name=case.project.name,
            last_communication_id=case.last.id,
            last_sent_at=case.last.sent_at,
            last_type=case.last.type.value,
            days_since_last=days_since_last,
            follow_up_count=_follow_up_count(case.communications),
        ))
    followups.sort(key=lambda f: f.days_since_last, reverse=True)
    return followups[:max_followups]


def compute_followup_preview(
    snapshot: CompanySnapshot,
    now: datetime,
    min_days_waiting: float = DEFAULT_MIN_DAYS_WAITING,
) -> FollowUpPreview:
    preview = FollowUpPreview()
    for case in _open_cases(snapshot, FOLLOW_UP_SOURCE_TYPES):
        days_since_last = _days_between(now, case.last.sent_at)
        if days_since_last >= min_days_waiting:
            preview.would_get_followup.append(FollowUpCandidate(
                subcontractor_name=case.subcontractor.name,
                project_name=case.project.name,
                days_waiting=math.floor(days_since_last),
                follow_up_count=_follow_up_count(case.communications),
                recipient_email=case.subcontractor.broker_email or case.subcontractor.contact_email,
            ))
        else:
            preview.not_yet_due.append(FollowUpNotYetDue(
                subcontractor_name=case.subcontractor.name,
                project_name=case.project.name,
                days_waiting=math.floor(days_since_last),
                days_until_followup=math.ceil(min_days_waiting - days_since_last),
            ))
    preview.summary = {
        "would_send": len(preview.would_get_followup),
        "not_yet_due": len(preview.not_yet_due),
        "total": len(preview.would_get_followup) + len(preview.not_yet_due),
    }
    return preview


def expiry_band(days_until_expiry: int) -> str:
    if days_until_expiry < 0:
        return "expired"
    if days_until_expiry <= EXPIRING_SOON_DAYS:
        return "expiring_soon"
    return "valid"


def compute_expirations(
    snapshot: CompanySnapshot,
    now: datetime,
    start: datetime,
    end: datetime,
    tz: ZoneInfo,
) -> list[ExpiringCertificate]:
    documents = snapshot.document_map()
    projects = snapshot.project_map()
    expirations = []
    for verification in snapshot.verifications:
        if verification.status not in EXPIRY_TRACKED_STATUSES:
            continue
        expiry_date = verification.extracted_data.period_of_insurance_end
        if expiry_date is None:
            continue
        expires_at = datetime.combine(expiry_date, time.min, tzinfo=tz)
        if expires_at < start or expires_at > end:
            continue
        document = documents.get(verification.document_id)
        if document is None:
            continue
        subcontractor = snapshot.subcontractors.get(document.subcontractor_id)
        project = projects.get(document.project_id)
        if subcontractor is None or project is None:
            continue

        days_until = math.ceil(_days_between(expires_at, now))
        expirations.append(ExpiringCertificate(
            verification_id=verification.id,
            document_id=document.id,
            subcontractor_id=subcontractor.id,
            subcontractor_name=subcontractor.name,
            project_id=project.id,
            project_name=project.name,
            policy_number=verification.extracted_data.policy_number or "Unknown",
            insurer_name=verification.extracted_data.insurer_name or "Unknown",
            expiry_date=expiry_date,
            days_until_expiry=days_until,
            status=expiry_band(days_until),
        ))
    expirations.sort(key=lambda e: e.expiry_date)
    return expirations


def compute_new_documents(
    snapshot: CompanySnapshot,
    since: datetime,
    limit: int = BRIEF_LIST_LIMIT,
) -> tuple[list[NewDocument], DocumentIntakeStats]:
    projects = snapshot.project_map()
    by_document = snapshot.verification_by_document()
    intake = DocumentIntakeStats()
    recent = []
    for document in snapshot.documents:
        if document.received_at is None or document.received_at < since:
            continue
        verification = by_document.get(document.id)
        intake.total += 1
        if verification is not None and verification.status == VerificationStatus.passed:
            intake.auto_approved += 1
        else:
            intake.needs_review += 1

        project = projects.get(document.project_id)
        if project is None:
            continue
        subcontractor = snapshot.subcontractors.get(document.subcontractor_id)
        recent.append(NewDocument(
            id=document.id,
            file_name=document.file_name,
            received_at=document.received_at,
            processing_status=document.processing_status.value,
            subcontractor_name=subcontractor.name if subcontractor else "Unknown",
            project_name=project.name,
            verification_status=verification.status.value if verification else None,
        ))
    recent.sort(key=lambda d: d.received_at, reverse=True)
    return recent[:limit], intake


def compute_morning_brief(snapshot: CompanySnapshot, now: datetime, today: date) -> MorningBrief:
    stats = compute_compliance_stats(snapshot)
    stop_work = compute_stop_work_risks(snapshot, today, include_exception_count=True)
    responses = compute_pending_responses(snapshot, now, limit=None)
    new_documents, intake = compute_new_documents(snapshot, now - timedelta(days=1))
    return MorningBrief(
        stats=MorningBriefStats(
            **stats.model_dump(),
            stop_work_count=len(stop_work),
            pending_responses_count=len(responses),
        ),
        stop_work_risks=stop_work,
        pending_responses=responses[:BRIEF_LIST_LIMIT],
        new_documents=new_documents,
        document_stats=intake,
    )


# ---------------------------------------------------------------------------
# Staged loader
# ---------------------------------------------------------------------------


def _flatten(groups):
    return [item for group in groups for item in group]


class ComplianceAggregator:
    """Builds company snapshots from the entity store and serves the views."""

    def __init__(self, store: EntityStore, timezone_name: str = "UTC"):
        self.store = store
        self.tz = resolve_timezone(timezone_name)

    def today(self, now: datetime) -> date:
        return now.astimezone(self.tz).date()

    async def load_snapshot(
        self,
        company_id: UUID,
        *,
        with_subcontractors: bool = True,
        with_exceptions: bool = False,
        with_communications: bool = False,
    ) -> CompanySnapshot:
        snapshot = CompanySnapshot(company_id=company_id)

        # Stage 1: active projects
        projects = await self.store.list_projects(company_id)
        snapshot.projects = [p for p in projects if p.is_active]
        if not snapshot.projects:
            return snapshot

        # Stage 2: per-project child collections
        project_ids = [p.id for p in snapshot.projects]
        assignments, documents, verifications = await asyncio.gather(
            asyncio.gather(*(self.store.list_project_subcontractors(pid) for pid in project_ids)),
            asyncio.gather(*(self.store.list_documents(pid) for pid in project_ids)),
            asyncio.gather(*(self.store.list_verifications(pid) for pid in project_ids)),
        )
        snapshot.assignments = _flatten(assignments)
        snapshot.documents = _flatten(documents)
        snapshot.verifications = _flatten(verifications)

        # Stage 3: entities referenced by the rows above
        stage: list = []
        subcontractor_ids: list[UUID] = []
        assignment_ids: list[UUID] = []
        failed_ids: list[UUID] = []

        if with_subcontractors:
            subcontractor_ids = sorted(
                {a.subcontractor_id for a in snapshot.assignments}
                | {d.subcontractor_id for d in snapshot.documents},
                key=str,
            )
            stage.append(asyncio.gather(*(self.store.get_subcontractor(sid) for sid in subcontractor_ids)))
        if with_exceptions:
            assignment_ids = [a.id for a in snapshot.assignments]
            stage.append(asyncio.gather(
                *(self.store.list_exceptions_for_assignment(aid) for aid in assignment_ids)
            ))
        if with_communications:
            failed_ids = [v.id for v in snapshot.failed_verifications()]
            stage.append(asyncio.gather(
                *(self.store.list_communications_for_verification(vid) for vid in failed_ids)
            ))

        results = iter(await asyncio.gather(*stage))
        if with_subcontractors:
            snapshot.subcontractors = {s.id: s for s in next(results) if s is not None}
        if with_exceptions:
            snapshot.exceptions_by_assignment = dict(zip(assignment_ids, next(results)))
        if with_communications:
            snapshot.communications_by_verification = dict(zip(failed_ids, next(results)))

        logger.debug(
            "Loaded snapshot for company %s: %d projects, %d assignments, %d documents, %d verifications",
            company_id,
            len(snapshot.projects),
            len(snapshot.assignments),
            len(snapshot.documents),
            len(snapshot.verifications),
        )
        return snapshot

    async def get_compliance_stats(self, company_id: UUID) -> ComplianceStats:
        snapshot = await self.load_snapshot(company_id, with_subcontractors=False)
        return compute_compliance_stats(snapshot)

    async def create_today_snapshot(self, company_id: UUID, now: Optional[datetime] = None) -> ComplianceSnapshot:
        """Record today's counts once per company; later calls that day return the stored row."""
        now = now or _utcnow()
        today = self.today(now)
        existing = await self.store.get_compliance_snapshot(company_id, today)
        if existing is not None:
            return existing
        stats = await self.get_compliance_stats(company_id)
        return await self.store.insert_compliance_snapshot(snapshot_from_stats(company_id, today, stats))

    async def get_compliance_history(
        self,
        company_id: UUID,
        days: int = DEFAULT_HISTORY_DAYS,
        now: Optional[datetime] = None,
    ) -> list[ComplianceSnapshot]:
        now = now or _utcnow()
        await self.create_today_snapshot(company_id, now=now)
        since = self.today(now) - timedelta(days=days)
        return await self.store.list_compliance_snapshots(company_id, since)

    async def get_stop_work_risks(
        self,
        company_id: UUID,
        include_exception_count: bool = False,
        now: Optional[datetime] = None,
    ) -> list[StopWorkRisk]:
        now = now or _utcnow()
        snapshot = await self.load_snapshot(company_id, with_exceptions=include_exception_count)
        return compute_stop_work_risks(snapshot, self.today(now), include_exception_count)

    async def get_pending_responses(
        self,
        company_id: UUID,
        limit: int = BRIEF_LIST_LIMIT,
        now: Optional[datetime] = None,
    ) -> list[PendingResponse]:
        now = now or _utcnow()
        snapshot = await self.load_snapshot(company_id, with_communications=True)
        return compute_pending_responses(snapshot, now, limit)

    async def get_pending_followups(
        self,
        company_id: UUID,
        min_days_waiting: float = DEFAULT_MIN_DAYS_WAITING,
        max_followups: int = DEFAULT_MAX_FOLLOWUPS,
        now: Optional[datetime] = None,
    ) -> list[PendingFollowUp]:
        now = now or _utcnow()
        snapshot = await self.load_snapshot(company_id, with_communications=True)
        return compute_pending_followups(snapshot, now, min_days_waiting, max_followups)

    async def get_followup_preview(
        self,
        company_id: UUID,
        min_days_waiting: float = DEFAULT_MIN_DAYS_WAITING,
        now: Optional[datetime] = None,
    ) -> FollowUpPreview:
        now = now or _utcnow()
        snapshot = await self.load_snapshot(company_id, with_communications=True)
        return compute_followup_preview(snapshot, now, min_days_waiting)

    async def get_expirations(
        self,
        company_id: UUID,
        start: datetime,
        end: datetime,
        now: Optional[datetime] = None,
    ) -> list[ExpiringCertificate]:
        now = now or _utcnow()
        snapshot = await self.load_snapshot(company_id)
        return compute_expirations(snapshot, now, start, end, self.tz)

    async def get_morning_brief(self, company_id: UUID, now: Optional[datetime] = None) -> MorningBrief:
        now = now or _utcnow()
        snapshot = await self.load_snapshot(
            company_id, with_exceptions=True, with_communications=True
        )
        return compute_morning_brief(snapshot, now, self.today(now))
