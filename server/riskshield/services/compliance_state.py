"""Compliance state machine for assignments and exceptions, and the operations that drive it."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from ..models import (
    AuditLogEntry,
    Communication,
    CommunicationStatus,
    CommunicationType,
    ComplianceException,
    ComplianceStatus,
    ExceptionStatus,
    ExpirationType,
    ProjectSubcontractor,
    RiskLevel,
    VerificationStatus,
)
from .messaging import Messenger, Recipient
from .store import EntityStore

logger = logging.getLogger(__name__)


class ComplianceTransitionError(ValueError):
    """Raised when an invalid state transition is requested."""


class ComplianceRecordNotFound(LookupError):
    """Raised when an operation targets a record that does not exist."""


_ASSIGNMENT_TRANSITIONS: dict[ComplianceStatus, tuple[ComplianceStatus, ...]] = {
    ComplianceStatus.pending: (
        ComplianceStatus.compliant,
        ComplianceStatus.non_compliant,
        ComplianceStatus.exception,
    ),
    ComplianceStatus.compliant: (
        ComplianceStatus.non_compliant,
        ComplianceStatus.exception,
    ),
    ComplianceStatus.non_compliant: (
        ComplianceStatus.compliant,
        ComplianceStatus.exception,
    ),
    ComplianceStatus.exception: (
        ComplianceStatus.compliant,
        ComplianceStatus.non_compliant,
    ),
}

_EXCEPTION_TRANSITIONS: dict[ExceptionStatus, tuple[ExceptionStatus, ...]] = {
    ExceptionStatus.pending_approval: (
        ExceptionStatus.active,
        ExceptionStatus.closed,
    ),
    ExceptionStatus.active: (
        ExceptionStatus.expired,
        ExceptionStatus.resolved,
        ExceptionStatus.closed,
    ),
    ExceptionStatus.expired: (),
    ExceptionStatus.resolved: (),
    ExceptionStatus.closed: (),
}

# An exception on one of these expiration types must carry an expiry time.
_DATED_EXPIRATION_TYPES = frozenset({ExpirationType.fixed_duration, ExpirationType.specific_date})


def _coerce_assignment_status(value: str | ComplianceStatus) -> ComplianceStatus:
    if isinstance(value, ComplianceStatus):
        return value
    try:
        return ComplianceStatus(value)
    except ValueError as exc:
        raise ComplianceTransitionError(f"Unknown compliance status '{value}'") from exc


def _coerce_exception_status(value: str | ExceptionStatus) -> ExceptionStatus:
    if isinstance(value, ExceptionStatus):
        return value
    try:
        return ExceptionStatus(value)
    except ValueError as exc:
        raise ComplianceTransitionError(f"Unknown exception status '{value}'") from exc


def can_transition_assignment(
    state_from: str | ComplianceStatus,
    state_to: str | ComplianceStatus,
) -> bool:
    source = _coerce_assignment_status(state_from)
    target = _coerce_assignment_status(state_to)
    return source == target or target in _ASSIGNMENT_TRANSITIONS[source]


def validate_assignment_transition(
    state_from: str | ComplianceStatus,
    state_to: str | ComplianceStatus,
) -> None:
    source = _coerce_assignment_status(state_from)
    target = _coerce_assignment_status(state_to)
    if source == target:
        return
    allowed_targets = _ASSIGNMENT_TRANSITIONS[source]
    if target not in allowed_targets:
        allowed_str = ", ".join(t.value for t in allowed_targets) or "none"
        raise ComplianceTransitionError(
            f"Invalid compliance transition '{source.value}' -> '{target.value}'. "
            f"Allowed targets: {allowed_str}."
        )


def can_transition_exception(
    state_from: str | ExceptionStatus,
    state_to: str | ExceptionStatus,
) -> bool:
    source = _coerce_exception_status(state_from)
    target = _coerce_exception_status(state_to)
    return target in _EXCEPTION_TRANSITIONS[source]


def validate_exception_transition(
    state_from: str | ExceptionStatus,
    state_to: str | ExceptionStatus,
) -> None:
    source = _coerce_exception_status(state_from)
    target = _coerce_exception_status(state_to)
    allowed_targets = _EXCEPTION_TRANSITIONS[source]
    if target not in allowed_targets:
        allowed_str = ", ".join(t.value for t in allowed_targets) or "none"
        raise ComplianceTransitionError(
            f"Invalid exception transition '{source.value}' -> '{target.value}'. "
            f"Allowed targets: {allowed_str}."
        )


def state_machine_map() -> dict[str, dict[str, list[str]]]:
    return {
        "assignment": {
            source.value: [target.value for target in targets]
            for source, targets in _ASSIGNMENT_TRANSITIONS.items()
        },
        "exception": {
            source.value: [target.value for target in targets]
            for source, targets in _EXCEPTION_TRANSITIONS.items()
        },
    }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Assignment status
# ---------------------------------------------------------------------------


def derive_assignment_status(
    current: ComplianceStatus,
    has_active_exception: bool,
    latest_verification: Optional[VerificationStatus],
) -> ComplianceStatus:
    """Status an assignment should hold given its exceptions and latest verification."""
    if has_active_exception:
        return ComplianceStatus.exception
    if latest_verification == VerificationStatus.passed:
        return ComplianceStatus.compliant
    if latest_verification == VerificationStatus.failed:
        return ComplianceStatus.non_compliant
    if current == ComplianceStatus.exception:
        return ComplianceStatus.non_compliant
    return current


async def _apply_assignment_status(
    store: EntityStore,
    assignment: ProjectSubcontractor,
    target: ComplianceStatus,
) -> ComplianceStatus:
    if assignment.status == target:
        return target
    validate_assignment_transition(assignment.status, target)
    await store.update_project_subcontractor_status(assignment.id, target)
    logger.info(
        "Assignment %s moved %s -> %s", assignment.id, assignment.status.value, target.value
    )
    return target


async def recalculate_assignment_status(store: EntityStore, assignment_id: UUID) -> ComplianceStatus:
    assignment = await store.get_project_subcontractor(assignment_id)
    if assignment is None:
        raise ComplianceRecordNotFound(f"Project subcontractor {assignment_id} not found")

    exceptions = await store.list_exceptions_for_assignment(assignment.id)
    has_active = any(e.status == ExceptionStatus.active for e in exceptions)

    latest_status = None
    if not has_active:
        latest = await store.get_latest_verification_for_pair(
            assignment.project_id, assignment.subcontractor_id
        )
        latest_status = latest.status if latest else None

    target = derive_assignment_status(assignment.status, has_active, latest_status)
    return await _apply_assignment_status(store, assignment, target)


# ---------------------------------------------------------------------------
# Verification review
# ---------------------------------------------------------------------------


async def _load_verification_context(store: EntityStore, verification_id: UUID):
    verification = await store.get_verification(verification_id)
    if verification is None:
        raise ComplianceRecordNotFound(f"Verification {verification_id} not found")
    document = await store.get_document(verification.document_id)
    if document is None:
        raise ComplianceRecordNotFound(f"Document {verification.document_id} not found")
    project = await store.get_project(document.project_id)
    if project is None:
        raise ComplianceRecordNotFound(f"Project {document.project_id} not found")
    assignment = await store.find_project_subcontractor(document.project_id, document.subcontractor_id)
    return verification, document, project, assignment


async def approve_verification(
    store: EntityStore,
    verification_id: UUID,
    reviewer_id: UUID,
    *,
    now: Optional[datetime] = None,
) -> Optional[ComplianceStatus]:
    """Mark a verification passed and recalculate the owning assignment.

    Returns the assignment's resulting status, or None when the document is
    not tied to an assignment.
    """
    now = now or _utcnow()
    verification, document, project, assignment = await _load_verification_context(store, verification_id)

    await store.update_verification_status(
        verification.id,
        VerificationStatus.passed,
        verified_by_user_id=reviewer_id,
        verified_at=now,
    )

    new_status = None
    if assignment is not None:
        new_status = await recalculate_assignment_status(store, assignment.id)

    await store.insert_audit_log(AuditLogEntry(
        company_id=project.company_id,
        user_id=reviewer_id,
        entity_type="verification",
        entity_id=str(verification.id),
        action="verification_approved",
        details={
            "document_id": str(document.id),
            "previous_status": verification.status.value,
            "assignment_status": new_status.value if new_status else None,
        },
    ))
    return new_status


async def reject_verification(
    store: EntityStore,
    verification_id: UUID,
    reviewer_id: UUID,
    deficiencies: list[dict[str, Any]],
    reason: Optional[str] = None,
    *,
    messenger: Optional[Messenger] = None,
    now: Optional[datetime] = None,
) -> Communication:
    """Mark a verification failed and queue the deficiency notice to the subcontractor.

    With a messenger the notice is sent right away and the communication is
    stored as ``sent`` or ``failed``; without one it stays ``pending``.
    """
    now = now or _utcnow()
    verification, document, project, assignment = await _load_verification_context(store, verification_id)

    await store.update_verification_status(
        verification.id,
        VerificationStatus.failed,
        verified_by_user_id=reviewer_id,
        verified_at=now,
        deficiencies=deficiencies,
    )
    if assignment is not None:
        await recalculate_assignment_status(store, assignment.id)

    subcontractor = await store.get_subcontractor(document.subcontractor_id)
    recipient_email = None
    recipient_name = None
    if subcontractor is not None:
        recipient_email = subcontractor.contact_email or subcontractor.broker_email
        recipient_name = subcontractor.contact_name or subcontractor.name

    subject = f"Certificate of Currency Deficiency - {project.name}"
    communication = await store.insert_communication(Communication(
        subcontractor_id=document.subcontractor_id,
        project_id=document.project_id,
        verification_id=verification.id,
        type=CommunicationType.deficiency,
        recipient_email=recipient_email,
        subject=subject,
        status=CommunicationStatus.pending,
    ))

    if messenger is not None:
        if recipient_email:
            result = await messenger.send(
                Recipient(email=recipient_email, name=recipient_name),
                "deficiency",
                {
                    "subject": subject,
                    "subcontractor_name": subcontractor.name,
                    "recipient_name": recipient_name,
                    "project_name": project.name,
                    "deficiencies": deficiencies,
                    "reason": reason,
                },
            )
        else:
            result = None

        if result is not None and result.success:
            await store.update_communication_status(communication.id, CommunicationStatus.sent, sent_at=now)
            communication = communication.model_copy(
                update={"status": CommunicationStatus.sent, "sent_at": now}
            )
        else:
            logger.warning(
                "Deficiency notice for verification %s not sent: %s",
                verification.id,
                result.error if result else "no recipient email",
            )
            await store.update_communication_status(communication.id, CommunicationStatus.failed)
            communication = communication.model_copy(update={"status": CommunicationStatus.failed})

    await store.insert_audit_log(AuditLogEntry(
        company_id=project.company_id,
        user_id=reviewer_id,
        entity_type="verification",
        entity_id=str(verification.id),
        action="verification_rejected",
        details={
            "document_id": str(document.id),
            "reason": reason,
            "deficiency_count": len(deficiencies),
            "communication_status": communication.status.value,
        },
    ))
    return communication


# ---------------------------------------------------------------------------
# Exception lifecycle
# ---------------------------------------------------------------------------


async def _get_exception(store: EntityStore, exception_id: UUID) -> ComplianceException:
    exception = await store.get_exception(exception_id)
    if exception is None:
        raise ComplianceRecordNotFound(f"Exception {exception_id} not found")
    return exception


async def _audit_exception(
    store: EntityStore,
    exception: ComplianceException,
    action: str,
    user_id: Optional[UUID],
    details: Optional[dict[str, Any]] = None,
) -> None:
    company_id = None
    assignment = await store.get_project_subcontractor(exception.project_subcontractor_id)
    if assignment is not None:
        project = await store.get_project(assignment.project_id)
        company_id = project.company_id if project else None
    await store.insert_audit_log(AuditLogEntry(
        company_id=company_id,
        user_id=user_id,
        entity_type="exception",
        entity_id=str(exception.id),
        action=action,
        details=details or {},
    ))


async def create_exception(
    store: EntityStore,
    assignment_id: UUID,
    *,
    created_by_user_id: UUID,
    reason: str,
    issue_summary: str = "",
    risk_level: RiskLevel = RiskLevel.medium,
    expiration_type: ExpirationType = ExpirationType.until_resolved,
    expires_at: Optional[datetime] = None,
    verification_id: Optional[UUID] = None,
    auto_approve: bool = False,
    now: Optional[datetime] = None,
) -> ComplianceException:
    now = now or _utcnow()
    if expiration_type in _DATED_EXPIRATION_TYPES and expires_at is None:
        raise ValueError(f"expires_at is required for '{expiration_type.value}' exceptions")
    if expiration_type == ExpirationType.permanent:
        expires_at = None

    assignment = await store.get_project_subcontractor(assignment_id)
    if assignment is None:
        raise ComplianceRecordNotFound(f"Project subcontractor {assignment_id} not found")

    exception = ComplianceException(
        id=uuid4(),
        project_subcontractor_id=assignment.id,
        verification_id=verification_id,
        issue_summary=issue_summary,
        reason=reason,
        risk_level=risk_level,
        created_by_user_id=created_by_user_id,
        expiration_type=expiration_type,
        expires_at=expires_at,
        status=ExceptionStatus.active if auto_approve else ExceptionStatus.pending_approval,
        approved_by_user_id=created_by_user_id if auto_approve else None,
        approved_at=now if auto_approve else None,
    )
    exception = await store.insert_exception(exception)

    if exception.status == ExceptionStatus.active:
        await recalculate_assignment_status(store, assignment.id)

    await _audit_exception(store, exception, "exception_created", created_by_user_id, {
        "status": exception.status.value,
        "risk_level": risk_level.value,
        "expiration_type": expiration_type.value,
        "expires_at": expires_at.isoformat() if expires_at else None,
    })
    return exception


async def _transition_exception(
    store: EntityStore,
    exception: ComplianceException,
    target: ExceptionStatus,
    **fields: Any,
) -> ComplianceException:
    validate_exception_transition(exception.status, target)
    await store.update_exception(exception.id, target, **fields)
    updated = exception.model_copy(update={"status": target, **fields})
    if exception.status == ExceptionStatus.active or target == ExceptionStatus.active:
        await recalculate_assignment_status(store, exception.project_subcontractor_id)
    return updated


async def approve_exception(
    store: EntityStore,
    exception_id: UUID,
    approver_id: UUID,
    *,
    now: Optional[datetime] = None,
) -> ComplianceException:
    now = now or _utcnow()
    exception = await _get_exception(store, exception_id)
    updated = await _transition_exception(
        store,
        exception,
        ExceptionStatus.active,
        approved_by_user_id=approver_id,
        approved_at=now,
    )
    await _audit_exception(store, updated, "exception_approved", approver_id)
    return updated


async def reject_exception(
    store: EntityStore,
    exception_id: UUID,
    user_id: UUID,
    notes: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> ComplianceException:
    now = now or _utcnow()
    exception = await _get_exception(store, exception_id)
    if exception.status != ExceptionStatus.pending_approval:
        raise ComplianceTransitionError(
            f"Only exceptions awaiting approval can be rejected (status '{exception.status.value}')"
        )
    updated = await _transition_exception(
        store,
        exception,
        ExceptionStatus.closed,
        resolved_at=now,
        resolution_type="rejected",
        resolution_notes=notes,
    )
    await _audit_exception(store, updated, "exception_rejected", user_id, {"notes": notes})
    return updated


async def resolve_exception(
    store: EntityStore,
    exception_id: UUID,
    user_id: UUID,
    resolution_type: str,
    notes: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> ComplianceException:
    now = now or _utcnow()
    exception = await _get_exception(store, exception_id)
    updated = await _transition_exception(
        store,
        exception,
        ExceptionStatus.resolved,
        resolved_at=now,
        resolution_type=resolution_type,
        resolution_notes=notes,
    )
    await _audit_exception(store, updated, "exception_resolved", user_id, {
        "resolution_type": resolution_type,
        "notes": notes,
    })
    return updated


async def close_exception(
    store: EntityStore,
    exception_id: UUID,
    user_id: UUID,
    notes: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> ComplianceException:
    now = now or _utcnow()
    exception = await _get_exception(store, exception_id)
    if exception.status != ExceptionStatus.active:
        raise ComplianceTransitionError(
            f"Only active exceptions can be closed (status '{exception.status.value}')"
        )
    updated = await _transition_exception(
        store,
        exception,
        ExceptionStatus.closed,
        resolved_at=now,
        resolution_type="closed",
        resolution_notes=notes,
    )
    await _audit_exception(store, updated, "exception_closed", user_id, {"notes": notes})
    return updated


async def expire_exception(
    store: EntityStore,
    exception: ComplianceException,
    now: datetime,
) -> ComplianceStatus:
    """Flip an active, past-due exception to expired and recalculate its assignment.

    Returns the assignment status after recalculation.
    """
    if exception.status != ExceptionStatus.active:
        raise ComplianceTransitionError(
            f"Only active exceptions can expire (status '{exception.status.value}')"
        )
    if exception.expires_at is None or exception.expires_at >= now:
        raise ComplianceTransitionError(f"Exception {exception.id} is not past its expiry")

    validate_exception_transition(exception.status, ExceptionStatus.expired)
    await store.update_exception(exception.id, ExceptionStatus.expired, resolved_at=now)
    return await recalculate_assignment_status(store, exception.project_subcontractor_id)
