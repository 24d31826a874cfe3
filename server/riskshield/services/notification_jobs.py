"""Scheduled compliance notification jobs.

Every job follows the same shape: open a ledger run, walk its units (companies,
or expired exceptions for the expiry sweep), let each unit produce a
``JobOutcome``, fold the outcomes into one summary and close the run.

Error boundaries:
    item     -> error appended, next item
    company  -> ``Company {name}: {error}`` appended, next company
    job      -> ledger marked failed with the error first, then re-raised
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from time import monotonic
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from ..models import (
    AuditLogEntry,
    Communication,
    CommunicationChannel,
    CommunicationStatus,
    CommunicationType,
    Company,
    ComplianceException,
    JobRunStatus,
    Notification,
    NotificationType,
    User,
)
from .aggregation import ComplianceAggregator, compute_expirations
from .compliance_state import expire_exception
from .follow_up_logic import (
    EXPIRY_LOOKAHEAD_DAYS,
    EXPIRY_LOOKBACK_DAYS,
    FOLLOW_UP_BATCH_SIZE,
    FOLLOW_UP_MIN_DAYS_WAITING,
    determine_follow_up_stage,
    expiry_alert_level,
    should_send_stage,
)
from .job_ledger import JobRunLedger, derive_status
from .messaging import DeliveryError, Messenger, Recipient, RecipientMissingError, SendResult
from .store import EntityStore

logger = logging.getLogger(__name__)

EXPIRATION_CHECK_JOB = "daily-expiration-check"
MORNING_BRIEF_JOB = "morning-brief-email"
FOLLOW_UP_JOB = "automated-follow-ups"
STOP_WORK_JOB = "stop-work-risk-alerts"
EXCEPTION_EXPIRY_JOB = "exception-expiry-check"

STOP_WORK_AUDIT_ACTION = "stop_work_alert_sent"

Unit = TypeVar("Unit")


@dataclass(frozen=True)
class JobOutcome:
    processed: int = 0
    errors: tuple[str, ...] = ()
    counters: dict[str, int] = field(default_factory=dict)

    def merge(self, other: "JobOutcome") -> "JobOutcome":
        counters = dict(self.counters)
        for key, value in other.counters.items():
            counters[key] = counters.get(key, 0) + value
        return JobOutcome(
            processed=self.processed + other.processed,
            errors=self.errors + other.errors,
            counters=counters,
        )


class _OutcomeBuilder:
    """Accumulates one unit's outcome; never shared across units."""

    def __init__(self):
        self.processed = 0
        self.errors: list[str] = []
        self.counters: dict[str, int] = {}

    def count(self, key: str, amount: int = 1) -> None:
        self.counters[key] = self.counters.get(key, 0) + amount

    def build(self) -> JobOutcome:
        return JobOutcome(self.processed, tuple(self.errors), dict(self.counters))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _start_of_day(now: datetime, aggregator: ComplianceAggregator) -> datetime:
    return datetime.combine(aggregator.today(now), time.min, tzinfo=aggregator.tz)


def _require_success(result: SendResult) -> SendResult:
    if not result.success:
        raise DeliveryError(result.error or "send failed")
    return result


async def _run_ledgered(
    store: EntityStore,
    job_name: str,
    load_units: Callable[[], Awaitable[Sequence[Unit]]],
    process_unit: Callable[[Unit], Awaitable[JobOutcome]],
    describe_unit: Callable[[Unit], str],
    now: datetime,
) -> JobOutcome:
    ledger = JobRunLedger(store)
    log_id = await ledger.start_job(job_name, now)
    started = monotonic()
    total = JobOutcome()
    try:
        units = await load_units()
        for unit in units:
            try:
                outcome = await process_unit(unit)
            except Exception as exc:
                logger.exception("%s failed for %s", job_name, describe_unit(unit))
                outcome = JobOutcome(errors=(f"{describe_unit(unit)}: {exc}",))
            total = total.merge(outcome)
    except Exception as exc:
        await ledger.complete_job(
            log_id,
            JobRunStatus.failed,
            total.processed,
            [str(exc), *total.errors],
            dict(total.counters),
            now=now + timedelta(seconds=monotonic() - started),
        )
        raise

    errors = list(total.errors)
    await ledger.complete_job(
        log_id,
        derive_status(total.processed, errors),
        total.processed,
        errors,
        dict(total.counters),
        now=now + timedelta(seconds=monotonic() - started),
    )
    logger.info(
        "%s complete: processed=%d errors=%d %s", job_name, total.processed, len(errors), total.counters
    )
    return total


async def _run_per_company(
    store: EntityStore,
    job_name: str,
    process_company: Callable[[Company], Awaitable[JobOutcome]],
    now: datetime,
) -> JobOutcome:
    return await _run_ledgered(
        store,
        job_name,
        store.list_active_companies,
        process_company,
        lambda company: f"Company {company.name}",
        now,
    )


async def _notify_users(
    store: EntityStore,
    users: Sequence[User],
    company_id,
    notification_type: NotificationType,
    title: str,
    message: str,
    *,
    link: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> int:
    for user in users:
        await store.insert_notification(Notification(
            user_id=user.id,
            company_id=company_id,
            type=notification_type,
            title=title,
            message=message,
            link=link,
            entity_type=entity_type,
            entity_id=entity_id,
        ))
    return len(users)


# ---------------------------------------------------------------------------
# Job A: expiration reminders
# ---------------------------------------------------------------------------


async def run_expiration_check(
    store: EntityStore,
    messenger: Messenger,
    *,
    now: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> dict[str, Any]:
    now = now or _utcnow()
    aggregator = ComplianceAggregator(store, timezone_name)
    day_start = _start_of_day(now, aggregator)

    async def process_company(company: Company) -> JobOutcome:
        out = _OutcomeBuilder()
        snapshot = await aggregator.load_snapshot(company.id)
        expirations = compute_expirations(
            snapshot,
            now,
            now - timedelta(days=EXPIRY_LOOKBACK_DAYS),
            now + timedelta(days=EXPIRY_LOOKAHEAD_DAYS),
            aggregator.tz,
        )
        if not expirations:
            return out.build()
        admins = await store.list_company_admins(company.id)

        for expiration in expirations:
            alert_level = expiry_alert_level(expiration.days_until_expiry)
            if alert_level is None:
                continue
            try:
                if await store.communication_sent_since(
                    expiration.subcontractor_id, CommunicationType.expiration_reminder, day_start
                ):
                    continue

                subcontractor = snapshot.subcontractors[expiration.subcontractor_id]
                recipient_email = subcontractor.contact_email or subcontractor.broker_email
                if not recipient_email:
                    raise RecipientMissingError(f"No email for subcontractor {expiration.subcontractor_name}")

                days = expiration.days_until_expiry
                expired = alert_level == "expired"
                subject = f"Certificate Expiring {'EXPIRED' if expired else f'in {days} days'}"
                _require_success(await messenger.send(
                    Recipient(
                        email=recipient_email,
                        name=subcontractor.contact_name or subcontractor.broker_name or "Subcontractor",
                    ),
                    "expiration_reminder",
                    {
                        "subject": subject,
                        "subcontractor_name": expiration.subcontractor_name,
                        "project_name": expiration.project_name,
                        "expiry_date": expiration.expiry_date,
                        "days_until_expiry": days,
                        "alert_level": alert_level,
                    },
                ))

                await store.insert_communication(Communication(
                    subcontractor_id=expiration.subcontractor_id,
                    project_id=expiration.project_id,
                    verification_id=expiration.verification_id,
                    type=CommunicationType.expiration_reminder,
                    channel=CommunicationChannel.email,
                    recipient_email=recipient_email,
                    subject=subject,
                    status=CommunicationStatus.sent,
                    sent_at=now,
                ))
                await _notify_users(
                    store,
                    admins,
                    company.id,
                    NotificationType.expiration_warning,
                    f"Certificate {'Expired' if expired else 'Expiring Soon'}",
                    f"{expiration.subcontractor_name}'s certificate for {expiration.project_name} "
                    f"{'has expired' if expired else f'expires in {days} days'}",
                    link=f"/dashboard/verifications/{expiration.verification_id}",
                    entity_type="verification",
                    entity_id=str(expiration.verification_id),
                )
                out.processed += 1
                out.count(alert_level)
            except Exception as exc:
                out.errors.append(f"Expiration {expiration.verification_id}: {exc}")
        return out.build()

    total = await _run_per_company(store, EXPIRATION_CHECK_JOB, process_company, now)
    return {"processed": total.processed, "errors": list(total.errors)}


# ---------------------------------------------------------------------------
# Job B: morning brief
# ---------------------------------------------------------------------------


async def run_morning_brief(
    store: EntityStore,
    messenger: Messenger,
    *,
    now: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> dict[str, Any]:
    now = now or _utcnow()
    aggregator = ComplianceAggregator(store, timezone_name)

    async def process_company(company: Company) -> JobOutcome:
        out = _OutcomeBuilder()
        admins = [a for a in await store.list_company_admins(company.id) if a.email]
        if not admins:
            return out.build()

        brief = await aggregator.get_morning_brief(company.id, now=now)
        brief_data = brief.model_dump(mode="json")
        subject = f"Morning Brief - {company.name} - {aggregator.today(now).strftime('%d %b %Y')}"

        for admin in admins:
            try:
                _require_success(await messenger.send(
                    Recipient(email=admin.email, name=admin.name),
                    "morning_brief",
                    {
                        "subject": subject,
                        "company_name": company.name,
                        "recipient_name": admin.name,
                        "brief": brief_data,
                    },
                ))
                out.processed += 1
            except Exception as exc:
                out.errors.append(f"Brief for {admin.email}: {exc}")
        return out.build()

    total = await _run_per_company(store, MORNING_BRIEF_JOB, process_company, now)
    return {"processed": total.processed, "errors": list(total.errors)}


# ---------------------------------------------------------------------------
# Job C: follow-up sequence
# ---------------------------------------------------------------------------


async def run_follow_up_sequence(
    store: EntityStore,
    messenger: Messenger,
    *,
    now: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> dict[str, Any]:
    now = now or _utcnow()
    aggregator = ComplianceAggregator(store, timezone_name)

    async def process_company(company: Company) -> JobOutcome:
        out = _OutcomeBuilder()
        followups = await aggregator.get_pending_followups(
            company.id,
            min_days_waiting=FOLLOW_UP_MIN_DAYS_WAITING,
            max_followups=FOLLOW_UP_BATCH_SIZE,
            now=now,
        )
        if not followups:
            return out.build()
        admins = await store.list_company_admins(company.id)
        admin_emails = tuple(a.email for a in admins if a.email)

        for item in followups:
            try:
                decision = determine_follow_up_stage(item.days_since_last)
                already_sent = await store.count_follow_ups(item.verification_id)
                if not should_send_stage(decision, already_sent):
                    continue
                if not item.contact_email:
                    raise RecipientMissingError(f"No contact email for subcontractor {item.subcontractor_name}")

                days_waiting = int(item.days_since_last)
                subject = f"Insurance certificate issue for {item.project_name}"
                _require_success(await messenger.send(
                    Recipient(email=item.contact_email, name=item.subcontractor_name, cc=admin_emails),
                    "follow_up",
                    {
                        "subject": subject,
                        "subcontractor_name": item.subcontractor_name,
                        "project_name": item.project_name,
                        "company_name": company.name,
                        "deficiencies": item.deficiencies,
                        "days_waiting": days_waiting,
                        "stage": decision.stage,
                    },
                ))

                await store.insert_communication(Communication(
                    subcontractor_id=item.subcontractor_id,
                    project_id=item.project_id,
                    verification_id=item.verification_id,
                    type=CommunicationType.follow_up,
                    channel=CommunicationChannel.email,
                    recipient_email=item.contact_email,
                    cc_emails=list(admin_emails),
                    subject=subject,
                    status=CommunicationStatus.sent,
                    sent_at=now,
                    follow_up_count=decision.stage,
                ))
                out.processed += 1

                if decision.escalate:
                    await store.mark_communications_escalated(item.verification_id, now)
                    await _notify_users(
                        store,
                        admins,
                        company.id,
                        NotificationType.communication_sent,
                        "Subcontractor Response Required",
                        f"{item.subcontractor_name} hasn't responded after {days_waiting} days "
                        "- manual follow-up may be needed",
                        link=f"/dashboard/subcontractors/{item.subcontractor_id}",
                        entity_type="subcontractor",
                        entity_id=str(item.subcontractor_id),
                    )
                    out.count("escalated")
            except Exception as exc:
                out.errors.append(f"Follow-up for {item.subcontractor_name}: {exc}")
        return out.build()

    total = await _run_per_company(store, FOLLOW_UP_JOB, process_company, now)
    return {
        "processed": total.processed,
        "escalated": total.counters.get("escalated", 0),
        "errors": list(total.errors),
    }


# ---------------------------------------------------------------------------
# Job D: stop-work alerts
# ---------------------------------------------------------------------------


async def run_stop_work_alerts(
    store: EntityStore,
    messenger: Messenger,
    *,
    now: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> dict[str, Any]:
    now = now or _utcnow()
    aggregator = ComplianceAggregator(store, timezone_name)
    day_start = _start_of_day(now, aggregator)

    async def process_company(company: Company) -> JobOutcome:
        out = _OutcomeBuilder()
        risks = await aggregator.get_stop_work_risks(company.id, now=now)
        if not risks:
            return out.build()
        admins = await store.list_company_admins(company.id)
        projects = {}

        for risk in risks:
            try:
                if await store.audit_entry_exists_since(
                    "project_subcontractor", str(risk.id), STOP_WORK_AUDIT_ACTION, day_start
                ):
                    continue

                if risk.project_id not in projects:
                    projects[risk.project_id] = await store.get_project(risk.project_id)
                project = projects[risk.project_id]
                manager = None
                if project is not None and project.project_manager_id:
                    manager = await store.get_user(project.project_manager_id)

                await _notify_users(
                    store,
                    admins,
                    company.id,
                    NotificationType.stop_work_risk,
                    "Stop Work Risk Alert",
                    f"{risk.subcontractor_name} is non-compliant and scheduled on-site today "
                    f"at {risk.project_name}",
                    link=f"/dashboard/projects/{risk.project_id}/subcontractors",
                    entity_type="project_subcontractor",
                    entity_id=str(risk.id),
                )

                payload = {
                    "subject": f"[URGENT] Stop Work Risk - {risk.subcontractor_name}",
                    "subcontractor_name": risk.subcontractor_name,
                    "project_name": risk.project_name,
                    "project_id": str(risk.project_id),
                    "on_site_date": risk.on_site_date,
                    "status": risk.status,
                }
                channels = []
                if manager is not None and manager.phone:
                    channels.append((CommunicationChannel.sms, "stop_work_sms"))
                if manager is not None and manager.email:
                    channels.append((CommunicationChannel.email, "stop_work_alert"))

                for channel, template_kind in channels:
                    result = await messenger.send(
                        Recipient(email=manager.email, phone=manager.phone, name=manager.name),
                        template_kind,
                        payload,
                    )
                    if not result.success:
                        out.errors.append(
                            f"Risk {risk.subcontractor_name}: {channel.value} to project manager failed: {result.error}"
                        )
                        continue
                    if channel == CommunicationChannel.sms:
                        out.count("sms_sent")
                    await store.insert_communication(Communication(
                        subcontractor_id=risk.subcontractor_id,
                        project_id=risk.project_id,
                        type=CommunicationType.critical_alert,
                        channel=channel,
                        recipient_email=manager.email if channel == CommunicationChannel.email else None,
                        recipient_phone=manager.phone if channel == CommunicationChannel.sms else None,
                        subject=payload["subject"],
                        status=CommunicationStatus.sent,
                        sent_at=now,
                    ))

                await store.insert_audit_log(AuditLogEntry(
                    company_id=company.id,
                    entity_type="project_subcontractor",
                    entity_id=str(risk.id),
                    action=STOP_WORK_AUDIT_ACTION,
                    details={
                        "subcontractor_name": risk.subcontractor_name,
                        "project_name": risk.project_name,
                        "admins_notified": len(admins),
                        "project_manager_id": str(manager.id) if manager else None,
                    },
                ))
                out.processed += 1
            except Exception as exc:
                out.errors.append(f"Risk {risk.subcontractor_name}: {exc}")
        return out.build()

    total = await _run_per_company(store, STOP_WORK_JOB, process_company, now)
    return {
        "processed": total.processed,
        "sms_sent": total.counters.get("sms_sent", 0),
        "errors": list(total.errors),
    }


# ---------------------------------------------------------------------------
# Job E: exception expiry
# ---------------------------------------------------------------------------


async def run_exception_expiry(
    store: EntityStore,
    messenger: Optional[Messenger] = None,
    *,
    now: Optional[datetime] = None,
    timezone_name: str = "UTC",
) -> dict[str, Any]:
    """Expire active exceptions past their expiry time.

    Takes a messenger for a uniform job signature; nothing is sent externally.
    """
    now = now or _utcnow()

    async def load_units() -> list[ComplianceException]:
        return await store.list_expired_active_exceptions(now)

    async def process_exception(exception: ComplianceException) -> JobOutcome:
        new_status = await expire_exception(store, exception, now)

        assignment = await store.get_project_subcontractor(exception.project_subcontractor_id)
        if assignment is not None:
            project = await store.get_project(assignment.project_id)
            subcontractor = await store.get_subcontractor(assignment.subcontractor_id)
            if project is not None and subcontractor is not None:
                await store.insert_notification(Notification(
                    user_id=exception.created_by_user_id,
                    company_id=project.company_id,
                    type=NotificationType.exception_expired,
                    title="Exception Expired",
                    message=f"Exception for {subcontractor.name} on {project.name} has expired",
                    link=f"/dashboard/projects/{project.id}/subcontractors",
                    entity_type="exception",
                    entity_id=str(exception.id),
                ))
                await store.insert_audit_log(AuditLogEntry(
                    company_id=project.company_id,
                    entity_type="exception",
                    entity_id=str(exception.id),
                    action="exception_auto_expired",
                    details={
                        "subcontractor_name": subcontractor.name,
                        "project_name": project.name,
                        "expired_at": now.isoformat(),
                        "assignment_status": new_status.value,
                    },
                ))
        return JobOutcome(processed=1)

    total = await _run_ledgered(
        store,
        EXCEPTION_EXPIRY_JOB,
        load_units,
        process_exception,
        lambda exception: f"Exception {exception.id}",
        now,
    )
    return {"processed": total.processed, "errors": list(total.errors)}


JOBS = {
    "expiration_check": run_expiration_check,
    "morning_brief": run_morning_brief,
    "follow_up_sequence": run_follow_up_sequence,
    "stop_work_alerts": run_stop_work_alerts,
    "exception_expiry": run_exception_expiry,
}
