import asyncio
from datetime import date, timedelta
from uuid import uuid4

import pytest

from riskshield.models import (
    CommunicationType,
    ComplianceStatus,
    ExceptionStatus,
    ProjectStatus,
    StopWorkRisk,
    VerificationStatus,
)
from riskshield.services.aggregation import (
    ComplianceAggregator,
    compliance_rate,
    expiry_band,
    resolve_timezone,
    sort_by_on_site_date,
)
from riskshield.services.store import StoreError

from store_fakes import NOW, InMemoryStore


def _risk(on_site_date):
    return StopWorkRisk(
        id=uuid4(),
        status="non_compliant",
        on_site_date=on_site_date,
        project_id=uuid4(),
        project_name="Harbour Tower",
        subcontractor_id=uuid4(),
        subcontractor_name="Sparky Electrical",
    )


def _seed_failed_case(store, company, days_ago, comm_type=CommunicationType.deficiency, name="Sparky Electrical"):
    project = store.add_project(company, name=f"{name} Site")
    subcontractor = store.add_subcontractor(company, name=name)
    store.add_assignment(project, subcontractor, status=ComplianceStatus.non_compliant)
    document = store.add_document(project, subcontractor, received_at=NOW - timedelta(days=days_ago + 1))
    verification = store.add_verification(
        document,
        status=VerificationStatus.failed,
        deficiencies=[{"field": "public_liability", "message": "Limit below $20M"}],
    )
    store.add_communication(verification, comm_type, sent_at=NOW - timedelta(days=days_ago))
    return project, subcontractor, verification


def test_compliance_rate_counts_exceptions_as_covered():
    assert compliance_rate(compliant=6, exception=2, total=10) == 80.0
    assert compliance_rate(compliant=1, exception=0, total=3) == 33.3


def test_compliance_rate_is_none_without_assignments():
    assert compliance_rate(compliant=0, exception=0, total=0) is None


def test_sort_by_on_site_date_puts_missing_dates_last():
    risks = [_risk(date(2026, 3, 2)), _risk(None), _risk(date(2026, 3, 1))]

    ordered = sort_by_on_site_date(risks)

    assert [r.on_site_date for r in ordered] == [date(2026, 3, 1), date(2026, 3, 2), None]


def test_expiry_band_boundaries():
    assert expiry_band(-1) == "expired"
    assert expiry_band(0) == "expiring_soon"
    assert expiry_band(30) == "expiring_soon"
    assert expiry_band(31) == "valid"


def test_resolve_timezone_falls_back_to_utc_for_unknown_names():
    assert resolve_timezone("Not/AZone").key == "UTC"
    assert resolve_timezone("Australia/Sydney").key == "Australia/Sydney"


def test_compliance_stats_ignore_completed_projects():
    store = InMemoryStore()
    company = store.add_company()
    active = store.add_project(company)
    done = store.add_project(company, name="Old Depot", status=ProjectStatus.completed)
    subcontractor = store.add_subcontractor(company)
    for status in (
        ComplianceStatus.compliant,
        ComplianceStatus.compliant,
        ComplianceStatus.exception,
        ComplianceStatus.non_compliant,
    ):
        store.add_assignment(active, store.add_subcontractor(company, name=f"{status.value} Co"), status=status)
    store.add_assignment(done, subcontractor, status=ComplianceStatus.non_compliant)
    store.add_verification(store.add_document(active, subcontractor), status=VerificationStatus.review)

    stats = asyncio.run(ComplianceAggregator(store).get_compliance_stats(company.id))

    assert stats.total == 4
    assert stats.compliant == 2
    assert stats.exception == 1
    assert stats.non_compliant == 1
    assert stats.compliance_rate == 75.0
    assert stats.active_projects == 1
    assert stats.pending_reviews == 1


def test_compliance_stats_for_company_without_projects():
    store = InMemoryStore()
    company = store.add_company()

    stats = asyncio.run(ComplianceAggregator(store).get_compliance_stats(company.id))

    assert stats.total == 0
    assert stats.compliance_rate is None


def test_stop_work_risks_only_include_non_compliant_assignments_due_on_site():
    store = InMemoryStore()
    company = store.add_company()
    project = store.add_project(company)
    today = NOW.date()

    late = store.add_assignment(
        project, store.add_subcontractor(company, name="Late Plumbing"),
        status=ComplianceStatus.pending, on_site_date=today - timedelta(days=1),
    )
    due = store.add_assignment(
        project, store.add_subcontractor(company, name="Due Concrete"),
        status=ComplianceStatus.non_compliant, on_site_date=today,
    )
    store.add_assignment(
        project, store.add_subcontractor(company, name="Future Glazing"),
        status=ComplianceStatus.non_compliant, on_site_date=today + timedelta(days=1),
    )
    store.add_assignment(
        project, store.add_subcontractor(company, name="Covered Scaffold"),
        status=ComplianceStatus.compliant, on_site_date=today,
    )
    store.add_assignment(
        project, store.add_subcontractor(company, name="Undated Roofing"),
        status=ComplianceStatus.non_compliant,
    )

    risks = asyncio.run(ComplianceAggregator(store).get_stop_work_risks(company.id, now=NOW))

    assert [r.id for r in risks] == [late.id, due.id]
    assert risks[0].subcontractor_name == "Late Plumbing"
    assert risks[0].active_exceptions is None


def test_stop_work_risks_count_active_exceptions_when_asked():
    store = InMemoryStore()
    company = store.add_company()
    admin = store.add_user(company)
    project = store.add_project(company)
    assignment = store.add_assignment(
        project, store.add_subcontractor(company),
        status=ComplianceStatus.non_compliant, on_site_date=NOW.date(),
    )
    store.add_exception(assignment, admin, status=ExceptionStatus.active)
    store.add_exception(assignment, admin, status=ExceptionStatus.expired)

    risks = asyncio.run(
        ComplianceAggregator(store).get_stop_work_risks(company.id, include_exception_count=True, now=NOW)
    )

    assert risks[0].active_exceptions == 1


def test_stop_work_today_follows_compliance_timezone():
    store = InMemoryStore()
    company = store.add_company()
    project = store.add_project(company)
    # 09:00 UTC on 2 March is 20:00 in Sydney; four hours later it is already the 3rd there.
    store.add_assignment(
        project, store.add_subcontractor(company),
        status=ComplianceStatus.pending, on_site_date=date(2026, 3, 3),
    )
    aggregator = ComplianceAggregator(store, "Australia/Sydney")

    assert asyncio.run(aggregator.get_stop_work_risks(company.id, now=NOW)) == []
    later = NOW + timedelta(hours=4)
    assert len(asyncio.run(aggregator.get_stop_work_risks(company.id, now=later))) == 1


def test_pending_responses_sorted_by_days_waiting():
    store = InMemoryStore()
    company = store.add_company()
    _seed_failed_case(store, company, days_ago=2, name="Recent Tiling")
    _seed_failed_case(store, company, days_ago=9, name="Slow Painting")

    responses = asyncio.run(ComplianceAggregator(store).get_pending_responses(company.id, now=NOW))

    assert [r.subcontractor_name for r in responses] == ["Slow Painting", "Recent Tiling"]
    assert responses[0].days_waiting == 9
    assert responses[0].communication_type == "deficiency"


def test_pending_responses_skip_cases_with_newer_document():
    store = InMemoryStore()
    company = store.add_company()
    project, subcontractor, _ = _seed_failed_case(store, company, days_ago=5)
    store.add_document(project, subcontractor, received_at=NOW - timedelta(days=1))

    responses = asyncio.run(ComplianceAggregator(store).get_pending_responses(company.id, now=NOW))

    assert responses == []


def test_pending_responses_ignore_unsent_communications():
    store = InMemoryStore()
    company = store.add_company()
    project = store.add_project(company)
    subcontractor = store.add_subcontractor(company)
    document = store.add_document(project, subcontractor, received_at=NOW - timedelta(days=6))
    verification = store.add_verification(document, status=VerificationStatus.failed)
    store.add_communication(verification, sent_at=NOW - timedelta(days=5), status="failed")

    responses = asyncio.run(ComplianceAggregator(store).get_pending_responses(company.id, now=NOW))

    assert responses == []


def test_pending_followups_skip_recent_follow_up_and_short_waits():
    store = InMemoryStore()
    company = store.add_company()
    _, _, chased = _seed_failed_case(store, company, days_ago=6, name="Chased Framing")
    store.add_communication(chased, CommunicationType.follow_up, sent_at=NOW - timedelta(hours=12))
    _seed_failed_case(store, company, days_ago=1, name="Fresh Joinery")
    _seed_failed_case(store, company, days_ago=4, name="Overdue Bricklaying")

    followups = asyncio.run(ComplianceAggregator(store).get_pending_followups(company.id, now=NOW))

    assert [f.subcontractor_name for f in followups] == ["Overdue Bricklaying"]
    assert followups[0].days_since_last == 4.0
    assert followups[0].deficiencies[0]["field"] == "public_liability"


def test_pending_followups_respects_limit():
    store = InMemoryStore()
    company = store.add_company()
    for index in range(4):
        _seed_failed_case(store, company, days_ago=3 + index, name=f"Trade{index} Services")

    followups = asyncio.run(
        ComplianceAggregator(store).get_pending_followups(company.id, max_followups=2, now=NOW)
    )

    assert [f.subcontractor_name for f in followups] == ["Trade3 Services", "Trade2 Services"]


def test_followup_preview_splits_due_and_not_yet_due():
    store = InMemoryStore()
    company = store.add_company()
    _seed_failed_case(store, company, days_ago=3, name="Due Cladding")
    _seed_failed_case(store, company, days_ago=0.5, name="Waiting Carpentry")

    preview = asyncio.run(ComplianceAggregator(store).get_followup_preview(company.id, now=NOW))

    assert [c.subcontractor_name for c in preview.would_get_followup] == ["Due Cladding"]
    assert preview.not_yet_due[0].subcontractor_name == "Waiting Carpentry"
    assert preview.not_yet_due[0].days_until_followup == 2
    assert preview.summary == {"would_send": 1, "not_yet_due": 1, "total": 2}


def test_expirations_use_ceiling_days_and_bands():
    store = InMemoryStore()
    company = store.add_company()
    project = store.add_project(company)
    subcontractor = store.add_subcontractor(company)
    soon = store.add_verification(
        store.add_document(project, subcontractor), status=VerificationStatus.passed, expiry=date(2026, 3, 10)
    )
    lapsed = store.add_verification(
        store.add_document(project, subcontractor), status=VerificationStatus.review, expiry=date(2026, 2, 28)
    )
    store.add_verification(
        store.add_document(project, subcontractor), status=VerificationStatus.passed, expiry=date(2026, 5, 1)
    )
    store.add_verification(
        store.add_document(project, subcontractor), status=VerificationStatus.failed, expiry=date(2026, 3, 5)
    )

    expirations = asyncio.run(ComplianceAggregator(store).get_expirations(
        company.id, NOW - timedelta(days=7), NOW + timedelta(days=30), now=NOW
    ))

    assert [e.verification_id for e in expirations] == [lapsed.id, soon.id]
    assert expirations[0].days_until_expiry == -2
    assert expirations[0].status == "expired"
    assert expirations[1].days_until_expiry == 8
    assert expirations[1].status == "expiring_soon"
    assert expirations[1].policy_number == "POL-1001"


def test_morning_brief_combines_views_from_one_snapshot():
    store = InMemoryStore()
    company = store.add_company()
    project = store.add_project(company)
    approved_sub = store.add_subcontractor(company, name="Approved Steel")
    store.add_assignment(project, approved_sub, status=ComplianceStatus.compliant)
    store.add_verification(
        store.add_document(project, approved_sub, received_at=NOW - timedelta(hours=3)),
        status=VerificationStatus.passed,
    )
    store.add_assignment(
        project, store.add_subcontractor(company, name="Risky Demolition"),
        status=ComplianceStatus.non_compliant, on_site_date=NOW.date(),
    )
    _seed_failed_case(store, company, days_ago=4, name="Silent Flooring")

    brief = asyncio.run(ComplianceAggregator(store).get_morning_brief(company.id, now=NOW))

    assert brief.stats.total == 3
    assert brief.stats.stop_work_count == 1
    assert brief.stats.pending_responses_count == 1
    assert brief.stop_work_risks[0].active_exceptions == 0
    assert brief.pending_responses[0].subcontractor_name == "Silent Flooring"
    assert [d.subcontractor_name for d in brief.new_documents] == ["Approved Steel"]
    assert brief.document_stats.total == 1
    assert brief.document_stats.auto_approved == 1
    assert brief.document_stats.needs_review == 0


def _company_with_open_case(store):
    company = store.add_company()
    _seed_failed_case(store, company, days_ago=4)
    return company


def test_morning_brief_fails_whole_when_a_project_fetch_fails():
    store = InMemoryStore()
    company = _company_with_open_case(store)
    store.failing["list_verifications"] = StoreError("verifications unavailable")

    with pytest.raises(StoreError, match="verifications unavailable"):
        asyncio.run(ComplianceAggregator(store).get_morning_brief(company.id, now=NOW))


def test_morning_brief_fails_whole_when_a_subcontractor_fetch_fails():
    store = InMemoryStore()
    company = _company_with_open_case(store)
    store.failing["get_subcontractor"] = StoreError("subcontractor lookup timed out")

    with pytest.raises(StoreError, match="subcontractor lookup timed out"):
        asyncio.run(ComplianceAggregator(store).get_morning_brief(company.id, now=NOW))


def test_pending_followups_fail_whole_when_a_communication_fetch_fails():
    store = InMemoryStore()
    company = _company_with_open_case(store)
    store.failing["list_communications_for_verification"] = StoreError("communications unavailable")

    with pytest.raises(StoreError, match="communications unavailable"):
        asyncio.run(ComplianceAggregator(store).get_pending_followups(company.id, now=NOW))


def test_today_snapshot_is_recorded_once_per_day():
    store = InMemoryStore()
    company = store.add_company()
    project = store.add_project(company)
    store.add_assignment(project, store.add_subcontractor(company, name="Alpha Tiling"), ComplianceStatus.compliant)
    pending = store.add_assignment(
        project, store.add_subcontractor(company, name="Bravo Glass"), ComplianceStatus.pending
    )
    aggregator = ComplianceAggregator(store)

    first = asyncio.run(aggregator.create_today_snapshot(company.id, now=NOW))
    store.assignments[pending.id] = pending.model_copy(update={"status": ComplianceStatus.compliant})
    second = asyncio.run(aggregator.create_today_snapshot(company.id, now=NOW + timedelta(hours=2)))

    assert first.snapshot_date == date(2026, 3, 2)
    assert (first.total, first.compliant, first.pending, first.compliance_rate) == (2, 1, 1, 50.0)
    assert second == first
    assert len(store.compliance_snapshots) == 1


def test_today_snapshot_date_follows_compliance_timezone():
    store = InMemoryStore()
    company = store.add_company()

    snapshot = asyncio.run(
        ComplianceAggregator(store, "Australia/Sydney").create_today_snapshot(
            company.id, now=NOW + timedelta(hours=11)
        )
    )

    # 20:00 UTC on 2 March is already the morning of 3 March in Sydney
    assert snapshot.snapshot_date == date(2026, 3, 3)
    assert snapshot.total == 0
    assert snapshot.compliance_rate is None


def test_compliance_history_returns_window_oldest_first():
    store = InMemoryStore()
    company = store.add_company()
    project = store.add_project(company)
    store.add_assignment(project, store.add_subcontractor(company), ComplianceStatus.compliant)
    today = NOW.date()
    store.add_compliance_snapshot(company, today - timedelta(days=40), total=1, compliance_rate=0.0)
    store.add_compliance_snapshot(company, today - timedelta(days=1), total=1, compliance_rate=0.0)
    store.add_compliance_snapshot(company, today - timedelta(days=3), total=1, compliance_rate=0.0)
    store.add_compliance_snapshot(store.add_company(name="Other Builders"), today, total=9)

    history = asyncio.run(ComplianceAggregator(store).get_compliance_history(company.id, days=30, now=NOW))

    assert [s.snapshot_date for s in history] == [
        today - timedelta(days=3),
        today - timedelta(days=1),
        today,
    ]
    assert history[-1].compliance_rate == 100.0
