from riskshield.services.follow_up_logic import (
    FollowUpDecision,
    determine_follow_up_stage,
    expiry_alert_level,
    should_send_stage,
)


def test_stage_three_and_escalated_after_ten_days():
    assert determine_follow_up_stage(11) == FollowUpDecision(stage=3, escalate=True)
    assert determine_follow_up_stage(10) == FollowUpDecision(stage=3, escalate=True)


def test_stage_three_without_escalation_from_seven_days():
    assert determine_follow_up_stage(7) == FollowUpDecision(stage=3, escalate=False)
    assert determine_follow_up_stage(9.9) == FollowUpDecision(stage=3, escalate=False)


def test_stage_two_between_five_and_seven_days():
    assert determine_follow_up_stage(6) == FollowUpDecision(stage=2, escalate=False)
    assert determine_follow_up_stage(5) == FollowUpDecision(stage=2, escalate=False)


def test_stage_one_before_five_days():
    assert determine_follow_up_stage(3.2) == FollowUpDecision(stage=1, escalate=False)


def test_should_send_stage_only_when_stage_not_yet_reached():
    decision = determine_follow_up_stage(6)
    assert should_send_stage(decision, follow_ups_sent=0) is True
    assert should_send_stage(decision, follow_ups_sent=1) is True
    assert should_send_stage(decision, follow_ups_sent=2) is False


def test_expiry_alert_levels():
    assert expiry_alert_level(-3) == "expired"
    assert expiry_alert_level(0) == "expired"
    assert expiry_alert_level(7) == "urgent"
    assert expiry_alert_level(14) == "soon"
    assert expiry_alert_level(30) == "upcoming"
    assert expiry_alert_level(31) is None
