"""Shared logic for follow-up staging and expiry reminder bands."""

from dataclasses import dataclass
from typing import Optional

MAX_FOLLOW_UP_STAGE = 3
ESCALATE_AFTER_DAYS = 10
FINAL_STAGE_AFTER_DAYS = 7
SECOND_STAGE_AFTER_DAYS = 5
FOLLOW_UP_MIN_DAYS_WAITING = 3
FOLLOW_UP_BATCH_SIZE = 10

EXPIRY_LOOKBACK_DAYS = 7
EXPIRY_LOOKAHEAD_DAYS = 30


@dataclass(frozen=True)
class FollowUpDecision:
    stage: int
    escalate: bool


def determine_follow_up_stage(days_waiting: float) -> FollowUpDecision:
    """Stage and escalation both derive from the same days-waiting value."""
    if days_waiting >= ESCALATE_AFTER_DAYS:
        return FollowUpDecision(stage=MAX_FOLLOW_UP_STAGE, escalate=True)
    if days_waiting >= FINAL_STAGE_AFTER_DAYS:
        return FollowUpDecision(stage=MAX_FOLLOW_UP_STAGE, escalate=False)
    if days_waiting >= SECOND_STAGE_AFTER_DAYS:
        return FollowUpDecision(stage=2, escalate=False)
    return FollowUpDecision(stage=1, escalate=False)


def should_send_stage(decision: FollowUpDecision, follow_ups_sent: int) -> bool:
    return follow_ups_sent < decision.stage


def expiry_alert_level(days_until_expiry: int) -> Optional[str]:
    if days_until_expiry <= 0:
        return "expired"
    if days_until_expiry <= 7:
        return "urgent"
    if days_until_expiry <= 14:
        return "soon"
    if days_until_expiry <= 30:
        return "upcoming"
    return None
