"""
Escalation Rule Engine.

A pure policy evaluator: given a work item, the current time and an immutable
EscalationConfig it decides whether to escalate, at which level, and to whom.
It stores nothing; the caller persists `escalated_at` after delivering.

Evaluation order:
1. Inactive items (done, cancelled, no longer pending) never escalate
2. Items not yet due never escalate
3. An escalation within the cool-off window suppresses, whatever the level
4. The highest threshold met picks the level (later thresholds override)
5. Recipients widen with the level, are deduplicated in order, and exclude
   the assignee; an empty set is a no-op

Quiet hours are a separate per-recipient check (is_quiet_hours); they are not
part of the evaluation.
"""

from datetime import datetime, timedelta
from typing import Sequence
from zoneinfo import ZoneInfo

from ..models.escalation import (
    DEFAULT_ESCALATION_CONFIG,
    ESCALATION_LEVEL_LABELS,
    EscalationConfig,
    EscalationEvaluation,
    EscalationLevel,
    ItemType,
    QuietHours,
    WorkItem,
)

DAY = timedelta(days=1)

REASON_INACTIVE = 'inactive'
REASON_NOT_YET_DUE = 'not_yet_due'
REASON_COOL_OFF = 'cool_off'
REASON_BELOW_THRESHOLD = 'below_threshold'
REASON_NO_RECIPIENTS = 'no_recipients'


def elapsed_days(start: datetime, now: datetime) -> int:
    """Whole days between two instants (floor of the absolute difference)."""
    return int(abs(now - start) // DAY)


def _recipients(
    item: WorkItem,
    level: EscalationLevel,
    deal_team: Sequence[str],
    managers: Sequence[str],
) -> list[str]:
    candidates: list[str | None] = []
    if level >= EscalationLevel.CREATOR:
        candidates.append(item.created_by_id)
    if level >= EscalationLevel.DEAL_TEAM:
        candidates.extend(deal_team)
    if level >= EscalationLevel.MANAGER:
        candidates.extend(managers)
    return [
        r for r in dict.fromkeys(candidates)
        if r and r != item.assignee_id
    ]


def evaluate_escalation(
    item: WorkItem,
    now: datetime,
    config: EscalationConfig = DEFAULT_ESCALATION_CONFIG,
    deal_team: Sequence[str] = (),
    managers: Sequence[str] = (),
) -> EscalationEvaluation:
    """
    Decide whether `item` should escalate at `now`.

    Args:
        item: The work item to evaluate
        now: Current time (timezone-aware)
        config: Threshold tables per item type
        deal_team: Deal team user ids, used from DEAL_TEAM level
        managers: Manager user ids, used from MANAGER level

    Returns:
        EscalationEvaluation; when should_escalate is False, `reason` says why
    """
    rule = config.rule_for(item.item_type)

    start = item.start_at
    if not rule.is_active(item.status) or start is None:
        return EscalationEvaluation(should_escalate=False, reason=REASON_INACTIVE)

    if item.item_type == ItemType.TASK and start > now:
        return EscalationEvaluation(should_escalate=False, reason=REASON_NOT_YET_DUE)

    days = elapsed_days(start, now)

    if item.escalated_at is not None:
        hours_since = (now - item.escalated_at).total_seconds() / 3600
        if hours_since < rule.cool_off_hours:
            return EscalationEvaluation(
                should_escalate=False,
                elapsed_days=days,
                reason=REASON_COOL_OFF,
            )

    level = EscalationLevel.NONE
    for threshold in sorted(rule.thresholds, key=lambda t: t.days):
        if days >= threshold.days:
            level = threshold.level

    if level == EscalationLevel.NONE:
        return EscalationEvaluation(
            should_escalate=False,
            elapsed_days=days,
            reason=REASON_BELOW_THRESHOLD,
        )

    recipients = _recipients(item, level, deal_team, managers)
    if not recipients:
        return EscalationEvaluation(
            should_escalate=False,
            level=level,
            elapsed_days=days,
            reason=REASON_NO_RECIPIENTS,
        )

    return EscalationEvaluation(
        should_escalate=True,
        level=level,
        recipients=recipients,
        elapsed_days=days,
    )


def _minute_of_day(hhmm: str) -> int:
    hours, minutes = hhmm.strip().split(':')
    return int(hours) * 60 + int(minutes)


def is_quiet_hours(quiet_hours: QuietHours | None, now: datetime) -> bool:
    """
    True when `now` falls in the [start, end) quiet window.

    Windows spanning midnight (22:00-08:00) are supported. A missing or empty
    window never suppresses. When the window names an IANA timezone, `now`
    is converted to it first.
    """
    if quiet_hours is None or not quiet_hours.start or not quiet_hours.end:
        return False

    if quiet_hours.timezone and now.tzinfo is not None:
        now = now.astimezone(ZoneInfo(quiet_hours.timezone))

    current = now.hour * 60 + now.minute
    start = _minute_of_day(quiet_hours.start)
    end = _minute_of_day(quiet_hours.end)

    if start > end:
        return current >= start or current < end
    return start <= current < end


def escalation_level_label(level: EscalationLevel | int) -> str:
    try:
        return ESCALATION_LEVEL_LABELS[EscalationLevel(level)]
    except ValueError:
        return 'Unknown'
