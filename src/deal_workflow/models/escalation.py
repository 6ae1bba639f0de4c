"""
Escalation policy value objects and work item shape.

EscalationConfig is immutable and passed explicitly into the evaluator;
there is no process-wide threshold table to mutate.
"""

from datetime import datetime
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EscalationLevel(IntEnum):
    """Ordered escalation levels. Higher levels notify broader audiences."""

    NONE = 0
    CREATOR = 1
    DEAL_TEAM = 2
    MANAGER = 3


ESCALATION_LEVEL_LABELS: dict[EscalationLevel, str] = {
    EscalationLevel.NONE: 'None',
    EscalationLevel.CREATOR: 'Creator Notified',
    EscalationLevel.DEAL_TEAM: 'Deal Team Notified',
    EscalationLevel.MANAGER: 'Manager Notified',
}


class ItemType(str, Enum):
    TASK = 'task'
    REVIEW_REQUEST = 'reviewRequest'
    DEAL_SUBMISSION = 'dealSubmission'


class Threshold(BaseModel):
    model_config = ConfigDict(frozen=True)

    days: int = Field(ge=0)
    level: EscalationLevel


class EscalationRule(BaseModel):
    """
    Threshold table and suppression settings for one item type.

    Exactly one of `active_statuses` / `inactive_statuses` is normally set;
    statuses compare case-insensitively.
    """

    model_config = ConfigDict(frozen=True)

    thresholds: tuple[Threshold, ...]
    cool_off_hours: float = 24
    max_reminders_per_day: int = 1
    active_statuses: frozenset[str] | None = None
    inactive_statuses: frozenset[str] = frozenset()

    def is_active(self, status: str) -> bool:
        normalized = status.upper()
        if normalized in {s.upper() for s in self.inactive_statuses}:
            return False
        if self.active_statuses is not None:
            return normalized in {s.upper() for s in self.active_statuses}
        return True


class EscalationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    rules: Mapping[ItemType, EscalationRule]

    @field_validator('rules', mode='after')
    @classmethod
    def _read_only_rules(cls, rules: Mapping[ItemType, EscalationRule]) -> Mapping[ItemType, EscalationRule]:
        return MappingProxyType(dict(rules))

    def rule_for(self, item_type: ItemType) -> EscalationRule:
        return self.rules[item_type]


DEFAULT_ESCALATION_CONFIG = EscalationConfig(
    rules={
        ItemType.TASK: EscalationRule(
            thresholds=(
                Threshold(days=2, level=EscalationLevel.CREATOR),
                Threshold(days=5, level=EscalationLevel.DEAL_TEAM),
            ),
            cool_off_hours=24,
            max_reminders_per_day=3,
            inactive_statuses=frozenset({'DONE', 'CANCELLED'}),
        ),
        ItemType.REVIEW_REQUEST: EscalationRule(
            thresholds=(
                Threshold(days=2, level=EscalationLevel.CREATOR),
                Threshold(days=5, level=EscalationLevel.DEAL_TEAM),
            ),
            cool_off_hours=48,
            max_reminders_per_day=2,
            active_statuses=frozenset({'PENDING'}),
        ),
        ItemType.DEAL_SUBMISSION: EscalationRule(
            thresholds=(
                Threshold(days=5, level=EscalationLevel.CREATOR),
                Threshold(days=10, level=EscalationLevel.DEAL_TEAM),
            ),
            cool_off_hours=72,
            max_reminders_per_day=1,
            active_statuses=frozenset({'PENDING'}),
        ),
    }
)


class WorkItem(BaseModel):
    """
    A task, review request, or deal submission that may stall.

    The start timestamp depends on the item type: `due_at` for tasks,
    `requested_at` for review requests, `submitted_at` for submissions.
    """

    item_id: str
    item_type: ItemType
    status: str
    deal_id: str | None = None
    created_by_id: str | None = None
    assignee_id: str | None = None
    due_at: datetime | None = None
    requested_at: datetime | None = None
    submitted_at: datetime | None = None
    escalated_at: datetime | None = None
    escalation_level: EscalationLevel = EscalationLevel.NONE
    revision: int = 0

    @property
    def start_at(self) -> datetime | None:
        if self.item_type == ItemType.TASK:
            return self.due_at
        if self.item_type == ItemType.REVIEW_REQUEST:
            return self.requested_at
        return self.submitted_at


class EscalationEvaluation(BaseModel):
    """Computed, never stored."""

    should_escalate: bool
    level: EscalationLevel = EscalationLevel.NONE
    recipients: list[str] = Field(default_factory=list)
    elapsed_days: int | None = None
    reason: str | None = None


class QuietHours(BaseModel):
    """A per-user HH:MM window, possibly spanning midnight."""

    start: str | None = None
    end: str | None = None
    timezone: str | None = None
