"""
Escalation sweep: feeds open work items through the escalation engine.

Each item is evaluated concurrently using asyncio.gather(return_exceptions=True).

Fault isolation guarantees:
- One item failing never stops the others; the exception lands in SweepResult.errors
- One recipient failing never blocks delivery to the other recipients
- An item whose lock is still held by a previous cycle is skipped, so a
  single item's re-evaluation never overlaps with itself

An item is stamped (escalated_at, escalation_level) only when at least one
recipient was notified; otherwise the next cycle simply re-evaluates it.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence

import structlog

from deal_workflow.clients.notification_client import Notifier
from deal_workflow.models.deal import DealDraft
from deal_workflow.models.escalation import (
    DEFAULT_ESCALATION_CONFIG,
    EscalationConfig,
    QuietHours,
    WorkItem,
)
from deal_workflow.logging import logging_context
from deal_workflow.repository import WorkflowRepository
from deal_workflow.utils import new_id, utc_now
from deal_workflow.workflow.escalation import (
    escalation_level_label,
    evaluate_escalation,
    is_quiet_hours,
)

from .config import SweepSettings, get_settings

logger = structlog.get_logger(__name__)


# =============================================================================
# Result Model
# =============================================================================


@dataclass
class ItemOutcome:
    item_id: str
    escalated: bool = False
    skipped: bool = False
    reason: str | None = None
    delivered: int = 0
    failed: int = 0
    quiet: int = 0


@dataclass
class SweepResult:
    """Aggregate result of one sweep cycle."""

    started_at: datetime
    evaluated: int = 0
    escalated: int = 0
    suppressed: int = 0
    skipped_locked: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    quiet_hours_suppressed: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int | None = None

    def record(self, outcome: ItemOutcome) -> None:
        if outcome.skipped:
            self.skipped_locked += 1
            return
        self.evaluated += 1
        if outcome.escalated:
            self.escalated += 1
        else:
            self.suppressed += 1
        self.notifications_sent += outcome.delivered
        self.notifications_failed += outcome.failed
        self.quiet_hours_suppressed += outcome.quiet

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging."""
        return {
            'evaluated': self.evaluated,
            'escalated': self.escalated,
            'suppressed': self.suppressed,
            'skipped_locked': self.skipped_locked,
            'notifications_sent': self.notifications_sent,
            'notifications_failed': self.notifications_failed,
            'quiet_hours_suppressed': self.quiet_hours_suppressed,
            'error_count': len(self.errors),
            'duration_ms': self.duration_ms,
        }


# =============================================================================
# EscalationSweep
# =============================================================================


class EscalationSweep:
    """Evaluates every open work item once per cycle and delivers escalations."""

    def __init__(
        self,
        repository: WorkflowRepository,
        notifier: Notifier,
        settings: SweepSettings | None = None,
        escalation_config: EscalationConfig = DEFAULT_ESCALATION_CONFIG,
        quiet_hours: Mapping[str, QuietHours] | None = None,
        managers: Sequence[str] | None = None,
    ):
        """
        Args:
            repository: Store holding WorkItem records and deals
            notifier: Fire-and-forget notification wrapper
            settings: Sweep settings (defaults to environment)
            escalation_config: Threshold tables per item type
            quiet_hours: Quiet window per recipient user id
            managers: MANAGER-level recipients (defaults to ESCALATION_MANAGER_IDS)
        """
        self.repo = repository
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.escalation_config = escalation_config
        self.quiet_hours = dict(quiet_hours or {})
        self.managers = list(managers) if managers is not None else self.settings.manager_ids
        self._semaphore = asyncio.Semaphore(max(1, self.settings.SWEEP_MAX_CONCURRENCY))

    async def _deal_team(self, deal_id: str | None) -> list[str]:
        if not deal_id:
            return []
        deal = await self.repo.get(DealDraft, deal_id)
        return [b.user_id for b in deal.brokers] if deal else []

    async def run(self, now: datetime | None = None) -> SweepResult:
        """
        Run one sweep cycle.

        Args:
            now: Evaluation time (defaults to the current UTC time)

        Returns:
            SweepResult with counts and per-item errors
        """
        now = now or utc_now()
        t0 = time.monotonic()
        result = SweepResult(started_at=now)

        items = await self.repo.find(WorkItem)

        # one trace id per cycle; gathered tasks copy the context
        with logging_context(trace_id=new_id()):
            logger.info('sweep.started', item_count=len(items))
            outcomes = await asyncio.gather(
                *(self._process_item(item.item_id, now) for item in items),
                return_exceptions=True,
            )

        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    'sweep.item_failed',
                    item_id=item.item_id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                result.errors.append(f'{item.item_id}: {type(outcome).__name__}: {outcome}')
                continue
            result.record(outcome)

        result.duration_ms = int((time.monotonic() - t0) * 1000)
        logger.info('sweep.completed', **result.to_dict())
        return result

    async def _process_item(self, item_id: str, now: datetime) -> ItemOutcome:
        if self.repo.is_locked('sweep', item_id):
            logger.info('sweep.item_skipped_locked', item_id=item_id)
            return ItemOutcome(item_id=item_id, skipped=True)

        async with self._semaphore, self.repo.lock('sweep', item_id):
            item = await self.repo.require(WorkItem, item_id)
            evaluation = evaluate_escalation(
                item,
                now,
                self.escalation_config,
                deal_team=await self._deal_team(item.deal_id),
                managers=self.managers,
            )
            outcome = ItemOutcome(item_id=item_id, reason=evaluation.reason)
            if not evaluation.should_escalate:
                return outcome

            payload = {
                'item_id': item.item_id,
                'item_type': item.item_type.value,
                'deal_id': item.deal_id,
                'level': evaluation.level.name,
                'level_label': escalation_level_label(evaluation.level),
                'elapsed_days': evaluation.elapsed_days,
            }
            for recipient_id in evaluation.recipients:
                if is_quiet_hours(self.quiet_hours.get(recipient_id), now):
                    outcome.quiet += 1
                    continue
                if await self.notifier.notify(recipient_id, 'WORK_ITEM_ESCALATED', payload):
                    outcome.delivered += 1
                else:
                    outcome.failed += 1

            if outcome.delivered:
                item.escalated_at = now
                item.escalation_level = evaluation.level
                await self.repo.save(item)
                outcome.escalated = True
                logger.info(
                    'sweep.item_escalated',
                    item_id=item_id,
                    level=evaluation.level.name,
                    delivered=outcome.delivered,
                )
            else:
                outcome.reason = 'undelivered'
            return outcome
