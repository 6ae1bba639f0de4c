"""
Tests for the escalation sweep and its scheduler loop.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from deal_workflow.clients.notification_client import (
    InMemoryNotificationSink,
    Notifier,
    WebhookNotificationSink,
)
from deal_workflow.models.deal import BrokerAssignment, DealDraft
from deal_workflow.models.escalation import EscalationLevel, ItemType, QuietHours, WorkItem
from escalation_sweep import EscalationSweep, SweepResult, SweepSettings, build_sweep, run_periodically

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> SweepSettings:
    return SweepSettings(
        SWEEP_MAX_CONCURRENCY=2,
        ESCALATION_MANAGER_IDS='mgr-1, mgr-2',
        NOTIFICATION_WEBHOOK_URL='',
    )


@pytest.fixture
def sweep_for(repository, settings):
    def _build(sink=None, **kwargs):
        sink = sink or InMemoryNotificationSink()
        return EscalationSweep(repository, Notifier(sink), settings=settings, **kwargs), sink

    return _build


async def add_task(repository, item_id, days_overdue, **overrides) -> WorkItem:
    fields = dict(
        item_id=item_id,
        item_type=ItemType.TASK,
        status='OPEN',
        created_by_id='creator',
        assignee_id='assignee',
        due_at=NOW - timedelta(days=days_overdue),
    )
    fields.update(overrides)
    return await repository.insert(WorkItem(**fields))


class TestSweepSettings:
    def test_manager_ids_parsed(self, settings):
        assert settings.manager_ids == ['mgr-1', 'mgr-2']


class TestSweepRun:
    """One sweep cycle."""

    @pytest.mark.asyncio
    async def test_escalates_and_stamps(self, repository, sweep_for):
        await add_task(repository, 'overdue', 3)
        await add_task(repository, 'fresh', 1)
        await add_task(repository, 'done', 9, status='DONE')
        sweep, sink = sweep_for()

        result = await sweep.run(now=NOW)

        assert result.evaluated == 3
        assert result.escalated == 1
        assert result.suppressed == 2
        assert result.notifications_sent == 1
        assert result.errors == []
        assert [d.recipient_id for d in sink.of_type('WORK_ITEM_ESCALATED')] == ['creator']

        stored = await repository.get(WorkItem, 'overdue')
        assert stored.escalated_at == NOW
        assert stored.escalation_level == EscalationLevel.CREATOR
        assert (await repository.get(WorkItem, 'fresh')).escalated_at is None

    @pytest.mark.asyncio
    async def test_cool_off_between_cycles(self, repository, sweep_for):
        await add_task(repository, 'overdue', 3)
        sweep, sink = sweep_for()

        await sweep.run(now=NOW)
        second = await sweep.run(now=NOW + timedelta(hours=1))

        assert second.escalated == 0
        assert len(sink.deliveries) == 1

    @pytest.mark.asyncio
    async def test_deal_team_from_brokers(self, repository, sweep_for):
        deal = await repository.insert(
            DealDraft(
                organization_id='org',
                brokers=[
                    BrokerAssignment(user_id='broker-1', is_primary=True),
                    BrokerAssignment(user_id='assignee'),
                ],
            )
        )
        await add_task(repository, 'stalled', 6, deal_id=deal.id)
        sweep, sink = sweep_for()

        await sweep.run(now=NOW)

        assert {d.recipient_id for d in sink.deliveries} == {'creator', 'broker-1'}
        payload = sink.deliveries[0].payload
        assert payload['level'] == 'DEAL_TEAM'
        assert payload['level_label'] == 'Deal Team Notified'

    @pytest.mark.asyncio
    async def test_failed_recipient_does_not_block_others(self, repository, sweep_for):
        deal = await repository.insert(
            DealDraft(organization_id='org', brokers=[BrokerAssignment(user_id='broker-1')])
        )
        await add_task(repository, 'stalled', 6, deal_id=deal.id)
        sweep, sink = sweep_for(InMemoryNotificationSink(fail_for={'creator'}))

        result = await sweep.run(now=NOW)

        assert result.escalated == 1
        assert result.notifications_sent == 1
        assert result.notifications_failed == 1
        assert [d.recipient_id for d in sink.deliveries] == ['broker-1']

    @pytest.mark.asyncio
    async def test_undelivered_item_not_stamped(self, repository, sweep_for):
        await add_task(repository, 'overdue', 3)
        sweep, _ = sweep_for(InMemoryNotificationSink(fail_for={'creator'}))

        result = await sweep.run(now=NOW)

        assert result.escalated == 0
        assert result.notifications_failed == 1
        assert (await repository.get(WorkItem, 'overdue')).escalated_at is None

    @pytest.mark.asyncio
    async def test_quiet_hours_suppress_recipient(self, repository, sweep_for):
        await add_task(repository, 'overdue', 3)
        sweep, sink = sweep_for(quiet_hours={'creator': QuietHours(start='14:00', end='16:00')})

        result = await sweep.run(now=NOW)

        assert result.quiet_hours_suppressed == 1
        assert result.escalated == 0
        assert sink.deliveries == []

    @pytest.mark.asyncio
    async def test_locked_item_skipped(self, repository, sweep_for):
        await add_task(repository, 'busy', 3)
        await add_task(repository, 'free', 3)
        sweep, sink = sweep_for()

        async with repository.lock('sweep', 'busy'):
            result = await sweep.run(now=NOW)

        assert result.skipped_locked == 1
        assert result.escalated == 1
        assert (await repository.get(WorkItem, 'busy')).escalated_at is None

    @pytest.mark.asyncio
    async def test_item_failure_is_isolated(self, repository, sweep_for):
        await add_task(repository, 'broken', 3, deal_id='deal-broken')
        await add_task(repository, 'healthy', 3)
        sweep, sink = sweep_for()

        original = sweep._deal_team

        async def _deal_team(deal_id):
            if deal_id == 'deal-broken':
                raise RuntimeError('deal store unavailable')
            return await original(deal_id)

        sweep._deal_team = _deal_team

        result = await sweep.run(now=NOW)

        assert result.escalated == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith('broken: RuntimeError')
        assert result.to_dict()['error_count'] == 1

    @pytest.mark.asyncio
    async def test_managers_default_from_settings(self, sweep_for):
        sweep, _ = sweep_for()
        assert sweep.managers == ['mgr-1', 'mgr-2']


class TestRunPeriodically:
    @pytest.mark.asyncio
    async def test_runs_until_max_cycles(self):
        sweep = MagicMock()
        sweep.run = AsyncMock(return_value=SweepResult(started_at=NOW))

        results = await run_periodically(sweep, 0, asyncio.Event(), max_cycles=3)

        assert len(results) == 3
        assert sweep.run.await_count == 3

    @pytest.mark.asyncio
    async def test_failed_cycle_does_not_stop_loop(self):
        sweep = MagicMock()
        sweep.run = AsyncMock(side_effect=[RuntimeError('boom'), SweepResult(started_at=NOW)])

        results = await run_periodically(sweep, 0, asyncio.Event(), max_cycles=2)

        assert len(results) == 1
        assert sweep.run.await_count == 2

    @pytest.mark.asyncio
    async def test_stop_event(self):
        sweep = MagicMock()
        sweep.run = AsyncMock(return_value=SweepResult(started_at=NOW))
        stop = asyncio.Event()
        stop.set()

        assert await run_periodically(sweep, 0, stop) == []
        sweep.run.assert_not_awaited()


class TestBuildSweep:
    def test_without_webhook(self, repository, settings):
        sweep = build_sweep(repository, settings)
        assert sweep.notifier.sink is None

    @pytest.mark.asyncio
    async def test_with_webhook(self, repository):
        settings = SweepSettings(NOTIFICATION_WEBHOOK_URL='https://hooks.example.com/notify')
        sweep = build_sweep(repository, settings)
        assert isinstance(sweep.notifier.sink, WebhookNotificationSink)
        await sweep.notifier.sink.close()
