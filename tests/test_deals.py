"""
Tests for deal draft intake, co-brokering and status advancement.
"""

import pytest

from conftest import seller_link
from deal_workflow.errors import InvalidState, NotAuthorized, NotFound, StaleState, ValidationError
from deal_workflow.models.deal import (
    AssetType,
    BrokerAssignment,
    DealDraftStatus,
)
from deal_workflow.workflow.deals import require_broker


class TestCreateDealDraft:
    """Deal intake."""

    @pytest.mark.asyncio
    async def test_creator_is_primary_broker(self, services, broker):
        deal = await services.deals.create_deal_draft('org-1', broker, ingest_source='EMAIL')

        assert deal.status == DealDraftStatus.DRAFT_INGESTED
        primary = deal.primary_broker
        assert primary.user_id == broker.id
        assert primary.can_approve_om and primary.can_distribute and primary.can_authorize

    @pytest.mark.asyncio
    async def test_creation_is_audited(self, services, broker):
        deal = await services.deals.create_deal_draft('org-1', broker)
        events = await services.deals.list_events(deal.id)
        assert [e.event_type for e in events] == ['DEAL_DRAFT_CREATED']
        assert events[0].actor_id == broker.id

    @pytest.mark.asyncio
    async def test_invalid_ingest_source(self, services, broker):
        with pytest.raises(ValidationError):
            await services.deals.create_deal_draft('org-1', broker, ingest_source='FAX')

    @pytest.mark.asyncio
    async def test_missing_organization(self, services, broker):
        with pytest.raises(ValidationError):
            await services.deals.create_deal_draft('', broker)

    @pytest.mark.asyncio
    async def test_unknown_deal(self, services):
        with pytest.raises(NotFound):
            await services.deals.get_deal_draft('nope')


class TestCoBrokers:
    @pytest.mark.asyncio
    async def test_co_broker_added_without_primary(self, deal):
        co = deal.broker('broker-2')
        assert co is not None
        assert not co.is_primary
        assert not co.can_approve_om

    @pytest.mark.asyncio
    async def test_only_primary_adds_co_broker(self, services, deal, co_broker):
        with pytest.raises(NotAuthorized):
            await services.deals.add_co_broker(deal.id, BrokerAssignment(user_id='broker-3'), co_broker)

    @pytest.mark.asyncio
    async def test_admin_adds_co_broker(self, services, deal, admin):
        updated = await services.deals.add_co_broker(deal.id, BrokerAssignment(user_id='broker-3'), admin)
        assert updated.broker('broker-3') is not None

    @pytest.mark.asyncio
    async def test_duplicate_co_broker(self, services, deal, broker):
        with pytest.raises(ValidationError):
            await services.deals.add_co_broker(deal.id, BrokerAssignment(user_id='broker-2'), broker)

    @pytest.mark.asyncio
    async def test_set_seller(self, services, deal, broker):
        updated = await services.deals.set_seller(deal.id, seller_link(requires_buyer_approval=True), broker)
        assert updated.seller.approval_settings.requires_buyer_approval


class TestRequireBroker:
    @pytest.mark.asyncio
    async def test_missing_capability(self, deal, co_broker):
        with pytest.raises(NotAuthorized) as exc_info:
            require_broker(deal, co_broker, 'can_distribute')
        assert exc_info.value.context['capability'] == 'can_distribute'

    @pytest.mark.asyncio
    async def test_non_member(self, deal, buyer):
        with pytest.raises(NotAuthorized):
            require_broker(deal, buyer)

    @pytest.mark.asyncio
    async def test_admin_passes(self, deal, admin):
        assert require_broker(deal, admin, 'can_distribute') is None


class TestAdvanceStatus:
    """DealDraft.status only moves along the declared transitions."""

    @pytest.mark.asyncio
    async def test_forward_step(self, services, deal, broker):
        updated = await services.deals.advance_status(deal, DealDraftStatus.OM_DRAFTED, broker)
        assert updated.status == DealDraftStatus.OM_DRAFTED

        events = await services.deals.list_events(deal.id)
        assert events[-1].event_type == 'STATUS_OM_DRAFTED'
        assert events[-1].data['from'] == 'DRAFT_INGESTED'

    @pytest.mark.asyncio
    async def test_skipping_is_rejected(self, services, deal, broker):
        with pytest.raises(InvalidState) as exc_info:
            await services.deals.advance_status(deal, DealDraftStatus.DISTRIBUTED, broker)
        assert exc_info.value.current_status == 'DRAFT_INGESTED'
        assert exc_info.value.allowed_statuses == ['OM_DRAFTED']

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, services, deal, broker):
        before = len(await services.deals.list_events(deal.id))
        same = await services.deals.advance_status(deal, DealDraftStatus.DRAFT_INGESTED, broker)
        assert same.revision == deal.revision
        assert len(await services.deals.list_events(deal.id)) == before

    @pytest.mark.asyncio
    async def test_stale_deal_copy(self, services, deal, broker):
        await services.deals.advance_status(deal, DealDraftStatus.OM_DRAFTED, broker)
        with pytest.raises(StaleState):
            await services.deals.advance_status(deal, DealDraftStatus.OM_DRAFTED, broker)

    @pytest.mark.asyncio
    async def test_rejected_write_leaves_caller_copy_untouched(self, services, deal, broker):
        """A stale write never changes the caller's object, so a retry fails again."""
        drafted = await services.deals.advance_status(deal, DealDraftStatus.OM_DRAFTED, broker)
        await services.deals.advance_status(drafted, DealDraftStatus.OM_BROKER_APPROVED, broker)

        for _ in range(2):
            with pytest.raises(StaleState):
                await services.deals.advance_status(deal, DealDraftStatus.OM_DRAFTED, broker)
            assert deal.status == DealDraftStatus.DRAFT_INGESTED

        stored = await services.deals.get_deal_draft(deal.id)
        assert stored.status == DealDraftStatus.OM_BROKER_APPROVED

    @pytest.mark.asyncio
    async def test_same_status_on_stale_copy(self, services, deal, broker):
        drafted = await services.deals.advance_status(deal, DealDraftStatus.OM_DRAFTED, broker)
        await services.deals.advance_status(drafted, DealDraftStatus.OM_BROKER_APPROVED, broker)

        with pytest.raises(StaleState):
            await services.deals.advance_status(drafted, DealDraftStatus.OM_DRAFTED, broker)

    def test_status_rank_order(self):
        ranks = [s.rank for s in DealDraftStatus]
        assert ranks == sorted(ranks)
        assert DealDraftStatus.OM_APPROVED_FOR_MARKETING.in_om_phase
        assert not DealDraftStatus.DISTRIBUTED.in_om_phase


class TestAuthoritativeMirror:
    @pytest.mark.asyncio
    async def test_mirrors_mapped_fields(self, services, deal):
        updated = await services.deals.apply_authoritative_value(deal.id, 'askingPrice', '16500000')
        assert updated.properties.asking_price == 16_500_000.0

    @pytest.mark.asyncio
    async def test_asset_type_normalized(self, services, deal):
        updated = await services.deals.apply_authoritative_value(deal.id, 'assetType', 'mixed use')
        assert updated.properties.asset_type == AssetType.MIXED_USE

    @pytest.mark.asyncio
    async def test_unmapped_field_ignored(self, services, deal):
        assert await services.deals.apply_authoritative_value(deal.id, 'noi', 900_000) is None
