"""
Deal draft intake and the single writer of DealDraft.status.

Every other state machine advances the deal through DealService.advance_status,
which validates against DEAL_STATUS_TRANSITIONS, saves with a revision check,
and appends a STATUS_<target> audit event.

Permission helpers shared by the workflow services live here too.
"""

from typing import Any

import structlog

from ..errors import InvalidState, NotAuthorized, NotFound, StaleState, ValidationError
from ..models.deal import (
    DEAL_STATUS_TRANSITIONS,
    Actor,
    AssetType,
    BrokerAssignment,
    DealDraft,
    DealDraftStatus,
    DealEvent,
    IngestSource,
    PropertyAttributes,
    SellerLink,
)
from ..repository import WorkflowRepository

logger = structlog.get_logger(__name__)


# Claim field names -> PropertyAttributes attribute
PROPERTY_FIELD_MAP: dict[str, str] = {
    'propertyName': 'property_name',
    'name': 'property_name',
    'propertyAddress': 'property_address',
    'address': 'property_address',
    'assetType': 'asset_type',
    'propertyType': 'asset_type',
    'askingPrice': 'asking_price',
    'price': 'asking_price',
    'units': 'unit_count',
    'unitCount': 'unit_count',
    'totalUnits': 'unit_count',
    'totalSF': 'total_sf',
    'squareFeet': 'total_sf',
    'sf': 'total_sf',
}


# =============================================================================
# Permission helpers
# =============================================================================


def require_broker(
    deal: DealDraft,
    actor: Actor,
    capability: str | None = None,
    allow_admin: bool = True,
) -> BrokerAssignment | None:
    """
    Ensure `actor` holds a broker seat on the deal (and `capability`, if given).

    Returns the broker assignment, or None when an admin passes the check.

    Raises:
        NotAuthorized: Actor is not a broker on the deal or lacks the capability
    """
    if allow_admin and actor.is_admin:
        return None
    assignment = deal.broker(actor.id)
    if assignment is None:
        raise NotAuthorized(
            'Actor is not a broker on this deal',
            context={'deal_id': deal.id, 'actor_id': actor.id},
        )
    if capability and not getattr(assignment, capability):
        raise NotAuthorized(
            f'Broker lacks {capability} permission',
            context={'deal_id': deal.id, 'actor_id': actor.id, 'capability': capability},
        )
    return assignment


def require_broker_or_seller(deal: DealDraft, actor: Actor) -> None:
    if actor.is_admin or deal.is_seller(actor.id) or deal.broker(actor.id) is not None:
        return
    raise NotAuthorized(
        'Actor is neither a broker nor the seller on this deal',
        context={'deal_id': deal.id, 'actor_id': actor.id},
    )


def broker_ids(deal: DealDraft) -> list[str]:
    return [b.user_id for b in deal.brokers]


# =============================================================================
# Service
# =============================================================================


class DealService:
    """Deal draft intake, co-brokering, seller linkage, and status advancement."""

    def __init__(self, repository: WorkflowRepository):
        self.repo = repository

    async def get_deal_draft(self, deal_id: str) -> DealDraft:
        deal = await self.repo.get(DealDraft, deal_id)
        if deal is None:
            raise NotFound('Deal draft not found', context={'deal_id': deal_id})
        return deal

    async def record_event(
        self,
        deal_id: str,
        event_type: str,
        actor: Actor,
        data: dict[str, Any] | None = None,
    ) -> DealEvent:
        event = DealEvent(
            deal_id=deal_id,
            event_type=event_type,
            actor_id=actor.id,
            actor_name=actor.name,
            actor_role=actor.role,
            data=data or {},
        )
        return await self.repo.append_event(event)

    async def list_events(self, deal_id: str) -> list[DealEvent]:
        return await self.repo.list_events(deal_id)

    async def create_deal_draft(
        self,
        organization_id: str,
        broker: Actor,
        ingest_source: IngestSource | str = IngestSource.UPLOAD,
        seller: SellerLink | None = None,
        properties: PropertyAttributes | None = None,
        source_data: dict[str, Any] | None = None,
        is_anonymous_seller: bool = False,
        broker_email: str | None = None,
        broker_firm: str | None = None,
    ) -> DealDraft:
        """
        Create a deal draft in DRAFT_INGESTED with the creating broker as primary.

        Raises:
            ValidationError: Unknown ingest source or missing organization
        """
        if not organization_id:
            raise ValidationError('organization_id is required')
        try:
            source = IngestSource(ingest_source)
        except ValueError:
            raise ValidationError(
                f'Invalid ingest source: {ingest_source}',
                context={'allowed': [s.value for s in IngestSource]},
            ) from None

        deal = DealDraft(
            organization_id=organization_id,
            ingest_source=source,
            source_data=source_data or {},
            properties=properties or PropertyAttributes(),
            seller=seller,
            is_anonymous_seller=is_anonymous_seller,
            brokers=[
                BrokerAssignment(
                    user_id=broker.id,
                    name=broker.name,
                    email=broker_email,
                    firm_name=broker_firm,
                    is_primary=True,
                    can_approve_om=True,
                    can_distribute=True,
                    can_authorize=True,
                )
            ],
        )
        deal = await self.repo.insert(deal)
        await self.record_event(
            deal.id,
            'DEAL_DRAFT_CREATED',
            broker,
            {'ingest_source': source.value, 'organization_id': organization_id},
        )
        logger.info(
            'deal.draft_created',
            deal_id=deal.id,
            organization_id=organization_id,
            ingest_source=source.value,
        )
        return deal

    async def add_co_broker(
        self,
        deal_id: str,
        assignment: BrokerAssignment,
        actor: Actor,
    ) -> DealDraft:
        """Add a co-broker. Only the primary broker (or an admin) may do this."""
        deal = await self.get_deal_draft(deal_id)
        primary = deal.primary_broker
        if not actor.is_admin and (primary is None or primary.user_id != actor.id):
            raise NotAuthorized(
                'Only the primary broker can add co-brokers',
                context={'deal_id': deal_id, 'actor_id': actor.id},
            )
        if deal.broker(assignment.user_id) is not None:
            raise ValidationError(
                'Broker is already on this deal',
                context={'deal_id': deal_id, 'broker_id': assignment.user_id},
            )

        deal.brokers.append(assignment.model_copy(update={'is_primary': False}))
        deal = await self.repo.save(deal)
        await self.record_event(
            deal_id,
            'CO_BROKER_ADDED',
            actor,
            {'broker_id': assignment.user_id, 'broker_name': assignment.name},
        )
        logger.info('deal.co_broker_added', deal_id=deal_id, broker_id=assignment.user_id)
        return deal

    async def set_seller(self, deal_id: str, seller: SellerLink, actor: Actor) -> DealDraft:
        deal = await self.get_deal_draft(deal_id)
        require_broker(deal, actor)
        deal.seller = seller
        deal = await self.repo.save(deal)
        await self.record_event(
            deal_id,
            'SELLER_LINKED',
            actor,
            {
                'seller_id': seller.user_id,
                'requires_om_approval': seller.approval_settings.requires_om_approval,
                'requires_buyer_approval': seller.approval_settings.requires_buyer_approval,
            },
        )
        return deal

    async def advance_status(
        self,
        deal: DealDraft,
        target: DealDraftStatus,
        actor: Actor,
        data: dict[str, Any] | None = None,
    ) -> DealDraft:
        """
        Move the deal to `target`. The only code path that writes DealDraft.status.

        `deal` must be the caller's freshly read copy; its revision is checked
        against the store, even when moving to the current status (a no-op).
        The caller's object is never modified.

        Raises:
            InvalidState: `target` is not reachable from the current status
            StaleState: The deal changed since the caller read it
        """
        if deal.status == target:
            stored = await self.repo.require(DealDraft, deal.id)
            if stored.revision != deal.revision:
                raise StaleState(
                    'DealDraft was modified since it was read',
                    context={
                        'deal_id': deal.id,
                        'expected_revision': deal.revision,
                        'stored_revision': stored.revision,
                    },
                )
            return stored
        allowed = DEAL_STATUS_TRANSITIONS[deal.status]
        if target not in allowed:
            raise InvalidState(
                f'Cannot move deal from {deal.status.value} to {target.value}',
                current_status=deal.status.value,
                allowed_statuses=sorted(s.value for s in allowed),
                context={'deal_id': deal.id},
            )

        previous = deal.status
        deal = await self.repo.save(deal.model_copy(update={'status': target}, deep=True))
        await self.record_event(
            deal.id,
            f'STATUS_{target.value}',
            actor,
            {'from': previous.value, 'to': target.value, **(data or {})},
        )
        logger.info(
            'deal.status_advanced',
            deal_id=deal.id,
            from_status=previous.value,
            to_status=target.value,
        )
        return deal

    async def apply_authoritative_value(self, deal_id: str, field: str, value: Any) -> DealDraft | None:
        """
        Mirror a newly authoritative claim value onto the deal's property attributes.

        Unmapped fields and unknown asset types are ignored. Returns the saved
        deal, or None when nothing changed.
        """
        attribute = PROPERTY_FIELD_MAP.get(field)
        if attribute is None:
            return None

        if attribute == 'asset_type':
            try:
                value = AssetType(str(value).upper().replace(' ', '_').replace('-', '_'))
            except ValueError:
                logger.debug('deal.unknown_asset_type', deal_id=deal_id, value=value)
                return None
        elif attribute in ('asking_price', 'total_sf'):
            try:
                value = float(value)
            except (TypeError, ValueError):
                return None
        elif attribute == 'unit_count':
            try:
                value = int(float(value))
            except (TypeError, ValueError):
                return None
        elif value is not None:
            value = str(value)

        deal = await self.get_deal_draft(deal_id)
        if getattr(deal.properties, attribute) == value:
            return None
        setattr(deal.properties, attribute, value)
        return await self.repo.save(deal)
