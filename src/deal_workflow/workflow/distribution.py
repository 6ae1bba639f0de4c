"""
Distribution of a marketing-ready deal to buyers, and buyer responses.

Distribution states: PENDING -> ACTIVE -> {PAUSED <-> ACTIVE} -> CLOSED.

Auto-matching (PUBLIC listings) applies each buyer's criteria as hard filters
(asset type, geography include/exclude, units, price, SF). A passing buyer
scores 75, +10 when the deal's asset type is the buyer's first preference,
+10/+5 when the asking price is within 10%/25% of the buyer's price-range
midpoint, and is matched only at or above their min_match_score. Buyers in the
listing or seller organization are never matched.

Anonymity is presentation only: records are stored un-redacted, buyer_view()
substitutes "Confidential Seller" and DistributionRecipient.public_identity()
substitutes the buyer's anonymous label.
"""

from datetime import datetime
from typing import Any, Iterable

import structlog

from ..clients.notification_client import Notifier
from ..errors import (
    AlreadyResponded,
    DuplicateRecord,
    InvalidState,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from ..models.deal import Actor, DealDraft, DealDraftStatus
from ..models.distribution import (
    CONFIDENTIAL_SELLER_LABEL,
    DISTRIBUTION_STATUS_TRANSITIONS,
    BuyerCriteria,
    BuyerProfile,
    BuyerResponse,
    BuyerResponsePayload,
    Distribution,
    DistributionRecipient,
    DistributionStatus,
    ListingType,
    MatchType,
    ResponseType,
)
from ..models.om import OMStatus
from ..repository import WorkflowRepository
from ..utils import utc_now
from .deals import DealService, broker_ids, require_broker
from .om import OMWorkflow

logger = structlog.get_logger(__name__)


DEFAULT_ANONYMOUS_BUYER_LABEL = 'Anonymous Buyer'
MATCH_BASE_SCORE = 75


def evaluate_criteria_match(deal: DealDraft, criteria: BuyerCriteria) -> tuple[bool, int, list[str]]:
    """
    Score a deal against one buyer's criteria.

    Returns:
        (passes, score, reasons); score is 0 when a hard filter fails
    """
    props = deal.properties
    passes = True
    reasons: list[str] = []

    if criteria.asset_types:
        if props.asset_type is None or props.asset_type not in criteria.asset_types:
            passes = False
            reasons.append(f'Asset type {props.asset_type.value if props.asset_type else "unknown"} not in criteria')
        else:
            reasons.append(f'Asset type {props.asset_type.value} matches')

    address = (props.property_address or '').upper()
    if criteria.geographies_include and address:
        if not any(geo.upper() in address for geo in criteria.geographies_include):
            passes = False
            reasons.append('Geography not in include list')
        else:
            reasons.append('Geography matches include criteria')
    if criteria.geographies_exclude and address:
        if any(geo.upper() in address for geo in criteria.geographies_exclude):
            passes = False
            reasons.append('Geography in exclude list')

    bounds = (
        ('Units', props.unit_count, criteria.min_units, criteria.max_units),
        ('Price', props.asking_price, criteria.min_price, criteria.max_price),
        ('SF', props.total_sf, criteria.min_sf, criteria.max_sf),
    )
    for label, actual, low, high in bounds:
        if actual is None:
            continue
        if low is not None and actual < low:
            passes = False
            reasons.append(f'{label} below minimum')
        if high is not None and actual > high:
            passes = False
            reasons.append(f'{label} above maximum')

    if not passes:
        return False, 0, reasons

    score = MATCH_BASE_SCORE
    if criteria.asset_types and props.asset_type == criteria.asset_types[0]:
        score += 10
    if criteria.min_price and criteria.max_price and props.asking_price:
        midpoint = (criteria.min_price + criteria.max_price) / 2
        variance = abs(props.asking_price - midpoint) / midpoint
        if variance < 0.1:
            score += 10
        elif variance < 0.25:
            score += 5
    return True, score, reasons


def validate_response_payload(payload: BuyerResponsePayload) -> None:
    """
    Raises:
        ValidationError: Missing conditions or an inverted price range
    """
    if payload.response == ResponseType.INTERESTED_WITH_CONDITIONS and not [
        c for c in payload.conditions if c and c.strip()
    ]:
        raise ValidationError('INTERESTED_WITH_CONDITIONS requires at least one condition')
    price = payload.indicative_price
    if price is not None and price.min is not None and price.max is not None and price.min > price.max:
        raise ValidationError(
            'Indicative price minimum exceeds maximum',
            context={'min': price.min, 'max': price.max},
        )


class DistributionService:
    """Creates distributions, tracks engagement, and records buyer responses."""

    def __init__(
        self,
        repository: WorkflowRepository,
        deals: DealService,
        om: OMWorkflow,
        notifier: Notifier | None = None,
    ):
        self.repo = repository
        self.deals = deals
        self.om = om
        self.notifier = notifier or Notifier()

    # =========================================================================
    # Buyers
    # =========================================================================

    async def register_buyer(self, profile: BuyerProfile) -> BuyerProfile:
        """Create or replace a buyer profile."""
        if await self.repo.get(BuyerProfile, profile.buyer_id) is None:
            return await self.repo.insert(profile)
        return await self.repo.save(profile)

    async def _excluded_organizations(self, deal: DealDraft) -> set[str]:
        excluded = {deal.organization_id}
        if deal.seller is not None and deal.seller.organization_id:
            excluded.add(deal.seller.organization_id)
        return excluded

    async def match_buyers(self, deal: DealDraft) -> list[tuple[BuyerProfile, int]]:
        """Buyers whose criteria the deal satisfies, best score first."""
        excluded = await self._excluded_organizations(deal)
        matches = []
        for profile in await self.repo.find(BuyerProfile):
            if not profile.criteria.auto_receive_matches or profile.organization_id in excluded:
                continue
            passes, score, _ = evaluate_criteria_match(deal, profile.criteria)
            if passes and score >= profile.criteria.min_match_score:
                matches.append((profile, score))
        return sorted(matches, key=lambda m: m[1], reverse=True)

    # =========================================================================
    # Distributions
    # =========================================================================

    async def get_distribution(self, distribution_id: str) -> Distribution:
        distribution = await self.repo.get(Distribution, distribution_id)
        if distribution is None:
            raise NotFound('Distribution not found', context={'distribution_id': distribution_id})
        return distribution

    async def list_distributions(self, deal_id: str) -> list[Distribution]:
        return sorted(await self.repo.find(Distribution, deal_id=deal_id), key=lambda d: d.created_at)

    async def get_recipient(self, recipient_id: str) -> DistributionRecipient:
        recipient = await self.repo.get(DistributionRecipient, recipient_id)
        if recipient is None:
            raise NotFound('Distribution recipient not found', context={'recipient_id': recipient_id})
        return recipient

    async def list_recipients(
        self,
        distribution_id: str | None = None,
        deal_id: str | None = None,
    ) -> list[DistributionRecipient]:
        filters: dict[str, Any] = {}
        if distribution_id is not None:
            filters['distribution_id'] = distribution_id
        if deal_id is not None:
            filters['deal_id'] = deal_id
        recipients = await self.repo.find(DistributionRecipient, **filters)
        return sorted(recipients, key=lambda r: r.created_at)

    async def create_distribution(
        self,
        deal_id: str,
        actor: Actor,
        listing_type: ListingType | str = ListingType.PRIVATE,
        manual_buyer_ids: Iterable[str] = (),
    ) -> Distribution:
        """
        Distribute the deal's seller-approved OM to matched and/or hand-picked buyers.

        Raises:
            NotAuthorized: Actor lacks can_distribute
            InvalidState: Latest OM version is not SELLER_APPROVED
            ValidationError: Unknown listing type, or a PRIVATE listing with no buyers
        """
        try:
            listing_type = ListingType(listing_type)
        except ValueError:
            raise ValidationError(
                f'Invalid listing type: {listing_type}',
                context={'allowed': [t.value for t in ListingType]},
            ) from None
        manual_buyer_ids = list(manual_buyer_ids)
        if listing_type == ListingType.PRIVATE and not manual_buyer_ids:
            raise ValidationError('A PRIVATE listing needs at least one buyer', context={'deal_id': deal_id})

        deal = await self.deals.get_deal_draft(deal_id)
        require_broker(deal, actor, 'can_distribute')

        latest = await self.om.get_latest_om_version(deal_id)
        if latest is None or latest.status != OMStatus.SELLER_APPROVED:
            raise InvalidState(
                'Deal can only be distributed with a seller-approved OM',
                current_status=latest.status.value if latest else None,
                allowed_statuses=[OMStatus.SELLER_APPROVED.value],
                context={'deal_id': deal_id},
            )

        async with self.repo.lock('distribution', deal_id):
            now = utc_now()
            distribution = await self.repo.insert(
                Distribution(
                    deal_id=deal_id,
                    om_version_id=latest.id,
                    listing_type=listing_type,
                    distributed_by=actor.id,
                    distributed_by_name=actor.name,
                )
            )

            candidates: list[tuple[BuyerProfile, MatchType, int | None]] = []
            if listing_type == ListingType.PUBLIC:
                candidates.extend((p, MatchType.AUTO_MATCHED, s) for p, s in await self.match_buyers(deal))

            excluded = await self._excluded_organizations(deal)
            for buyer_id in manual_buyer_ids:
                profile = await self.repo.get(BuyerProfile, buyer_id)
                if profile is None:
                    logger.warning('distribution.unknown_buyer_skipped', buyer_id=buyer_id)
                    continue
                if profile.organization_id in excluded:
                    logger.info('distribution.same_org_buyer_skipped', buyer_id=buyer_id)
                    continue
                candidates.append((profile, MatchType.MANUAL, None))

            recipients: list[DistributionRecipient] = []
            seen: set[str] = set()
            for profile, match_type, score in candidates:
                if profile.buyer_id in seen:
                    continue
                seen.add(profile.buyer_id)
                recipients.append(
                    await self.repo.insert(
                        DistributionRecipient(
                            distribution_id=distribution.id,
                            deal_id=deal_id,
                            buyer_id=profile.buyer_id,
                            buyer_name=profile.name,
                            buyer_email=profile.email,
                            buyer_firm=profile.firm_name,
                            match_type=match_type,
                            match_score=score,
                            is_anonymous=profile.is_anonymous,
                            anonymous_label=(
                                (profile.anonymous_label or DEFAULT_ANONYMOUS_BUYER_LABEL)
                                if profile.is_anonymous
                                else None
                            ),
                            pushed_at=now,
                        )
                    )
                )

            distribution.recipient_ids = [r.id for r in recipients]
            distribution.status = DistributionStatus.ACTIVE
            distribution = await self.repo.save(distribution)

            deal = await self.deals.get_deal_draft(deal_id)
            if deal.status == DealDraftStatus.OM_APPROVED_FOR_MARKETING:
                await self.deals.advance_status(
                    deal, DealDraftStatus.DISTRIBUTED, actor, {'distribution_id': distribution.id}
                )
            await self.deals.record_event(
                deal_id,
                'DISTRIBUTION_CREATED',
                actor,
                {
                    'distribution_id': distribution.id,
                    'listing_type': listing_type.value,
                    'recipient_count': len(recipients),
                    'auto_matched': sum(1 for r in recipients if r.match_type == MatchType.AUTO_MATCHED),
                },
            )

        logger.info(
            'distribution.created',
            deal_id=deal_id,
            distribution_id=distribution.id,
            listing_type=listing_type.value,
            recipient_count=len(recipients),
        )
        for recipient in recipients:
            await self.notifier.notify(
                recipient.buyer_id,
                'DEAL_DISTRIBUTED',
                {'deal_id': deal_id, 'distribution_id': distribution.id, 'recipient_id': recipient.id},
            )
        return distribution

    async def set_distribution_status(
        self,
        distribution_id: str,
        target: DistributionStatus,
        actor: Actor,
    ) -> Distribution:
        distribution = await self.get_distribution(distribution_id)
        deal = await self.deals.get_deal_draft(distribution.deal_id)
        require_broker(deal, actor, 'can_distribute')

        allowed = DISTRIBUTION_STATUS_TRANSITIONS[distribution.status]
        if target not in allowed:
            raise InvalidState(
                f'Cannot move distribution from {distribution.status.value} to {target.value}',
                current_status=distribution.status.value,
                allowed_statuses=sorted(s.value for s in allowed),
                context={'distribution_id': distribution_id},
            )
        previous = distribution.status
        distribution.status = target
        distribution = await self.repo.save(distribution)
        await self.deals.record_event(
            deal.id,
            f'DISTRIBUTION_{target.value}',
            actor,
            {'distribution_id': distribution_id, 'from': previous.value},
        )
        logger.info(
            'distribution.status_changed',
            distribution_id=distribution_id,
            from_status=previous.value,
            to_status=target.value,
        )
        return distribution

    # =========================================================================
    # Engagement
    # =========================================================================

    async def record_view(
        self,
        recipient_id: str,
        duration_sec: int = 0,
        pages_viewed: Iterable[str] = (),
        now: datetime | None = None,
    ) -> DistributionRecipient:
        """Keep the first view time and accumulate view duration and pages."""
        if duration_sec < 0:
            raise ValidationError('View duration cannot be negative', context={'duration_sec': duration_sec})
        recipient = await self.get_recipient(recipient_id)
        if recipient.viewed_at is None:
            recipient.viewed_at = now or utc_now()
        recipient.view_duration_sec += duration_sec
        for page in pages_viewed:
            if page not in recipient.pages_viewed:
                recipient.pages_viewed.append(page)
        return await self.repo.save(recipient)

    # =========================================================================
    # Responses
    # =========================================================================

    async def get_response(self, recipient_id: str) -> BuyerResponse | None:
        responses = await self.repo.find(BuyerResponse, recipient_id=recipient_id)
        return responses[0] if responses else None

    async def record_buyer_response(
        self,
        recipient_id: str,
        payload: BuyerResponsePayload,
        actor: Actor,
    ) -> BuyerResponse:
        """
        Record the one response a recipient may give.

        Raises:
            NotAuthorized: Actor is not the recipient's buyer
            InvalidState: Distribution is not ACTIVE
            ValidationError: Payload is inconsistent
            AlreadyResponded: A response already exists for the recipient
        """
        validate_response_payload(payload)
        recipient = await self.get_recipient(recipient_id)
        if actor.id != recipient.buyer_id:
            raise NotAuthorized(
                'Only the recipient buyer can respond',
                context={'recipient_id': recipient_id, 'actor_id': actor.id},
            )
        distribution = await self.get_distribution(recipient.distribution_id)
        if distribution.status != DistributionStatus.ACTIVE:
            raise InvalidState(
                f'Cannot respond to a {distribution.status.value} distribution',
                current_status=distribution.status.value,
                allowed_statuses=[DistributionStatus.ACTIVE.value],
                context={'distribution_id': distribution.id},
            )

        async with self.repo.lock('response', recipient_id):
            existing = await self.get_response(recipient_id)
            if existing is not None:
                raise AlreadyResponded(
                    'Buyer has already responded to this distribution',
                    context={'recipient_id': recipient_id, 'response_id': existing.id},
                )
            try:
                response = await self.repo.insert(
                    BuyerResponse(
                        recipient_id=recipient_id,
                        distribution_id=distribution.id,
                        deal_id=recipient.deal_id,
                        buyer_id=recipient.buyer_id,
                        **payload.model_dump(),
                    )
                )
            except DuplicateRecord as e:
                raise AlreadyResponded(
                    'Buyer has already responded to this distribution',
                    context={'recipient_id': recipient_id},
                ) from e

            recipient = await self.get_recipient(recipient_id)
            recipient.response_id = response.id
            await self.repo.save(recipient)

        await self.deals.record_event(
            recipient.deal_id,
            'BUYER_RESPONSE_SUBMITTED',
            actor,
            {'recipient_id': recipient_id, 'response_id': response.id, 'response': response.response.value},
        )
        logger.info(
            'distribution.buyer_responded',
            recipient_id=recipient_id,
            response=response.response.value,
        )

        deal = await self.deals.get_deal_draft(recipient.deal_id)
        await self.notifier.notify_many(
            broker_ids(deal),
            'BUYER_RESPONDED',
            {
                'deal_id': deal.id,
                'recipient_id': recipient_id,
                'response': response.response.value,
                **recipient.public_identity(),
            },
        )
        return response

    # =========================================================================
    # Views
    # =========================================================================

    async def buyer_view(self, recipient_id: str) -> dict[str, Any]:
        """The deal as the recipient buyer sees it, with confidentiality applied."""
        recipient = await self.get_recipient(recipient_id)
        distribution = await self.get_distribution(recipient.distribution_id)
        deal = await self.deals.get_deal_draft(recipient.deal_id)
        version = await self.om.get_om_version(distribution.om_version_id)

        if deal.is_anonymous_seller or deal.seller is None:
            seller_name = CONFIDENTIAL_SELLER_LABEL
        else:
            seller_name = deal.seller.entity_name or deal.seller.name

        response = await self.get_response(recipient_id)
        return {
            'deal_id': deal.id,
            'distribution_id': distribution.id,
            'listing_type': distribution.listing_type.value,
            'seller_name': seller_name,
            'is_anonymous_seller': deal.is_anonymous_seller,
            'property': deal.properties.model_dump(mode='json'),
            'om': {
                'version_number': version.version_number,
                'sections': {
                    key: {'title': s.title, 'content': s.content}
                    for key, s in version.content.sections.items()
                },
            },
            'recipient': {'id': recipient.id, **recipient.public_identity()},
            'response': response.response.value if response else None,
        }
