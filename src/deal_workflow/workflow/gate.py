"""
Buyer-Gate state machine: broker authorization, seller confirmation, NDA, data room.

Authorization phases:
    NOT_REVIEWED --authorize--> AUTHORIZED_FINAL
                 --authorize--> AUTHORIZED_PENDING_SELLER (seller requires buyer approval)
    AUTHORIZED_PENDING_SELLER --seller_approve_buyer--> AUTHORIZED_FINAL
    AUTHORIZED_PENDING_SELLER --seller_decline_buyer--> DECLINED
    NOT_REVIEWED | PENDING --decline--> DECLINED
    AUTHORIZED_* --revoke--> REVOKED
DECLINED and REVOKED are terminal.

NDA (only once authorization is final):
    NOT_SENT | EXPIRED --send--> SENT --signed--> SIGNED (grants the data room)
                                 SENT --expired--> EXPIRED

NOT_REVIEWED is never persisted: get_authorization_state() returns the
Unreviewed variant until the first broker decision inserts a record.
Every write is optimistic. Callers may pass `expected_revision` (0 for an
unreviewed recipient); a mismatch, or a concurrent writer, raises StaleState.
"""

from datetime import datetime
from typing import Any, Callable

import structlog

from ..clients.notification_client import Notifier
from ..errors import InvalidState, NotAuthorized, StaleState, ValidationError
from ..models.deal import SYSTEM_ACTOR, Actor, DealDraft, DealDraftStatus
from ..models.distribution import (
    AccessLevel,
    AuthorizationPhase,
    AuthorizationState,
    AuthorizationStatus,
    BuyerAuthorization,
    DistributionRecipient,
    GateFunnel,
    GateProgress,
    NDAStatus,
    ResponseType,
    Reviewed,
    SellerApprovalStatus,
    Unreviewed,
)
from ..repository import WorkflowRepository
from ..utils import utc_now
from .deals import DealService, broker_ids, require_broker
from .distribution import DistributionService

logger = structlog.get_logger(__name__)


PENDING_REVIEW_PHASES = frozenset({
    AuthorizationPhase.NOT_REVIEWED,
    AuthorizationPhase.PENDING,
    AuthorizationPhase.AUTHORIZED_PENDING_SELLER,
})


def _require_reason(reason: str | None, operation: str) -> str:
    if not reason or not reason.strip():
        raise ValidationError(f'{operation} requires a reason')
    return reason.strip()


class BuyerGate:
    """Broker-controlled checkpoint between a buyer response and the data room."""

    def __init__(
        self,
        repository: WorkflowRepository,
        deals: DealService,
        distribution: DistributionService,
        notifier: Notifier | None = None,
    ):
        self.repo = repository
        self.deals = deals
        self.distribution = distribution
        self.notifier = notifier or Notifier()

    # =========================================================================
    # State
    # =========================================================================

    async def _authorization(self, recipient_id: str) -> BuyerAuthorization | None:
        records = await self.repo.find(BuyerAuthorization, recipient_id=recipient_id)
        return records[0] if records else None

    async def get_authorization_state(self, recipient_id: str) -> AuthorizationState | None:
        """
        The recipient's gate state, or None when there is nothing to gate
        (no response yet, or the buyer passed).
        """
        authorization = await self._authorization(recipient_id)
        if authorization is not None:
            return Reviewed(authorization=authorization)
        response = await self.distribution.get_response(recipient_id)
        if response is None or response.response == ResponseType.PASS:
            return None
        return Unreviewed(recipient_id=recipient_id, response_id=response.id)

    async def _load(
        self,
        recipient_id: str,
        expected_revision: int | None,
    ) -> tuple[DistributionRecipient, DealDraft, AuthorizationState]:
        recipient = await self.distribution.get_recipient(recipient_id)
        deal = await self.deals.get_deal_draft(recipient.deal_id)
        state = await self.get_authorization_state(recipient_id)
        if state is None:
            response = await self.distribution.get_response(recipient_id)
            raise InvalidState(
                'Buyer has no interested response to review',
                current_status=response.response.value if response else None,
                allowed_statuses=[
                    ResponseType.INTERESTED.value,
                    ResponseType.INTERESTED_WITH_CONDITIONS.value,
                ],
                context={'recipient_id': recipient_id},
            )
        current_revision = state.authorization.revision if isinstance(state, Reviewed) else 0
        if expected_revision is not None and expected_revision != current_revision:
            raise StaleState(
                'Authorization was modified concurrently',
                context={
                    'recipient_id': recipient_id,
                    'expected_revision': expected_revision,
                    'stored_revision': current_revision,
                },
            )
        return recipient, deal, state

    @staticmethod
    def _require_phase(
        state: AuthorizationState,
        allowed: set[AuthorizationPhase],
        operation: str,
    ) -> None:
        if state.phase not in allowed:
            raise InvalidState(
                f'Cannot {operation} a buyer in {state.phase.value} state',
                current_status=state.phase.value,
                allowed_statuses=sorted(p.value for p in allowed),
            )

    async def _write(
        self,
        recipient: DistributionRecipient,
        state: AuthorizationState,
        mutate: Callable[[BuyerAuthorization], None],
    ) -> BuyerAuthorization:
        """Apply `mutate` to the stored record (or a fresh one) and persist it optimistically."""
        if isinstance(state, Reviewed):
            authorization = state.authorization
            mutate(authorization)
            return await self.repo.save(authorization)
        authorization = BuyerAuthorization(
            recipient_id=recipient.id,
            deal_id=recipient.deal_id,
            buyer_id=recipient.buyer_id,
        )
        mutate(authorization)
        # A concurrent first decision violates one-authorization-per-recipient
        return await self.repo.insert(authorization)

    # =========================================================================
    # Broker decisions
    # =========================================================================

    async def authorize_buyer(
        self,
        recipient_id: str,
        actor: Actor,
        access_level: AccessLevel = AccessLevel.STANDARD,
        expected_revision: int | None = None,
    ) -> BuyerAuthorization:
        """
        Authorize an interested buyer.

        When the seller requires buyer approval the authorization waits for the
        seller (AUTHORIZED_PENDING_SELLER); otherwise it is final immediately.

        Raises:
            NotAuthorized: Actor lacks can_authorize
            InvalidState: No interested response, or already decided
            StaleState: Concurrent decision on the same recipient
        """
        recipient, deal, state = await self._load(recipient_id, expected_revision)
        require_broker(deal, actor, 'can_authorize')
        self._require_phase(
            state, {AuthorizationPhase.NOT_REVIEWED, AuthorizationPhase.PENDING}, 'authorize'
        )

        needs_seller = deal.seller is not None and deal.seller.approval_settings.requires_buyer_approval

        def _apply(a: BuyerAuthorization) -> None:
            a.status = AuthorizationStatus.AUTHORIZED
            a.access_level = access_level
            a.authorized_by = actor.id
            a.authorized_at = utc_now()
            a.seller_approval_status = (
                SellerApprovalStatus.PENDING if needs_seller else SellerApprovalStatus.NOT_REQUIRED
            )

        authorization = await self._write(recipient, state, _apply)
        await self.deals.record_event(
            deal.id,
            'BUYER_AUTHORIZED',
            actor,
            {
                'recipient_id': recipient_id,
                'access_level': access_level.value,
                'pending_seller': needs_seller,
            },
        )
        logger.info(
            'gate.buyer_authorized',
            recipient_id=recipient_id,
            phase=authorization.phase.value,
        )

        if needs_seller:
            await self.notifier.notify(
                deal.seller.user_id,
                'BUYER_APPROVAL_REQUESTED',
                {'deal_id': deal.id, 'recipient_id': recipient_id, **recipient.public_identity()},
            )
        else:
            await self.notifier.notify(
                recipient.buyer_id,
                'ACCESS_AUTHORIZED',
                {'deal_id': deal.id, 'access_level': access_level.value},
            )
        return authorization

    async def decline_buyer(
        self,
        recipient_id: str,
        actor: Actor,
        reason: str,
        expected_revision: int | None = None,
    ) -> BuyerAuthorization:
        """Decline a buyer that has not been authorized. A reason is mandatory."""
        reason = _require_reason(reason, 'Declining a buyer')
        recipient, deal, state = await self._load(recipient_id, expected_revision)
        require_broker(deal, actor, 'can_authorize')
        self._require_phase(
            state, {AuthorizationPhase.NOT_REVIEWED, AuthorizationPhase.PENDING}, 'decline'
        )

        def _apply(a: BuyerAuthorization) -> None:
            a.status = AuthorizationStatus.DECLINED
            a.declined_by = actor.id
            a.declined_at = utc_now()
            a.decline_reason = reason

        authorization = await self._write(recipient, state, _apply)
        await self.deals.record_event(
            deal.id, 'BUYER_DECLINED', actor, {'recipient_id': recipient_id, 'reason': reason}
        )
        logger.info('gate.buyer_declined', recipient_id=recipient_id)
        return authorization

    async def revoke_buyer(
        self,
        recipient_id: str,
        actor: Actor,
        reason: str,
        expected_revision: int | None = None,
    ) -> BuyerAuthorization:
        """Revoke an authorized buyer. Clears data-room access."""
        reason = _require_reason(reason, 'Revoking a buyer')
        recipient, deal, state = await self._load(recipient_id, expected_revision)
        require_broker(deal, actor, 'can_authorize')
        self._require_phase(
            state,
            {AuthorizationPhase.AUTHORIZED_FINAL, AuthorizationPhase.AUTHORIZED_PENDING_SELLER},
            'revoke',
        )

        def _apply(a: BuyerAuthorization) -> None:
            a.status = AuthorizationStatus.REVOKED
            a.revoked_by = actor.id
            a.revoked_at = utc_now()
            a.revoke_reason = reason
            a.data_room_access_granted = False

        authorization = await self._write(recipient, state, _apply)
        await self.deals.record_event(
            deal.id, 'BUYER_REVOKED', actor, {'recipient_id': recipient_id, 'reason': reason}
        )
        logger.info('gate.buyer_revoked', recipient_id=recipient_id)
        await self.notifier.notify(recipient.buyer_id, 'ACCESS_REVOKED', {'deal_id': deal.id})
        return authorization

    # =========================================================================
    # Seller confirmation
    # =========================================================================

    def _require_seller(self, deal: DealDraft, actor: Actor) -> None:
        if not (actor.is_admin or deal.is_seller(actor.id)):
            raise NotAuthorized(
                'Only the seller can confirm buyer authorizations',
                context={'deal_id': deal.id, 'actor_id': actor.id},
            )

    async def seller_approve_buyer(
        self,
        recipient_id: str,
        actor: Actor,
        expected_revision: int | None = None,
    ) -> BuyerAuthorization:
        recipient, deal, state = await self._load(recipient_id, expected_revision)
        self._require_seller(deal, actor)
        self._require_phase(state, {AuthorizationPhase.AUTHORIZED_PENDING_SELLER}, 'seller-approve')

        def _apply(a: BuyerAuthorization) -> None:
            a.seller_approval_status = SellerApprovalStatus.APPROVED
            a.seller_decided_by = actor.id
            a.seller_decided_at = utc_now()

        authorization = await self._write(recipient, state, _apply)
        await self.deals.record_event(
            deal.id, 'BUYER_SELLER_APPROVED', actor, {'recipient_id': recipient_id}
        )
        logger.info('gate.seller_approved_buyer', recipient_id=recipient_id)
        await self.notifier.notify(
            recipient.buyer_id,
            'ACCESS_AUTHORIZED',
            {'deal_id': deal.id, 'access_level': authorization.access_level.value if authorization.access_level else None},
        )
        return authorization

    async def seller_decline_buyer(
        self,
        recipient_id: str,
        actor: Actor,
        reason: str,
        expected_revision: int | None = None,
    ) -> BuyerAuthorization:
        reason = _require_reason(reason, 'Declining a buyer')
        recipient, deal, state = await self._load(recipient_id, expected_revision)
        self._require_seller(deal, actor)
        self._require_phase(state, {AuthorizationPhase.AUTHORIZED_PENDING_SELLER}, 'seller-decline')

        def _apply(a: BuyerAuthorization) -> None:
            now = utc_now()
            a.status = AuthorizationStatus.DECLINED
            a.seller_approval_status = SellerApprovalStatus.DECLINED
            a.seller_decided_by = actor.id
            a.seller_decided_at = now
            a.declined_by = actor.id
            a.declined_at = now
            a.decline_reason = reason

        authorization = await self._write(recipient, state, _apply)
        await self.deals.record_event(
            deal.id, 'BUYER_SELLER_DECLINED', actor, {'recipient_id': recipient_id, 'reason': reason}
        )
        logger.info('gate.seller_declined_buyer', recipient_id=recipient_id)
        await self.notifier.notify_many(
            broker_ids(deal),
            'BUYER_DECLINED_BY_SELLER',
            {'deal_id': deal.id, 'recipient_id': recipient_id, 'reason': reason},
        )
        return authorization

    # =========================================================================
    # NDA and data room
    # =========================================================================

    async def _require_final(self, recipient_id: str, expected_revision: int | None):
        recipient, deal, state = await self._load(recipient_id, expected_revision)
        self._require_phase(state, {AuthorizationPhase.AUTHORIZED_FINAL}, 'process NDA for')
        return recipient, deal, state

    @staticmethod
    def _require_nda(authorization: BuyerAuthorization, allowed: set[NDAStatus], operation: str) -> None:
        if authorization.nda_status not in allowed:
            raise InvalidState(
                f'Cannot {operation} with NDA in {authorization.nda_status.value} status',
                current_status=authorization.nda_status.value,
                allowed_statuses=sorted(s.value for s in allowed),
                context={'recipient_id': authorization.recipient_id},
            )

    async def send_nda(
        self,
        recipient_id: str,
        actor: Actor,
        document_id: str | None = None,
        expected_revision: int | None = None,
    ) -> BuyerAuthorization:
        recipient, deal, state = await self._require_final(recipient_id, expected_revision)
        require_broker(deal, actor, 'can_authorize')
        self._require_nda(state.authorization, {NDAStatus.NOT_SENT, NDAStatus.EXPIRED}, 'send NDA')

        def _apply(a: BuyerAuthorization) -> None:
            a.nda_status = NDAStatus.SENT
            a.nda_sent_at = utc_now()
            a.nda_expired_at = None
            if document_id is not None:
                a.nda_document_id = document_id

        authorization = await self._write(recipient, state, _apply)
        await self.deals.record_event(deal.id, 'NDA_SENT', actor, {'recipient_id': recipient_id})
        logger.info('gate.nda_sent', recipient_id=recipient_id)
        await self.notifier.notify(recipient.buyer_id, 'NDA_SENT', {'deal_id': deal.id})
        return authorization

    async def record_nda_signed(
        self,
        recipient_id: str,
        document_id: str | None = None,
        signed_at: datetime | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> BuyerAuthorization:
        """Document-service callback. SENT -> SIGNED, which opens the data room."""
        recipient, deal, state = await self._require_final(recipient_id, None)
        self._require_nda(state.authorization, {NDAStatus.SENT}, 'record signature')

        def _apply(a: BuyerAuthorization) -> None:
            a.nda_status = NDAStatus.SIGNED
            a.nda_signed_at = signed_at or utc_now()
            if document_id is not None:
                a.nda_document_id = document_id
            a.access_level = a.access_level or AccessLevel.STANDARD
            a.data_room_access_granted = True

        authorization = await self._write(recipient, state, _apply)
        await self.deals.record_event(deal.id, 'NDA_SIGNED', actor, {'recipient_id': recipient_id})
        logger.info('gate.nda_signed', recipient_id=recipient_id)
        await self.notifier.notify_many(
            broker_ids(deal),
            'NDA_SIGNED',
            {'deal_id': deal.id, 'recipient_id': recipient_id, **recipient.public_identity()},
        )
        return authorization

    async def record_nda_expired(
        self,
        recipient_id: str,
        actor: Actor = SYSTEM_ACTOR,
    ) -> BuyerAuthorization:
        recipient, deal, state = await self._require_final(recipient_id, None)
        self._require_nda(state.authorization, {NDAStatus.SENT}, 'expire NDA')

        def _apply(a: BuyerAuthorization) -> None:
            a.nda_status = NDAStatus.EXPIRED
            a.nda_expired_at = utc_now()

        authorization = await self._write(recipient, state, _apply)
        await self.deals.record_event(deal.id, 'NDA_EXPIRED', actor, {'recipient_id': recipient_id})
        logger.info('gate.nda_expired', recipient_id=recipient_id)
        return authorization

    async def grant_data_room_access(
        self,
        recipient_id: str,
        actor: Actor,
        level: AccessLevel,
        expected_revision: int | None = None,
    ) -> BuyerAuthorization:
        recipient, deal, state = await self._require_final(recipient_id, expected_revision)
        require_broker(deal, actor, 'can_authorize')
        self._require_nda(state.authorization, {NDAStatus.SIGNED}, 'grant data room access')

        def _apply(a: BuyerAuthorization) -> None:
            a.access_level = level
            a.data_room_access_granted = True

        authorization = await self._write(recipient, state, _apply)
        await self.deals.record_event(
            deal.id,
            'DATA_ROOM_ACCESS_GRANTED',
            actor,
            {'recipient_id': recipient_id, 'access_level': level.value},
        )
        logger.info('gate.data_room_granted', recipient_id=recipient_id, access_level=level.value)
        return authorization

    # =========================================================================
    # Queue and progress
    # =========================================================================

    async def review_queue(self, deal_id: str, pending_only: bool = True) -> list[dict[str, Any]]:
        """Interested responses with their gate phase and presentation-safe buyer identity."""
        queue = []
        for recipient in await self.distribution.list_recipients(deal_id=deal_id):
            state = await self.get_authorization_state(recipient.id)
            if state is None:
                continue
            if pending_only and state.phase not in PENDING_REVIEW_PHASES:
                continue
            response = await self.distribution.get_response(recipient.id)
            queue.append({
                'recipient_id': recipient.id,
                'buyer': recipient.public_identity(),
                'is_anonymous': recipient.is_anonymous,
                'match_type': recipient.match_type.value,
                'match_score': recipient.match_score,
                'response': response.model_dump(mode='json') if response else None,
                'phase': state.phase.value,
                'revision': state.authorization.revision if isinstance(state, Reviewed) else 0,
            })
        return sorted(queue, key=lambda item: item['response']['responded_at'] if item['response'] else '')

    async def compute_gate_progress(self, deal_id: str) -> GateProgress:
        deal = await self.deals.get_deal_draft(deal_id)
        funnel = GateFunnel()
        for recipient in await self.distribution.list_recipients(deal_id=deal_id):
            if recipient.pushed_at is not None:
                funnel.distributed += 1
            response = await self.distribution.get_response(recipient.id)
            if response is None:
                continue
            funnel.responded += 1
            if response.response != ResponseType.PASS:
                funnel.interested += 1
            authorization = await self._authorization(recipient.id)
            if authorization is None or authorization.status != AuthorizationStatus.AUTHORIZED:
                continue
            if authorization.is_final:
                funnel.authorized += 1
            if authorization.nda_status == NDAStatus.SIGNED:
                funnel.nda_signed += 1
            if authorization.data_room_access_granted:
                funnel.in_data_room += 1

        return GateProgress(
            deal_id=deal_id,
            funnel=funnel,
            can_advance_to_dd=funnel.in_data_room > 0 and deal.status != DealDraftStatus.ACTIVE_DD,
        )

    async def advance_to_active_dd(self, deal_id: str, actor: Actor) -> DealDraft:
        """Promote the deal to ACTIVE_DD once at least one buyer is in the data room."""
        deal = await self.deals.get_deal_draft(deal_id)
        require_broker(deal, actor)
        progress = await self.compute_gate_progress(deal_id)
        if not progress.can_advance_to_dd:
            raise InvalidState(
                'No buyer has reached the data room yet',
                current_status=deal.status.value,
                allowed_statuses=[DealDraftStatus.DISTRIBUTED.value],
                context={'deal_id': deal_id, 'funnel': progress.funnel.model_dump()},
            )
        return await self.deals.advance_status(deal, DealDraftStatus.ACTIVE_DD, actor)
