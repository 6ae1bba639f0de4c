"""
OM Version & Approval State Machine.

Version states: DRAFT -> BROKER_APPROVED -> SELLER_APPROVED (terminal for the
version). request_changes returns a DRAFT or BROKER_APPROVED version to DRAFT.

Generation flow:
1. Serialize per deal (repository lock plus the one-DRAFT-per-deal constraint)
2. Return the latest version unchanged when it is still DRAFT
3. Refuse to supersede an approved version unless regenerate=True
4. Collect authoritative facts from the claim resolver
5. Generate every section under a timeout BEFORE persisting anything
6. Insert the version, log GENERATED, move the deal to OM_DRAFTED

Only the latest version of a deal accepts transitions; older versions are frozen.
Once the deal is DISTRIBUTED, OM activity no longer changes the deal status.
"""

import asyncio
from typing import Any

import structlog

from ..clients.notification_client import Notifier
from ..clients.openai_client import ContentGenerator
from ..config import Config, config as default_config
from ..errors import (
    InvalidState,
    NotAuthorized,
    NotFound,
    RegenerateNotAllowed,
    ValidationError,
    wrap_generation_error,
)
from ..logging import StageTimer, logging_context
from ..models.claim import AuthoritativeFact
from ..models.deal import Actor, DealDraft, DealDraftStatus
from ..models.om import (
    DISCLAIMER_TEXT,
    OM_SECTIONS,
    ChangeLogType,
    OMApproval,
    OMChangeLogEntry,
    OMContent,
    OMSection,
    OMStatus,
    OMVersion,
)
from ..repository import WorkflowRepository
from ..utils import utc_now
from .claims import ClaimResolver
from .deals import DealService, broker_ids, require_broker, require_broker_or_seller

logger = structlog.get_logger(__name__)


EDITABLE_SECTION_KEYS = frozenset({'content', 'title'})


def can_seller_approve(deal: DealDraft, actor: Actor) -> bool:
    """
    The seller approves their own OM. A broker holding can_approve_om may
    approve on the seller's behalf when the seller does not require personal
    approval or has no direct platform access.
    """
    if actor.is_admin or deal.is_seller(actor.id):
        return True
    broker = deal.broker(actor.id)
    if broker is None or not broker.can_approve_om:
        return False
    seller = deal.seller
    return (
        seller is None
        or not seller.approval_settings.requires_om_approval
        or not seller.has_direct_access
    )


class OMWorkflow:
    """Generates OM versions and drives them through broker and seller approval."""

    def __init__(
        self,
        repository: WorkflowRepository,
        deals: DealService,
        claims: ClaimResolver,
        generator: ContentGenerator,
        notifier: Notifier | None = None,
        config: Config | None = None,
    ):
        self.repo = repository
        self.deals = deals
        self.claims = claims
        self.generator = generator
        self.notifier = notifier or Notifier()
        self.config = config or default_config

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_om_version(self, version_id: str) -> OMVersion:
        version = await self.repo.get(OMVersion, version_id)
        if version is None:
            raise NotFound('OM version not found', context={'version_id': version_id})
        return version

    async def list_om_versions(self, deal_id: str) -> list[OMVersion]:
        """All versions of the deal's OM, newest first."""
        versions = await self.repo.find(OMVersion, deal_id=deal_id)
        return sorted(versions, key=lambda v: v.version_number, reverse=True)

    async def get_latest_om_version(self, deal_id: str) -> OMVersion | None:
        versions = await self.list_om_versions(deal_id)
        return versions[0] if versions else None

    async def get_change_log(self, version_id: str) -> list[OMChangeLogEntry]:
        return await self.repo.list_change_log(version_id)

    # =========================================================================
    # Generation
    # =========================================================================

    async def generate_om_draft(
        self,
        deal_id: str,
        actor: Actor,
        regenerate: bool = False,
    ) -> OMVersion:
        """
        Build (or return) the deal's DRAFT OM version.

        Raises:
            RegenerateNotAllowed: Latest version is approved and regenerate=False
            ValidationError: No authoritative facts to build from
            GenerationFailed: Content generator failed or timed out; nothing persisted
            NotAuthorized: Actor is not a broker on the deal
        """
        with logging_context(deal_id=deal_id, actor_id=actor.id):
            async with self.repo.lock('om', deal_id):
                return await self._generate_locked(deal_id, actor, regenerate)

    async def _generate_locked(self, deal_id: str, actor: Actor, regenerate: bool) -> OMVersion:
        deal = await self.deals.get_deal_draft(deal_id)
        require_broker(deal, actor)

        latest = await self.get_latest_om_version(deal_id)
        if latest is not None and latest.status == OMStatus.DRAFT:
            logger.info('om.generate.existing_draft', version_id=latest.id, version_number=latest.version_number)
            return latest
        if latest is not None and not regenerate:
            raise RegenerateNotAllowed(
                f'Latest OM version is {latest.status.value}; pass regenerate=True to create a new version',
                context={'deal_id': deal_id, 'version_id': latest.id, 'status': latest.status.value},
            )

        timer = StageTimer()
        with timer.stage('facts'):
            facts = await self.claims.get_authoritative_facts(deal_id)
        if not facts:
            raise ValidationError(
                'No broker-confirmed facts available to generate an OM',
                context={'deal_id': deal_id},
            )

        logger.info('om.generate.started', fact_count=len(facts), regenerate=regenerate)
        with timer.stage('generation'):
            sections = await self._generate_sections(deal_id, facts)

        version = OMVersion(
            deal_id=deal_id,
            version_number=(latest.version_number + 1) if latest else 1,
            content=OMContent(sections=sections),
            claim_refs=list(dict.fromkeys(f.claim_id for f in facts.values() if f.claim_id)),
            created_by=actor.id,
            created_by_name=actor.name,
        )
        with timer.stage('persist'):
            version = await self.repo.insert(version)
            await self._log_change(version, ChangeLogType.GENERATED, actor, to_status=OMStatus.DRAFT)

            deal = await self.deals.get_deal_draft(deal_id)
            if deal.status.in_om_phase:
                await self.deals.advance_status(
                    deal, DealDraftStatus.OM_DRAFTED, actor, {'om_version_id': version.id}
                )
            await self.deals.record_event(
                deal_id,
                'OM_GENERATED',
                actor,
                {'version_id': version.id, 'version_number': version.version_number},
            )

        logger.info(
            'om.generate.completed',
            version_id=version.id,
            version_number=version.version_number,
            section_count=len(sections),
            **timer.log_fields(),
        )
        return version

    async def _generate_sections(
        self,
        deal_id: str,
        facts: dict[str, AuthoritativeFact],
    ) -> dict[str, OMSection]:
        values = {name: fact.value for name, fact in facts.items()}

        planned = []
        for key, definition in OM_SECTIONS.items():
            refs = [facts[f].claim_id for f in definition.fields if f in facts and facts[f].claim_id]
            has_data = any(f in facts for f in definition.fields)
            if not definition.required and not has_data:
                continue
            planned.append((definition, refs))

        async def _draft(key: str) -> str:
            return await self.generator.generate_section(key, values)

        generated_keys = [d.key for d, _ in planned if not d.autogenerated]
        try:
            contents = await asyncio.wait_for(
                asyncio.gather(*(_draft(k) for k in generated_keys)),
                timeout=self.config.OM_GENERATION_TIMEOUT_SECONDS,
            )
        except Exception as e:
            error = wrap_generation_error(e, context={'deal_id': deal_id})
            logger.warning('om.generate.failed', error=str(error), error_type=type(e).__name__)
            raise error from e

        by_key = dict(zip(generated_keys, contents))
        sections: dict[str, OMSection] = {}
        for definition, refs in planned:
            sections[definition.key] = OMSection(
                key=definition.key,
                title=definition.title,
                content=DISCLAIMER_TEXT if definition.autogenerated else by_key[definition.key],
                claim_refs=refs,
                required=definition.required,
                autogenerated=definition.autogenerated,
            )
        return sections

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _require_latest(self, version: OMVersion) -> None:
        latest = await self.get_latest_om_version(version.deal_id)
        if latest is not None and latest.id != version.id:
            raise InvalidState(
                'Only the latest OM version can change; this version is superseded',
                current_status=version.status.value,
                context={
                    'version_id': version.id,
                    'version_number': version.version_number,
                    'latest_version_number': latest.version_number,
                },
            )

    async def _log_change(
        self,
        version: OMVersion,
        change_type: ChangeLogType,
        actor: Actor,
        section_key: str | None = None,
        note: str | None = None,
        from_status: OMStatus | None = None,
        to_status: OMStatus | None = None,
    ) -> OMChangeLogEntry:
        return await self.repo.append_change_log(
            OMChangeLogEntry(
                version_id=version.id,
                type=change_type,
                actor_id=actor.id,
                actor_name=actor.name,
                section_key=section_key,
                note=note,
                from_status=from_status,
                to_status=to_status,
            )
        )

    async def _sync_deal_status(self, deal_id: str, target: DealDraftStatus, actor: Actor, version: OMVersion) -> None:
        deal = await self.deals.get_deal_draft(deal_id)
        if deal.status.in_om_phase:
            await self.deals.advance_status(deal, target, actor, {'om_version_id': version.id})

    async def update_section(
        self,
        version_id: str,
        section_key: str,
        patch: dict[str, Any],
        actor: Actor,
    ) -> OMVersion:
        """
        Edit a section of a DRAFT version.

        Raises:
            InvalidState: Version is not DRAFT, or is superseded
            ValidationError: Unknown section or patch keys
        """
        version = await self.get_om_version(version_id)
        deal = await self.deals.get_deal_draft(version.deal_id)
        require_broker(deal, actor)

        if version.status != OMStatus.DRAFT:
            raise InvalidState(
                f'Cannot edit OM in {version.status.value} status',
                current_status=version.status.value,
                allowed_statuses=[OMStatus.DRAFT.value],
                context={'version_id': version_id},
            )
        await self._require_latest(version)

        unknown = set(patch) - EDITABLE_SECTION_KEYS
        if unknown or not patch:
            raise ValidationError(
                'Section patch may only contain content and title',
                context={'section_key': section_key, 'unknown_keys': sorted(unknown)},
            )
        section = version.content.sections.get(section_key)
        if section is None:
            definition = OM_SECTIONS.get(section_key)
            if definition is None:
                raise ValidationError(
                    f'Unknown OM section: {section_key}',
                    context={'allowed': list(OM_SECTIONS)},
                )
            section = OMSection(
                key=definition.key,
                title=definition.title,
                required=definition.required,
                autogenerated=definition.autogenerated,
            )

        section = section.model_copy(update={**patch, 'edited_by': actor.id, 'edited_at': utc_now()})
        version.content.sections[section_key] = section
        version = await self.repo.save(version)
        await self._log_change(version, ChangeLogType.SECTION_EDIT, actor, section_key=section_key)
        logger.info('om.section_edited', version_id=version.id, section_key=section_key)
        return version

    async def broker_approve(self, version_id: str, actor: Actor) -> OMVersion:
        """DRAFT -> BROKER_APPROVED; notifies the seller for review."""
        version = await self.get_om_version(version_id)
        deal = await self.deals.get_deal_draft(version.deal_id)
        require_broker(deal, actor)

        if version.status != OMStatus.DRAFT:
            raise InvalidState(
                f'Broker can only approve OM in DRAFT status (current: {version.status.value})',
                current_status=version.status.value,
                allowed_statuses=[OMStatus.DRAFT.value],
                context={'version_id': version_id},
            )
        await self._require_latest(version)

        version.status = OMStatus.BROKER_APPROVED
        version.approval.broker_approved_by = actor.id
        version.approval.broker_approved_by_name = actor.name
        version.approval.broker_approved_at = utc_now()
        version = await self.repo.save(version)
        await self._log_change(
            version,
            ChangeLogType.BROKER_APPROVAL,
            actor,
            from_status=OMStatus.DRAFT,
            to_status=OMStatus.BROKER_APPROVED,
        )
        await self._sync_deal_status(deal.id, DealDraftStatus.OM_BROKER_APPROVED, actor, version)
        logger.info('om.broker_approved', version_id=version.id, deal_id=deal.id)

        if deal.seller is not None and deal.seller.receive_notifications:
            await self.notifier.notify(
                deal.seller.user_id,
                'OM_READY_FOR_SELLER_REVIEW',
                {
                    'deal_id': deal.id,
                    'version_id': version.id,
                    'version_number': version.version_number,
                    'approved_by': actor.name,
                },
            )
        return version

    async def seller_approve(self, version_id: str, actor: Actor) -> OMVersion:
        """BROKER_APPROVED -> SELLER_APPROVED; the deal becomes marketing-ready."""
        version = await self.get_om_version(version_id)
        deal = await self.deals.get_deal_draft(version.deal_id)
        if not can_seller_approve(deal, actor):
            raise NotAuthorized(
                'Actor cannot give seller approval for this OM',
                context={'deal_id': deal.id, 'actor_id': actor.id},
            )

        if version.status != OMStatus.BROKER_APPROVED:
            raise InvalidState(
                'Seller can only approve OM in BROKER_APPROVED status',
                current_status=version.status.value,
                allowed_statuses=[OMStatus.BROKER_APPROVED.value],
                context={'version_id': version_id},
            )
        await self._require_latest(version)

        version.status = OMStatus.SELLER_APPROVED
        version.approval.seller_approved_by = actor.id
        version.approval.seller_approved_by_name = actor.name
        version.approval.seller_approved_at = utc_now()
        version = await self.repo.save(version)
        await self._log_change(
            version,
            ChangeLogType.SELLER_APPROVAL,
            actor,
            from_status=OMStatus.BROKER_APPROVED,
            to_status=OMStatus.SELLER_APPROVED,
        )
        await self._sync_deal_status(deal.id, DealDraftStatus.OM_APPROVED_FOR_MARKETING, actor, version)
        logger.info('om.seller_approved', version_id=version.id, deal_id=deal.id)

        await self.notifier.notify_many(
            broker_ids(deal),
            'OM_APPROVED',
            {'deal_id': deal.id, 'version_id': version.id, 'approved_by': actor.name},
        )
        return version

    async def request_changes(self, version_id: str, actor: Actor, note: str) -> OMVersion:
        """
        Return the version to DRAFT with a CHANGE_REQUEST entry. No new version is created.

        Raises:
            ValidationError: Empty note
            InvalidState: Version is SELLER_APPROVED, or superseded
        """
        if not note or not note.strip():
            raise ValidationError('A change request needs a note', context={'version_id': version_id})

        version = await self.get_om_version(version_id)
        deal = await self.deals.get_deal_draft(version.deal_id)
        require_broker_or_seller(deal, actor)

        allowed = (OMStatus.DRAFT, OMStatus.BROKER_APPROVED)
        if version.status not in allowed:
            raise InvalidState(
                f'Cannot request changes on OM in {version.status.value} status',
                current_status=version.status.value,
                allowed_statuses=[s.value for s in allowed],
                context={'version_id': version_id},
            )
        await self._require_latest(version)

        previous = version.status
        version.status = OMStatus.DRAFT
        version.approval = OMApproval()
        version = await self.repo.save(version)
        await self._log_change(
            version,
            ChangeLogType.CHANGE_REQUEST,
            actor,
            note=note.strip(),
            from_status=previous,
            to_status=OMStatus.DRAFT,
        )
        await self._sync_deal_status(deal.id, DealDraftStatus.OM_DRAFTED, actor, version)
        logger.info('om.changes_requested', version_id=version.id, from_status=previous.value)

        await self.notifier.notify_many(
            [b for b in broker_ids(deal) if b != actor.id],
            'OM_CHANGES_REQUESTED',
            {'deal_id': deal.id, 'version_id': version.id, 'requested_by': actor.name, 'note': note.strip()},
        )
        return version
