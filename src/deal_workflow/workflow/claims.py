"""
Claim Store & Conflict Resolver.

Holds candidate facts extracted from source documents, detects disagreement
between claims for the same (deal, field), and resolves conflicts into one
authoritative value.

Rules:
- Extraction confidence is advisory. It never resolves a conflict and never
  makes a value authoritative on its own; a broker must confirm.
- A new claim is compared against every UNVERIFIED claim for the field that
  is not part of a resolved conflict. Numeric values disagree when
  |new - existing| / |existing| exceeds the field's variance threshold;
  other values disagree when their normalized text differs.
- Disagreeing claims join the field's open conflict, or open a new one.
- A claim in an OPEN conflict cannot be verified on its own.
- Resolution is terminal: a second resolve raises AlreadyResolved.

All mutations for one (deal, field) run under the same repository lock, so
submit, verify and resolve on a conflict are serialized.
"""

import math
from typing import Any, Literal

import structlog

from ..config import Config, config as default_config
from ..errors import (
    AlreadyResolved,
    DealWorkflowError,
    InvalidState,
    NotFound,
    PartialSuccessResult,
    TypeMismatch,
    ValidationError,
)
from ..models.claim import (
    Averaged,
    AuthoritativeFact,
    ChoseClaim,
    Claim,
    ClaimExtraction,
    ClaimSource,
    Conflict,
    ConflictStatus,
    ManualOverride,
    Resolution,
    ResolutionMethod,
    VerificationStatus,
)
from ..models.deal import SYSTEM_ACTOR, Actor
from ..repository import WorkflowRepository
from ..utils import utc_now
from .deals import DealService, require_broker

logger = structlog.get_logger(__name__)


VerifyAction = Literal['confirm', 'reject']


# =============================================================================
# Value comparison
# =============================================================================


def as_number(value: Any) -> float | None:
    """Interpret `value` as a number, accepting '$15,000,000' and '5.5%' style strings."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip().replace('$', '').replace(',', '').replace('%', '').strip()
        if not cleaned:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def compute_variance(existing: float, new: float) -> float:
    """Relative difference of `new` against `existing`."""
    if existing == 0:
        return 0.0 if new == 0 else math.inf
    return abs(new - existing) / abs(existing)


def _normalize_text(value: Any) -> str:
    return ' '.join(str(value).split()).lower()


def values_disagree(existing: Any, new: Any, threshold: float) -> tuple[bool, float | None]:
    """
    Compare two claim values.

    Returns:
        (disagree, variance) where variance is None for non-numeric values
    """
    a, b = as_number(existing), as_number(new)
    if a is not None and b is not None:
        variance = compute_variance(a, b)
        return variance > threshold, variance
    return _normalize_text(existing) != _normalize_text(new), None


def resolution_from_method(
    method: ResolutionMethod | str,
    resolved_value: Any = None,
    resolved_claim_id: str | None = None,
) -> Resolution:
    """
    Build a Resolution variant from a method string.

    Raises:
        ValidationError: Unknown method or a field the method needs is missing
    """
    try:
        method = ResolutionMethod(method)
    except ValueError:
        raise ValidationError(
            f'Unknown resolution method: {method}',
            context={'allowed': [m.value for m in ResolutionMethod]},
        ) from None

    if method in (ResolutionMethod.CHOSE_CLAIM_A, ResolutionMethod.CHOSE_CLAIM_B):
        return ChoseClaim(method=method, resolved_claim_id=resolved_claim_id)
    if method == ResolutionMethod.MANUAL_OVERRIDE:
        if resolved_value is None:
            raise ValidationError('MANUAL_OVERRIDE requires resolved_value')
        return ManualOverride(resolved_value=resolved_value)
    return Averaged()


# =============================================================================
# Resolver
# =============================================================================


class ClaimResolver:
    """Claim submission, verification, conflict resolution, and authoritative lookup."""

    def __init__(
        self,
        repository: WorkflowRepository,
        deals: DealService,
        config: Config | None = None,
    ):
        self.repo = repository
        self.deals = deals
        self.config = config or default_config

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_claim(self, claim_id: str) -> Claim:
        claim = await self.repo.get(Claim, claim_id)
        if claim is None:
            raise NotFound('Claim not found', context={'claim_id': claim_id})
        return claim

    async def get_conflict(self, conflict_id: str) -> Conflict:
        conflict = await self.repo.get(Conflict, conflict_id)
        if conflict is None:
            raise NotFound('Conflict not found', context={'conflict_id': conflict_id})
        return conflict

    async def list_claims(
        self,
        deal_id: str,
        field: str | None = None,
        status: VerificationStatus | None = None,
    ) -> list[Claim]:
        filters: dict[str, Any] = {'deal_id': deal_id}
        if field is not None:
            filters['field'] = field
        claims = await self.repo.find(
            Claim,
            predicate=(lambda c: c.status == status) if status is not None else None,
            **filters,
        )
        return sorted(claims, key=lambda c: c.created_at)

    async def list_conflicts(
        self,
        deal_id: str,
        status: ConflictStatus | None = None,
    ) -> list[Conflict]:
        conflicts = await self.repo.find(
            Conflict,
            predicate=(lambda c: c.status == status) if status is not None else None,
            deal_id=deal_id,
        )
        return sorted(conflicts, key=lambda c: c.created_at)

    async def _open_conflict(self, deal_id: str, field: str) -> Conflict | None:
        open_conflicts = await self.repo.find(
            Conflict, predicate=lambda c: c.is_open, deal_id=deal_id, field=field
        )
        return open_conflicts[0] if open_conflicts else None

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit_claim(
        self,
        deal_id: str,
        field: str,
        value: Any,
        display_value: str | None = None,
        source: ClaimSource | None = None,
        confidence: float = 0.8,
        method: str = 'AI_EXTRACTION',
        actor: Actor = SYSTEM_ACTOR,
    ) -> Claim:
        """
        Store a new claim and detect conflicts against unresolved siblings.

        Raises:
            ValidationError: Missing field/value or confidence outside [0, 1]
            NotFound: Unknown deal
        """
        if not field:
            raise ValidationError('Claim field is required', context={'deal_id': deal_id})
        if value is None:
            raise ValidationError('Claim value is required', context={'deal_id': deal_id, 'field': field})
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(
                'Confidence must be between 0 and 1',
                context={'field': field, 'confidence': confidence},
            )
        await self.deals.get_deal_draft(deal_id)

        threshold = self.config.variance_threshold_for(field)

        async with self.repo.lock('claims', deal_id, field):
            candidates = await self.list_claims(deal_id, field, VerificationStatus.UNVERIFIED)
            resolved_ids = {
                c.id for c in await self.list_conflicts(deal_id, ConflictStatus.RESOLVED)
            }

            disagreeing: list[Claim] = []
            max_variance: float | None = None
            for existing in candidates:
                if existing.conflict_group_id in resolved_ids:
                    continue
                disagree, variance = values_disagree(existing.value, value, threshold)
                if disagree:
                    disagreeing.append(existing)
                    if variance is not None:
                        max_variance = variance if max_variance is None else max(max_variance, variance)

            claim = await self.repo.insert(
                Claim(
                    deal_id=deal_id,
                    field=field,
                    value=value,
                    display_value=display_value if display_value is not None else str(value),
                    source=source or ClaimSource(),
                    extraction=ClaimExtraction(method=method, confidence=confidence),
                )
            )
            await self.deals.record_event(
                deal_id,
                'CLAIM_EXTRACTED',
                actor,
                {'claim_id': claim.id, 'field': field, 'confidence': confidence},
            )

            if disagreeing:
                claim = await self._group_conflict(claim, disagreeing, max_variance, actor)

        logger.info(
            'claims.submitted',
            deal_id=deal_id,
            field=field,
            claim_id=claim.id,
            conflicted=claim.conflict_group_id is not None,
        )
        return claim

    async def _group_conflict(
        self,
        claim: Claim,
        disagreeing: list[Claim],
        variance: float | None,
        actor: Actor,
    ) -> Claim:
        conflict = await self._open_conflict(claim.deal_id, claim.field)
        if conflict is None:
            conflict = await self.repo.insert(
                Conflict(
                    deal_id=claim.deal_id,
                    field=claim.field,
                    claim_ids=[c.id for c in disagreeing] + [claim.id],
                    variance=variance,
                )
            )
        else:
            for member in [*disagreeing, claim]:
                if member.id not in conflict.claim_ids:
                    conflict.claim_ids.append(member.id)
            if variance is not None:
                conflict.variance = variance if conflict.variance is None else max(conflict.variance, variance)
            conflict = await self.repo.save(conflict)

        for member in [*disagreeing, claim]:
            current = await self.get_claim(member.id)
            if current.conflict_group_id != conflict.id:
                current.conflict_group_id = conflict.id
                saved = await self.repo.save(current)
                if saved.id == claim.id:
                    claim = saved

        await self.deals.record_event(
            claim.deal_id,
            'CONFLICT_DETECTED',
            actor,
            {
                'conflict_id': conflict.id,
                'field': claim.field,
                'claim_ids': conflict.claim_ids,
                'variance': conflict.variance,
            },
        )
        logger.info(
            'claims.conflict_detected',
            deal_id=claim.deal_id,
            field=claim.field,
            conflict_id=conflict.id,
            claim_count=len(conflict.claim_ids),
            variance=conflict.variance,
        )
        return claim

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify_claim(
        self,
        claim_id: str,
        action: VerifyAction,
        actor: Actor,
        corrected_value: Any = None,
        rejection_reason: str | None = None,
    ) -> Claim:
        """
        Confirm or reject a single claim.

        Raises:
            ValidationError: Unknown action
            NotAuthorized: Actor is not a broker on the deal
            InvalidState: The claim sits in an OPEN conflict, or was already verified
            StaleState: The claim changed concurrently
        """
        if action not in ('confirm', 'reject'):
            raise ValidationError(
                f'Unknown verification action: {action}',
                context={'allowed': ['confirm', 'reject']},
            )
        claim = await self.get_claim(claim_id)
        deal = await self.deals.get_deal_draft(claim.deal_id)
        require_broker(deal, actor)

        async with self.repo.lock('claims', claim.deal_id, claim.field):
            claim = await self.get_claim(claim_id)
            if claim.conflict_group_id:
                conflict = await self.repo.get(Conflict, claim.conflict_group_id)
                if conflict is not None and conflict.is_open:
                    raise InvalidState(
                        'Resolve the conflict before verifying this claim',
                        current_status=ConflictStatus.OPEN.value,
                        allowed_statuses=[ConflictStatus.RESOLVED.value],
                        context={'claim_id': claim_id, 'conflict_id': conflict.id},
                    )
            if claim.status != VerificationStatus.UNVERIFIED:
                raise InvalidState(
                    f'Cannot verify claim in {claim.status.value} status',
                    current_status=claim.status.value,
                    allowed_statuses=[VerificationStatus.UNVERIFIED.value],
                    context={'claim_id': claim_id},
                )

            claim = await self._stamp(
                claim,
                confirmed=action == 'confirm',
                actor=actor,
                corrected_value=corrected_value,
                rejection_reason=rejection_reason,
            )

        if claim.status == VerificationStatus.BROKER_CONFIRMED:
            await self.deals.apply_authoritative_value(claim.deal_id, claim.field, claim.effective_value)
        await self.deals.record_event(
            claim.deal_id,
            'CLAIM_CONFIRMED' if claim.status == VerificationStatus.BROKER_CONFIRMED else 'CLAIM_REJECTED',
            actor,
            {
                'claim_id': claim.id,
                'field': claim.field,
                'corrected': corrected_value is not None,
                'rejection_reason': rejection_reason,
            },
        )
        logger.info(
            'claims.verified',
            claim_id=claim.id,
            field=claim.field,
            status=claim.status.value,
        )
        return claim

    async def _stamp(
        self,
        claim: Claim,
        confirmed: bool,
        actor: Actor,
        corrected_value: Any = None,
        rejection_reason: str | None = None,
    ) -> Claim:
        claim.verification.status = (
            VerificationStatus.BROKER_CONFIRMED if confirmed else VerificationStatus.REJECTED
        )
        claim.verification.verified_by = actor.id
        claim.verification.verified_by_name = actor.name
        claim.verification.verified_at = utc_now()
        if confirmed:
            claim.verification.corrected_value = corrected_value
        else:
            claim.verification.rejection_reason = rejection_reason
        return await self.repo.save(claim)

    async def bulk_confirm(
        self,
        deal_id: str,
        actor: Actor,
        min_confidence: float = 0.9,
    ) -> PartialSuccessResult:
        """
        Confirm every unverified, non-conflicted claim at or above `min_confidence`.

        Claims in a conflict are skipped: confidence never resolves a conflict.
        """
        deal = await self.deals.get_deal_draft(deal_id)
        require_broker(deal, actor)

        result = PartialSuccessResult()
        for claim in await self.list_claims(deal_id, status=VerificationStatus.UNVERIFIED):
            if claim.conflict_group_id or claim.extraction.confidence < min_confidence:
                continue
            try:
                await self.verify_claim(claim.id, 'confirm', actor)
                result.add_success(item_id=claim.id, data={'field': claim.field})
            except DealWorkflowError as e:
                result.add_failure(e, item_id=claim.id)

        logger.info(
            'claims.bulk_confirmed',
            deal_id=deal_id,
            min_confidence=min_confidence,
            **result.to_dict(),
        )
        return result

    # =========================================================================
    # Conflict resolution
    # =========================================================================

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: Resolution,
        actor: Actor,
    ) -> Conflict:
        """
        Resolve a conflict. Terminal: the conflict can never be reopened.

        Raises:
            AlreadyResolved: The conflict is not OPEN
            ValidationError: ChoseClaim names a claim outside the group
            TypeMismatch: Averaged over non-numeric values
            NotAuthorized: Actor is not a broker on the deal
        """
        conflict = await self.get_conflict(conflict_id)
        deal = await self.deals.get_deal_draft(conflict.deal_id)
        require_broker(deal, actor)

        async with self.repo.lock('claims', conflict.deal_id, conflict.field):
            conflict = await self.get_conflict(conflict_id)
            if not conflict.is_open:
                raise AlreadyResolved(
                    'Conflict has already been resolved',
                    context={
                        'conflict_id': conflict_id,
                        'method': conflict.resolution.method.value if conflict.resolution.method else None,
                    },
                )

            members = [await self.get_claim(cid) for cid in conflict.claim_ids]
            chosen_id: str | None = None

            if isinstance(resolution, ChoseClaim):
                if resolution.resolved_claim_id is not None:
                    chosen_id = resolution.resolved_claim_id
                elif resolution.method == ResolutionMethod.CHOSE_CLAIM_A:
                    chosen_id = conflict.claim_a_id
                else:
                    chosen_id = conflict.claim_b_id
                if chosen_id not in conflict.claim_ids:
                    raise ValidationError(
                        'Chosen claim is not part of this conflict',
                        context={'conflict_id': conflict_id, 'claim_id': chosen_id},
                    )
                chosen = next(c for c in members if c.id == chosen_id)
                resolved_value = chosen.value
            elif isinstance(resolution, ManualOverride):
                resolved_value = resolution.resolved_value
            elif isinstance(resolution, Averaged):
                numbers = [as_number(c.value) for c in members]
                if any(n is None for n in numbers):
                    raise TypeMismatch(
                        'Cannot average non-numeric claim values',
                        context={
                            'conflict_id': conflict_id,
                            'values': [c.value for c in members],
                        },
                    )
                resolved_value = sum(numbers) / len(numbers)
            else:
                raise ValidationError(f'Unsupported resolution: {type(resolution).__name__}')

            now = utc_now()
            conflict.resolution.status = ConflictStatus.RESOLVED
            conflict.resolution.method = resolution.method
            conflict.resolution.resolved_claim_id = chosen_id
            conflict.resolution.resolved_value = resolved_value
            conflict.resolution.resolved_by = actor.id
            conflict.resolution.resolved_by_name = actor.name
            conflict.resolution.resolved_at = now
            conflict = await self.repo.save(conflict)

            for member in members:
                if member.status != VerificationStatus.UNVERIFIED:
                    continue
                if member.id == chosen_id:
                    await self._stamp(member, confirmed=True, actor=actor)
                else:
                    await self._stamp(
                        member,
                        confirmed=False,
                        actor=actor,
                        rejection_reason=f'Conflict {conflict.id} resolved by {resolution.method.value}',
                    )

        await self.deals.apply_authoritative_value(conflict.deal_id, conflict.field, resolved_value)
        await self.deals.record_event(
            conflict.deal_id,
            'CONFLICT_RESOLVED',
            actor,
            {
                'conflict_id': conflict.id,
                'field': conflict.field,
                'method': resolution.method.value,
                'resolved_claim_id': chosen_id,
                'resolved_value': resolved_value,
            },
        )
        logger.info(
            'claims.conflict_resolved',
            conflict_id=conflict.id,
            field=conflict.field,
            method=resolution.method.value,
        )
        return conflict

    # =========================================================================
    # Authoritative values
    # =========================================================================

    async def get_authoritative_fact(self, deal_id: str, field: str) -> AuthoritativeFact | None:
        """
        Most recent BROKER_CONFIRMED claim, else most recent resolution value, else None.
        """
        confirmed = await self.list_claims(deal_id, field, VerificationStatus.BROKER_CONFIRMED)
        if confirmed:
            latest = max(
                confirmed,
                key=lambda c: (c.verification.verified_at or c.created_at, c.created_at),
            )
            return AuthoritativeFact(
                field=field,
                value=latest.effective_value,
                claim_id=latest.id,
                conflict_id=latest.conflict_group_id,
            )

        resolved = [
            c for c in await self.list_conflicts(deal_id, ConflictStatus.RESOLVED)
            if c.field == field and c.resolution.resolved_value is not None
        ]
        if resolved:
            latest_conflict = max(resolved, key=lambda c: c.resolution.resolved_at or c.created_at)
            return AuthoritativeFact(
                field=field,
                value=latest_conflict.resolution.resolved_value,
                claim_id=latest_conflict.resolution.resolved_claim_id,
                conflict_id=latest_conflict.id,
            )
        return None

    async def get_authoritative_value(self, deal_id: str, field: str) -> Any:
        fact = await self.get_authoritative_fact(deal_id, field)
        return fact.value if fact is not None else None

    async def get_authoritative_facts(self, deal_id: str) -> dict[str, AuthoritativeFact]:
        """Authoritative fact for every field that has one."""
        fields = dict.fromkeys(c.field for c in await self.list_claims(deal_id))
        facts: dict[str, AuthoritativeFact] = {}
        for field in fields:
            fact = await self.get_authoritative_fact(deal_id, field)
            if fact is not None:
                facts[field] = fact
        return facts

    async def verification_stats(self, deal_id: str) -> dict[str, Any]:
        claims = await self.list_claims(deal_id)
        conflicts = await self.list_conflicts(deal_id)

        by_status = {s.value: 0 for s in VerificationStatus}
        confidence = {'high': 0, 'medium': 0, 'low': 0}
        for claim in claims:
            by_status[claim.status.value] += 1
            if claim.status == VerificationStatus.UNVERIFIED:
                score = claim.extraction.confidence
                if score >= 0.9:
                    confidence['high'] += 1
                elif score >= 0.7:
                    confidence['medium'] += 1
                else:
                    confidence['low'] += 1

        return {
            'total': len(claims),
            'by_status': by_status,
            'open_conflicts': sum(1 for c in conflicts if c.is_open),
            'resolved_conflicts': sum(1 for c in conflicts if not c.is_open),
            'pending_by_confidence': confidence,
        }
