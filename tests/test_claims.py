"""
Tests for the Claim Store & Conflict Resolver.

Covers conflict detection, verification, every resolution method, and the
precedence rules for authoritative values.
"""

import asyncio

import pytest
from pydantic import TypeAdapter

from deal_workflow.errors import (
    AlreadyResolved,
    InvalidState,
    NotAuthorized,
    TypeMismatch,
    ValidationError,
)
from deal_workflow.models.claim import (
    Averaged,
    ChoseClaim,
    ConflictStatus,
    ManualOverride,
    Resolution,
    ResolutionMethod,
    VerificationStatus,
)
from deal_workflow.workflow.claims import (
    as_number,
    compute_variance,
    resolution_from_method,
    values_disagree,
)


class TestValueComparison:
    """Pure comparison helpers."""

    def test_as_number_parses_formatted_strings(self):
        assert as_number('$15,000,000') == 15_000_000.0
        assert as_number('5.5%') == 5.5
        assert as_number(120) == 120.0

    def test_as_number_rejects_non_numeric(self):
        assert as_number('Riverside') is None
        assert as_number(True) is None
        assert as_number(None) is None

    def test_variance(self):
        assert compute_variance(100.0, 110.0) == pytest.approx(0.10)
        assert compute_variance(0.0, 0.0) == 0.0

    def test_within_threshold_agrees(self):
        disagree, variance = values_disagree(1_000_000, 1_040_000, 0.05)
        assert not disagree
        assert variance == pytest.approx(0.04)

    def test_beyond_threshold_disagrees(self):
        disagree, _ = values_disagree(1_000_000, 1_200_000, 0.05)
        assert disagree

    def test_text_comparison_is_normalized(self):
        assert values_disagree('Riverside  Apartments', 'riverside apartments', 0.05) == (False, None)
        assert values_disagree('Riverside', 'Lakeside', 0.05)[0]


class TestResolutionFromMethod:
    def test_chose_claim(self):
        resolution = resolution_from_method('CHOSE_CLAIM_B')
        assert isinstance(resolution, ChoseClaim)
        assert resolution.method == ResolutionMethod.CHOSE_CLAIM_B

    def test_manual_override_requires_value(self):
        with pytest.raises(ValidationError):
            resolution_from_method('MANUAL_OVERRIDE')

    def test_unknown_method(self):
        with pytest.raises(ValidationError):
            resolution_from_method('FLIP_A_COIN')

    def test_discriminated_union_parses_variant(self):
        parsed = TypeAdapter(Resolution).validate_python({'method': ResolutionMethod.AVERAGED})
        assert isinstance(parsed, Averaged)


class TestSubmitClaim:
    """Conflict detection on submission."""

    @pytest.mark.asyncio
    async def test_agreeing_claims_do_not_conflict(self, services, deal):
        await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        second = await services.claims.submit_claim(deal.id, 'noi', 1_030_000)

        assert second.conflict_group_id is None
        assert await services.claims.list_conflicts(deal.id) == []

    @pytest.mark.asyncio
    async def test_disagreeing_claims_open_conflict(self, services, deal):
        a = await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        b = await services.claims.submit_claim(deal.id, 'noi', 1_200_000)

        conflicts = await services.claims.list_conflicts(deal.id, ConflictStatus.OPEN)
        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.claim_ids == [a.id, b.id]
        assert conflict.variance == pytest.approx(0.2)
        assert b.conflict_group_id == conflict.id
        assert (await services.claims.get_claim(a.id)).conflict_group_id == conflict.id

    @pytest.mark.asyncio
    async def test_third_claim_joins_open_conflict(self, services, deal):
        await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        await services.claims.submit_claim(deal.id, 'noi', 1_200_000)
        c = await services.claims.submit_claim(deal.id, 'noi', 1_500_000)

        conflicts = await services.claims.list_conflicts(deal.id)
        assert len(conflicts) == 1
        assert c.id in conflicts[0].claim_ids
        assert len(conflicts[0].claim_ids) == 3

    @pytest.mark.asyncio
    async def test_field_threshold_override(self, services, deal):
        """capRate uses its own tighter threshold."""
        await services.claims.submit_claim(deal.id, 'capRate', 5.5)
        second = await services.claims.submit_claim(deal.id, 'capRate', 5.7)
        assert second.conflict_group_id is not None

    @pytest.mark.asyncio
    async def test_confirmed_claims_not_compared(self, services, deal, broker):
        first = await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        await services.claims.verify_claim(first.id, 'confirm', broker)

        second = await services.claims.submit_claim(deal.id, 'noi', 2_000_000)
        assert second.conflict_group_id is None

    @pytest.mark.asyncio
    async def test_fields_are_independent(self, services, deal):
        await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        other = await services.claims.submit_claim(deal.id, 'occupancy', 2)
        assert other.conflict_group_id is None

    @pytest.mark.asyncio
    async def test_invalid_confidence(self, services, deal):
        with pytest.raises(ValidationError):
            await services.claims.submit_claim(deal.id, 'noi', 1, confidence=1.5)

    @pytest.mark.asyncio
    async def test_concurrent_submissions_form_one_conflict(self, services, deal):
        """Concurrent disagreeing submissions for one field never open two conflicts."""
        await asyncio.gather(
            services.claims.submit_claim(deal.id, 'noi', 1_000_000),
            services.claims.submit_claim(deal.id, 'noi', 1_300_000),
            services.claims.submit_claim(deal.id, 'noi', 1_600_000),
        )
        conflicts = await services.claims.list_conflicts(deal.id, ConflictStatus.OPEN)
        assert len(conflicts) == 1
        assert len(conflicts[0].claim_ids) == 3

    @pytest.mark.asyncio
    async def test_events_recorded(self, services, deal):
        await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        await services.claims.submit_claim(deal.id, 'noi', 1_200_000)
        types = [e.event_type for e in await services.deals.list_events(deal.id)]
        assert types.count('CLAIM_EXTRACTED') == 2
        assert types.count('CONFLICT_DETECTED') == 1


class TestVerifyClaim:
    @pytest.mark.asyncio
    async def test_confirm_with_correction(self, services, deal, broker):
        claim = await services.claims.submit_claim(deal.id, 'askingPrice', 15_000_000)
        confirmed = await services.claims.verify_claim(
            claim.id, 'confirm', broker, corrected_value=14_750_000
        )

        assert confirmed.status == VerificationStatus.BROKER_CONFIRMED
        assert confirmed.verification.verified_by == broker.id
        assert await services.claims.get_authoritative_value(deal.id, 'askingPrice') == 14_750_000
        assert (await services.deals.get_deal_draft(deal.id)).properties.asking_price == 14_750_000

    @pytest.mark.asyncio
    async def test_reject(self, services, deal, broker):
        claim = await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        rejected = await services.claims.verify_claim(
            claim.id, 'reject', broker, rejection_reason='Stale T-12'
        )
        assert rejected.status == VerificationStatus.REJECTED
        assert rejected.verification.rejection_reason == 'Stale T-12'
        assert await services.claims.get_authoritative_value(deal.id, 'noi') is None

    @pytest.mark.asyncio
    async def test_claim_in_open_conflict_cannot_be_verified(self, services, deal, broker):
        await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        b = await services.claims.submit_claim(deal.id, 'noi', 1_200_000)

        with pytest.raises(InvalidState) as exc_info:
            await services.claims.verify_claim(b.id, 'confirm', broker)
        assert exc_info.value.current_status == 'OPEN'

    @pytest.mark.asyncio
    async def test_verify_twice(self, services, deal, broker):
        claim = await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        await services.claims.verify_claim(claim.id, 'confirm', broker)
        with pytest.raises(InvalidState):
            await services.claims.verify_claim(claim.id, 'reject', broker)

    @pytest.mark.asyncio
    async def test_non_broker_cannot_verify(self, services, deal, seller):
        claim = await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        with pytest.raises(NotAuthorized):
            await services.claims.verify_claim(claim.id, 'confirm', seller)

    @pytest.mark.asyncio
    async def test_unknown_action(self, services, deal, broker):
        claim = await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        with pytest.raises(ValidationError):
            await services.claims.verify_claim(claim.id, 'approve', broker)


class TestBulkConfirm:
    @pytest.mark.asyncio
    async def test_confirms_high_confidence_only(self, services, deal, broker):
        high = await services.claims.submit_claim(deal.id, 'unitCount', 120, confidence=0.95)
        low = await services.claims.submit_claim(deal.id, 'yearBuilt', 1998, confidence=0.6)
        await services.claims.submit_claim(deal.id, 'noi', 1_000_000, confidence=0.99)
        await services.claims.submit_claim(deal.id, 'noi', 1_400_000, confidence=0.99)

        result = await services.claims.bulk_confirm(deal.id, broker, min_confidence=0.9)

        assert result.all_succeeded
        assert [r.item_id for r in result.succeeded] == [high.id]
        assert (await services.claims.get_claim(low.id)).status == VerificationStatus.UNVERIFIED


class TestResolveConflict:
    """Every resolution method, and terminality."""

    async def _conflict(self, services, deal, values=(1_000_000, 1_200_000), field='noi'):
        claims = [await services.claims.submit_claim(deal.id, field, v) for v in values]
        conflict = (await services.claims.list_conflicts(deal.id, ConflictStatus.OPEN))[0]
        return conflict, claims

    @pytest.mark.asyncio
    async def test_chose_claim_b(self, services, deal, broker):
        conflict, (a, b) = await self._conflict(services, deal)

        resolved = await services.claims.resolve_conflict(
            conflict.id, ChoseClaim(method=ResolutionMethod.CHOSE_CLAIM_B), broker
        )

        assert resolved.status == ConflictStatus.RESOLVED
        assert resolved.resolution.resolved_claim_id == b.id
        assert (await services.claims.get_claim(b.id)).status == VerificationStatus.BROKER_CONFIRMED
        assert (await services.claims.get_claim(a.id)).status == VerificationStatus.REJECTED
        assert await services.claims.get_authoritative_value(deal.id, 'noi') == 1_200_000

    @pytest.mark.asyncio
    async def test_chose_explicit_member(self, services, deal, broker):
        conflict, claims = await self._conflict(services, deal, values=(1_000_000, 1_200_000, 1_500_000))
        resolved = await services.claims.resolve_conflict(
            conflict.id,
            ChoseClaim(method=ResolutionMethod.CHOSE_CLAIM_A, resolved_claim_id=claims[2].id),
            broker,
        )
        assert resolved.resolution.resolved_value == 1_500_000

    @pytest.mark.asyncio
    async def test_chose_claim_outside_group(self, services, deal, broker):
        conflict, _ = await self._conflict(services, deal)
        with pytest.raises(ValidationError):
            await services.claims.resolve_conflict(
                conflict.id,
                ChoseClaim(method=ResolutionMethod.CHOSE_CLAIM_A, resolved_claim_id='other'),
                broker,
            )

    @pytest.mark.asyncio
    async def test_manual_override(self, services, deal, broker):
        conflict, claims = await self._conflict(services, deal)
        await services.claims.resolve_conflict(conflict.id, ManualOverride(resolved_value=1_100_000), broker)

        fact = await services.claims.get_authoritative_fact(deal.id, 'noi')
        assert fact.value == 1_100_000
        assert fact.claim_id is None
        assert fact.conflict_id == conflict.id
        for claim in claims:
            assert (await services.claims.get_claim(claim.id)).status == VerificationStatus.REJECTED

    @pytest.mark.asyncio
    async def test_averaged(self, services, deal, broker):
        conflict, _ = await self._conflict(services, deal)
        resolved = await services.claims.resolve_conflict(conflict.id, Averaged(), broker)
        assert resolved.resolution.resolved_value == pytest.approx(1_100_000)

    @pytest.mark.asyncio
    async def test_averaged_non_numeric(self, services, deal, broker):
        conflict, _ = await self._conflict(services, deal, values=('Riverside', 'Lakeside'), field='propertyName')
        with pytest.raises(TypeMismatch):
            await services.claims.resolve_conflict(conflict.id, Averaged(), broker)
        assert (await services.claims.get_conflict(conflict.id)).is_open

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        'second',
        [
            ChoseClaim(method=ResolutionMethod.CHOSE_CLAIM_A),
            ChoseClaim(method=ResolutionMethod.CHOSE_CLAIM_B),
            ManualOverride(resolved_value=1_050_000),
            Averaged(),
        ],
        ids=lambda r: r.method.value,
    )
    async def test_resolution_is_terminal(self, services, deal, broker, second):
        """A resolved conflict refuses every further resolution, whatever the method."""
        conflict, (a, _) = await self._conflict(services, deal)
        await services.claims.resolve_conflict(conflict.id, Averaged(), broker)

        with pytest.raises(AlreadyResolved):
            await services.claims.resolve_conflict(conflict.id, second, broker)

        stored = await services.claims.get_conflict(conflict.id)
        assert stored.resolution.method == ResolutionMethod.AVERAGED
        assert stored.resolution.resolved_value == pytest.approx(1_100_000)
        assert (await services.claims.get_claim(a.id)).status == VerificationStatus.REJECTED

    @pytest.mark.asyncio
    async def test_concurrent_resolutions_exactly_one_wins(self, services, deal, broker):
        conflict, _ = await self._conflict(services, deal)
        results = await asyncio.gather(
            services.claims.resolve_conflict(conflict.id, Averaged(), broker),
            services.claims.resolve_conflict(conflict.id, ManualOverride(resolved_value=1), broker),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, AlreadyResolved)) == 1
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1

    @pytest.mark.asyncio
    async def test_new_claim_after_resolution_not_grouped(self, services, deal, broker):
        conflict, _ = await self._conflict(services, deal)
        await services.claims.resolve_conflict(conflict.id, ManualOverride(resolved_value=1_100_000), broker)

        late = await services.claims.submit_claim(deal.id, 'noi', 5_000_000)
        assert late.conflict_group_id is None
        assert len(await services.claims.list_conflicts(deal.id)) == 1


class TestAuthoritativeValues:
    @pytest.mark.asyncio
    async def test_none_without_confirmation(self, services, deal):
        await services.claims.submit_claim(deal.id, 'noi', 1_000_000, confidence=1.0)
        assert await services.claims.get_authoritative_fact(deal.id, 'noi') is None

    @pytest.mark.asyncio
    async def test_confirmed_beats_manual_resolution(self, services, deal, broker):
        """A broker-confirmed claim outranks a later manual resolution value."""
        confirmed = await services.claims.submit_claim(deal.id, 'noi', 1_000_000)
        await services.claims.verify_claim(confirmed.id, 'confirm', broker)

        await services.claims.submit_claim(deal.id, 'noi', 2_000_000)
        await services.claims.submit_claim(deal.id, 'noi', 3_000_000)
        conflict = (await services.claims.list_conflicts(deal.id, ConflictStatus.OPEN))[0]
        await services.claims.resolve_conflict(conflict.id, ManualOverride(resolved_value=2_500_000), broker)

        assert await services.claims.get_authoritative_value(deal.id, 'noi') == 1_000_000

    @pytest.mark.asyncio
    async def test_facts_for_all_fields(self, services, confirmed_deal):
        facts = await services.claims.get_authoritative_facts(confirmed_deal.id)
        assert set(facts) == {'propertyName', 'askingPrice', 'unitCount'}

    @pytest.mark.asyncio
    async def test_verification_stats(self, services, deal, broker):
        a = await services.claims.submit_claim(deal.id, 'unitCount', 120, confidence=0.95)
        await services.claims.submit_claim(deal.id, 'yearBuilt', 1998, confidence=0.5)
        await services.claims.verify_claim(a.id, 'confirm', broker)

        stats = await services.claims.verification_stats(deal.id)
        assert stats['total'] == 2
        assert stats['by_status']['BROKER_CONFIRMED'] == 1
        assert stats['pending_by_confidence']['low'] == 1
        assert stats['open_conflicts'] == 0
