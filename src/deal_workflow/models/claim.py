"""
Claim and Conflict models for the Claim Store & Conflict Resolver.

A Claim is a candidate fact extracted from a source document. It is never
truth on its own: only broker confirmation (directly, or through conflict
resolution) makes a value authoritative.

A Conflict groups two or more claims for the same field whose values
disagree beyond the field's variance threshold. Conflicts are never deleted;
resolution flips their status to RESOLVED and records how.

Resolution is a closed sum type, one variant per method, each carrying only
the fields it needs:
- ChoseClaim: side A or B (or an explicit member claim for larger groups)
- ManualOverride: a broker-supplied value not backed by any claim
- Averaged: numeric mean of the group's claim values
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from ..utils import new_id, utc_now


class VerificationStatus(str, Enum):
    UNVERIFIED = 'UNVERIFIED'
    BROKER_CONFIRMED = 'BROKER_CONFIRMED'
    REJECTED = 'REJECTED'


class ConflictStatus(str, Enum):
    OPEN = 'OPEN'
    RESOLVED = 'RESOLVED'


class ResolutionMethod(str, Enum):
    CHOSE_CLAIM_A = 'CHOSE_CLAIM_A'
    CHOSE_CLAIM_B = 'CHOSE_CLAIM_B'
    MANUAL_OVERRIDE = 'MANUAL_OVERRIDE'
    AVERAGED = 'AVERAGED'


class ClaimSource(BaseModel):
    """Where in which document the claim was found (document is an opaque blob ref)."""

    document_id: str | None = None
    document_name: str | None = None
    page_number: int | None = None
    location: str | None = None
    text_snippet: str | None = None


class ClaimExtraction(BaseModel):
    """How the claim was produced. Confidence is advisory only."""

    method: str = 'AI_EXTRACTION'
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)


class ClaimVerification(BaseModel):
    status: VerificationStatus = VerificationStatus.UNVERIFIED
    verified_by: str | None = None
    verified_by_name: str | None = None
    verified_at: datetime | None = None
    corrected_value: Any = None
    rejection_reason: str | None = None


class Claim(BaseModel):
    """A single extracted assertion about one field of a deal."""

    id: str = Field(default_factory=new_id)
    deal_id: str
    field: str
    value: Any
    display_value: str | None = None
    source: ClaimSource = Field(default_factory=ClaimSource)
    extraction: ClaimExtraction = Field(default_factory=ClaimExtraction)
    verification: ClaimVerification = Field(default_factory=ClaimVerification)
    conflict_group_id: str | None = None
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def status(self) -> VerificationStatus:
        return self.verification.status

    @property
    def effective_value(self) -> Any:
        """The broker's corrected value when one was supplied, else the extracted value."""
        if self.verification.corrected_value is not None:
            return self.verification.corrected_value
        return self.value


# =============================================================================
# Resolution variants
# =============================================================================


class ChoseClaim(BaseModel):
    """Keep one claim of the group; every other member is rejected."""

    method: Literal[ResolutionMethod.CHOSE_CLAIM_A, ResolutionMethod.CHOSE_CLAIM_B]
    resolved_claim_id: str | None = None


class ManualOverride(BaseModel):
    """Reject every claim and record a broker-supplied authoritative value."""

    method: Literal[ResolutionMethod.MANUAL_OVERRIDE] = ResolutionMethod.MANUAL_OVERRIDE
    resolved_value: Any


class Averaged(BaseModel):
    """Reject every claim and record the numeric mean of their values."""

    method: Literal[ResolutionMethod.AVERAGED] = ResolutionMethod.AVERAGED


Resolution = Annotated[
    Union[ChoseClaim, ManualOverride, Averaged],
    Field(discriminator='method'),
]


class ConflictResolution(BaseModel):
    status: ConflictStatus = ConflictStatus.OPEN
    method: ResolutionMethod | None = None
    resolved_claim_id: str | None = None
    resolved_value: Any = None
    resolved_by: str | None = None
    resolved_by_name: str | None = None
    resolved_at: datetime | None = None


class Conflict(BaseModel):
    """Two or more claims disputing the same field."""

    id: str = Field(default_factory=new_id)
    deal_id: str
    field: str
    claim_ids: list[str] = Field(default_factory=list)
    variance: float | None = None
    resolution: ConflictResolution = Field(default_factory=ConflictResolution)
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def status(self) -> ConflictStatus:
        return self.resolution.status

    @property
    def is_open(self) -> bool:
        return self.resolution.status == ConflictStatus.OPEN

    @property
    def claim_a_id(self) -> str:
        return self.claim_ids[0]

    @property
    def claim_b_id(self) -> str:
        return self.claim_ids[1]


class AuthoritativeFact(BaseModel):
    """The usable value of a field, and what backs it."""

    field: str
    value: Any
    claim_id: str | None = None
    conflict_id: str | None = None
