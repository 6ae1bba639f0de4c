"""
Distribution, buyer response, and buyer-gate authorization models.

Storage never redacts: anonymity is a presentation contract exposed through
flags (`is_anonymous`, `anonymous_label`) and DistributionRecipient.public_identity().

The authorization gate is a tagged variant:
- Unreviewed: a non-PASS response exists but no broker decision was stored.
  Never persisted.
- Reviewed: wraps the persisted BuyerAuthorization record.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from ..utils import new_id, utc_now
from .deal import AssetType


CONFIDENTIAL_SELLER_LABEL = 'Confidential Seller'


class DistributionStatus(str, Enum):
    PENDING = 'PENDING'
    ACTIVE = 'ACTIVE'
    PAUSED = 'PAUSED'
    CLOSED = 'CLOSED'


DISTRIBUTION_STATUS_TRANSITIONS: dict[DistributionStatus, frozenset[DistributionStatus]] = {
    DistributionStatus.PENDING: frozenset({DistributionStatus.ACTIVE}),
    DistributionStatus.ACTIVE: frozenset({DistributionStatus.PAUSED, DistributionStatus.CLOSED}),
    DistributionStatus.PAUSED: frozenset({DistributionStatus.ACTIVE, DistributionStatus.CLOSED}),
    DistributionStatus.CLOSED: frozenset(),
}


class ListingType(str, Enum):
    PUBLIC = 'PUBLIC'
    PRIVATE = 'PRIVATE'


class MatchType(str, Enum):
    AUTO_MATCHED = 'AUTO_MATCHED'
    MANUAL = 'MANUAL'


class ResponseType(str, Enum):
    INTERESTED = 'INTERESTED'
    INTERESTED_WITH_CONDITIONS = 'INTERESTED_WITH_CONDITIONS'
    PASS = 'PASS'


class AuthorizationStatus(str, Enum):
    PENDING = 'PENDING'
    AUTHORIZED = 'AUTHORIZED'
    DECLINED = 'DECLINED'
    REVOKED = 'REVOKED'


class NDAStatus(str, Enum):
    NOT_SENT = 'NOT_SENT'
    SENT = 'SENT'
    SIGNED = 'SIGNED'
    EXPIRED = 'EXPIRED'


class AccessLevel(str, Enum):
    STANDARD = 'STANDARD'
    FULL = 'FULL'
    CUSTOM = 'CUSTOM'


class SellerApprovalStatus(str, Enum):
    NOT_REQUIRED = 'NOT_REQUIRED'
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    DECLINED = 'DECLINED'


class AuthorizationPhase(str, Enum):
    """Derived gate phase; the seller-confirmation step is explicit."""

    NOT_REVIEWED = 'NOT_REVIEWED'
    PENDING = 'PENDING'
    AUTHORIZED_PENDING_SELLER = 'AUTHORIZED_PENDING_SELLER'
    AUTHORIZED_FINAL = 'AUTHORIZED_FINAL'
    DECLINED = 'DECLINED'
    REVOKED = 'REVOKED'


# =============================================================================
# Buyers
# =============================================================================


class BuyerCriteria(BaseModel):
    """What a buyer wants to see. Missing bounds do not filter."""

    asset_types: list[AssetType] = Field(default_factory=list)
    geographies_include: list[str] = Field(default_factory=list)
    geographies_exclude: list[str] = Field(default_factory=list)
    min_units: int | None = None
    max_units: int | None = None
    min_price: float | None = None
    max_price: float | None = None
    min_sf: float | None = None
    max_sf: float | None = None
    min_match_score: int = Field(default=70, ge=0, le=100)
    auto_receive_matches: bool = True


class BuyerProfile(BaseModel):
    buyer_id: str
    name: str = ''
    email: str | None = None
    firm_name: str | None = None
    organization_id: str | None = None
    is_anonymous: bool = False
    anonymous_label: str | None = None
    criteria: BuyerCriteria = Field(default_factory=BuyerCriteria)


# =============================================================================
# Distribution
# =============================================================================


class Distribution(BaseModel):
    """One listing event of an approved OM version."""

    id: str = Field(default_factory=new_id)
    deal_id: str
    om_version_id: str
    listing_type: ListingType
    status: DistributionStatus = DistributionStatus.PENDING
    distributed_by: str
    distributed_by_name: str = ''
    recipient_ids: list[str] = Field(default_factory=list)
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class DistributionRecipient(BaseModel):
    id: str = Field(default_factory=new_id)
    distribution_id: str
    deal_id: str
    buyer_id: str
    buyer_name: str = ''
    buyer_email: str | None = None
    buyer_firm: str | None = None
    match_type: MatchType = MatchType.MANUAL
    match_score: int | None = None
    is_anonymous: bool = False
    anonymous_label: str | None = None
    pushed_at: datetime | None = None
    viewed_at: datetime | None = None
    view_duration_sec: int = 0
    pages_viewed: list[str] = Field(default_factory=list)
    response_id: str | None = None
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    def public_identity(self) -> dict[str, Any]:
        """Buyer identity as shown outside the broker's view."""
        if self.is_anonymous:
            return {
                'buyer_name': self.anonymous_label or 'Anonymous Buyer',
                'buyer_email': None,
                'buyer_firm': None,
            }
        return {
            'buyer_name': self.buyer_name,
            'buyer_email': self.buyer_email,
            'buyer_firm': self.buyer_firm,
        }


class PriceRange(BaseModel):
    min: float | None = None
    max: float | None = None


class BuyerResponsePayload(BaseModel):
    """What a buyer submits. Validated by the distribution service."""

    response: ResponseType
    indicative_price: PriceRange | None = None
    conditions: list[str] = Field(default_factory=list)
    questions_for_broker: list[str] = Field(default_factory=list)
    pass_reason: str | None = None
    pass_notes: str | None = None
    is_confidential: bool = False


class BuyerResponse(BaseModel):
    """Immutable once submitted; one per recipient."""

    id: str = Field(default_factory=new_id)
    recipient_id: str
    distribution_id: str
    deal_id: str
    buyer_id: str
    response: ResponseType
    indicative_price: PriceRange | None = None
    conditions: list[str] = Field(default_factory=list)
    questions_for_broker: list[str] = Field(default_factory=list)
    pass_reason: str | None = None
    pass_notes: str | None = None
    is_confidential: bool = False
    responded_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Gate
# =============================================================================


class BuyerAuthorization(BaseModel):
    """Persisted broker decision for one recipient, one per recipient."""

    id: str = Field(default_factory=new_id)
    recipient_id: str
    deal_id: str
    buyer_id: str
    status: AuthorizationStatus = AuthorizationStatus.PENDING
    access_level: AccessLevel | None = None
    authorized_by: str | None = None
    authorized_at: datetime | None = None
    declined_by: str | None = None
    declined_at: datetime | None = None
    decline_reason: str | None = None
    revoked_by: str | None = None
    revoked_at: datetime | None = None
    revoke_reason: str | None = None
    seller_approval_status: SellerApprovalStatus = SellerApprovalStatus.NOT_REQUIRED
    seller_decided_by: str | None = None
    seller_decided_at: datetime | None = None
    nda_status: NDAStatus = NDAStatus.NOT_SENT
    nda_sent_at: datetime | None = None
    nda_signed_at: datetime | None = None
    nda_expired_at: datetime | None = None
    nda_document_id: str | None = None
    data_room_access_granted: bool = False
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def phase(self) -> AuthorizationPhase:
        if self.status == AuthorizationStatus.AUTHORIZED:
            if self.seller_approval_status == SellerApprovalStatus.PENDING:
                return AuthorizationPhase.AUTHORIZED_PENDING_SELLER
            return AuthorizationPhase.AUTHORIZED_FINAL
        return AuthorizationPhase(self.status.value)

    @property
    def is_final(self) -> bool:
        """Authorized by the broker and, where required, confirmed by the seller."""
        return self.phase == AuthorizationPhase.AUTHORIZED_FINAL


class Unreviewed(BaseModel):
    """No broker decision stored yet for a non-PASS response."""

    kind: Literal['unreviewed'] = 'unreviewed'
    recipient_id: str
    response_id: str

    @property
    def phase(self) -> AuthorizationPhase:
        return AuthorizationPhase.NOT_REVIEWED


class Reviewed(BaseModel):
    kind: Literal['reviewed'] = 'reviewed'
    authorization: BuyerAuthorization

    @property
    def phase(self) -> AuthorizationPhase:
        return self.authorization.phase


AuthorizationState = Union[Unreviewed, Reviewed]


class GateFunnel(BaseModel):
    distributed: int = 0
    responded: int = 0
    interested: int = 0
    authorized: int = 0
    nda_signed: int = 0
    in_data_room: int = 0


class GateProgress(BaseModel):
    deal_id: str
    funnel: GateFunnel
    can_advance_to_dd: bool = False
