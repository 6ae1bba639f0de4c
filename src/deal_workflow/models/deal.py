"""
DealDraft aggregate root, actors, and deal-level audit events.

DealDraft is the aggregate every workflow hangs off. Its lifecycle status is
advanced exclusively by the workflow state machines (see
workflow.deals.DealService.advance_status), never by direct edit, so UI state
cannot diverge from workflow state.

Key design decisions:
- Status values are the literal strings external callers branch on
  ("DRAFT_INGESTED", "OM_APPROVED_FOR_MARKETING", ...) and their order is part
  of the contract (DealDraftStatus.rank).
- Brokers carry per-deal capability flags; the seller carries approval
  settings that switch on the seller-side approval steps.
- Every persisted record carries a `revision` for optimistic concurrency.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..utils import new_id, utc_now


class ActorRole(str, Enum):
    """Role of the human (or system) performing an operation."""

    BROKER = 'BROKER'
    SELLER = 'SELLER'
    BUYER = 'BUYER'
    LP = 'LP'
    ADMIN = 'ADMIN'
    SYSTEM = 'SYSTEM'


class Actor(BaseModel):
    """Identity of whoever triggers a transition. Recorded on every audit entry."""

    id: str
    name: str = ''
    role: ActorRole = ActorRole.BROKER

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


SYSTEM_ACTOR = Actor(id='system', name='System', role=ActorRole.SYSTEM)


class DealDraftStatus(str, Enum):
    """Ordered deal lifecycle."""

    DRAFT_INGESTED = 'DRAFT_INGESTED'
    OM_DRAFTED = 'OM_DRAFTED'
    OM_BROKER_APPROVED = 'OM_BROKER_APPROVED'
    OM_APPROVED_FOR_MARKETING = 'OM_APPROVED_FOR_MARKETING'
    DISTRIBUTED = 'DISTRIBUTED'
    ACTIVE_DD = 'ACTIVE_DD'

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    @property
    def in_om_phase(self) -> bool:
        """True while OM activity still drives the deal status."""
        return self.rank < DealDraftStatus.DISTRIBUTED.rank


_STATUS_ORDER = list(DealDraftStatus)


# Forward one step at a time; the OM approval states may fall back to
# OM_DRAFTED when changes are requested or the OM is regenerated.
DEAL_STATUS_TRANSITIONS: dict[DealDraftStatus, frozenset[DealDraftStatus]] = {
    DealDraftStatus.DRAFT_INGESTED: frozenset({DealDraftStatus.OM_DRAFTED}),
    DealDraftStatus.OM_DRAFTED: frozenset({DealDraftStatus.OM_BROKER_APPROVED}),
    DealDraftStatus.OM_BROKER_APPROVED: frozenset({
        DealDraftStatus.OM_APPROVED_FOR_MARKETING,
        DealDraftStatus.OM_DRAFTED,
    }),
    DealDraftStatus.OM_APPROVED_FOR_MARKETING: frozenset({
        DealDraftStatus.DISTRIBUTED,
        DealDraftStatus.OM_DRAFTED,
    }),
    DealDraftStatus.DISTRIBUTED: frozenset({DealDraftStatus.ACTIVE_DD}),
    DealDraftStatus.ACTIVE_DD: frozenset(),
}


class IngestSource(str, Enum):
    """Where the deal came from."""

    EMAIL = 'EMAIL'
    UPLOAD = 'UPLOAD'
    PASTE = 'PASTE'
    URL = 'URL'
    VOICE = 'VOICE'
    PHOTO = 'PHOTO'


class AssetType(str, Enum):
    """Property asset classes accepted on a deal draft."""

    MULTIFAMILY = 'MULTIFAMILY'
    OFFICE = 'OFFICE'
    RETAIL = 'RETAIL'
    INDUSTRIAL = 'INDUSTRIAL'
    HOSPITALITY = 'HOSPITALITY'
    MIXED_USE = 'MIXED_USE'
    LAND = 'LAND'
    SELF_STORAGE = 'SELF_STORAGE'
    SENIOR_HOUSING = 'SENIOR_HOUSING'
    STUDENT_HOUSING = 'STUDENT_HOUSING'
    MOBILE_HOME = 'MOBILE_HOME'
    OTHER = 'OTHER'


class BrokerAssignment(BaseModel):
    """A broker's seat on a deal with per-deal capability flags."""

    user_id: str
    name: str = ''
    email: str | None = None
    firm_name: str | None = None
    is_primary: bool = False
    can_approve_om: bool = False
    can_distribute: bool = False
    can_authorize: bool = False
    added_at: datetime = Field(default_factory=utc_now)


class ApprovalSettings(BaseModel):
    """Seller-side approval switches."""

    requires_om_approval: bool = True
    requires_buyer_approval: bool = False


class SellerLink(BaseModel):
    """The seller principal attached to a deal."""

    user_id: str
    name: str = ''
    email: str | None = None
    entity_name: str | None = None
    organization_id: str | None = None
    has_direct_access: bool = True
    receive_notifications: bool = True
    approval_settings: ApprovalSettings = Field(default_factory=ApprovalSettings)


class PropertyAttributes(BaseModel):
    """Property facts mirrored onto the deal from authoritative claim values."""

    property_name: str | None = None
    property_address: str | None = None
    asset_type: AssetType | None = None
    asking_price: float | None = None
    unit_count: int | None = None
    total_sf: float | None = None


class DealDraft(BaseModel):
    """
    Aggregate root of the deal workflow.

    `status` must only be changed through DealService.advance_status.
    """

    id: str = Field(default_factory=new_id)
    organization_id: str
    status: DealDraftStatus = DealDraftStatus.DRAFT_INGESTED
    ingest_source: IngestSource = IngestSource.UPLOAD
    source_data: dict[str, Any] = Field(default_factory=dict)
    properties: PropertyAttributes = Field(default_factory=PropertyAttributes)
    brokers: list[BrokerAssignment] = Field(default_factory=list)
    seller: SellerLink | None = None
    is_anonymous_seller: bool = False
    listing_type: str | None = None
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def broker(self, user_id: str) -> BrokerAssignment | None:
        """Return the broker seat held by `user_id`, if any."""
        for assignment in self.brokers:
            if assignment.user_id == user_id:
                return assignment
        return None

    @property
    def primary_broker(self) -> BrokerAssignment | None:
        for assignment in self.brokers:
            if assignment.is_primary:
                return assignment
        return None

    def is_seller(self, user_id: str) -> bool:
        return self.seller is not None and self.seller.user_id == user_id


class DealEvent(BaseModel):
    """Append-only audit entry. Every transition writes one."""

    id: str = Field(default_factory=new_id)
    deal_id: str
    event_type: str
    actor_id: str
    actor_name: str = ''
    actor_role: ActorRole = ActorRole.SYSTEM
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
