"""
Offering Memorandum version, section registry, and change log models.

OMVersion is a snapshot per generation cycle. Its change log is NOT embedded:
OMChangeLogEntry records are an append-only event log keyed by version_id,
stored and queried independently so the snapshot stays small and the audit
trail stays complete.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from ..utils import new_id, utc_now


class OMStatus(str, Enum):
    DRAFT = 'DRAFT'
    BROKER_APPROVED = 'BROKER_APPROVED'
    SELLER_APPROVED = 'SELLER_APPROVED'


class ChangeLogType(str, Enum):
    GENERATED = 'GENERATED'
    SECTION_EDIT = 'SECTION_EDIT'
    BROKER_APPROVAL = 'BROKER_APPROVAL'
    SELLER_APPROVAL = 'SELLER_APPROVAL'
    CHANGE_REQUEST = 'CHANGE_REQUEST'


class SectionDefinition(BaseModel):
    key: str
    title: str
    required: bool
    autogenerated: bool = False
    fields: tuple[str, ...] = ()


OM_SECTIONS: dict[str, SectionDefinition] = {
    'cover': SectionDefinition(
        key='cover',
        title='Cover',
        required=True,
        fields=('propertyName', 'propertyAddress', 'assetType', 'askingPrice'),
    ),
    'executive_summary': SectionDefinition(
        key='executive_summary',
        title='Executive Summary',
        required=True,
        fields=(
            'propertyName', 'assetType', 'askingPrice', 'unitCount',
            'totalSF', 'capRate', 'noi', 'occupancy',
        ),
    ),
    'property_overview': SectionDefinition(
        key='property_overview',
        title='Property Overview',
        required=True,
        fields=(
            'propertyAddress', 'assetType', 'unitCount', 'totalSF',
            'yearBuilt', 'lotSize', 'occupancy',
        ),
    ),
    'financial_summary': SectionDefinition(
        key='financial_summary',
        title='Financial Summary',
        required=True,
        fields=(
            'askingPrice', 'noi', 'capRate', 'grossPotentialRent',
            'pricePerUnit', 'pricePerSF', 'occupancy',
        ),
    ),
    'disclaimers': SectionDefinition(
        key='disclaimers',
        title='Disclaimers',
        required=True,
        autogenerated=True,
    ),
    'market_overview': SectionDefinition(
        key='market_overview',
        title='Market Overview',
        required=False,
        fields=('submarket', 'marketRent', 'marketVacancy'),
    ),
    'investment_thesis': SectionDefinition(
        key='investment_thesis',
        title='Investment Thesis',
        required=False,
        fields=('valueAddPlan', 'marketRent', 'inPlaceRent'),
    ),
    'location_highlights': SectionDefinition(
        key='location_highlights',
        title='Location Highlights',
        required=False,
        fields=('submarket', 'walkScore', 'nearbyEmployers'),
    ),
}


DISCLAIMER_TEXT = (
    'This Offering Memorandum has been prepared solely for informational purposes '
    'to assist prospective purchasers in evaluating the property. The information '
    'contained herein has been obtained from sources believed reliable but has not '
    'been independently verified. No representation or warranty, express or implied, '
    'is made as to the accuracy or completeness of this information. Prospective '
    'purchasers should conduct their own independent investigation and due diligence.'
)


class OMSection(BaseModel):
    key: str
    title: str
    content: str = ''
    claim_refs: list[str] = Field(default_factory=list)
    required: bool = False
    autogenerated: bool = False
    edited_by: str | None = None
    edited_at: datetime | None = None


class OMContent(BaseModel):
    sections: dict[str, OMSection] = Field(default_factory=dict)


class OMApproval(BaseModel):
    broker_approved_by: str | None = None
    broker_approved_by_name: str | None = None
    broker_approved_at: datetime | None = None
    seller_approved_by: str | None = None
    seller_approved_by_name: str | None = None
    seller_approved_at: datetime | None = None


class OMVersion(BaseModel):
    """One OM snapshot per generation cycle."""

    id: str = Field(default_factory=new_id)
    deal_id: str
    version_number: int = Field(default=1, ge=1)
    status: OMStatus = OMStatus.DRAFT
    content: OMContent = Field(default_factory=OMContent)
    claim_refs: list[str] = Field(default_factory=list)
    approval: OMApproval = Field(default_factory=OMApproval)
    created_by: str | None = None
    created_by_name: str | None = None
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class OMChangeLogEntry(BaseModel):
    """Append-only change log entry, keyed by the OM version it describes."""

    id: str = Field(default_factory=new_id)
    version_id: str
    type: ChangeLogType
    actor_id: str
    actor_name: str = ''
    section_key: str | None = None
    note: str | None = None
    from_status: OMStatus | None = None
    to_status: OMStatus | None = None
    timestamp: datetime = Field(default_factory=utc_now)
