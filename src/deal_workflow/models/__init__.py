"""
Data models for the Deal Workflow engine.

Provides the DealDraft aggregate, claims and conflicts, OM versions and their
change log, distribution and buyer-gate records, and escalation policy objects.
"""

from .deal import (
    Actor,
    ActorRole,
    ApprovalSettings,
    AssetType,
    BrokerAssignment,
    DealDraft,
    DealDraftStatus,
    DealEvent,
    IngestSource,
    PropertyAttributes,
    SellerLink,
    SYSTEM_ACTOR,
)
from .claim import (
    Averaged,
    AuthoritativeFact,
    ChoseClaim,
    Claim,
    ClaimExtraction,
    ClaimSource,
    Conflict,
    ConflictResolution,
    ConflictStatus,
    ManualOverride,
    Resolution,
    ResolutionMethod,
    VerificationStatus,
)
from .om import (
    ChangeLogType,
    OM_SECTIONS,
    OMChangeLogEntry,
    OMSection,
    OMStatus,
    OMVersion,
    SectionDefinition,
)
from .distribution import (
    AccessLevel,
    AuthorizationPhase,
    AuthorizationState,
    AuthorizationStatus,
    BuyerAuthorization,
    BuyerCriteria,
    BuyerProfile,
    BuyerResponse,
    BuyerResponsePayload,
    Distribution,
    DistributionRecipient,
    DistributionStatus,
    GateFunnel,
    GateProgress,
    ListingType,
    MatchType,
    NDAStatus,
    PriceRange,
    ResponseType,
    Reviewed,
    SellerApprovalStatus,
    Unreviewed,
)
from .escalation import (
    DEFAULT_ESCALATION_CONFIG,
    EscalationConfig,
    EscalationEvaluation,
    EscalationLevel,
    EscalationRule,
    ItemType,
    QuietHours,
    Threshold,
    WorkItem,
)

__all__ = [
    # Deal aggregate
    'Actor',
    'ActorRole',
    'ApprovalSettings',
    'AssetType',
    'BrokerAssignment',
    'DealDraft',
    'DealDraftStatus',
    'DealEvent',
    'IngestSource',
    'PropertyAttributes',
    'SellerLink',
    'SYSTEM_ACTOR',
    # Claims
    'Averaged',
    'AuthoritativeFact',
    'ChoseClaim',
    'Claim',
    'ClaimExtraction',
    'ClaimSource',
    'Conflict',
    'ConflictResolution',
    'ConflictStatus',
    'ManualOverride',
    'Resolution',
    'ResolutionMethod',
    'VerificationStatus',
    # OM
    'ChangeLogType',
    'OM_SECTIONS',
    'OMChangeLogEntry',
    'OMSection',
    'OMStatus',
    'OMVersion',
    'SectionDefinition',
    # Distribution and gate
    'AccessLevel',
    'AuthorizationPhase',
    'AuthorizationState',
    'AuthorizationStatus',
    'BuyerAuthorization',
    'BuyerCriteria',
    'BuyerProfile',
    'BuyerResponse',
    'BuyerResponsePayload',
    'Distribution',
    'DistributionRecipient',
    'DistributionStatus',
    'GateFunnel',
    'GateProgress',
    'ListingType',
    'MatchType',
    'NDAStatus',
    'PriceRange',
    'ResponseType',
    'Reviewed',
    'SellerApprovalStatus',
    'Unreviewed',
    # Escalation
    'DEFAULT_ESCALATION_CONFIG',
    'EscalationConfig',
    'EscalationEvaluation',
    'EscalationLevel',
    'EscalationRule',
    'ItemType',
    'QuietHours',
    'Threshold',
    'WorkItem',
]
