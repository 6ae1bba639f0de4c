"""
Deal Workflow Engine

Multi-actor workflow core for commercial real-estate deals: reconciles
extracted claims into authoritative facts, drives the Offering Memorandum
through broker and seller approval, distributes approved deals to buyers,
gates data-room access behind authorization and NDA, and escalates stalled
work items.
"""

__version__ = '0.1.0'

from .config import Config, config
from .errors import (
    AlreadyResolved,
    AlreadyResponded,
    DealWorkflowError,
    DuplicateRecord,
    GenerationFailed,
    InvalidState,
    NotAuthorized,
    NotFound,
    NotificationError,
    PartialSuccessResult,
    RegenerateNotAllowed,
    StaleState,
    TypeMismatch,
    ValidationError,
)
from .repository import WorkflowRepository
from .workflow import (
    BuyerGate,
    ClaimResolver,
    DealService,
    DistributionService,
    OMWorkflow,
    evaluate_escalation,
    is_quiet_hours,
)

__all__ = [
    # Version
    '__version__',
    # Config
    'Config',
    'config',
    # Errors
    'AlreadyResolved',
    'AlreadyResponded',
    'DealWorkflowError',
    'DuplicateRecord',
    'GenerationFailed',
    'InvalidState',
    'NotAuthorized',
    'NotFound',
    'NotificationError',
    'PartialSuccessResult',
    'RegenerateNotAllowed',
    'StaleState',
    'TypeMismatch',
    'ValidationError',
    # Store
    'WorkflowRepository',
    # Workflow
    'BuyerGate',
    'ClaimResolver',
    'DealService',
    'DistributionService',
    'OMWorkflow',
    'evaluate_escalation',
    'is_quiet_hours',
]
