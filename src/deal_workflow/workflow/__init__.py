"""
Workflow state machines for the Deal Workflow engine.

Flow: claims supply confirmed facts -> OM versions are generated and approved
-> the approved OM is distributed -> buyer responses pass through the gate
-> stalled work items are escalated.
"""

from .claims import ClaimResolver, resolution_from_method
from .deals import DealService
from .distribution import DistributionService, evaluate_criteria_match
from .escalation import (
    elapsed_days,
    escalation_level_label,
    evaluate_escalation,
    is_quiet_hours,
)
from .gate import BuyerGate
from .om import OMWorkflow, can_seller_approve

__all__ = [
    'BuyerGate',
    'ClaimResolver',
    'DealService',
    'DistributionService',
    'OMWorkflow',
    'can_seller_approve',
    'elapsed_days',
    'escalation_level_label',
    'evaluate_criteria_match',
    'evaluate_escalation',
    'is_quiet_hours',
    'resolution_from_method',
]
