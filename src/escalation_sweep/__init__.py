"""
Periodic escalation sweep for stalled work items.
"""

from .config import SweepSettings, get_settings
from .runner import build_sweep, run_periodically
from .sweep import EscalationSweep, ItemOutcome, SweepResult

__all__ = [
    'EscalationSweep',
    'ItemOutcome',
    'SweepResult',
    'SweepSettings',
    'build_sweep',
    'get_settings',
    'run_periodically',
]
