"""
LLM prompts for the Deal Workflow engine.

Provides system and user prompts for:
- Offering Memorandum section drafting from broker-confirmed facts
"""

from .om_sections import (
    OM_SECTION_SYSTEM_PROMPT,
    SECTION_GUIDANCE,
    build_om_section_prompt,
)

__all__ = [
    'OM_SECTION_SYSTEM_PROMPT',
    'SECTION_GUIDANCE',
    'build_om_section_prompt',
]
