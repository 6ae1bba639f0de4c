"""
Offering Memorandum section generation prompts.

The generator only ever sees broker-confirmed facts for one section at a time.
It must not invent figures: any number in the output has to appear in the
facts block verbatim.
"""

from typing import Any

from ..models.om import OM_SECTIONS


# =============================================================================
# System Prompt
# =============================================================================

OM_SECTION_SYSTEM_PROMPT = """You are a commercial real estate marketing analyst drafting sections of an Offering Memorandum (OM).

You are given VERIFIED FACTS about a property. Every fact has been confirmed by the listing broker.

## Rules

1. Use ONLY the verified facts. Never introduce numbers, tenants, dates, or claims that are not in the facts.
2. If a figure is relevant but missing, omit it. Do not write placeholders such as "TBD" or "[insert]".
3. Write in a professional, factual marketing register. No superlatives that the facts do not support.
4. Output plain prose and short bullet lists only. No markdown headings; the section title is added separately.
5. Keep the section under 250 words.
"""


# =============================================================================
# User Prompt
# =============================================================================

OM_SECTION_USER_PROMPT_TEMPLATE = """Draft the "{section_title}" section of the Offering Memorandum.

Section guidance: {section_guidance}

VERIFIED FACTS:
{facts_block}
"""


SECTION_GUIDANCE: dict[str, str] = {
    'cover': 'One-line property headline followed by the address, asset type and asking price.',
    'executive_summary': 'Summarize the offering: what the property is, its scale, and its headline financials.',
    'property_overview': 'Describe the physical asset: location, size, unit mix, year built and occupancy.',
    'financial_summary': 'Present pricing and operating metrics: asking price, NOI, cap rate, per-unit and per-SF pricing.',
    'market_overview': 'Describe the submarket and how market rents and vacancy compare.',
    'investment_thesis': 'Explain the investment opportunity, including any value-add plan and rent upside.',
    'location_highlights': 'Highlight the location: submarket, accessibility and nearby demand drivers.',
}


def _format_value(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int) and not isinstance(value, bool) and abs(value) >= 1000:
        return f'{value:,}'
    return str(value)


def build_om_section_prompt(
    section_key: str,
    facts: dict[str, Any],
) -> list[dict[str, str]]:
    """
    Build section generation prompt messages for OpenAI.

    Args:
        section_key: Key of the OM section being drafted
        facts: Broker-confirmed field -> value mapping

    Returns:
        List of message dicts for OpenAI chat completion
    """
    definition = OM_SECTIONS.get(section_key)
    title = definition.title if definition else section_key.replace('_', ' ').title()

    # Facts relevant to the section first, then the rest for context
    relevant = list(definition.fields) if definition else []
    ordered = [f for f in relevant if f in facts] + sorted(f for f in facts if f not in relevant)
    facts_block = '\n'.join(f'- {name}: {_format_value(facts[name])}' for name in ordered)

    user_prompt = OM_SECTION_USER_PROMPT_TEMPLATE.format(
        section_title=title,
        section_guidance=SECTION_GUIDANCE.get(section_key, 'Write a concise, factual section.'),
        facts_block=facts_block or '- (none)',
    )

    return [
        {'role': 'system', 'content': OM_SECTION_SYSTEM_PROMPT},
        {'role': 'user', 'content': user_prompt},
    ]
