"""
Tests for the OpenAI content generator and the OM section prompts.

The chat completion call is mocked; no API key or network is needed.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from deal_workflow.clients import openai_client
from deal_workflow.clients.openai_client import ContentGenerator, OpenAIContentGenerator
from deal_workflow.prompts import OM_SECTION_SYSTEM_PROMPT, build_om_section_prompt


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestOpenAIContentGenerator:
    def test_requires_api_key(self, monkeypatch):
        monkeypatch.setattr(openai_client.config, 'OPENAI_API_KEY', '')
        with pytest.raises(ValueError, match='OPENAI_API_KEY'):
            OpenAIContentGenerator()

    def test_satisfies_protocol(self):
        assert isinstance(OpenAIContentGenerator(api_key='sk-test'), ContentGenerator)

    @pytest.mark.asyncio
    async def test_generate_section(self):
        generator = OpenAIContentGenerator(api_key='sk-test', chat_model='gpt-test')
        create = AsyncMock(return_value=completion('  Riverside Apartments is a 120-unit asset.\n'))
        generator._client.chat.completions.create = create
        try:
            text = await generator.generate_section('cover', {'propertyName': 'Riverside Apartments'})
        finally:
            await generator.close()

        assert text == 'Riverside Apartments is a 120-unit asset.'
        kwargs = create.await_args.kwargs
        assert kwargs['model'] == 'gpt-test'
        assert kwargs['messages'][0]['content'] == OM_SECTION_SYSTEM_PROMPT

    @pytest.mark.asyncio
    async def test_empty_completion(self):
        generator = OpenAIContentGenerator(api_key='sk-test')
        generator._client.chat.completions.create = AsyncMock(return_value=completion(None))
        try:
            assert await generator.generate_section('cover', {}) == ''
        finally:
            await generator.close()


class TestOMSectionPrompt:
    def test_relevant_facts_first(self):
        messages = build_om_section_prompt(
            'cover',
            {'unitCount': 120, 'askingPrice': 15_000_000, 'propertyName': 'Riverside Apartments'},
        )
        user = messages[1]['content']

        assert '"Cover" section' in user
        assert user.index('propertyName') < user.index('askingPrice') < user.index('unitCount')
        assert '- askingPrice: 15,000,000' in user

    def test_no_facts(self):
        user = build_om_section_prompt('market_overview', {})[1]['content']
        assert '- (none)' in user

    def test_unknown_section(self):
        user = build_om_section_prompt('rent_roll', {'noi': 1.5})[1]['content']
        assert '"Rent Roll" section' in user
        assert 'Write a concise, factual section.' in user
        assert '- noi: 1.5' in user
