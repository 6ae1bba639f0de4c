"""
Content generation collaborator for OM drafting.

The OM workflow only depends on the ContentGenerator protocol; the OpenAI
implementation drafts one section per call from broker-confirmed facts.
Transient provider errors (connection, rate limit, 5xx) are retried with
exponential backoff; anything else surfaces immediately and the workflow
maps it to GenerationFailed.
"""

from typing import Any, Protocol, runtime_checkable

import openai
import structlog
from openai import AsyncOpenAI
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import config
from ..prompts.om_sections import build_om_section_prompt

logger = structlog.get_logger(__name__)

_TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


@runtime_checkable
class ContentGenerator(Protocol):
    """Returns prose for one OM section given broker-confirmed facts."""

    async def generate_section(self, section_key: str, facts: dict[str, Any]) -> str: ...


class OpenAIContentGenerator:
    """
    Drafts OM sections with the OpenAI chat completions API.

    Configuration via environment variables:
    - OPENAI_API_KEY: Required API key
    - OPENAI_CHAT_MODEL: Chat model (default: gpt-4.1-mini)
    """

    def __init__(
        self,
        api_key: str | None = None,
        chat_model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int | None = 800,
    ):
        """
        Args:
            api_key: OpenAI API key (defaults to OPENAI_API_KEY)
            chat_model: Chat model (defaults to OPENAI_CHAT_MODEL)
            temperature: Low by default so figures are restated, not embellished
            max_tokens: Upper bound per section
        """
        self.api_key = api_key or config.OPENAI_API_KEY
        if not self.api_key:
            raise ValueError('OPENAI_API_KEY environment variable is required')
        self.chat_model = chat_model or config.OPENAI_CHAT_MODEL
        self.temperature = temperature
        self.max_tokens = max_tokens
        # tenacity owns retries; disable the SDK's own
        self._client = AsyncOpenAI(api_key=self.api_key, max_retries=0)

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _complete(self, messages: list[dict[str, str]]) -> str:
        response = await self._client.chat.completions.create(
            model=self.chat_model,
            messages=messages,  # type: ignore
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        return response.choices[0].message.content or ''

    async def generate_section(self, section_key: str, facts: dict[str, Any]) -> str:
        content = await self._complete(build_om_section_prompt(section_key, facts))
        logger.debug(
            'openai.section_generated',
            section_key=section_key,
            fact_count=len(facts),
            chars=len(content),
        )
        return content.strip()

    async def close(self):
        await self._client.close()
