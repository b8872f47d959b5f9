"""
Text completion client used by deal analysis.

Anything with an async ``complete(prompt, system=None) -> str`` works; the
default talks to Anthropic.
"""

import logging
from typing import Optional, Protocol

from anthropic import AsyncAnthropic

from config import settings

logger = logging.getLogger(__name__)


class TextCompletion(Protocol):
    async def complete(self, prompt: str, system: Optional[str] = None) -> str: ...


class AnthropicTextCompletion:
    """Single-turn completion over the Anthropic Messages API."""

    def __init__(
        self,
        client: Optional[AsyncAnthropic] = None,
        model: Optional[str] = None,
        max_tokens: int = 2000,
    ) -> None:
        if client is None:
            if not settings.ANTHROPIC_API_KEY:
                raise ValueError("ANTHROPIC_API_KEY is required for text completion")
            client = AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)
        self.client = client
        self.model: str = model or settings.ANTHROPIC_MODEL
        self.max_tokens = max_tokens

    async def complete(self, prompt: str, system: Optional[str] = None) -> str:
        kwargs: dict = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        response = await self.client.messages.create(**kwargs)

        # Extract text from response
        text_content = ""
        for block in response.content:
            if block.type == "text":
                text_content += block.text
        logger.debug(
            "Text completion finished",
            extra={"model": self.model, "chars": len(text_content)},
        )
        return text_content


def get_text_completion() -> Optional[TextCompletion]:
    """Default client, or None when Anthropic is not configured."""
    if not settings.ANTHROPIC_API_KEY:
        return None
    return AnthropicTextCompletion()
