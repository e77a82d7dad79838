"""Model provider client for the chat pipeline.

A provider takes an assembled conversation and yields text fragments as
the model produces them. The stream is lazy, finite and not restartable;
failures surface as exceptions raised from the iterator.
"""

import logging
from typing import AsyncIterator, Dict, List, Protocol

from openai import AsyncOpenAI

from .config import DEFAULT_PROVIDER, get_model_id
from .settings import Settings

logger = logging.getLogger(__name__)


class ChatProvider(Protocol):
    """Anything that streams a chat completion as text fragments."""

    def stream_chat(self, conversation: List[Dict[str, str]]) -> AsyncIterator[str]: ...


class OpenAIProvider:
    """Streaming chat completions through the OpenAI API."""

    def __init__(self, api_key: str, model: str):
        self.model = model
        self.client = AsyncOpenAI(api_key=api_key)

    async def stream_chat(self, conversation: List[Dict[str, str]]) -> AsyncIterator[str]:
        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=conversation,
            stream=True,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content


def provider_for(settings: Settings, model: str = "") -> ChatProvider:
    """Build the provider for the configured settings.

    Only OpenAI is wired; other selections fall back to it.
    """
    if settings.provider != DEFAULT_PROVIDER:
        logger.warning(
            "Provider %r is not wired to the chat pipeline, using %s",
            settings.provider, DEFAULT_PROVIDER
        )
    return OpenAIProvider(api_key=settings.api_key, model=model or get_model_id())
