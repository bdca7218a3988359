"""
Model provider registry: resolves a model key to a generation backend.

Built once at startup. Test mode (CARDSAGE_TEST_MODE) registers scripted stubs
under the same keys so the agent loop runs without any real model.
"""

import logging
from functools import lru_cache
from types import MappingProxyType
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence

from cardsage.agent.types import Message, ModelDescriptor, TextDelta, ToolCallRequest
from cardsage.core.config import (
    OPENAI_CHAT_MODEL,
    OPENAI_LIGHT_MODEL,
    OPENAI_REASONING_MODEL,
    TEST_MODE,
)
from cardsage.core.errors import UnknownModelError

logger = logging.getLogger(__name__)


class GenerationBackend(Protocol):
    descriptor: ModelDescriptor

    def generate(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]],
    ) -> AsyncIterator[TextDelta | ToolCallRequest]:
        ...


class ProviderRegistry:
    """Read-only key -> backend mapping, safe to share across turns."""

    def __init__(self, backends: Mapping[str, GenerationBackend]) -> None:
        self._backends = MappingProxyType(dict(backends))

    def resolve(self, model_key: str) -> GenerationBackend:
        backend = self._backends.get(model_key)
        if backend is None:
            logger.warning("[providers:resolve] unknown model_key=%r", model_key)
            raise UnknownModelError(model_key)
        return backend

    def keys(self) -> list[str]:
        return sorted(self._backends)

    def __contains__(self, model_key: object) -> bool:
        return model_key in self._backends


def _production_backends() -> dict[str, GenerationBackend]:
    from cardsage.agent.llm import OpenAIChatBackend

    return {
        "chat-model": OpenAIChatBackend("chat-model", OPENAI_CHAT_MODEL),
        "chat-model-reasoning": OpenAIChatBackend("chat-model-reasoning", OPENAI_REASONING_MODEL),
        "title-model": OpenAIChatBackend("title-model", OPENAI_LIGHT_MODEL, supports_tools=False),
        "artifact-model": OpenAIChatBackend("artifact-model", OPENAI_LIGHT_MODEL, supports_tools=False),
    }


def build_provider_registry(test_mode: bool = TEST_MODE) -> ProviderRegistry:
    if test_mode:
        from cardsage.agent.stub_models import default_stub_backends

        backends: dict[str, GenerationBackend] = dict(default_stub_backends())
    else:
        backends = _production_backends()
    logger.info("[providers] registry built test_mode=%s keys=%s", test_mode, sorted(backends))
    return ProviderRegistry(backends)


@lru_cache(maxsize=1)
def get_provider_registry() -> ProviderRegistry:
    """Process-wide registry (FastAPI dependency)."""
    return build_provider_registry()
