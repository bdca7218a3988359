"""
Production generation backend: OpenAI-compatible chat completions, streamed.

Yields TextDelta for each content token as it arrives and, once the stream
ends, one ToolCallRequest per accumulated tool call.
"""

import json
import logging
from typing import Any, AsyncIterator, Sequence

from cardsage.agent.types import (
    Message,
    ModelDescriptor,
    Role,
    TextDelta,
    ToolCallRequest,
)
from cardsage.core.config import (
    AGENT_MAX_TOKENS,
    MODEL_TIMEOUT,
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
)
from cardsage.core.errors import ModelBackendError

logger = logging.getLogger(__name__)


def to_openai_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert conversation messages to the chat-completions wire format."""
    out: list[dict[str, Any]] = []
    for m in messages:
        msg: dict[str, Any] = {"role": m.role.value, "content": m.content}
        if m.role is Role.TOOL:
            msg["tool_call_id"] = m.tool_call_id or ""
        if m.tool_calls:
            msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in m.tool_calls
            ]
        out.append(msg)
    return out


def _parse_arguments(raw: str) -> dict[str, Any]:
    try:
        args = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        logger.warning("[llm] unparseable tool arguments=%r", raw[:200])
        return {}
    return args if isinstance(args, dict) else {}


class OpenAIChatBackend:
    """Streams chat completions with tools from an OpenAI-compatible endpoint."""

    def __init__(
        self,
        key: str,
        model: str,
        *,
        supports_tools: bool = True,
        max_tokens: int = AGENT_MAX_TOKENS,
        client: Any = None,
    ) -> None:
        self.descriptor = ModelDescriptor(key=key, supports_tools=supports_tools)
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if not OPENAI_API_KEY:
                raise ModelBackendError("OPENAI_API_KEY must be set in .env")
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(
                api_key=OPENAI_API_KEY,
                base_url=OPENAI_BASE_URL,
                timeout=MODEL_TIMEOUT,
            )
        return self._client

    async def generate(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]],
    ) -> AsyncIterator[TextDelta | ToolCallRequest]:
        import openai

        client = self._get_client()
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages),
            "max_completion_tokens": self.max_tokens,
            "stream": True,
        }
        if tools and self.descriptor.supports_tools:
            kwargs["tools"] = list(tools)
        logger.info(
            "[llm:%s] IN  model=%s messages=%d tools=%d",
            self.descriptor.key, self.model, len(messages), len(kwargs.get("tools", [])),
        )
        tool_calls_accum: dict[int, dict[str, str]] = {}
        content_len = 0
        try:
            stream = await client.chat.completions.create(**kwargs)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                d = chunk.choices[0].delta
                if getattr(d, "content", None):
                    content_len += len(d.content)
                    yield TextDelta(d.content)
                for tc in getattr(d, "tool_calls", None) or []:
                    idx = getattr(tc, "index", 0)
                    acc = tool_calls_accum.setdefault(idx, {"id": "", "name": "", "arguments": ""})
                    if getattr(tc, "id", None):
                        acc["id"] = tc.id
                    fn = getattr(tc, "function", None)
                    if fn is not None:
                        if getattr(fn, "name", None):
                            acc["name"] = fn.name
                        if getattr(fn, "arguments", None):
                            acc["arguments"] += fn.arguments
        except openai.APITimeoutError as e:
            raise ModelBackendError(f"Model {self.model!r} timed out") from e
        except openai.APIError as e:
            raise ModelBackendError(f"Model {self.model!r} request failed: {e}") from e

        for idx in sorted(tool_calls_accum):
            t = tool_calls_accum[idx]
            yield ToolCallRequest(id=t["id"], name=t["name"], arguments=_parse_arguments(t["arguments"]))
        logger.info(
            "[llm:%s] OUT content_len=%d tool_calls=%s",
            self.descriptor.key, content_len, [t["name"] for t in tool_calls_accum.values()],
        )
