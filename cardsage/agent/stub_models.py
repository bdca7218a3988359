"""
Scripted generation backends used when CARDSAGE_TEST_MODE is set and in tests.

A script is a list of steps; each step is the ordered list of parts one model
invocation emits (plain strings become TextDelta). The step index is the number
of assistant messages after the last user message, so one backend can serve
many turns. Once the script runs out the last step is replayed, so a script
whose only step requests a tool models a model that always wants another tool
call.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Sequence

from cardsage.agent.types import Message, ModelDescriptor, Role, TextDelta, ToolCallRequest

logger = logging.getLogger(__name__)

Part = str | TextDelta | ToolCallRequest


def _step_index(messages: Sequence[Message]) -> int:
    step = 0
    for m in reversed(messages):
        if m.role is Role.USER:
            break
        if m.role is Role.ASSISTANT:
            step += 1
    return step


class ScriptedBackend:
    def __init__(
        self,
        key: str,
        script: Sequence[Sequence[Part]],
        *,
        supports_tools: bool = True,
        delay: float = 0.0,
    ) -> None:
        if not script:
            raise ValueError("script needs at least one step")
        self.descriptor = ModelDescriptor(key=key, supports_tools=supports_tools)
        self.script = [list(step) for step in script]
        self.delay = delay
        # Snapshot of the history submitted on every invocation
        self.calls: list[list[Message]] = []
        self.tools_seen: list[list[dict[str, Any]]] = []
        self.parts_emitted = 0

    @property
    def invocations(self) -> int:
        return len(self.calls)

    async def generate(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]],
    ) -> AsyncIterator[TextDelta | ToolCallRequest]:
        step = min(_step_index(messages), len(self.script) - 1)
        self.calls.append(list(messages))
        self.tools_seen.append(list(tools))
        logger.debug("[stub:%s] step=%d parts=%d", self.descriptor.key, step, len(self.script[step]))
        for part in self.script[step]:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.parts_emitted += 1
            yield TextDelta(part) if isinstance(part, str) else part


class FailingBackend:
    """Backend whose stream raises `error` after emitting `prefix` parts."""

    def __init__(self, key: str, error: BaseException, prefix: Sequence[str] = ()) -> None:
        self.descriptor = ModelDescriptor(key=key)
        self.error = error
        self.prefix = list(prefix)
        self.invocations = 0

    async def generate(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]],
    ) -> AsyncIterator[TextDelta | ToolCallRequest]:
        self.invocations += 1
        for text in self.prefix:
            yield TextDelta(text)
        raise self.error


def default_stub_backends() -> dict[str, ScriptedBackend]:
    """Backends registered under the production model keys in test mode."""
    return {
        "chat-model": ScriptedBackend(
            "chat-model",
            [["Hello, ", "world! ", "This is a ", "test response."]],
        ),
        "chat-model-reasoning": ScriptedBackend(
            "chat-model-reasoning",
            [
                [ToolCallRequest(id="call_rules_0", name="getRules", arguments={"query": "battle phase"})],
                ["The battle phase ", "follows the main phase."],
            ],
        ),
        "title-model": ScriptedBackend("title-model", [["Test title"]], supports_tools=False),
        "artifact-model": ScriptedBackend("artifact-model", [["Test artifact"]], supports_tools=False),
    }
