"""
Agent loop: tool-augmented generation for one conversation turn.

Idle -> Generating -> (ToolRequested -> ToolExecuting -> Generating)* -> Completed | Aborted

Every text increment is published the moment the backend yields it. Tool calls
requested during a step run after that step's stream ends, one at a time, and
each appends a tool message before the next model invocation. At most
max_steps model invocations happen per turn; when the last one still asks for
tools, those tools run and the turn completes with the text streamed so far.
"""

import asyncio
import json
import logging
from dataclasses import replace
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Sequence

from cardsage.agent.prompts import system_prompt
from cardsage.agent.providers import GenerationBackend, ProviderRegistry
from cardsage.agent.tools import ToolRegistry
from cardsage.agent.types import (
    LoopEvent,
    Message,
    Role,
    StepFinished,
    TextDelta,
    ToolCallFinished,
    ToolCallRequest,
    ToolCallStarted,
    ToolResult,
    TurnCompleted,
    TurnFailed,
)
from cardsage.core.config import MAX_STEPS, MODEL_TIMEOUT
from cardsage.core.errors import (
    CardSageError,
    ModelBackendError,
    ToolExecutionFailedError,
)

logger = logging.getLogger(__name__)

Publish = Callable[[LoopEvent], Awaitable[None]]

FINISH_STOP = "stop"
FINISH_STEP_BUDGET = "step_budget"
FINISH_ERROR = "error"
FINISH_CANCELLED = "cancelled"


class TurnState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    TOOL_REQUESTED = "tool_requested"
    TOOL_EXECUTING = "tool_executing"
    COMPLETED = "completed"
    ABORTED = "aborted"


class Turn:
    """
    State of one request/response cycle. Owned by a single loop run.

    Empty inbound messages are dropped on construction, as are tool messages
    whose id answers no earlier assistant tool call. The rest keep their
    relative order. History is append-only.
    """

    def __init__(self, conversation_id: str, model_key: str, messages: Iterable[Message]) -> None:
        incoming = list(messages)
        self.conversation_id = conversation_id
        self.model_key = model_key
        self._call_ids: set[str] = set()
        self._history: list[Message] = []
        self.orphaned = 0
        open_calls: set[str] = set()
        for m in incoming:
            if m.is_empty():
                continue
            if m.role == Role.TOOL:
                if m.tool_call_id not in open_calls:
                    self.orphaned += 1
                    continue
                open_calls.discard(m.tool_call_id)
            for call in m.tool_calls:
                open_calls.add(call.id)
                self._call_ids.add(call.id)
            self._history.append(m)
        self.dropped = len(incoming) - len(self._history)
        self.state = TurnState.IDLE
        self.invocations = 0
        self.finish_reason: str | None = None
        self.tools_used: list[str] = []
        self._answer_parts: list[str] = []

    @property
    def history(self) -> tuple[Message, ...]:
        return tuple(self._history)

    @property
    def answer(self) -> str:
        return "".join(self._answer_parts)

    def append(self, message: Message) -> None:
        self._history.append(message)

    def record_text(self, text: str) -> None:
        self._answer_parts.append(text)

    def claim_call_id(self, request: ToolCallRequest, step: int, index: int) -> ToolCallRequest:
        """Give the request an id not used earlier in this turn."""
        call_id = request.id
        suffix = 0
        while not call_id or call_id in self._call_ids:
            call_id = f"call_{step}_{index}" + (f"_{suffix}" if suffix else "")
            suffix += 1
        self._call_ids.add(call_id)
        return request if call_id == request.id else replace(request, id=call_id)


class AgentLoop:
    def __init__(
        self,
        providers: ProviderRegistry,
        tools: ToolRegistry,
        *,
        max_steps: int = MAX_STEPS,
        model_timeout: float = MODEL_TIMEOUT,
        prompt: Callable[[str], str] = system_prompt,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.providers = providers
        self.tools = tools
        self.max_steps = max_steps
        self.model_timeout = model_timeout
        self.prompt = prompt

    async def run(self, turn: Turn, publish: Publish) -> None:
        """Drive the turn to Completed or Aborted, publishing every event."""
        logger.info(
            "[loop:run] START conversation=%s model=%s messages=%d dropped=%d orphaned_tool_results=%d",
            turn.conversation_id, turn.model_key, len(turn.history), turn.dropped, turn.orphaned,
        )
        try:
            await self._run(turn, publish)
        except asyncio.CancelledError:
            turn.state = TurnState.ABORTED
            turn.finish_reason = FINISH_CANCELLED
            logger.info("[loop:run] cancelled conversation=%s steps=%d", turn.conversation_id, turn.invocations)
            raise
        except CardSageError as e:
            turn.state = TurnState.ABORTED
            turn.finish_reason = FINISH_ERROR
            logger.warning("[loop:run] aborted conversation=%s kind=%s: %s", turn.conversation_id, e.kind, e.message)
            await publish(TurnFailed(kind=e.kind, message=e.message))
        except Exception as e:
            turn.state = TurnState.ABORTED
            turn.finish_reason = FINISH_ERROR
            logger.exception("[loop:run] turn failed conversation=%s", turn.conversation_id)
            await publish(TurnFailed(kind="internal_error", message=str(e)))
        logger.info(
            "[loop:run] END conversation=%s state=%s finish=%s steps=%d tools_used=%s",
            turn.conversation_id, turn.state.value, turn.finish_reason, turn.invocations, turn.tools_used,
        )

    async def _run(self, turn: Turn, publish: Publish) -> None:
        backend = self.providers.resolve(turn.model_key)
        system = Message(Role.SYSTEM, self.prompt(turn.model_key))
        tool_defs = self.tools.definitions() if backend.descriptor.supports_tools else []

        for step in range(self.max_steps):
            turn.state = TurnState.GENERATING
            turn.invocations += 1
            text, requests = await self._generate(backend, [system, *turn.history], tool_defs, turn, publish)
            await publish(StepFinished(step=step))
            if not requests:
                if text.strip():
                    turn.append(Message(Role.ASSISTANT, text))
                await self._complete(turn, FINISH_STOP, publish)
                return

            turn.state = TurnState.TOOL_REQUESTED
            requests = [turn.claim_call_id(r, step, i) for i, r in enumerate(requests)]
            turn.append(Message(Role.ASSISTANT, text, tool_calls=tuple(requests)))
            turn.state = TurnState.TOOL_EXECUTING
            for request in requests:
                await publish(ToolCallStarted(request=request, step=step))
                result = await self._execute(request)
                turn.append(
                    Message(Role.TOOL, json.dumps(result.content, ensure_ascii=False), tool_call_id=result.tool_call_id)
                )
                turn.tools_used.append(request.name)
                await publish(ToolCallFinished(request=request, result=result, step=step))

        logger.info("[loop:run] step budget of %d reached conversation=%s", self.max_steps, turn.conversation_id)
        await self._complete(turn, FINISH_STEP_BUDGET, publish)

    async def _generate(
        self,
        backend: GenerationBackend,
        messages: Sequence[Message],
        tool_defs: list[dict[str, Any]],
        turn: Turn,
        publish: Publish,
    ) -> tuple[str, list[ToolCallRequest]]:
        parts: list[str] = []
        requests: list[ToolCallRequest] = []
        stream = backend.generate(messages, tool_defs).__aiter__()
        try:
            while True:
                try:
                    item = await asyncio.wait_for(stream.__anext__(), timeout=self.model_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise ModelBackendError(
                        f"Model {turn.model_key!r} sent nothing for {self.model_timeout}s"
                    ) from e
                if isinstance(item, ToolCallRequest):
                    requests.append(item)
                elif isinstance(item, TextDelta) and item.text:
                    parts.append(item.text)
                    turn.record_text(item.text)
                    await publish(item)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return "".join(parts), requests

    async def _execute(self, request: ToolCallRequest) -> ToolResult:
        try:
            return await self.tools.invoke(request.name, request.arguments, request.id)
        except ToolExecutionFailedError as e:
            logger.warning("[loop:execute] tool %r failed: %s", request.name, e.message)
            return ToolResult(tool_call_id=request.id, content={"error": e.message}, is_error=True)

    async def _complete(self, turn: Turn, reason: str, publish: Publish) -> None:
        turn.state = TurnState.COMPLETED
        turn.finish_reason = reason
        await publish(TurnCompleted(finish_reason=reason, answer=turn.answer, steps=turn.invocations))
