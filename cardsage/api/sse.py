"""
Server-Sent Events encoding for a streamed turn.

Events: chunk, tool_call, tool_result, done, error. Exactly one of done/error
ends the stream.
"""

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator

from cardsage.agent.loop import AgentLoop, Turn
from cardsage.agent.streaming import stream_turn
from cardsage.agent.types import StreamChunk, ToolCallFinished, ToolCallStarted, TurnFailed

logger = logging.getLogger(__name__)


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def sse_events(agent: AgentLoop, turn: Turn, **stream_options: Any) -> AsyncIterator[str]:
    """Yield SSE frames for one turn. Closing this generator cancels the turn."""
    try:
        async with aclosing(stream_turn(agent, turn, **stream_options)) as events:
            async for evt in events:
                if isinstance(evt, StreamChunk):
                    if evt.is_final:
                        yield format_sse("done", {
                            "finish_reason": evt.finish_reason,
                            "answer": turn.answer,
                            "steps": turn.invocations,
                            "tools_used": list(turn.tools_used),
                        })
                    else:
                        yield format_sse("chunk", {"text": evt.text})
                elif isinstance(evt, ToolCallStarted):
                    req = evt.request
                    yield format_sse("tool_call", {"id": req.id, "name": req.name, "arguments": req.arguments})
                elif isinstance(evt, ToolCallFinished):
                    yield format_sse("tool_result", {
                        "id": evt.result.tool_call_id,
                        "name": evt.request.name,
                        "is_error": evt.result.is_error,
                    })
                elif isinstance(evt, TurnFailed):
                    yield format_sse("error", {"kind": evt.kind, "message": evt.message})
    except Exception as e:
        logger.exception("[sse] stream failed conversation=%s", turn.conversation_id)
        yield format_sse("error", {"kind": "internal_error", "message": str(e)})
