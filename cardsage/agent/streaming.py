"""
Streaming transport: turns the loop's event channel into word-bounded chunks.

The agent loop runs as the single producer task and publishes onto a bounded
asyncio.Queue; stream_turn() is the single consumer. Text is released one word
(plus trailing whitespace) at a time. Any non-text event flushes the partial
word first, so no chunk spans a tool call or step boundary. Closing the
consumer cancels the producer, which cancels any in-flight model or tool call.
"""

import asyncio
import logging
import re
from typing import AsyncIterator

from cardsage.agent.loop import AgentLoop, Turn
from cardsage.agent.types import (
    StreamChunk,
    TextDelta,
    ToolCallFinished,
    ToolCallStarted,
    TurnCompleted,
    TurnFailed,
)
from cardsage.core.config import CANCEL_GRACE_PERIOD, STREAM_CHUNK_DELAY, STREAM_QUEUE_SIZE

logger = logging.getLogger(__name__)

# Leading whitespace rides with the next word; a chunk always ends in whitespace
_WORD_RE = re.compile(r"\s*\S+\s+")

StreamEvent = StreamChunk | ToolCallStarted | ToolCallFinished | TurnFailed

_END = object()


class WordChunker:
    """Buffers text increments and releases complete words in order."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[str]:
        self._buffer += text
        words: list[str] = []
        pos = 0
        while True:
            match = _WORD_RE.match(self._buffer, pos)
            if match is None:
                break
            words.append(match.group(0))
            pos = match.end()
        self._buffer = self._buffer[pos:]
        return words

    def flush(self) -> str:
        rest, self._buffer = self._buffer, ""
        return rest


async def stream_turn(
    loop: AgentLoop,
    turn: Turn,
    *,
    queue_size: int = STREAM_QUEUE_SIZE,
    chunk_delay: float = STREAM_CHUNK_DELAY,
    grace_period: float = CANCEL_GRACE_PERIOD,
) -> AsyncIterator[StreamEvent]:
    """
    Run one turn and yield its output in production order.

    Yields text StreamChunks, tool boundary events, then either a final
    StreamChunk(is_final=True) or a single TurnFailed. Chunks already yielded
    are never retracted.
    """
    queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    async def produce() -> None:
        await loop.run(turn, queue.put)
        await queue.put(_END)

    producer = asyncio.create_task(produce(), name=f"turn-{turn.conversation_id}")
    chunker = WordChunker()
    try:
        while True:
            event = await queue.get()
            if event is _END:
                break
            if isinstance(event, TextDelta):
                for word in chunker.feed(event.text):
                    yield StreamChunk(word)
                    if chunk_delay:
                        await asyncio.sleep(chunk_delay)
                continue

            rest = chunker.flush()
            if rest:
                yield StreamChunk(rest)
            if isinstance(event, (ToolCallStarted, ToolCallFinished, TurnFailed)):
                yield event
            elif isinstance(event, TurnCompleted):
                yield StreamChunk("", is_final=True, finish_reason=event.finish_reason)
        await producer
    finally:
        if not producer.done():
            logger.info("[streaming] consumer gone, cancelling conversation=%s", turn.conversation_id)
            producer.cancel()
            _, pending = await asyncio.wait({producer}, timeout=grace_period)
            if pending:
                logger.warning(
                    "[streaming] producer still running %.1fs after cancel conversation=%s",
                    grace_period, turn.conversation_id,
                )
