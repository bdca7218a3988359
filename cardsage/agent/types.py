"""
Core value types shared by the providers, tools, agent loop and transport.

All types are frozen: a message appended to a conversation is never mutated.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool call emitted by the model mid-generation."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Message:
    role: Role
    content: str = ""
    tool_call_id: str | None = None
    # Set on assistant messages that requested tools
    tool_calls: tuple[ToolCallRequest, ...] = ()

    def is_empty(self) -> bool:
        return not self.content.strip() and not self.tool_calls


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    content: Any
    is_error: bool = False


@dataclass(frozen=True)
class SearchHit:
    """Normalized retrieval output. Lists keep the backend's relevance order."""

    score: float
    text: str
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"score": self.score, "text": self.text}
        if self.id is not None:
            out["id"] = self.id
        return out


@dataclass(frozen=True)
class ModelDescriptor:
    key: str
    supports_tools: bool = True


@dataclass(frozen=True)
class ToolDefinition:
    """A named read-only capability. `input_model` doubles as the input schema."""

    name: str
    description: str
    input_model: type[BaseModel]
    invoke: Callable[[BaseModel], Awaitable[Any]]

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(),
            },
        }


@dataclass(frozen=True)
class StreamChunk:
    """Unit flushed to the caller. Text chunks end on a word boundary."""

    text: str
    is_final: bool = False
    finish_reason: str | None = None


# --- Backend increments ---

@dataclass(frozen=True)
class TextDelta:
    text: str


# --- Loop events (published on the turn channel) ---

@dataclass(frozen=True)
class ToolCallStarted:
    request: ToolCallRequest
    step: int


@dataclass(frozen=True)
class ToolCallFinished:
    request: ToolCallRequest
    result: ToolResult
    step: int


@dataclass(frozen=True)
class StepFinished:
    step: int


@dataclass(frozen=True)
class TurnCompleted:
    finish_reason: str
    answer: str
    steps: int


@dataclass(frozen=True)
class TurnFailed:
    kind: str
    message: str


LoopEvent = TextDelta | ToolCallStarted | ToolCallFinished | StepFinished | TurnCompleted | TurnFailed
