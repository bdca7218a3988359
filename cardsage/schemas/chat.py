"""Schemas for the chat endpoint."""

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field

from cardsage.agent.types import Message, Role, ToolCallRequest
from cardsage.core.config import DEFAULT_MODEL_KEY


class ChatToolCall(BaseModel):
    """A tool call made by the assistant in an earlier turn."""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    """One message of the conversation as sent by the client."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str = Field("", description="Message text. Empty messages are ignored.")
    tool_call_id: str | None = Field(
        None,
        validation_alias=AliasChoices("tool_call_id", "toolCallId"),
        description="Set on tool messages: id of the call this result answers.",
    )
    tool_calls: list[ChatToolCall] = Field(
        default_factory=list,
        validation_alias=AliasChoices("tool_calls", "toolCalls"),
        description="Set on assistant messages: tool calls requested in that step.",
    )

    def to_message(self) -> Message:
        calls = tuple(ToolCallRequest(id=c.id, name=c.name, arguments=c.arguments) for c in self.tool_calls)
        return Message(
            role=Role(self.role),
            content=self.content,
            tool_call_id=self.tool_call_id,
            tool_calls=calls if self.role == "assistant" else (),
        )


class ChatRequest(BaseModel):
    """Request body for POST /api/chat. History comes from the client on every turn."""

    conversation_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("conversation_id", "conversationId", "id"),
        description="Client-side conversation id, used for logging.",
    )
    messages: list[ChatMessage] = Field(..., min_length=1, description="Ordered conversation history.")
    model_key: str = Field(
        DEFAULT_MODEL_KEY,
        validation_alias=AliasChoices("model_key", "modelKey", "selectedChatModel"),
        description="Logical model key, e.g. chat-model or chat-model-reasoning.",
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "c0ffee",
                    "messages": [{"role": "user", "content": "What does Dark Magician do?"}],
                    "selectedChatModel": "chat-model",
                }
            ]
        }
    }
