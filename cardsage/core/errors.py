"""
Application errors for the agent loop and the API.

Tool-level failures (RetrievalUnavailableError, ToolExecutionFailedError) are
recoverable: the loop turns them into tool-result messages. Model-level
failures (UnknownModelError, ModelBackendError) and UnknownToolError abort the
turn and reach the caller as one terminal error event.
"""


class CardSageError(Exception):
    """Base class for typed failures. `kind` is the name reported to callers."""

    kind = "error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class UnknownModelError(CardSageError):
    """Raised when a model key is not registered with the provider registry."""

    kind = "unknown_model"

    def __init__(self, model_key: str) -> None:
        self.model_key = model_key
        super().__init__(f"Unknown model key: {model_key!r}")


class ModelBackendError(CardSageError):
    """Raised when a generation backend times out or its transport fails."""

    kind = "model_unavailable"


class RetrievalUnavailableError(CardSageError):
    """Raised when the search backend is unreachable, rejects auth, or times out."""

    kind = "retrieval_unavailable"


class UnknownToolError(CardSageError):
    kind = "unknown_tool"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name!r}")


class ToolExecutionFailedError(CardSageError):
    """Raised when a registered tool fails; `cause` holds the underlying error."""

    kind = "tool_failed"

    def __init__(self, name: str, cause: BaseException) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"Tool {name!r} failed: {cause}")
