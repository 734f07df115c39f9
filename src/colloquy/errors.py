"""Error taxonomy for the session engine."""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Error payload recorded in a tool result transaction."""

    VALIDATION_ERROR = "validation_error"
    PATH_NOT_ALLOWED = "path_not_allowed"
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_ERROR = "tool_error"
    TOOL_TIMEOUT = "tool_timeout"
    CANCELLED = "cancelled"
    TOOL_CALL_DEPTH_EXCEEDED = "tool_call_depth_exceeded"


class ColloquyError(Exception):
    """Base class for every error raised by colloquy."""


class InvalidStateError(ColloquyError):
    """Raised when an operation is attempted in the wrong state."""


# ---------------------------------------------------------------------------
# Protocol-ordering violations from the model provider
# ---------------------------------------------------------------------------


class ProtocolError(ColloquyError):
    """The model backend broke the streaming contract."""


class UnknownStreamError(ProtocolError):
    """A fragment referenced a stream that is not open."""

    def __init__(self, stream_id: int) -> None:
        self.stream_id = stream_id
        super().__init__(f"No open stream with id {stream_id}")


class DuplicateFragmentError(ProtocolError):
    """A fragment index was delivered twice for the same stream."""

    def __init__(self, stream_id: int, index: int) -> None:
        self.stream_id = stream_id
        self.index = index
        super().__init__(f"Fragment {index} already received for stream {stream_id}")


class UnknownToolCallError(ProtocolError):
    """A tool result referenced a call that is not pending."""

    def __init__(self, tool_call_id: str) -> None:
        self.tool_call_id = tool_call_id
        super().__init__(f"No pending tool call with id '{tool_call_id}'")


# ---------------------------------------------------------------------------
# Tool registry
# ---------------------------------------------------------------------------


class DuplicateToolError(ColloquyError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolError(ColloquyError):
    """Raised by tool handlers; converted into a failed tool result."""

    kind: ErrorKind = ErrorKind.TOOL_ERROR


class ArgumentValidationError(ToolError):
    """Tool-call arguments do not match the tool's parameter schema."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, tool_name: str, errors: list[str]) -> None:
        self.tool_name = tool_name
        self.errors = errors
        super().__init__(f"Invalid arguments for '{tool_name}': {'; '.join(errors)}")


class PathNotAllowedError(ToolError):
    """A path argument resolves outside every accessible root."""

    kind = ErrorKind.PATH_NOT_ALLOWED

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Path is not accessible: {path}")


class UnknownToolError(ToolError):
    """The model requested a tool that is not registered."""

    kind = ErrorKind.UNKNOWN_TOOL

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")


# ---------------------------------------------------------------------------
# Model requests
# ---------------------------------------------------------------------------


class ModelRequestError(ColloquyError):
    """The model request failed or timed out before completing."""


class SessionNotFoundError(ColloquyError):
    """No saved session exists under the requested id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"No saved session '{session_id}'")


class ToolCallDepthExceeded(ColloquyError):
    """The automatic tool-call loop hit its configured depth limit."""

    def __init__(self, depth: int) -> None:
        self.depth = depth
        super().__init__(f"Tool call depth limit reached after {depth} round-trip(s)")
