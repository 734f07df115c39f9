"""colloquy — conversation session engine for streaming, tool-calling language models."""

from __future__ import annotations

__version__ = "0.1.0"

from .builtin_tools import register_builtin_tools
from .config import DEFAULT_MODEL, MODEL_CATALOG, EngineConfig, ModelSpec, get_model
from .embeddings import (
    EmbeddingService,
    HashingEmbeddingService,
    LocalEmbeddingService,
    OllamaEmbeddingService,
)
from .engine import SessionEngine, TurnOutcome
from .errors import (
    ArgumentValidationError,
    ColloquyError,
    DuplicateFragmentError,
    DuplicateToolError,
    ErrorKind,
    InvalidStateError,
    ModelRequestError,
    PathNotAllowedError,
    ProtocolError,
    SessionNotFoundError,
    ToolCallDepthExceeded,
    ToolError,
    UnknownStreamError,
    UnknownToolCallError,
    UnknownToolError,
)
from .event_sourcing import EngineEvent, EventStore, InMemoryEventStore
from .fsm import EngineState, FSMState
from .persistence import (
    InMemorySessionStore,
    JsonFileSessionStore,
    SessionSnapshot,
    SessionStore,
)
from .provider import (
    ChatMessage,
    ChatRequest,
    ChatRole,
    ModelClient,
    ScriptedModelClient,
    StreamFragment,
    ToolCallRequest,
    ToolSpec,
)
from .retrieval import InMemoryVectorIndex, RetrievalAugmenter, SearchHit, SimilaritySearch
from .telemetry import ColloquyTracer, TelemetryConfig
from .token_budget import TokenBudget, TokenBudgeter, estimate_tokens
from .tool_call_parser import format_tool_call, parse_fenced_tool_calls, unique_call_ids
from .tool_executor import ToolExecutor
from .tools import (
    FunctionTool,
    ParameterType,
    Tool,
    ToolDefinition,
    ToolParameter,
    ToolRegistry,
    resolve_sandboxed_path,
    validate_arguments,
)
from .transactions import (
    CompletedTurn,
    StreamingTurn,
    ToolResult,
    ToolResultTurn,
    Transaction,
    TransactionStore,
    UserTurn,
)

__all__ = [
    "ArgumentValidationError",
    "ChatMessage",
    "ChatRequest",
    "ChatRole",
    "ColloquyError",
    "ColloquyTracer",
    "CompletedTurn",
    "DEFAULT_MODEL",
    "DuplicateFragmentError",
    "DuplicateToolError",
    "EmbeddingService",
    "EngineConfig",
    "EngineEvent",
    "EngineState",
    "ErrorKind",
    "EventStore",
    "FSMState",
    "FunctionTool",
    "HashingEmbeddingService",
    "InMemoryEventStore",
    "InMemorySessionStore",
    "InMemoryVectorIndex",
    "InvalidStateError",
    "JsonFileSessionStore",
    "LocalEmbeddingService",
    "MODEL_CATALOG",
    "ModelClient",
    "ModelRequestError",
    "ModelSpec",
    "OllamaEmbeddingService",
    "ParameterType",
    "PathNotAllowedError",
    "ProtocolError",
    "RetrievalAugmenter",
    "ScriptedModelClient",
    "SearchHit",
    "SessionEngine",
    "SessionNotFoundError",
    "SessionSnapshot",
    "SessionStore",
    "SimilaritySearch",
    "StreamFragment",
    "StreamingTurn",
    "TelemetryConfig",
    "TokenBudget",
    "TokenBudgeter",
    "Tool",
    "ToolCallDepthExceeded",
    "ToolCallRequest",
    "ToolDefinition",
    "ToolError",
    "ToolExecutor",
    "ToolParameter",
    "ToolRegistry",
    "ToolResult",
    "ToolResultTurn",
    "ToolSpec",
    "Transaction",
    "TransactionStore",
    "TurnOutcome",
    "UnknownStreamError",
    "UnknownToolCallError",
    "UnknownToolError",
    "UserTurn",
    "estimate_tokens",
    "format_tool_call",
    "get_model",
    "parse_fenced_tool_calls",
    "register_builtin_tools",
    "resolve_sandboxed_path",
    "unique_call_ids",
    "validate_arguments",
]
