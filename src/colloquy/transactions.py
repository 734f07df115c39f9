"""Transaction log — ordered conversation turns plus the streaming-merge state machine."""

from __future__ import annotations

import logging
import time
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from .errors import (
    DuplicateFragmentError,
    ErrorKind,
    InvalidStateError,
    ProtocolError,
    UnknownStreamError,
    UnknownToolCallError,
)
from .provider import ChatMessage, ChatRole, ToolCallRequest
from .tool_call_parser import ToolCallParser, parse_fenced_tool_calls, unique_call_ids

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Transaction variants
# ---------------------------------------------------------------------------


class ToolResult(BaseModel):
    """Outcome of one tool invocation: text on success, an error kind otherwise."""

    ok: bool
    content: str = ""
    error_kind: ErrorKind | None = None

    @classmethod
    def success(cls, text: str) -> ToolResult:
        return cls(ok=True, content=text)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> ToolResult:
        return cls(ok=False, content=message, error_kind=kind)

    def as_text(self) -> str:
        """Render the result as the content of a tool message."""
        if self.ok:
            return self.content
        return f"Error [{self.error_kind}]: {self.content}"


class UserTurn(BaseModel):
    kind: Literal["user"] = "user"
    text: str
    timestamp: float = Field(default_factory=time.time)


class Fragment(BaseModel):
    index: int
    text: str = ""
    finish_reason: str | None = None


class StreamingTurn(BaseModel):
    """A model response that is still arriving (or was aborted mid-stream)."""

    kind: Literal["streaming"] = "streaming"
    stream_id: int
    fragments: list[Fragment] = Field(default_factory=list)
    aborted: str | None = None
    timestamp: float = Field(default_factory=time.time)

    @property
    def is_open(self) -> bool:
        return self.aborted is None

    def assembled_text(self) -> str:
        return "".join(f.text for f in sorted(self.fragments, key=lambda f: f.index))


class CompletedTurn(BaseModel):
    kind: Literal["completed"] = "completed"
    stream_id: int
    full_text: str
    finish_reason: str = "stop"
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)


class ToolResultTurn(BaseModel):
    kind: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    tool_name: str
    result: ToolResult
    timestamp: float = Field(default_factory=time.time)


Transaction = Annotated[
    UserTurn | StreamingTurn | CompletedTurn | ToolResultTurn,
    Field(discriminator="kind"),
]


def transaction_text(transaction: Transaction) -> str:
    """Text of a transaction as the model would see it (used for token estimates)."""
    if isinstance(transaction, UserTurn):
        return transaction.text
    if isinstance(transaction, CompletedTurn):
        return transaction.full_text
    if isinstance(transaction, ToolResultTurn):
        return transaction.result.as_text()
    return transaction.assembled_text()


def to_chat_messages(transactions: list[Transaction]) -> list[ChatMessage]:
    """Convert transactions to request messages. Streaming turns are never sent."""
    messages: list[ChatMessage] = []
    for t in transactions:
        if isinstance(t, UserTurn):
            messages.append(ChatMessage(role=ChatRole.USER, content=t.text))
        elif isinstance(t, CompletedTurn):
            messages.append(
                ChatMessage(role=ChatRole.ASSISTANT, content=t.full_text, tool_calls=t.tool_calls)
            )
        elif isinstance(t, ToolResultTurn):
            messages.append(
                ChatMessage(
                    role=ChatRole.TOOL,
                    content=t.result.as_text(),
                    tool_call_id=t.tool_call_id,
                )
            )
    return messages


# ---------------------------------------------------------------------------
# TransactionStore
# ---------------------------------------------------------------------------


class TransactionStore:
    """Ordered transaction log of one session.

    At most one stream is open at a time. Fragment indices need not start at
    zero or be contiguous; the fragment carrying a ``finish_reason`` completes
    the stream with every received fragment joined in index order, so it must
    hold the highest index seen. Fragments for aborted streams are discarded
    silently; fragments for completed or unknown streams are protocol errors.
    """

    def __init__(
        self,
        transactions: list[Transaction] | None = None,
        tool_call_parser: ToolCallParser = parse_fenced_tool_calls,
    ) -> None:
        self._transactions: list[Transaction] = list(transactions or [])
        self._parser = tool_call_parser
        self._open: StreamingTurn | None = None
        self._filled: set[int] = set()
        self._aborted: set[int] = set()
        self._last_stream_id = 0

        for t in self._transactions:
            if isinstance(t, StreamingTurn | CompletedTurn):
                self._last_stream_id = max(self._last_stream_id, t.stream_id)
            if isinstance(t, StreamingTurn):
                # A restored log cannot resume a half-received stream.
                if t.aborted is None:
                    t.aborted = "interrupted"
                self._aborted.add(t.stream_id)

    # -- inspection ----------------------------------------------------------

    @property
    def transactions(self) -> list[Transaction]:
        return list(self._transactions)

    def __len__(self) -> int:
        return len(self._transactions)

    @property
    def open_stream_id(self) -> int | None:
        return self._open.stream_id if self._open is not None else None

    def next_stream_id(self) -> int:
        return self._last_stream_id + 1

    def history(self) -> list[Transaction]:
        """Transactions eligible for a model request (aborted streams excluded)."""
        return [t for t in self._transactions if not isinstance(t, StreamingTurn)]

    def last_completed_turn(self) -> CompletedTurn | None:
        for t in reversed(self._transactions):
            if isinstance(t, CompletedTurn):
                return t
        return None

    def last_completed_text(self) -> str | None:
        turn = self.last_completed_turn()
        return turn.full_text if turn is not None else None

    def pending_tool_calls(self) -> list[ToolCallRequest]:
        """Tool calls of the latest completed turn that have no result yet, in request order."""
        resolved: set[str] = set()
        for t in reversed(self._transactions):
            if isinstance(t, CompletedTurn):
                return [c for c in t.tool_calls if c.id not in resolved]
            if isinstance(t, ToolResultTurn):
                resolved.add(t.tool_call_id)
        return []

    # -- mutation ------------------------------------------------------------

    def append_user_turn(self, text: str) -> UserTurn:
        if self._open is not None:
            msg = f"Cannot append user input while stream {self._open.stream_id} is open"
            raise InvalidStateError(msg)
        turn = UserTurn(text=text)
        self._transactions.append(turn)
        return turn

    def begin_stream(self, stream_id: int) -> StreamingTurn:
        if self._open is not None:
            msg = f"Stream {self._open.stream_id} is still open"
            raise InvalidStateError(msg)
        if stream_id <= self._last_stream_id:
            msg = f"Stream id {stream_id} is not greater than {self._last_stream_id}"
            raise InvalidStateError(msg)

        turn = StreamingTurn(stream_id=stream_id)
        self._transactions.append(turn)
        self._open = turn
        self._filled = set()
        self._last_stream_id = stream_id
        return turn

    def merge_fragment(
        self,
        stream_id: int,
        index: int,
        text: str,
        finish_reason: str | None = None,
    ) -> CompletedTurn | None:
        """Insert a fragment; return the completed turn once the stream finishes."""
        if stream_id in self._aborted:
            logger.debug("Discarding fragment %d of aborted stream %d", index, stream_id)
            return None

        turn = self._open
        if turn is None or turn.stream_id != stream_id:
            raise UnknownStreamError(stream_id)
        if index < 0:
            msg = f"Negative fragment index {index} in stream {stream_id}"
            raise ProtocolError(msg)
        if index in self._filled:
            raise DuplicateFragmentError(stream_id, index)

        if finish_reason is not None and self._filled and index < max(self._filled):
            msg = f"Terminal fragment {index} precedes fragment {max(self._filled)}"
            raise ProtocolError(msg)

        turn.fragments.append(Fragment(index=index, text=text, finish_reason=finish_reason))
        self._filled.add(index)
        if finish_reason is not None:
            return self._complete(turn, finish_reason)
        return None

    def abort_stream(self, stream_id: int, reason: str) -> None:
        """Close an open stream without completing it; later fragments are discarded."""
        turn = self._open
        if turn is None or turn.stream_id != stream_id:
            raise UnknownStreamError(stream_id)
        turn.aborted = reason
        self._aborted.add(stream_id)
        self._open = None
        logger.info("Stream %d aborted: %s", stream_id, reason)

    def resolve_tool_call(self, tool_call_id: str, result: ToolResult) -> ToolResultTurn:
        pending = {c.id: c for c in self.pending_tool_calls()}
        call = pending.get(tool_call_id)
        if call is None:
            raise UnknownToolCallError(tool_call_id)
        turn = ToolResultTurn(tool_call_id=tool_call_id, tool_name=call.name, result=result)
        self._transactions.append(turn)
        return turn

    # -- internals -----------------------------------------------------------

    def _complete(self, turn: StreamingTurn, finish_reason: str) -> CompletedTurn:
        full_text = turn.assembled_text()
        completed = CompletedTurn(
            stream_id=turn.stream_id,
            full_text=full_text,
            finish_reason=finish_reason,
            tool_calls=unique_call_ids(self._parser(turn.stream_id, full_text)),
        )
        position = next(i for i, t in enumerate(self._transactions) if t is turn)
        self._transactions[position] = completed
        self._open = None
        self._filled = set()
        return completed
