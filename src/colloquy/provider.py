"""Model client abstraction — pluggable streaming backend for real and scripted models."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class ChatRole(StrEnum):
    """Role of a message participant."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the model inside a completed turn."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    """Single message in a request."""

    role: ChatRole
    content: str
    tool_call_id: str | None = None
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)


class ToolSpec(BaseModel):
    """Specification for a tool that the model can call."""

    name: str
    description: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    """Request payload sent to a model client."""

    model: str
    messages: list[ChatMessage]
    tools: list[ToolSpec] = Field(default_factory=list)
    max_tokens: int | None = None
    stream: bool = True


class StreamFragment(BaseModel):
    """One incremental piece of a streamed response."""

    index: int
    text: str = ""
    finish_reason: str | None = None


# ---------------------------------------------------------------------------
# ModelClient ABC
# ---------------------------------------------------------------------------


class ModelClient(ABC):
    """Abstract base class for streaming model backends."""

    @abstractmethod
    def name(self) -> str:
        """Return the canonical client name (e.g. 'openai', 'scripted')."""

    @abstractmethod
    def send_request(self, request: ChatRequest) -> AsyncIterator[StreamFragment]:
        """Send a request and yield response fragments as they arrive.

        The last fragment of a response carries a non-null ``finish_reason``.
        """


# ---------------------------------------------------------------------------
# Scripted implementation (for testing / offline development)
# ---------------------------------------------------------------------------


class ScriptedModelClient(ModelClient):
    """Replays queued responses as fragment streams without any network I/O.

    Each request consumes the next queued response. Once the queue is empty a
    canned reply is streamed instead. Every request is kept in ``requests``.
    """

    _CANNED = "This is a scripted response for testing purposes."

    def __init__(
        self,
        responses: list[str] | None = None,
        chunk_size: int = 16,
        delay: float = 0.0,
    ) -> None:
        self._responses = list(responses or [])
        self._chunk_size = max(1, chunk_size)
        self._delay = delay
        self.requests: list[ChatRequest] = []

    def name(self) -> str:
        return "scripted"

    def queue(self, *responses: str) -> None:
        self._responses.extend(responses)

    async def send_request(self, request: ChatRequest) -> AsyncIterator[StreamFragment]:
        self.requests.append(request)
        text = self._responses.pop(0) if self._responses else self._CANNED
        chunks = [
            text[i : i + self._chunk_size] for i in range(0, len(text), self._chunk_size)
        ] or [""]
        last = len(chunks) - 1
        for index, chunk in enumerate(chunks):
            if self._delay:
                await asyncio.sleep(self._delay)
            yield StreamFragment(
                index=index,
                text=chunk,
                finish_reason="stop" if index == last else None,
            )
