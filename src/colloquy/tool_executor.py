"""ToolExecutor — runs validated tool calls as cancellable async units with timeouts."""

from __future__ import annotations

import asyncio
import contextvars
import functools
import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from .errors import ErrorKind, ToolError
from .provider import ToolCallRequest
from .telemetry import trace_tool_call
from .token_budget import TokenBudgeter
from .tools import ToolRegistry
from .transactions import ToolResult

logger = logging.getLogger(__name__)

EventSink = Callable[[str, dict[str, Any]], None]


class ToolExecutor:
    """Wraps a :class:`ToolRegistry` with validation, timeouts, result capping and events.

    Registry handlers are synchronous; each invocation runs on the executor's
    own bounded thread pool so the event loop stays responsive and the loop's
    default executor stays free for persistence and embedding work. A timed-out
    thread cannot be interrupted: its slot is resolved with ``tool_timeout``,
    sibling calls carry on, and the worker stays busy until the handler
    returns. At most ``max_workers`` such stragglers can pile up; later calls
    then queue until a worker frees up or their own timeout expires.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        accessible_paths: Sequence[Path],
        base_dir: Path | None = None,
        timeout_sec: float = 30.0,
        result_max_tokens: int | None = None,
        budgeter: TokenBudgeter | None = None,
        on_event: EventSink | None = None,
        max_workers: int = 4,
    ) -> None:
        if max_workers <= 0:
            msg = "max_workers must be positive"
            raise ValueError(msg)
        self._registry = registry
        self._paths = tuple(accessible_paths)
        self._base_dir = base_dir
        self._timeout = timeout_sec
        self._max_tokens = result_max_tokens
        self._budgeter = budgeter if budgeter is not None else TokenBudgeter()
        self._on_event = on_event
        self._max_workers = max_workers
        self._pool: ThreadPoolExecutor | None = None

    def _record(self, kind: str, data: dict[str, Any]) -> None:
        if self._on_event is not None:
            self._on_event(kind, data)

    def _get_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="colloquy-tool"
            )
        return self._pool

    def close(self) -> None:
        """Release the worker pool without waiting for stuck handlers.

        Queued calls are cancelled. A later :meth:`execute` starts a fresh pool.
        """
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None

    async def _invoke(self, name: str, args: dict[str, Any]) -> ToolResult:
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        call = functools.partial(
            ctx.run, self._registry.invoke, name, args, self._paths, self._base_dir
        )
        return await loop.run_in_executor(self._get_pool(), call)

    async def execute(self, call: ToolCallRequest) -> ToolResult:
        """Validate and run one call. Every failure comes back as a failed result."""
        self._record("tool_call", {"tool_call_id": call.id, "tool_name": call.name})
        logger.debug("Dispatching tool call %s -> %s(%s)", call.id, call.name, call.arguments)

        with trace_tool_call(call.name, call.id) as span:
            start = time.perf_counter()
            try:
                args = self._registry.validate_arguments(call.name, call.arguments)
                result = await asyncio.wait_for(
                    self._invoke(call.name, args), timeout=self._timeout
                )
            except ToolError as exc:
                result = ToolResult.failure(exc.kind, str(exc))
            except TimeoutError:
                result = ToolResult.failure(
                    ErrorKind.TOOL_TIMEOUT,
                    f"Tool '{call.name}' timed out after {self._timeout}s",
                )
            latency = (time.perf_counter() - start) * 1000

            result = self._cap(call, result)
            span.set_attribute("tool.ok", result.ok)
            if result.error_kind is not None:
                span.set_attribute("tool.error_kind", result.error_kind.value)

        if result.ok:
            logger.info("Tool %s (%s) succeeded in %.1f ms", call.name, call.id, latency)
        else:
            logger.info("Tool %s (%s) failed with %s", call.name, call.id, result.error_kind)
        self._record(
            "tool_result",
            {
                "tool_call_id": call.id,
                "tool_name": call.name,
                "ok": result.ok,
                "error_kind": result.error_kind.value if result.error_kind else None,
                "latency_ms": latency,
            },
        )
        return result

    async def execute_all(self, calls: Sequence[ToolCallRequest]) -> list[ToolResult]:
        """Run *calls* concurrently; results come back in the order the calls were issued."""
        return list(await asyncio.gather(*(self.execute(c) for c in calls)))

    def _cap(self, call: ToolCallRequest, result: ToolResult) -> ToolResult:
        if self._max_tokens is None or not result.ok:
            return result
        tokens = self._budgeter.estimate_tokens(result.content)
        if tokens <= self._max_tokens:
            return result
        logger.warning(
            "Tool %s result of ~%d tokens exceeds limit of %d", call.name, tokens, self._max_tokens
        )
        return ToolResult.failure(
            ErrorKind.TOOL_ERROR,
            f"token limit exceeded: result of ~{tokens} tokens is larger than the "
            f"{self._max_tokens} token limit, narrow the request",
        )
