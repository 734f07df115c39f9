"""SessionEngine — drives one session's request/response/tool cycle."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from .config import EngineConfig
from .errors import (
    ColloquyError,
    ErrorKind,
    InvalidStateError,
    ModelRequestError,
    ProtocolError,
    SessionNotFoundError,
    ToolCallDepthExceeded,
)
from .event_sourcing import EngineEvent, EventStore, InMemoryEventStore
from .fsm import EngineState, FSMState
from .persistence import SessionSnapshot, SessionStore
from .provider import ChatMessage, ChatRequest, ChatRole, ModelClient
from .retrieval import RetrievalAugmenter, SimilaritySearch
from .telemetry import trace_model_request, trace_session_submit
from .token_budget import TokenBudgeter
from .tool_call_parser import ToolCallParser, parse_fenced_tool_calls
from .tool_executor import ToolExecutor
from .tools import ToolRegistry, resolve_roots
from .transactions import (
    CompletedTurn,
    ToolResult,
    TransactionStore,
    to_chat_messages,
)

logger = logging.getLogger(__name__)


@dataclass
class TurnOutcome:
    """What one call to :meth:`SessionEngine.submit_user_input` produced.

    ``text`` is the last completed model text (possibly from an earlier turn
    when the cycle failed before completing).
    """

    text: str | None
    state: EngineState = EngineState.IDLE
    error: ColloquyError | None = None
    cancelled: bool = False
    tool_rounds: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled

    @property
    def depth_exceeded(self) -> bool:
        return isinstance(self.error, ToolCallDepthExceeded)


class SessionEngine:
    """Orchestrates user input, streamed model output and tool calls for one session.

    At most one cycle runs at a time: input submitted while the engine is not
    ``Idle`` is rejected with :class:`InvalidStateError`. Every cycle ends
    back in ``Idle``, on success, error, cancellation or depth limit.
    """

    def __init__(
        self,
        config: EngineConfig,
        client: ModelClient,
        registry: ToolRegistry,
        search: SimilaritySearch | None = None,
        budgeter: TokenBudgeter | None = None,
        store: TransactionStore | None = None,
        session_id: str | None = None,
        event_store: EventStore | None = None,
        session_store: SessionStore | None = None,
        tool_call_parser: ToolCallParser = parse_fenced_tool_calls,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._config = config
        self._client = client
        self._registry = registry
        self._budgeter = budgeter if budgeter is not None else TokenBudgeter()
        self._augmenter = RetrievalAugmenter(
            search, budgeter=self._budgeter, timeout_sec=config.retrieval_timeout_sec
        )
        self._store = store if store is not None else TransactionStore(tool_call_parser=tool_call_parser)
        self._events = event_store if event_store is not None else InMemoryEventStore()
        self._session_store = session_store
        self._fsm = FSMState()
        self._executor = ToolExecutor(
            registry,
            resolve_roots(config.accessible_paths, config.working_dir),
            base_dir=config.working_dir,
            timeout_sec=config.tool_timeout_sec,
            result_max_tokens=config.tool_result_max_tokens,
            budgeter=self._budgeter,
            on_event=self._record,
            max_workers=config.tool_max_workers,
        )
        self._task: asyncio.Task[TurnOutcome] | None = None
        self._cancel_requested = False

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._fsm.state

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> TransactionStore:
        return self._store

    @property
    def event_store(self) -> EventStore:
        return self._events

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit_user_input(self, text: str) -> TurnOutcome:
        """Append *text* as a user turn and run the cycle until the engine is ``Idle``.

        Raises:
            InvalidStateError: If a cycle is already in flight.
        """
        if not self._fsm.is_idle or self.busy:
            msg = f"Cannot accept user input while {self._fsm.state} (session {self.session_id})"
            raise InvalidStateError(msg)

        self._cancel_requested = False
        with trace_session_submit(self.session_id) as span:
            self._store.append_user_turn(text)
            self._record("user_input", {"chars": len(text)})
            self._task = asyncio.create_task(self._run_cycle(text))
            try:
                outcome = await self._task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if not self._cancel_requested or (current is not None and current.cancelling()):
                    raise
                outcome = TurnOutcome(
                    text=self._store.last_completed_text(),
                    cancelled=True,
                )
            finally:
                self._task = None
            span.set_attribute("session.tool_rounds", outcome.tool_rounds)
            span.set_attribute("session.ok", outcome.ok)
        return outcome

    def cancel(self) -> bool:
        """Abort the in-flight model request or tool batch. Returns False when idle."""
        task = self._task
        if task is None or task.done():
            return False
        logger.info("Cancelling session %s in state %s", self.session_id, self._fsm.state)
        self._cancel_requested = True
        task.cancel()
        return True

    def close(self) -> None:
        """Release the tool worker pool. The engine can still be used afterwards."""
        self._executor.close()

    async def save(self) -> None:
        """Persist the transaction log. Only allowed between cycles."""
        if self._session_store is None:
            msg = "No session store configured"
            raise InvalidStateError(msg)
        if not self._fsm.is_idle or self.busy:
            msg = f"Cannot save session {self.session_id} while {self._fsm.state}"
            raise InvalidStateError(msg)
        snapshot = SessionSnapshot(session_id=self.session_id, transactions=self._store.transactions)
        await asyncio.to_thread(self._session_store.save, snapshot)
        self._record("saved", {"transactions": len(snapshot.transactions)})

    @classmethod
    async def restore(
        cls,
        session_id: str,
        session_store: SessionStore,
        config: EngineConfig,
        client: ModelClient,
        registry: ToolRegistry,
        **kwargs: Any,
    ) -> SessionEngine:
        """Rebuild an engine from a saved session.

        Raises:
            SessionNotFoundError: If *session_store* has no such session.
        """
        snapshot = await asyncio.to_thread(session_store.load, session_id)
        if snapshot is None:
            raise SessionNotFoundError(session_id)
        parser = kwargs.pop("tool_call_parser", parse_fenced_tool_calls)
        store = TransactionStore(snapshot.transactions, tool_call_parser=parser)
        engine = cls(
            config,
            client,
            registry,
            store=store,
            session_id=snapshot.session_id,
            session_store=session_store,
            tool_call_parser=parser,
            **kwargs,
        )
        engine._record("restored", {"transactions": len(store)})
        return engine

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, user_text: str) -> TurnOutcome:
        self._transition(EngineState.AWAITING_MODEL_RESPONSE)
        try:
            snippets = await self._augmenter.augment(
                user_text,
                self._config.retrieval_max_snippets,
                self._config.retrieval_token_budget,
            )
            while True:
                try:
                    completed = await self._stream_completion(snippets)
                except (ProtocolError, ModelRequestError) as exc:
                    return self._fail(exc)

                calls = self._store.pending_tool_calls()
                if not calls:
                    rounds = self._fsm.tool_rounds
                    self._transition(EngineState.IDLE)
                    await self._index_turns(user_text, completed)
                    return TurnOutcome(text=completed.full_text, tool_rounds=rounds)

                self._transition(EngineState.TOOL_CALLS_PENDING)
                if self._fsm.tool_rounds >= self._config.max_tool_call_depth:
                    return self._stop_at_depth(completed)

                self._transition(EngineState.AWAITING_TOOL_RESULTS)
                results = await self._executor.execute_all(calls)
                for call, result in zip(calls, results):
                    self._store.resolve_tool_call(call.id, result)
                self._transition(EngineState.AWAITING_MODEL_RESPONSE)
        except asyncio.CancelledError:
            self._settle(ErrorKind.CANCELLED, "Cancelled by user", "cancelled")
            raise
        except Exception:
            logger.exception("Session %s: cycle failed unexpectedly", self.session_id)
            self._settle(ErrorKind.TOOL_ERROR, "Cycle aborted by an internal error", "internal error")
            raise

    async def _stream_completion(self, snippets: list[str]) -> CompletedTurn:
        request = self._build_request(snippets)
        stream_id = self._store.next_stream_id()
        self._store.begin_stream(stream_id)
        self._record("stream_started", {"stream_id": stream_id, "messages": len(request.messages)})

        with trace_model_request(self._config.model.name, stream_id) as span:
            try:
                completed = await asyncio.wait_for(
                    self._consume(stream_id, request), timeout=self._config.request_timeout_sec
                )
            except TimeoutError as exc:
                msg = f"Model request timed out after {self._config.request_timeout_sec}s"
                raise ModelRequestError(msg) from exc
            span.set_attribute("stream.tool_calls", len(completed.tool_calls))
        self._record(
            "stream_completed",
            {"stream_id": stream_id, "tool_calls": [c.id for c in completed.tool_calls]},
        )
        return completed

    async def _consume(self, stream_id: int, request: ChatRequest) -> CompletedTurn:
        stream = self._client.send_request(request)
        try:
            async for fragment in stream:
                completed = self._store.merge_fragment(
                    stream_id, fragment.index, fragment.text, fragment.finish_reason
                )
                if completed is not None:
                    return completed
        except ColloquyError:
            raise
        except Exception as exc:
            msg = f"Model client {self._client.name()} failed: {exc}"
            raise ModelRequestError(msg) from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        msg = f"Stream {stream_id} ended before its terminal fragment"
        raise ProtocolError(msg)

    def _build_request(self, snippets: list[str]) -> ChatRequest:
        """Assemble messages within the model's context window."""
        cfg = self._config
        system_parts = [cfg.system_prompt] if cfg.system_prompt else []
        if snippets:
            system_parts.append("Relevant context:\n" + "\n---\n".join(snippets))
        system_text = "\n\n".join(system_parts)

        tools = self._registry.tool_specs() if cfg.include_tools else []
        overhead = self._budgeter.estimate_tokens(system_text)
        if tools:
            overhead += self._budgeter.estimate_tokens(
                json.dumps([t.model_dump() for t in tools])
            )
        limit = max(cfg.model.token_limit - cfg.response_max_tokens - overhead, 0)
        history = self._budgeter.truncate_to_budget(self._store.history(), limit)

        messages: list[ChatMessage] = []
        if system_text:
            messages.append(ChatMessage(role=ChatRole.SYSTEM, content=system_text))
        messages.extend(to_chat_messages(history))
        return ChatRequest(
            model=cfg.model.name,
            messages=messages,
            tools=tools,
            max_tokens=cfg.response_max_tokens,
            stream=True,
        )

    # ------------------------------------------------------------------
    # Cycle endings
    # ------------------------------------------------------------------

    def _fail(self, exc: ColloquyError) -> TurnOutcome:
        logger.error("Session %s: %s, aborting stream", self.session_id, exc)
        open_id = self._store.open_stream_id
        if open_id is not None:
            self._store.abort_stream(open_id, f"error: {exc}")
        self._record("stream_aborted", {"stream_id": open_id, "error": str(exc)})
        rounds = self._fsm.tool_rounds
        self._transition(EngineState.IDLE)
        return TurnOutcome(text=self._store.last_completed_text(), error=exc, tool_rounds=rounds)

    def _stop_at_depth(self, completed: CompletedTurn) -> TurnOutcome:
        depth = self._fsm.tool_rounds
        logger.warning(
            "Session %s: tool call depth limit %d reached, stopping automatic tool calls",
            self.session_id,
            self._config.max_tool_call_depth,
        )
        for call in self._store.pending_tool_calls():
            self._store.resolve_tool_call(
                call.id,
                ToolResult.failure(
                    ErrorKind.TOOL_CALL_DEPTH_EXCEEDED,
                    f"Tool call depth limit of {self._config.max_tool_call_depth} reached",
                ),
            )
        self._record("depth_exceeded", {"depth": depth})
        self._transition(EngineState.IDLE)
        return TurnOutcome(
            text=completed.full_text,
            error=ToolCallDepthExceeded(depth),
            tool_rounds=depth,
        )

    def _settle(self, kind: ErrorKind, message: str, reason: str) -> None:
        """Leave the log paired and the engine idle after an interrupted cycle."""
        open_id = self._store.open_stream_id
        if open_id is not None:
            self._store.abort_stream(open_id, reason)
            self._record("stream_aborted", {"stream_id": open_id, "error": reason})
        if self._fsm.state in (EngineState.TOOL_CALLS_PENDING, EngineState.AWAITING_TOOL_RESULTS):
            for call in self._store.pending_tool_calls():
                self._store.resolve_tool_call(call.id, ToolResult.failure(kind, message))
        if not self._fsm.is_idle:
            self._transition(EngineState.IDLE)

    async def _index_turns(self, user_text: str, completed: CompletedTurn) -> None:
        if not self._config.index_completed_turns:
            return
        position = len(self._store)
        await self._augmenter.index(f"{self.session_id}:user:{position}", user_text)
        await self._augmenter.index(f"{self.session_id}:stream:{completed.stream_id}", completed.full_text)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, target: EngineState) -> None:
        previous = self._fsm.state
        self._fsm = self._fsm.transition(target)
        logger.debug("Session %s: %s -> %s", self.session_id, previous, target)
        self._events.append(
            EngineEvent(
                session_id=self.session_id,
                kind="transition",
                from_state=previous.value,
                to_state=target.value,
                data={"tool_rounds": self._fsm.tool_rounds},
            )
        )

    def _record(self, kind: str, data: dict[str, Any]) -> None:
        self._events.append(EngineEvent(session_id=self.session_id, kind=kind, data=data))

