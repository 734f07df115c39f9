"""End-to-end tests for SessionEngine with scripted model clients."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from colloquy.builtin_tools import register_builtin_tools
from colloquy.config import EngineConfig, ModelSpec
from colloquy.embeddings import HashingEmbeddingService
from colloquy.engine import SessionEngine
from colloquy.errors import (
    DuplicateFragmentError,
    ErrorKind,
    InvalidStateError,
    ModelRequestError,
    ProtocolError,
    SessionNotFoundError,
    ToolCallDepthExceeded,
)
from colloquy.fsm import EngineState
from colloquy.persistence import InMemorySessionStore
from colloquy.provider import ChatRole, ModelClient, ScriptedModelClient, StreamFragment
from colloquy.retrieval import InMemoryVectorIndex, SearchHit, SimilaritySearch
from colloquy.tool_call_parser import format_tool_call
from colloquy.tools import ParameterType, ToolDefinition, ToolParameter, ToolRegistry
from colloquy.transactions import (
    CompletedTurn,
    StreamingTurn,
    ToolResultTurn,
    TransactionStore,
    UserTurn,
)


class FragmentClient(ModelClient):
    """Streams hand-written fragment scripts; an exception in a script is raised mid-stream."""

    def __init__(self, *scripts):
        self._scripts = list(scripts)
        self.requests = []

    def name(self) -> str:
        return "fragments"

    async def send_request(self, request):
        self.requests.append(request)
        for item in self._scripts.pop(0):
            if isinstance(item, Exception):
                raise item
            yield item


SLOW = ToolDefinition(
    name="slow",
    description="Sleep, then echo the label",
    parameters=(
        ToolParameter(name="seconds", type=ParameterType.NUMBER, required=True),
        ToolParameter(name="label", type=ParameterType.STRING, required=True),
    ),
)


def _slow(args, accessible_paths):
    time.sleep(args["seconds"])
    return args["label"]


@pytest.fixture
def registry():
    reg = ToolRegistry()
    register_builtin_tools(reg)
    reg.register(SLOW, _slow)
    return reg


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "alpha.txt").write_text("a\n")
    (tmp_path / "beta.txt").write_text("b\n")
    return tmp_path


def _engine(workspace, client, registry, depth=3, **kwargs) -> SessionEngine:
    config_keys = set(EngineConfig.model_fields)
    config_overrides = {k: v for k, v in kwargs.items() if k in config_keys}
    engine_kwargs = {k: v for k, v in kwargs.items() if k not in config_keys}
    config = EngineConfig(
        max_tool_call_depth=depth,
        accessible_paths=(workspace,),
        working_dir=workspace,
        **config_overrides,
    )
    return SessionEngine(config, client, registry, **engine_kwargs)


async def _wait_for_state(engine, state, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while engine.state != state:
        assert loop.time() < deadline, f"engine never reached {state}"
        await asyncio.sleep(0.005)


def _tool_results(engine):
    return [t for t in engine.store.transactions if isinstance(t, ToolResultTurn)]


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_plain_answer_returns_to_idle(workspace, registry):
    client = ScriptedModelClient(["Hello there!"])
    engine = _engine(workspace, client, registry)

    outcome = await engine.submit_user_input("hi")

    assert outcome.ok
    assert outcome.text == "Hello there!"
    assert outcome.tool_rounds == 0
    assert engine.state == EngineState.IDLE
    assert [t.kind for t in engine.store.transactions] == ["user", "completed"]
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_list_files_round_trip(workspace, registry):
    client = ScriptedModelClient(
        [
            "Let me check.\n" + format_tool_call("list_dir", {"path": "."}, call_id="c1"),
            "There are two text files.",
        ]
    )
    engine = _engine(workspace, client, registry)

    outcome = await engine.submit_user_input("list files")

    [result_turn] = _tool_results(engine)
    assert result_turn.tool_call_id == "c1"
    assert result_turn.result.ok
    assert "alpha.txt" in result_turn.result.content
    assert len(client.requests) == 2
    assert engine.state == EngineState.IDLE
    assert outcome.ok
    assert outcome.text == "There are two text files."
    assert outcome.tool_rounds == 1

    follow_up = client.requests[1]
    tool_messages = [m for m in follow_up.messages if m.role == ChatRole.TOOL]
    assert [m.tool_call_id for m in tool_messages] == ["c1"]
    assert "beta.txt" in tool_messages[0].content


@pytest.mark.asyncio
async def test_request_carries_system_prompt_and_tools(workspace, registry):
    client = ScriptedModelClient(["ok"])
    engine = _engine(workspace, client, registry, system_prompt="You are terse.")
    await engine.submit_user_input("hi")

    request = client.requests[0]
    assert request.messages[0].role == ChatRole.SYSTEM
    assert request.messages[0].content == "You are terse."
    assert request.messages[-1].content == "hi"
    assert {t.name for t in request.tools} >= {"list_dir", "read_file", "slow"}
    assert request.stream
    assert request.max_tokens == engine.config.response_max_tokens


@pytest.mark.asyncio
async def test_include_tools_false_sends_no_specs(workspace, registry):
    client = ScriptedModelClient(["ok"])
    engine = _engine(workspace, client, registry, include_tools=False)
    await engine.submit_user_input("hi")
    assert client.requests[0].tools == []
    assert client.requests[0].messages[0].role == ChatRole.USER


@pytest.mark.asyncio
async def test_out_of_order_fragments_are_reassembled(workspace, registry):
    client = FragmentClient(
        [
            StreamFragment(index=1, text="lo"),
            StreamFragment(index=0, text="Hel"),
            StreamFragment(index=2, text="!", finish_reason="stop"),
        ]
    )
    engine = _engine(workspace, client, registry)
    outcome = await engine.submit_user_input("hi")
    assert outcome.text == "Hello!"


@pytest.mark.asyncio
async def test_sparse_fragment_indices_complete(workspace, registry):
    client = FragmentClient(
        [
            StreamFragment(index=1, text="Hel"),
            StreamFragment(index=2, text="lo"),
            StreamFragment(index=5, text="!", finish_reason="stop"),
        ]
    )
    engine = _engine(workspace, client, registry)
    outcome = await engine.submit_user_input("hi")
    assert outcome.ok
    assert outcome.text == "Hello!"
    assert engine.state == EngineState.IDLE


@pytest.mark.asyncio
async def test_tool_results_appended_in_issue_order(workspace, registry):
    client = ScriptedModelClient(
        [
            format_tool_call("slow", {"seconds": 0.2, "label": "first"}, call_id="a")
            + "\n"
            + format_tool_call("slow", {"seconds": 0, "label": "second"}, call_id="b"),
            "done",
        ]
    )
    engine = _engine(workspace, client, registry)
    await engine.submit_user_input("go")

    results = _tool_results(engine)
    assert [t.tool_call_id for t in results] == ["a", "b"]
    assert [t.result.content for t in results] == ["first", "second"]


# ---------------------------------------------------------------------------
# Tool failures stay local to their call
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_invalid_arguments_become_tool_result(workspace, registry):
    client = ScriptedModelClient(
        [format_tool_call("list_dir", {"bogus": True}, call_id="c1"), "sorry"]
    )
    engine = _engine(workspace, client, registry)
    outcome = await engine.submit_user_input("list")

    [result_turn] = _tool_results(engine)
    assert result_turn.result.error_kind == ErrorKind.VALIDATION_ERROR
    assert outcome.ok
    assert len(client.requests) == 2


@pytest.mark.asyncio
async def test_path_outside_sandbox_becomes_tool_result(workspace, registry):
    client = ScriptedModelClient(
        [format_tool_call("list_dir", {"path": str(workspace.parent)}, call_id="c1"), "denied"]
    )
    engine = _engine(workspace, client, registry)
    await engine.submit_user_input("list parent")

    [result_turn] = _tool_results(engine)
    assert result_turn.result.error_kind == ErrorKind.PATH_NOT_ALLOWED
    tool_message = [m for m in client.requests[1].messages if m.role == ChatRole.TOOL][0]
    assert tool_message.content.startswith("Error [path_not_allowed]")


@pytest.mark.asyncio
async def test_repeated_call_ids_each_get_a_result(workspace, registry):
    client = ScriptedModelClient(
        [
            format_tool_call("slow", {"seconds": 0, "label": "one"}, call_id="call_1")
            + "\n"
            + format_tool_call("slow", {"seconds": 0, "label": "two"}, call_id="call_1"),
            "both done",
        ]
    )
    engine = _engine(workspace, client, registry)

    outcome = await engine.submit_user_input("twice")

    assert outcome.ok
    assert outcome.text == "both done"
    assert engine.state == EngineState.IDLE
    results = _tool_results(engine)
    assert [t.tool_call_id for t in results] == ["call_1", "call_1_1"]
    assert [t.result.content for t in results] == ["one", "two"]
    assert engine.store.pending_tool_calls() == []


@pytest.mark.asyncio
async def test_unknown_tool_becomes_tool_result(workspace, registry):
    client = ScriptedModelClient([format_tool_call("teleport", {}, call_id="c1"), "oh well"])
    engine = _engine(workspace, client, registry)
    await engine.submit_user_input("go")
    assert _tool_results(engine)[0].result.error_kind == ErrorKind.UNKNOWN_TOOL


@pytest.mark.asyncio
async def test_tool_timeout_does_not_block_siblings(workspace, registry):
    client = ScriptedModelClient(
        [
            format_tool_call("slow", {"seconds": 1, "label": "late"}, call_id="a")
            + "\n"
            + format_tool_call("slow", {"seconds": 0, "label": "quick"}, call_id="b"),
            "partial results",
        ]
    )
    engine = _engine(workspace, client, registry, tool_timeout_sec=0.1)
    outcome = await engine.submit_user_input("go")

    results = _tool_results(engine)
    assert results[0].result.error_kind == ErrorKind.TOOL_TIMEOUT
    assert results[1].result.content == "quick"
    assert outcome.text == "partial results"


@pytest.mark.asyncio
async def test_oversized_tool_result_is_replaced(workspace, registry):
    (workspace / "big.txt").write_text("word " * 2000)
    client = ScriptedModelClient(
        [format_tool_call("read_file", {"path": "big.txt"}, call_id="c1"), "too big"]
    )
    engine = _engine(workspace, client, registry, tool_result_max_tokens=100)
    await engine.submit_user_input("read it")

    [result_turn] = _tool_results(engine)
    assert not result_turn.result.ok
    assert "token limit exceeded" in result_turn.result.content


# ---------------------------------------------------------------------------
# Depth guard
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_depth_limit_stops_runaway_tool_calls(workspace, registry):
    looping = [format_tool_call("list_dir", {"path": "."}) for _ in range(10)]
    client = ScriptedModelClient(looping)
    engine = _engine(workspace, client, registry, depth=2)

    outcome = await engine.submit_user_input("loop forever")

    assert outcome.depth_exceeded
    assert isinstance(outcome.error, ToolCallDepthExceeded)
    assert outcome.tool_rounds == 2
    assert len(client.requests) == 3
    assert engine.state == EngineState.IDLE
    assert outcome.text == engine.store.last_completed_text()
    assert engine.store.pending_tool_calls() == []
    assert _tool_results(engine)[-1].result.error_kind == ErrorKind.TOOL_CALL_DEPTH_EXCEEDED


@pytest.mark.asyncio
async def test_depth_zero_disables_automatic_tool_execution(workspace, registry):
    client = ScriptedModelClient([format_tool_call("list_dir", {"path": "."}, call_id="c1")])
    engine = _engine(workspace, client, registry, depth=0)

    outcome = await engine.submit_user_input("list")

    assert outcome.depth_exceeded
    assert len(client.requests) == 1
    [result_turn] = _tool_results(engine)
    assert result_turn.result.error_kind == ErrorKind.TOOL_CALL_DEPTH_EXCEEDED


@pytest.mark.asyncio
async def test_session_usable_after_depth_limit(workspace, registry):
    client = ScriptedModelClient([format_tool_call("list_dir", {"path": "."}), "fine"])
    engine = _engine(workspace, client, registry, depth=0)
    await engine.submit_user_input("list")
    outcome = await engine.submit_user_input("never mind")
    assert outcome.ok
    assert outcome.text == "fine"


# ---------------------------------------------------------------------------
# Concurrency and cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_input_is_rejected(workspace, registry):
    client = ScriptedModelClient(["a slow streamed answer"], chunk_size=4, delay=0.02)
    engine = _engine(workspace, client, registry)

    task = asyncio.create_task(engine.submit_user_input("first"))
    await _wait_for_state(engine, EngineState.AWAITING_MODEL_RESPONSE)
    with pytest.raises(InvalidStateError):
        await engine.submit_user_input("second")

    outcome = await task
    assert outcome.ok
    assert [t.text for t in engine.store.transactions if isinstance(t, UserTurn)] == ["first"]


@pytest.mark.asyncio
async def test_cancel_while_awaiting_model(workspace, registry):
    client = ScriptedModelClient(["abcdefghijklmnop", "recovered"], chunk_size=1, delay=0.03)
    engine = _engine(workspace, client, registry)

    task = asyncio.create_task(engine.submit_user_input("talk"))
    await _wait_for_state(engine, EngineState.AWAITING_MODEL_RESPONSE)
    await asyncio.sleep(0.1)
    assert engine.cancel()
    outcome = await task

    assert outcome.cancelled
    assert not outcome.ok
    assert engine.state == EngineState.IDLE
    aborted = engine.store.transactions[-1]
    assert isinstance(aborted, StreamingTurn)
    assert aborted.aborted == "cancelled"

    outcome = await engine.submit_user_input("again")
    assert outcome.text == "recovered"
    sent = [m.content for m in client.requests[-1].messages]
    assert sent == ["talk", "again"]


@pytest.mark.asyncio
async def test_cancel_while_awaiting_tool_results(workspace, registry):
    client = ScriptedModelClient(
        [
            format_tool_call("slow", {"seconds": 0.5, "label": "x"}, call_id="a")
            + "\n"
            + format_tool_call("slow", {"seconds": 0.5, "label": "y"}, call_id="b")
        ]
    )
    engine = _engine(workspace, client, registry)

    task = asyncio.create_task(engine.submit_user_input("work"))
    await _wait_for_state(engine, EngineState.AWAITING_TOOL_RESULTS)
    assert engine.cancel()
    outcome = await task

    assert outcome.cancelled
    assert engine.state == EngineState.IDLE
    results = _tool_results(engine)
    assert [t.tool_call_id for t in results] == ["a", "b"]
    assert all(t.result.error_kind == ErrorKind.CANCELLED for t in results)
    assert engine.store.pending_tool_calls() == []
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_cancel_when_idle_is_a_no_op(workspace, registry):
    engine = _engine(workspace, ScriptedModelClient(), registry)
    assert not engine.cancel()


@pytest.mark.asyncio
async def test_outer_task_cancellation_propagates(workspace, registry):
    client = ScriptedModelClient(["slow words here"], chunk_size=1, delay=0.05)
    engine = _engine(workspace, client, registry)

    task = asyncio.create_task(engine.submit_user_input("talk"))
    await _wait_for_state(engine, EngineState.AWAITING_MODEL_RESPONSE)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert engine.state == EngineState.IDLE
    assert not engine.busy


# ---------------------------------------------------------------------------
# Protocol and model errors
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_duplicate_fragment_aborts_stream(workspace, registry):
    client = FragmentClient(
        [StreamFragment(index=0, text="a"), StreamFragment(index=0, text="b")],
        [StreamFragment(index=0, text="second try", finish_reason="stop")],
    )
    engine = _engine(workspace, client, registry)

    outcome = await engine.submit_user_input("hi")

    assert isinstance(outcome.error, DuplicateFragmentError)
    assert outcome.text is None
    assert engine.state == EngineState.IDLE
    user, aborted = engine.store.transactions
    assert isinstance(user, UserTurn)
    assert isinstance(aborted, StreamingTurn)
    assert aborted.aborted.startswith("error:")

    outcome = await engine.submit_user_input("again")
    assert outcome.ok
    assert outcome.text == "second try"


@pytest.mark.asyncio
async def test_stream_without_terminal_fragment_is_protocol_error(workspace, registry):
    client = FragmentClient([StreamFragment(index=0, text="dangling")])
    engine = _engine(workspace, client, registry)
    outcome = await engine.submit_user_input("hi")
    assert isinstance(outcome.error, ProtocolError)
    assert engine.state == EngineState.IDLE


@pytest.mark.asyncio
async def test_client_failure_becomes_model_request_error(workspace, registry):
    client = FragmentClient([StreamFragment(index=0, text="par"), ConnectionError("reset")])
    engine = _engine(workspace, client, registry)
    outcome = await engine.submit_user_input("hi")
    assert isinstance(outcome.error, ModelRequestError)
    assert "reset" in str(outcome.error)
    assert engine.state == EngineState.IDLE


@pytest.mark.asyncio
async def test_request_timeout(workspace, registry):
    client = ScriptedModelClient(["never finishes in time"], chunk_size=1, delay=0.5)
    engine = _engine(workspace, client, registry, request_timeout_sec=0.1)
    outcome = await engine.submit_user_input("hi")
    assert isinstance(outcome.error, ModelRequestError)
    assert "timed out" in str(outcome.error)
    assert isinstance(engine.store.transactions[-1], StreamingTurn)


@pytest.mark.asyncio
async def test_error_keeps_earlier_answer_as_text(workspace, registry):
    client = FragmentClient(
        [StreamFragment(index=0, text="first answer", finish_reason="stop")],
        [RuntimeError("backend down")],
    )
    engine = _engine(workspace, client, registry)
    await engine.submit_user_input("one")
    outcome = await engine.submit_user_input("two")
    assert outcome.text == "first answer"
    assert isinstance(outcome.error, ModelRequestError)


# ---------------------------------------------------------------------------
# Retrieval and budget
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retrieval_snippets_are_sent_as_context(workspace, registry):
    search = AsyncMock(spec=SimilaritySearch)
    search.search.return_value = [SearchHit(text="the build uses cargo", score=0.9)]
    client = ScriptedModelClient(["ok"])
    engine = _engine(workspace, client, registry, search=search, system_prompt="Be helpful.")

    await engine.submit_user_input("how do I build?")

    system = client.requests[0].messages[0]
    assert system.role == ChatRole.SYSTEM
    assert system.content.startswith("Be helpful.")
    assert "the build uses cargo" in system.content
    search.search.assert_awaited_once_with("how do I build?", engine.config.retrieval_max_snippets)


@pytest.mark.asyncio
async def test_retrieval_failure_never_blocks(workspace, registry):
    search = AsyncMock(spec=SimilaritySearch)
    search.search.side_effect = ConnectionError("vector store offline")
    search.add.side_effect = ConnectionError("vector store offline")
    client = ScriptedModelClient(["answer anyway"])
    engine = _engine(workspace, client, registry, search=search)

    outcome = await engine.submit_user_input("question")
    assert outcome.ok
    assert outcome.text == "answer anyway"


@pytest.mark.asyncio
async def test_completed_turns_are_indexed_for_later_retrieval(workspace, registry):
    index = InMemoryVectorIndex(HashingEmbeddingService())
    client = ScriptedModelClient(["pydantic models validate data", "see above"])
    engine = _engine(workspace, client, registry, search=index)

    await engine.submit_user_input("tell me about pydantic models")
    assert len(index) == 2

    await engine.submit_user_input("remind me about pydantic")
    system = client.requests[1].messages[0]
    assert system.role == ChatRole.SYSTEM
    assert "pydantic models validate data" in system.content


@pytest.mark.asyncio
async def test_indexing_can_be_disabled(workspace, registry):
    index = InMemoryVectorIndex(HashingEmbeddingService())
    engine = _engine(
        workspace, ScriptedModelClient(["x"]), registry, search=index, index_completed_turns=False
    )
    await engine.submit_user_input("hello")
    assert len(index) == 0


@pytest.mark.asyncio
async def test_history_is_truncated_to_context_window(workspace, registry):
    history = []
    for i in range(10):
        history.append(UserTurn(text=f"{i}" + "q" * 199))
        history.append(CompletedTurn(stream_id=i + 1, full_text=f"{i}" + "a" * 199))
    client = ScriptedModelClient(["short"])
    engine = _engine(
        workspace,
        client,
        registry,
        model=ModelSpec(name="tiny", token_limit=300),
        response_max_tokens=100,
        include_tools=False,
        store=TransactionStore(history),
    )

    await engine.submit_user_input("newest question")

    sent = [m.content for m in client.requests[0].messages]
    assert sent[-1] == "newest question"
    assert sent[-2] == history[-1].full_text
    assert history[0].text not in sent
    assert len(sent) < len(history) + 1


# ---------------------------------------------------------------------------
# Events and persistence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_transitions_are_recorded(workspace, registry):
    client = ScriptedModelClient([format_tool_call("list_dir", {"path": "."}), "done"])
    engine = _engine(workspace, client, registry)
    await engine.submit_user_input("list")

    events = engine.event_store.events(engine.session_id)
    transitions = [(e.from_state, e.to_state) for e in events if e.kind == "transition"]
    assert transitions == [
        ("idle", "awaiting_model_response"),
        ("awaiting_model_response", "tool_calls_pending"),
        ("tool_calls_pending", "awaiting_tool_results"),
        ("awaiting_tool_results", "awaiting_model_response"),
        ("awaiting_model_response", "idle"),
    ]
    kinds = {e.kind for e in events}
    assert {"user_input", "stream_started", "stream_completed", "tool_call", "tool_result"} <= kinds
    assert engine.event_store.replay(engine.session_id) == EngineState.IDLE


@pytest.mark.asyncio
async def test_save_and_restore(workspace, registry):
    sessions = InMemorySessionStore()
    client = ScriptedModelClient([format_tool_call("list_dir", {"path": "."}, call_id="c1"), "listed", "more"])
    engine = _engine(workspace, client, registry, session_store=sessions)
    await engine.submit_user_input("list")
    await engine.save()

    restored = await SessionEngine.restore(
        engine.session_id, sessions, engine.config, client, registry
    )
    assert restored.session_id == engine.session_id
    assert restored.store.transactions == engine.store.transactions

    outcome = await restored.submit_user_input("and then?")
    assert outcome.text == "more"
    assert restored.store.last_completed_turn().stream_id == 3


@pytest.mark.asyncio
async def test_restore_missing_session(workspace, registry):
    with pytest.raises(SessionNotFoundError):
        await SessionEngine.restore(
            "ghost",
            InMemorySessionStore(),
            EngineConfig(max_tool_call_depth=1),
            ScriptedModelClient(),
            registry,
        )


@pytest.mark.asyncio
async def test_save_without_store_fails(workspace, registry):
    engine = _engine(workspace, ScriptedModelClient(), registry)
    with pytest.raises(InvalidStateError):
        await engine.save()


@pytest.mark.asyncio
async def test_close_releases_tool_pool_and_engine_stays_usable(workspace, registry):
    client = ScriptedModelClient(
        [format_tool_call("list_dir", {"path": "."}, call_id="c1"), "first", "second"]
    )
    engine = _engine(workspace, client, registry, tool_max_workers=1)
    await engine.submit_user_input("list")
    engine.close()
    outcome = await engine.submit_user_input("again")
    engine.close()
    assert outcome.text == "second"
