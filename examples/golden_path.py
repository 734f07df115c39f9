"""Colloquy E2E Golden Path Demo.

Demonstrates one full session end-to-end:
1. User asks to list files in a sandboxed workspace
2. The model requests the list_dir tool
3. The engine runs the tool and sends a follow-up request
4. The session is saved and restored from disk
5. A runaway tool loop is stopped by the depth limit

Uses the scripted client -- no real LLM needed.

Run: python examples/golden_path.py
"""

from __future__ import annotations

import asyncio
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from colloquy import (
    EngineConfig,
    JsonFileSessionStore,
    ScriptedModelClient,
    SessionEngine,
    ToolRegistry,
    ToolResultTurn,
    format_tool_call,
    register_builtin_tools,
)


def _check(condition: bool, msg: str) -> None:  # noqa: FBT001
    """Raise RuntimeError if *condition* is False (demo validation)."""
    if not condition:
        raise RuntimeError(msg)


async def run_demo() -> None:
    print("=" * 60)
    print("Colloquy Golden Path Demo")
    print("=" * 60)

    with tempfile.TemporaryDirectory() as tmp:
        workspace = Path(tmp) / "workspace"
        workspace.mkdir()
        (workspace / "README.md").write_text("# demo\n")
        (workspace / "main.py").write_text("print('hello')\n")

        registry = ToolRegistry()
        register_builtin_tools(registry)
        config = EngineConfig(
            max_tool_call_depth=2,
            system_prompt="You are a helpful coding assistant.",
            accessible_paths=(workspace,),
            working_dir=workspace,
        )
        sessions = JsonFileSessionStore(Path(tmp) / "sessions")

        # --------------------------------------------------------------
        # Steps 1-3: one tool round-trip
        # --------------------------------------------------------------
        print("\n[1/3] Submitting 'list files'...")
        client = ScriptedModelClient(
            [
                "Let me look.\n" + format_tool_call("list_dir", {"path": "."}),
                "The workspace holds README.md and main.py.",
            ]
        )
        engine = SessionEngine(config, client, registry, session_store=sessions)
        outcome = await engine.submit_user_input("list files")
        results = [t for t in engine.store.transactions if isinstance(t, ToolResultTurn)]
        print(f"  Tool results : {len(results)}")
        print(f"  Requests     : {len(client.requests)}")
        print(f"  Answer       : {outcome.text}")
        _check(outcome.ok, "Cycle should succeed")
        _check(len(results) == 1, "Expected exactly one tool result")
        _check(len(client.requests) == 2, "Expected exactly one follow-up request")

        # --------------------------------------------------------------
        # Step 4: save and restore
        # --------------------------------------------------------------
        print("\n[2/3] Saving and restoring the session...")
        await engine.save()
        restored = await SessionEngine.restore(engine.session_id, sessions, config, client, registry)
        print(f"  Session      : {restored.session_id}")
        print(f"  Transactions : {len(restored.store)}")
        _check(restored.store.transactions == engine.store.transactions, "Restored log differs")

        # --------------------------------------------------------------
        # Step 5: depth limit
        # --------------------------------------------------------------
        print("\n[3/3] Feeding a runaway tool loop...")
        client.queue(*[format_tool_call("list_dir", {"path": "."}) for _ in range(5)])
        outcome = await restored.submit_user_input("keep listing")
        print(f"  Depth exceeded : {outcome.depth_exceeded}")
        print(f"  Tool rounds    : {outcome.tool_rounds}")
        print(f"  Final state    : {restored.state}")
        _check(outcome.depth_exceeded, "Depth limit should have stopped the loop")

    print("\n" + "=" * 60)
    print("Golden path complete.")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(run_demo())
