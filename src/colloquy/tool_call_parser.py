"""Extract tool-call requests embedded in completed model text.

Tool calls are written by the model as fenced blocks::

    ```tool_call
    {"id": "call_1", "name": "list_dir", "arguments": {"path": "."}}
    ```

``id`` is optional; missing ids are derived from the stream id and position.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from .provider import ToolCallRequest

logger = logging.getLogger(__name__)

ToolCallParser = Callable[[int, str], list[ToolCallRequest]]

_FENCE = "tool_call"
_BLOCK_RE = re.compile(r"```" + _FENCE + r"[ \t]*\n(.*?)\n[ \t]*```", re.DOTALL)


def parse_fenced_tool_calls(stream_id: int, full_text: str) -> list[ToolCallRequest]:
    """Return the tool calls found in *full_text*, in order of appearance.

    Malformed blocks are skipped with a warning; they never fail the turn.
    """
    calls: list[ToolCallRequest] = []
    for position, match in enumerate(_BLOCK_RE.finditer(full_text)):
        body = match.group(1).strip()
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed tool_call block in stream %d", stream_id)
            continue
        if not isinstance(payload, dict) or not isinstance(payload.get("name"), str):
            logger.warning("Skipping tool_call block without a name in stream %d", stream_id)
            continue

        arguments: Any = payload.get("arguments", {})
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                logger.warning("Skipping tool_call block with unparsable arguments")
                continue
        if not isinstance(arguments, dict):
            logger.warning("Skipping tool_call block whose arguments are not an object")
            continue

        call_id = payload.get("id") or f"call_{stream_id}_{position}"
        calls.append(ToolCallRequest(id=str(call_id), name=payload["name"], arguments=arguments))
    return unique_call_ids(calls)


def unique_call_ids(calls: list[ToolCallRequest]) -> list[ToolCallRequest]:
    """Rename repeated ids to ``<id>_<position>`` so each call can be resolved once."""
    seen: set[str] = set()
    unique: list[ToolCallRequest] = []
    for position, call in enumerate(calls):
        call_id = call.id
        if call_id in seen:
            call_id = f"{call.id}_{position}"
            while call_id in seen:
                call_id += "_"
            logger.warning("Repeated tool call id %r renamed to %r", call.id, call_id)
            call = call.model_copy(update={"id": call_id})
        seen.add(call_id)
        unique.append(call)
    return unique


def format_tool_call(name: str, arguments: dict[str, Any], call_id: str | None = None) -> str:
    """Render a tool call the way :func:`parse_fenced_tool_calls` expects it."""
    payload: dict[str, Any] = {"name": name, "arguments": arguments}
    if call_id is not None:
        payload = {"id": call_id, **payload}
    return f"```{_FENCE}\n{json.dumps(payload)}\n```"
