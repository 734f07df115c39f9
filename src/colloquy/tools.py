"""Tool registry — argument schemas, validation, sandboxed invocation."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, model_validator

from .errors import (
    ArgumentValidationError,
    DuplicateToolError,
    ErrorKind,
    PathNotAllowedError,
    ToolError,
    UnknownToolError,
)
from .provider import ToolSpec
from .transactions import ToolResult

logger = logging.getLogger(__name__)


class ParameterType(StrEnum):
    """Type tag of a tool parameter. ``path`` is a sandboxed string."""

    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    PATH = "path"


def _matches_type(value: Any, type_tag: ParameterType) -> bool:
    if type_tag in (ParameterType.STRING, ParameterType.PATH):
        return isinstance(value, str)
    if type_tag == ParameterType.BOOLEAN:
        return isinstance(value, bool)
    if type_tag == ParameterType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if type_tag == ParameterType.NUMBER:
        return isinstance(value, int | float) and not isinstance(value, bool)
    if type_tag == ParameterType.ARRAY:
        return isinstance(value, list)
    return isinstance(value, dict)


class ToolParameter(BaseModel):
    """One named property of a tool's parameter schema."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ParameterType
    required: bool = False
    description: str | None = None
    enum_values: tuple[Any, ...] | None = None

    def json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {
            "type": "string" if self.type == ParameterType.PATH else self.type.value
        }
        if self.description:
            schema["description"] = self.description
        if self.enum_values is not None:
            schema["enum"] = list(self.enum_values)
        return schema


class ToolDefinition(BaseModel):
    """Name, description and parameter schema of a tool. Immutable."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    parameters: tuple[ToolParameter, ...] = ()

    @model_validator(mode="after")
    def _unique_parameter_names(self) -> ToolDefinition:
        names = [p.name for p in self.parameters]
        if len(names) != len(set(names)):
            msg = f"Duplicate parameter names in tool '{self.name}'"
            raise ValueError(msg)
        return self

    def parameter(self, name: str) -> ToolParameter | None:
        return next((p for p in self.parameters if p.name == name), None)

    def to_tool_spec(self) -> ToolSpec:
        """Render as a JSON-schema tool spec, required properties first."""
        ordered = sorted(self.parameters, key=lambda p: not p.required)
        return ToolSpec(
            name=self.name,
            description=self.description,
            parameters={
                "type": "object",
                "properties": {p.name: p.json_schema() for p in ordered},
                "required": [p.name for p in ordered if p.required],
            },
        )


# ---------------------------------------------------------------------------
# Validation and sandboxing
# ---------------------------------------------------------------------------


def validate_arguments(
    definition: ToolDefinition, raw_args: Mapping[str, Any] | str | None
) -> dict[str, Any]:
    """Check *raw_args* against *definition* and return a validated copy.

    Accepts a mapping or a JSON object string. Every required property must be
    present, every present property must match its type tag and enumeration,
    and unknown properties are rejected.

    Raises:
        ArgumentValidationError: Listing every problem found.
    """
    if raw_args is None:
        raw_args = {}
    if isinstance(raw_args, str):
        try:
            raw_args = json.loads(raw_args) if raw_args.strip() else {}
        except json.JSONDecodeError as exc:
            raise ArgumentValidationError(definition.name, [f"arguments are not valid JSON: {exc}"]) from exc
    if not isinstance(raw_args, Mapping):
        raise ArgumentValidationError(definition.name, ["arguments must be an object"])

    errors: list[str] = []
    for param in definition.parameters:
        if param.required and param.name not in raw_args:
            errors.append(f"missing required property '{param.name}'")

    validated: dict[str, Any] = {}
    for key, value in raw_args.items():
        param = definition.parameter(key)
        if param is None:
            errors.append(f"unknown property '{key}'")
            continue
        if not _matches_type(value, param.type):
            errors.append(f"property '{key}': expected {param.type}, got {type(value).__name__}")
            continue
        if param.enum_values is not None and value not in param.enum_values:
            allowed = ", ".join(map(str, param.enum_values))
            errors.append(f"property '{key}': {value!r} is not one of [{allowed}]")
            continue
        validated[key] = value

    if errors:
        raise ArgumentValidationError(definition.name, errors)
    return validated


def _absolute(path: str | Path, base_dir: Path) -> Path:
    candidate = Path(path).expanduser()
    return candidate if candidate.is_absolute() else base_dir / candidate


def is_within_roots(path: Path, roots: Iterable[Path]) -> bool:
    """True if the already-resolved *path* is a root or lies beneath one."""
    return any(path == root or path.is_relative_to(root) for root in roots)


def resolve_roots(accessible_paths: Iterable[str | Path], base_dir: Path | None = None) -> list[Path]:
    base = base_dir if base_dir is not None else Path.cwd()
    return [_absolute(p, base).resolve() for p in accessible_paths]


def resolve_sandboxed_path(
    raw: str | Path,
    accessible_paths: Iterable[str | Path],
    base_dir: Path | None = None,
) -> Path:
    """Resolve *raw* (following symlinks) and require it to stay inside an allowed root.

    Relative paths are taken relative to *base_dir* (default: the current
    working directory).

    Raises:
        PathNotAllowedError: If the resolved path escapes every root.
    """
    base = base_dir if base_dir is not None else Path.cwd()
    resolved = _absolute(raw, base).resolve()
    if not is_within_roots(resolved, resolve_roots(accessible_paths, base)):
        raise PathNotAllowedError(str(raw))
    return resolved


# ---------------------------------------------------------------------------
# Tool capability
# ---------------------------------------------------------------------------

ToolHandler = Callable[[dict[str, Any], tuple[Path, ...]], str]


class Tool(Protocol):
    """Anything with a definition that can validate and invoke calls."""

    @property
    def definition(self) -> ToolDefinition: ...

    def validate(self, raw_args: Mapping[str, Any] | str | None) -> dict[str, Any]: ...

    def invoke(
        self,
        args: dict[str, Any],
        accessible_paths: tuple[Path, ...],
        base_dir: Path | None = None,
    ) -> str: ...


class FunctionTool:
    """A tool backed by a plain handler function.

    Arguments typed ``path`` are resolved against the sandbox before the
    handler runs, so handlers only ever see allowed, absolute paths.
    """

    def __init__(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        self._definition = definition
        self._handler = handler

    @property
    def definition(self) -> ToolDefinition:
        return self._definition

    def validate(self, raw_args: Mapping[str, Any] | str | None) -> dict[str, Any]:
        return validate_arguments(self._definition, raw_args)

    def invoke(
        self,
        args: dict[str, Any],
        accessible_paths: tuple[Path, ...],
        base_dir: Path | None = None,
    ) -> str:
        resolved = dict(args)
        for param in self._definition.parameters:
            if param.type == ParameterType.PATH and param.name in resolved:
                resolved[param.name] = resolve_sandboxed_path(
                    resolved[param.name], accessible_paths, base_dir
                )
        result = self._handler(resolved, accessible_paths)
        return result if isinstance(result, str) else str(result)


class ToolRegistry:
    """Process-wide mapping of tool names to tools. Read-only once populated."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        self.add(FunctionTool(definition, handler))

    def add(self, tool: Tool) -> None:
        name = tool.definition.name
        if name in self._tools:
            raise DuplicateToolError(name)
        self._tools[name] = tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, tool_name: str) -> Tool:
        tool = self._tools.get(tool_name)
        if tool is None:
            raise UnknownToolError(tool_name)
        return tool

    def definitions(self) -> list[ToolDefinition]:
        return [t.definition for t in self._tools.values()]

    def tool_specs(self) -> list[ToolSpec]:
        return [t.definition.to_tool_spec() for t in self._tools.values()]

    def validate_arguments(
        self, tool_name: str, raw_args: Mapping[str, Any] | str | None
    ) -> dict[str, Any]:
        return self.get(tool_name).validate(raw_args)

    def invoke(
        self,
        tool_name: str,
        validated_args: dict[str, Any],
        accessible_paths: Iterable[str | Path],
        base_dir: Path | None = None,
    ) -> ToolResult:
        """Run a tool. Errors are returned as failed results, never raised."""
        try:
            tool = self.get(tool_name)
            text = tool.invoke(validated_args, tuple(Path(p) for p in accessible_paths), base_dir)
        except ToolError as exc:
            logger.info("Tool '%s' failed: %s", tool_name, exc)
            return ToolResult.failure(exc.kind, str(exc))
        except Exception as exc:
            logger.warning("Tool '%s' raised %s: %s", tool_name, type(exc).__name__, exc)
            return ToolResult.failure(ErrorKind.TOOL_ERROR, f"{type(exc).__name__}: {exc}")
        return ToolResult.success(text)

    def execute(
        self,
        tool_name: str,
        raw_args: Mapping[str, Any] | str | None,
        accessible_paths: Iterable[str | Path],
        base_dir: Path | None = None,
    ) -> ToolResult:
        """Validate then invoke; validation problems become failed results."""
        try:
            args = self.validate_arguments(tool_name, raw_args)
        except ToolError as exc:
            return ToolResult.failure(exc.kind, str(exc))
        return self.invoke(tool_name, args, accessible_paths, base_dir)
