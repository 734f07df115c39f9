"""Built-in filesystem and build-check tools.

Every path a handler touches is either resolved by the registry before the
handler runs (``path`` parameters) or re-checked against the sandbox while
walking directories, so symlinks cannot lead a tool outside its roots.
"""

from __future__ import annotations

import difflib
import logging
import os
import re
import subprocess
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

from .errors import ToolError
from .tools import ParameterType, ToolDefinition, ToolParameter, ToolRegistry, is_within_roots

logger = logging.getLogger(__name__)

_SKIP_DIRS = {".git", ".hg", ".svn", "__pycache__", "node_modules", "target", ".venv"}
_MAX_FILE_BYTES = 2 * 1024 * 1024


def _roots(accessible_paths: tuple[Path, ...]) -> list[Path]:
    return [p.resolve() for p in accessible_paths]


def _walk_files(start: Path, roots: list[Path]) -> Iterator[Path]:
    """Yield regular files under *start* that resolve inside *roots*."""
    if start.is_file():
        if is_within_roots(start.resolve(), roots):
            yield start
        return
    for dirpath, dirnames, filenames in os.walk(start):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.is_file() and is_within_roots(path.resolve(), roots):
                yield path


def _read_text(path: Path) -> str | None:
    """Return the file's text, or None for oversized or binary files."""
    try:
        if path.stat().st_size > _MAX_FILE_BYTES:
            return None
        data = path.read_bytes()
    except OSError:
        return None
    if b"\0" in data:
        return None
    return data.decode("utf-8", errors="replace")


def _display(path: Path, roots: list[Path]) -> str:
    resolved = path.resolve()
    for root in roots:
        if resolved.is_relative_to(root):
            return str(resolved.relative_to(root)) or "."
    return str(resolved)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def list_dir(args: dict[str, Any], accessible_paths: tuple[Path, ...]) -> str:
    path: Path = args["path"]
    if not path.is_dir():
        raise ToolError(f"Not a directory: {path}")
    entries = sorted(path.iterdir(), key=lambda p: p.name)
    if not entries:
        return f"{path} is empty"
    return "\n".join(f"{e.name}/" if e.is_dir() else e.name for e in entries)


def file_search(args: dict[str, Any], accessible_paths: tuple[Path, ...]) -> str:
    """Fuzzy-match file paths under the accessible roots and report line counts."""
    query = args["query"].lower()
    limit = args.get("limit", 10)
    roots = _roots(accessible_paths)

    scored: list[tuple[float, str, Path]] = []
    seen: set[Path] = set()
    for root in roots:
        if not root.exists():
            continue
        for path in _walk_files(root, roots):
            if path.resolve() in seen:
                continue
            seen.add(path.resolve())
            rel = _display(path, roots)
            score = difflib.SequenceMatcher(None, query, rel.lower()).ratio()
            if query in rel.lower():
                score += 1.0
            scored.append((score, rel, path))

    if not scored:
        return "No files found"
    scored.sort(key=lambda item: (-item[0], item[1]))
    lines = []
    for _score, rel, path in scored[: max(1, limit)]:
        text = _read_text(path)
        count = "binary" if text is None else f"{len(text.splitlines())} lines"
        lines.append(f"{rel} ({count})")
    return "\n".join(lines)


def read_file(args: dict[str, Any], accessible_paths: tuple[Path, ...]) -> str:
    path: Path = args["path"]
    if not path.is_file():
        raise ToolError(f"Not a file: {path}")
    text = _read_text(path)
    if text is None:
        raise ToolError(f"Cannot read binary or oversized file: {path}")

    lines = text.splitlines()
    start = args.get("start_line", 1)
    end = args.get("end_line", len(lines))
    if start < 1 or end < start:
        raise ToolError(f"Invalid line range {start}-{end}")
    selected = lines[start - 1 : end]
    return "\n".join(f"{n}: {line}" for n, line in enumerate(selected, start=start))


def create_file(args: dict[str, Any], accessible_paths: tuple[Path, ...]) -> str:
    path: Path = args["path"]
    if path.exists():
        raise ToolError(f"File already exists and will not be overwritten: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    content: str = args["text"]
    path.write_text(content, encoding="utf-8")
    return f"Created {path} ({len(content.encode())} bytes)"


def grep(args: dict[str, Any], accessible_paths: tuple[Path, ...]) -> str:
    """Regex search over files under a sandboxed path (default: every root)."""
    flags = re.IGNORECASE if args.get("case_insensitive", False) else 0
    try:
        pattern = re.compile(args["pattern"], flags)
    except re.error as exc:
        raise ToolError(f"Invalid regular expression: {exc}") from exc
    max_matches = args.get("max_matches", 100)
    roots = _roots(accessible_paths)
    starts = [args["path"]] if "path" in args else [r for r in roots if r.exists()]

    matches: list[str] = []
    for start in starts:
        for path in _walk_files(start, roots):
            text = _read_text(path)
            if text is None:
                continue
            for lineno, line in enumerate(text.splitlines(), start=1):
                if pattern.search(line):
                    matches.append(f"{_display(path, roots)}:{lineno}: {line.strip()}")
                    if len(matches) >= max_matches:
                        matches.append(f"[stopped after {max_matches} matches]")
                        return "\n".join(matches)
    return "\n".join(matches) if matches else "No matches"


def _make_run_check(command: Sequence[str], timeout_sec: float):
    def run_check(args: dict[str, Any], accessible_paths: tuple[Path, ...]) -> str:
        if "path" in args:
            cwd = args["path"]
        elif accessible_paths:
            cwd = accessible_paths[0].resolve()
        else:
            raise ToolError("No directory available to run the check in")
        if not cwd.is_dir():
            raise ToolError(f"Not a directory: {cwd}")

        logger.info("Running check command %s in %s", list(command), cwd)
        try:
            proc = subprocess.run(
                list(command),
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout_sec,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ToolError(f"Check command timed out after {timeout_sec}s") from exc
        except FileNotFoundError as exc:
            raise ToolError(f"Check command not found: {command[0]}") from exc

        output = "\n".join(part for part in (proc.stdout.strip(), proc.stderr.strip()) if part)
        status = "passed" if proc.returncode == 0 else f"failed (exit {proc.returncode})"
        return f"{' '.join(command)} {status}\n{output}".rstrip()

    return run_check


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

LIST_DIR = ToolDefinition(
    name="list_dir",
    description="List the entries of a directory. Directories end with '/'.",
    parameters=(
        ToolParameter(name="path", type=ParameterType.PATH, required=True, description="directory to list"),
    ),
)

FILE_SEARCH = ToolDefinition(
    name="file_search",
    description="Fuzzy search for files by path in the accessible directories; reports line counts.",
    parameters=(
        ToolParameter(name="query", type=ParameterType.STRING, required=True, description="part of a file path"),
        ToolParameter(name="limit", type=ParameterType.INTEGER, description="maximum results, default 10"),
    ),
)

READ_FILE = ToolDefinition(
    name="read_file",
    description="Read a text file, optionally restricted to a 1-based inclusive line range.",
    parameters=(
        ToolParameter(name="path", type=ParameterType.PATH, required=True, description="file to read"),
        ToolParameter(name="start_line", type=ParameterType.INTEGER, description="first line, default 1"),
        ToolParameter(name="end_line", type=ParameterType.INTEGER, description="last line, default end of file"),
    ),
)

CREATE_FILE = ToolDefinition(
    name="create_file",
    description="Create a file at path with text. This command cannot overwrite files.",
    parameters=(
        ToolParameter(name="path", type=ParameterType.PATH, required=True, description="path to file"),
        ToolParameter(name="text", type=ParameterType.STRING, required=True, description="text to write to file"),
    ),
)

GREP = ToolDefinition(
    name="grep",
    description="Search file contents with a regular expression.",
    parameters=(
        ToolParameter(name="pattern", type=ParameterType.STRING, required=True, description="regular expression"),
        ToolParameter(name="path", type=ParameterType.PATH, description="file or directory, default all accessible paths"),
        ToolParameter(name="case_insensitive", type=ParameterType.BOOLEAN),
        ToolParameter(name="max_matches", type=ParameterType.INTEGER, description="default 100"),
    ),
)

RUN_CHECK = ToolDefinition(
    name="run_check",
    description="Run the project's configured build check and return its diagnostics.",
    parameters=(
        ToolParameter(name="path", type=ParameterType.PATH, description="directory to run in, default first accessible path"),
    ),
)


def register_builtin_tools(
    registry: ToolRegistry,
    check_command: Sequence[str] | None = None,
    check_timeout_sec: float = 120.0,
) -> None:
    """Register the filesystem tools, plus ``run_check`` when a command is given."""
    registry.register(LIST_DIR, list_dir)
    registry.register(FILE_SEARCH, file_search)
    registry.register(READ_FILE, read_file)
    registry.register(CREATE_FILE, create_file)
    registry.register(GREP, grep)
    if check_command:
        registry.register(RUN_CHECK, _make_run_check(tuple(check_command), check_timeout_sec))
