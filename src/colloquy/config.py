"""Engine configuration — an explicit object passed to the session engine."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ModelSpec(BaseModel):
    """A model identifier and its context window."""

    model_config = ConfigDict(frozen=True)

    name: str
    token_limit: int = Field(gt=0)


MODEL_CATALOG: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        ModelSpec(name="gpt-3.5-turbo", token_limit=4097),
        ModelSpec(name="gpt-3.5-turbo-16k", token_limit=16384),
        ModelSpec(name="gpt-4", token_limit=8192),
        ModelSpec(name="gpt-4-turbo", token_limit=128000),
    )
}

DEFAULT_MODEL = "gpt-4-turbo"


def get_model(name: str) -> ModelSpec:
    """Look up a model in :data:`MODEL_CATALOG`.

    Raises:
        ValueError: If the model is not in the catalog.
    """
    try:
        return MODEL_CATALOG[name]
    except KeyError:
        msg = f"Unknown model '{name}'. Known models: {', '.join(sorted(MODEL_CATALOG))}"
        raise ValueError(msg) from None


class EngineConfig(BaseModel):
    """Everything a :class:`~colloquy.engine.SessionEngine` needs to run a session.

    ``max_tool_call_depth`` has no default: the number of automatic tool-call
    round-trips per user input must always be chosen explicitly.
    """

    model_config = ConfigDict(frozen=True)

    max_tool_call_depth: int = Field(ge=0)
    model: ModelSpec = Field(default_factory=lambda: MODEL_CATALOG[DEFAULT_MODEL])
    system_prompt: str = ""
    response_max_tokens: int = Field(default=4095, gt=0)
    tool_result_max_tokens: int = Field(default=8192, gt=0)
    include_tools: bool = True
    accessible_paths: tuple[Path, ...] = ()
    working_dir: Path = Field(default_factory=Path.cwd)
    # A handler that outlives its timeout keeps one of the tool_max_workers threads busy.
    tool_timeout_sec: float = Field(default=30.0, gt=0)
    tool_max_workers: int = Field(default=4, gt=0)
    request_timeout_sec: float | None = Field(default=300.0, gt=0)
    retrieval_max_snippets: int = Field(default=10, ge=0)
    retrieval_token_budget: int = Field(default=1024, ge=0)
    retrieval_timeout_sec: float | None = Field(default=5.0, gt=0)
    index_completed_turns: bool = True

    @model_validator(mode="after")
    def _check_response_fits_model(self) -> EngineConfig:
        if self.response_max_tokens >= self.model.token_limit:
            msg = (
                f"response_max_tokens ({self.response_max_tokens}) must be smaller than "
                f"the context window of {self.model.name} ({self.model.token_limit})"
            )
            raise ValueError(msg)
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """Build a config from ``COLLOQUY_*`` environment variables.

        Recognised variables:
            - ``COLLOQUY_MODEL``: catalog model name (default ``gpt-4-turbo``)
            - ``COLLOQUY_MAX_TOOL_CALL_DEPTH``: required unless passed as an override
            - ``COLLOQUY_SYSTEM_PROMPT``
            - ``COLLOQUY_RESPONSE_MAX_TOKENS``
            - ``COLLOQUY_ACCESSIBLE_PATHS``: ``os.pathsep``-separated directories
            - ``COLLOQUY_WORKING_DIR``
            - ``COLLOQUY_TOOL_TIMEOUT_SEC`` / ``COLLOQUY_REQUEST_TIMEOUT_SEC``
            - ``COLLOQUY_TOOL_MAX_WORKERS``

        Keyword *overrides* win over the environment.

        Raises:
            ValueError: On an unknown model, a missing depth, or invalid values.
        """
        env = os.environ
        values: dict[str, Any] = {}

        model_name = env.get("COLLOQUY_MODEL", "").strip()
        if model_name:
            values["model"] = get_model(model_name)

        depth = env.get("COLLOQUY_MAX_TOOL_CALL_DEPTH", "").strip()
        if depth:
            values["max_tool_call_depth"] = int(depth)
        elif "max_tool_call_depth" not in overrides:
            msg = "COLLOQUY_MAX_TOOL_CALL_DEPTH must be set explicitly"
            raise ValueError(msg)

        if "COLLOQUY_SYSTEM_PROMPT" in env:
            values["system_prompt"] = env["COLLOQUY_SYSTEM_PROMPT"]
        if env.get("COLLOQUY_RESPONSE_MAX_TOKENS"):
            values["response_max_tokens"] = int(env["COLLOQUY_RESPONSE_MAX_TOKENS"])

        paths = env.get("COLLOQUY_ACCESSIBLE_PATHS", "")
        if paths:
            values["accessible_paths"] = tuple(Path(p) for p in paths.split(os.pathsep) if p)
        if env.get("COLLOQUY_WORKING_DIR"):
            values["working_dir"] = Path(env["COLLOQUY_WORKING_DIR"])

        if env.get("COLLOQUY_TOOL_TIMEOUT_SEC"):
            values["tool_timeout_sec"] = float(env["COLLOQUY_TOOL_TIMEOUT_SEC"])
        if env.get("COLLOQUY_TOOL_MAX_WORKERS"):
            values["tool_max_workers"] = int(env["COLLOQUY_TOOL_MAX_WORKERS"])
        if env.get("COLLOQUY_REQUEST_TIMEOUT_SEC"):
            values["request_timeout_sec"] = float(env["COLLOQUY_REQUEST_TIMEOUT_SEC"])

        values.update(overrides)
        return cls(**values)
