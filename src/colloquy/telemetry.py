"""OpenTelemetry tracing integration for colloquy.

Provides distributed tracing with support for stdout, OTLP, and noop exporters.
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import NoOpTracer, Span, Tracer

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class TelemetryConfig:
    """Configuration for the colloquy tracing subsystem."""

    service_name: str = "colloquy"
    enabled: bool = True
    exporter: str = "none"  # "stdout" | "otlp" | "none"
    otlp_endpoint: str = "http://localhost:4317"


# ---------------------------------------------------------------------------
# ColloquyTracer
# ---------------------------------------------------------------------------


class ColloquyTracer:
    """Central tracer for colloquy.

    Wraps OpenTelemetry ``TracerProvider`` setup and provides helpers for
    creating spans and recording events.
    """

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self._config = config or TelemetryConfig()
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    def init(self) -> None:
        """Set up the OTel TracerProvider based on config."""
        cfg = self._config
        if not cfg.enabled or cfg.exporter == "none":
            return

        resource = Resource.create({"service.name": cfg.service_name})

        if cfg.exporter == "stdout":
            from opentelemetry.sdk.trace.export import (
                ConsoleSpanExporter,
                SimpleSpanProcessor,
            )

            provider = TracerProvider(resource=resource)
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
            self._provider = provider
            self._tracer = provider.get_tracer(cfg.service_name)

        elif cfg.exporter == "otlp":
            # Requires the optional opentelemetry-exporter-otlp package.
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )
            from opentelemetry.sdk.trace.export import BatchSpanProcessor

            provider = TracerProvider(resource=resource)
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True))
            )
            self._provider = provider
            self._tracer = provider.get_tracer(cfg.service_name)

        else:
            msg = f"Unknown telemetry exporter '{cfg.exporter}'"
            raise ValueError(msg)

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        """Create a span as a context manager."""
        with self._tracer.start_as_current_span(name) as s:
            if attributes:
                for k, v in attributes.items():
                    s.set_attribute(k, v)
            yield s

    def record_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        """Record a named event on the current active span (if any)."""
        current_span = trace.get_current_span()
        if current_span.is_recording():
            current_span.add_event(name, dict(attributes) if attributes else {})

    def shutdown(self) -> None:
        """Flush pending spans and shut down the provider. Safe to call twice."""
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None


# ---------------------------------------------------------------------------
# Process-wide tracer (lazily initialised, replaceable)
# ---------------------------------------------------------------------------

_DEFAULT_TRACER: ColloquyTracer | None = None


def get_tracer() -> ColloquyTracer:
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = ColloquyTracer()
    return _DEFAULT_TRACER


def set_tracer(tracer: ColloquyTracer) -> None:
    """Install *tracer* for the convenience helpers below."""
    global _DEFAULT_TRACER  # noqa: PLW0603
    _DEFAULT_TRACER = tracer


# ---------------------------------------------------------------------------
# Convenience context managers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def trace_session_submit(session_id: str) -> Generator[Span, None, None]:
    """Trace one user input through the full request/tool cycle."""
    with get_tracer().span("session/submit", {"session.id": session_id}) as s:
        yield s


@contextlib.contextmanager
def trace_model_request(model: str, stream_id: int) -> Generator[Span, None, None]:
    """Trace one streamed model request."""
    with get_tracer().span("model/request", {"model.name": model, "stream.id": stream_id}) as s:
        yield s


@contextlib.contextmanager
def trace_tool_call(tool_name: str, tool_call_id: str) -> Generator[Span, None, None]:
    """Trace one tool invocation."""
    with get_tracer().span("tool/call", {"tool.name": tool_name, "tool.call_id": tool_call_id}) as s:
        yield s


@contextlib.contextmanager
def trace_retrieval(max_snippets: int) -> Generator[Span, None, None]:
    """Trace a retrieval augmentation lookup."""
    with get_tracer().span("retrieval/augment", {"retrieval.max_snippets": max_snippets}) as s:
        yield s
