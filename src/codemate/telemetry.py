"""OpenTelemetry tracing integration for codemate.

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
    """Configuration for the codemate tracing subsystem."""

    service_name: str = "codemate"
    enabled: bool = True
    exporter: str = "none"  # "stdout" | "otlp" | "none"
    otlp_endpoint: str = "http://localhost:4317"


# ---------------------------------------------------------------------------
# CodemateTracer
# ---------------------------------------------------------------------------


class CodemateTracer:
    """Central tracer for codemate.

    Wraps OpenTelemetry ``TracerProvider`` setup and provides helpers for
    creating spans and recording events.
    """

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self._config = config or TelemetryConfig()
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    @property
    def config(self) -> TelemetryConfig:
        return self._config

    # -- lifecycle -----------------------------------------------------------

    def init(self) -> None:
        """Set up the OTel TracerProvider based on config."""
        cfg = self._config
        if not cfg.enabled or cfg.exporter == "none":
            return

        resource = Resource.create({"service.name": cfg.service_name})
        provider = TracerProvider(resource=resource)

        if cfg.exporter == "stdout":
            from opentelemetry.sdk.trace.export import (
                ConsoleSpanExporter,
                SimpleSpanProcessor,
            )

            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        elif cfg.exporter == "otlp":
            try:
                from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                    OTLPSpanExporter,
                )
                from opentelemetry.sdk.trace.export import SimpleSpanProcessor
            except ImportError:  # pragma: no cover
                # OTLP exporter package not installed: stay on the noop tracer.
                return
            exporter = OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True)
            provider.add_span_processor(SimpleSpanProcessor(exporter))
        else:
            msg = f"Unknown telemetry exporter '{cfg.exporter}'"
            raise ValueError(msg)

        self._provider = provider
        self._tracer = provider.get_tracer(cfg.service_name)

    # -- span helpers --------------------------------------------------------

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, str] | None = None,
    ) -> Generator[Span, None, None]:
        """Create a span as a context manager.

        Usage::

            with tracer.span("gateway/chat", {"ai.provider": "openai"}) as s:
                ...
        """
        with self._tracer.start_as_current_span(name) as s:
            if attributes:
                for k, v in attributes.items():
                    s.set_attribute(k, v)
            yield s

    def record_event(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """Record a named event on the current active span (if any)."""
        current_span = trace.get_current_span()
        if current_span.is_recording():
            current_span.add_event(name, dict(attributes) if attributes else {})

    def shutdown(self) -> None:
        """Flush pending spans and shut down the provider.

        Safe to call multiple times.
        """
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None


# ---------------------------------------------------------------------------
# Fallback tracer (lazily initialised, noop unless configured)
# ---------------------------------------------------------------------------

_DEFAULT_TRACER: CodemateTracer | None = None


def _get_default_tracer() -> CodemateTracer:
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = CodemateTracer()
    return _DEFAULT_TRACER


# ---------------------------------------------------------------------------
# Convenience context managers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def trace_gateway_call(
    provider: str, model: str, tracer: CodemateTracer | None = None
) -> Generator[Span, None, None]:
    """Trace a one-shot gateway chat call."""
    t = tracer or _get_default_tracer()
    with t.span("gateway/chat", {"ai.provider": provider, "ai.model": model}) as s:
        yield s


@contextlib.contextmanager
def trace_gateway_stream(
    provider: str, model: str, tracer: CodemateTracer | None = None
) -> Generator[Span, None, None]:
    """Trace a streaming gateway call."""
    t = tracer or _get_default_tracer()
    with t.span("gateway/stream", {"ai.provider": provider, "ai.model": model}) as s:
        yield s


@contextlib.contextmanager
def trace_compression(
    conversation_id: str, tracer: CodemateTracer | None = None
) -> Generator[Span, None, None]:
    """Trace a conversation compression."""
    t = tracer or _get_default_tracer()
    with t.span("conversation/compress", {"conversation.id": conversation_id}) as s:
        yield s


@contextlib.contextmanager
def trace_version_save(
    file_id: str, tracer: CodemateTracer | None = None
) -> Generator[Span, None, None]:
    """Trace saving a file revision."""
    t = tracer or _get_default_tracer()
    with t.span("versions/save", {"file.id": file_id}) as s:
        yield s
