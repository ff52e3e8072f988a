"""Tracing for convmem — OpenTelemetry spans around transactions, compositions and locks.

Tracing is off unless an exporter is chosen, either explicitly through
:class:`TelemetryConfig` or with ``CONVMEM_TRACE_EXPORTER=stdout|otlp``.
The OTLP exporter ships in the ``otlp`` extra.
"""

from __future__ import annotations

import contextlib
import os
from collections.abc import Generator, Mapping
from dataclasses import dataclass
from typing import Literal

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor, SpanExporter
from opentelemetry.trace import NoOpTracer, Span, Tracer

Exporter = Literal["stdout", "otlp", "none"]
AttributeValue = str | int | float | bool

_EXPORTERS: tuple[str, ...] = ("stdout", "otlp", "none")
_DEFAULT_ENDPOINT = "http://localhost:4317"


@dataclass
class TelemetryConfig:
    service_name: str = "convmem"
    enabled: bool = True
    exporter: Exporter = "none"
    otlp_endpoint: str = _DEFAULT_ENDPOINT

    @classmethod
    def from_env(cls) -> TelemetryConfig:
        """Read ``CONVMEM_TRACE_EXPORTER`` and ``CONVMEM_OTLP_ENDPOINT``.

        Unknown exporter names disable tracing rather than failing startup.
        """
        exporter = os.environ.get("CONVMEM_TRACE_EXPORTER", "").strip().lower() or "none"
        return cls(
            exporter=exporter if exporter in _EXPORTERS else "none",  # type: ignore[arg-type]
            otlp_endpoint=os.environ.get("CONVMEM_OTLP_ENDPOINT", _DEFAULT_ENDPOINT),
        )

    @property
    def active(self) -> bool:
        return self.enabled and self.exporter != "none"


class MemoryTracer:
    """Owns one ``TracerProvider``; spans are no-ops until :meth:`init` wires an exporter."""

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self._config = config or TelemetryConfig()
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    @property
    def config(self) -> TelemetryConfig:
        return self._config

    def init(self) -> None:
        if not self._config.active or self._provider is not None:
            return
        exporter = self._build_exporter()
        if exporter is None:
            return
        provider = TracerProvider(
            resource=Resource.create({"service.name": self._config.service_name})
        )
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        self._provider = provider
        self._tracer = provider.get_tracer("convmem")

    def _build_exporter(self) -> SpanExporter | None:
        if self._config.exporter == "stdout":
            return ConsoleSpanExporter()
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )
        except ImportError:  # pragma: no cover
            # otlp extra not installed; spans stay no-ops.
            return None
        return OTLPSpanExporter(endpoint=self._config.otlp_endpoint, insecure=True)

    @contextlib.contextmanager
    def span(
        self, name: str, attributes: Mapping[str, AttributeValue] | None = None
    ) -> Generator[Span, None, None]:
        with self._tracer.start_as_current_span(name) as s:
            if attributes:
                s.set_attributes(dict(attributes))
            yield s

    def record_event(
        self, name: str, attributes: Mapping[str, AttributeValue] | None = None
    ) -> None:
        """Attach an event to the active span; dropped when nothing is recording."""
        current = trace.get_current_span()
        if current.is_recording():
            current.add_event(name, dict(attributes or {}))

    def shutdown(self) -> None:
        """Flush and drop the provider. Later spans are no-ops; repeat calls do nothing."""
        if self._provider is None:
            return
        self._provider.shutdown()
        self._provider = None
        self._tracer = NoOpTracer()


# ---------------------------------------------------------------------------
# Process-wide tracer used by the engines
# ---------------------------------------------------------------------------

_DEFAULT_TRACER: MemoryTracer | None = None


def get_tracer() -> MemoryTracer:
    """The process tracer, built from the environment on first use."""
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = MemoryTracer(TelemetryConfig.from_env())
        _DEFAULT_TRACER.init()
    return _DEFAULT_TRACER


def configure(config: TelemetryConfig) -> MemoryTracer:
    """Replace the process tracer, shutting the previous one down."""
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is not None:
        _DEFAULT_TRACER.shutdown()
    _DEFAULT_TRACER = MemoryTracer(config)
    _DEFAULT_TRACER.init()
    return _DEFAULT_TRACER


def trace_compression(session_id: str, operation: str) -> contextlib.AbstractContextManager[Span]:
    return get_tracer().span(
        "convmem.compress", {"convmem.session_id": session_id, "convmem.operation": operation}
    )


def trace_composition(name: str) -> contextlib.AbstractContextManager[Span]:
    return get_tracer().span("convmem.compose", {"convmem.composition": name})


def trace_lock(resource_key: str) -> contextlib.AbstractContextManager[Span]:
    return get_tracer().span("convmem.lock", {"convmem.lock_key": resource_key})
