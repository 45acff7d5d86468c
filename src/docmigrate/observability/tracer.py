"""
Span tracing for migration components.

OpenTelemetry is optional (the ``telemetry`` extra). Components never import
it directly; they take ``tracer: Tracer | None = None`` and
``enable_tracing: bool`` and resolve them with create_tracer:

    >>> class CollectionWorker:
    ...     def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True):
    ...         self._tracer = tracer or create_tracer(__name__, enable_tracing)
    ...
    ...     async def run(self, collection: str) -> None:
    ...         with self._tracer.span("docmigrate.worker.run", {ATTR_COLLECTION: collection}):
    ...             ...
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

try:
    from opentelemetry import trace

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False

Attributes = Mapping[str, Any]


def clean_attributes(attributes: Attributes | None) -> dict[str, Any]:
    """
    Drop attributes OpenTelemetry cannot record.

    Optional values such as a collection name or a table that is not known
    yet arrive as None. Those are left out rather than stringified.
    """
    return {key: value for key, value in (attributes or {}).items() if value is not None}


@runtime_checkable
class Tracer(Protocol):
    """Anything that can open a span around a block of work."""

    def span(self, name: str, attributes: Attributes | None = None) -> AbstractContextManager[Any]:
        ...

    @property
    def enabled(self) -> bool:
        ...


class NullTracer:
    """Tracer used when tracing is switched off or OpenTelemetry is missing."""

    @contextlib.contextmanager
    def span(self, name: str, attributes: Attributes | None = None) -> Iterator[None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the global OpenTelemetry tracer provider.

    Spans become the current span, so driver instrumentation (asyncpg,
    pymongo) nests under the migration operation that issued the query.
    Exceptions escaping a span are recorded on it and mark it as failed.
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(self, name: str, attributes: Attributes | None = None) -> AbstractContextManager[Any]:
        return self._tracer.start_as_current_span(
            name,
            attributes=clean_attributes(attributes),
            record_exception=True,
            set_status_on_exception=True,
        )

    @property
    def enabled(self) -> bool:
        return True


@dataclass
class RecordedSpan:
    """A span captured by RecordingTracer."""

    name: str
    attributes: dict[str, Any]
    error: BaseException | None = None

    def set_attribute(self, key: str, value: Any) -> None:
        if value is not None:
            self.attributes[key] = value


@dataclass
class RecordingTracer:
    """
    In-process tracer that keeps every span it opens.

    Example:
        >>> tracer = RecordingTracer()
        >>> optimizer = IndexOptimizer(target, tracer=tracer)
        >>> await optimizer.optimize(["food"])
        >>> tracer.span_names
        ['docmigrate.indexes.optimize', 'docmigrate.indexes.create_index']
    """

    spans: list[RecordedSpan] = field(default_factory=list)

    @contextlib.contextmanager
    def span(self, name: str, attributes: Attributes | None = None) -> Iterator[RecordedSpan]:
        recorded = RecordedSpan(name, clean_attributes(attributes))
        self.spans.append(recorded)
        try:
            yield recorded
        except BaseException as e:
            recorded.error = e
            raise

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [s.name for s in self.spans]

    def find(self, name: str) -> list[RecordedSpan]:
        """Spans with the given name, in the order they were opened."""
        return [s for s in self.spans if s.name == name]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Resolve the tracer for a component.

    Args:
        name: Instrumentation scope, normally the component's ``__name__``.
        enable_tracing: Component-level switch.

    Returns:
        An OpenTelemetryTracer when the switch is on and OpenTelemetry is
        installed, otherwise a NullTracer.
    """
    if enable_tracing and OTEL_AVAILABLE:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "OTEL_AVAILABLE",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "RecordingTracer",
    "Tracer",
    "clean_attributes",
    "create_tracer",
]
