"""
Tracers handed to diffmigrate components.

Detectors, planners, repositories and stores never call OpenTelemetry
directly. They take a ``tracer`` argument, or build one with
:func:`create_tracer`, and open spans named
``diffmigrate.<component>.<operation>``:

    >>> self._tracer = tracer or create_tracer(__name__, enable_tracing)
    >>> with self._tracer.span("diffmigrate.run_repo.get_run", {ATTR_RUN_ID: run_id}):
    ...     ...

Attribute values of ``None`` are dropped before they reach OpenTelemetry,
so callers can pass optional context (an entity type that is not known
yet, a record id for batch-level work) without branching.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span

SpanAttributes = dict[str, Any]


@runtime_checkable
class Tracer(Protocol):
    """Opens spans around orchestration and persistence operations."""

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        """Context manager around one operation; yields the span or None."""
        ...

    @property
    def enabled(self) -> bool:
        """Whether spans are actually recorded."""
        ...


class NullTracer:
    """Tracer used when tracing is switched off. Spans cost nothing."""

    @contextlib.contextmanager
    def span(self, name: str, attributes: SpanAttributes | None = None) -> Iterator[None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Spans go to the TracerProvider configured by the host application.
    Without one, the API hands out non-recording spans, so enabling tracing
    in a process that never configured OpenTelemetry is harmless.

    Args:
        tracer_name: Instrumentation scope, normally the module ``__name__``.
    """

    def __init__(self, tracer_name: str) -> None:
        self._name = tracer_name
        self._tracer = trace.get_tracer(tracer_name)

    @property
    def name(self) -> str:
        return self._name

    def span(
        self,
        name: str,
        attributes: SpanAttributes | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(name, attributes=_drop_none(attributes))

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Tracer that records every span for assertions in tests.

    ``spans`` holds ``(name, attributes)`` pairs in the order the spans
    were opened.

    Example:
        >>> tracer = MockTracer()
        >>> repo = InMemoryCheckpointRepository(tracer=tracer)
        >>> await repo.create(checkpoint)
        >>> tracer.span_names
        ['diffmigrate.checkpoint_repo.create']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, SpanAttributes | None]] = []

    @contextlib.contextmanager
    def span(self, name: str, attributes: SpanAttributes | None = None) -> Iterator[None]:
        self.spans.append((name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def attributes_of(self, name: str) -> SpanAttributes:
        """
        Attributes of the first span with the given name.

        Raises:
            KeyError: If no such span was opened.
        """
        for span_name, attributes in self.spans:
            if span_name == name:
                return dict(attributes or {})
        raise KeyError(name)

    def clear(self) -> None:
        self.spans.clear()


def _drop_none(attributes: SpanAttributes | None) -> SpanAttributes:
    if not attributes:
        return {}
    return {key: value for key, value in attributes.items() if value is not None}


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Build the default tracer for a component.

    Args:
        name: Instrumentation scope, normally the module ``__name__``.
        enable_tracing: False returns a :class:`NullTracer`.
    """
    return OpenTelemetryTracer(name) if enable_tracing else NullTracer()


__all__ = [
    "SpanAttributes",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
]
