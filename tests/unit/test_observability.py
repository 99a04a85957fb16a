"""
Unit tests for the tracers.

Tests cover:
- Tracer selection through create_tracer
- No-op spans of the NullTracer
- Span recording and attribute lookup in the MockTracer
- OpenTelemetry spans with None attributes dropped
"""

import pytest

from diffmigrate.observability import (
    ATTR_ENTITY_TYPE,
    ATTR_RUN_ID,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from diffmigrate.observability.tracer import _drop_none


class TestCreateTracer:
    def test_enabled(self) -> None:
        tracer = create_tracer("diffmigrate.planner")

        assert isinstance(tracer, OpenTelemetryTracer)
        assert tracer.enabled
        assert tracer.name == "diffmigrate.planner"

    def test_disabled(self) -> None:
        tracer = create_tracer("diffmigrate.planner", enable_tracing=False)

        assert isinstance(tracer, NullTracer)
        assert not tracer.enabled

    def test_protocol(self) -> None:
        assert isinstance(NullTracer(), Tracer)
        assert isinstance(MockTracer(), Tracer)
        assert isinstance(OpenTelemetryTracer("diffmigrate"), Tracer)


class TestNullTracer:
    def test_span_yields_none(self) -> None:
        with NullTracer().span("diffmigrate.detector.detect_changes", {ATTR_RUN_ID: "r"}) as span:
            assert span is None


class TestMockTracer:
    """Tests for the recording tracer used across the suite."""

    def test_records_in_order(self) -> None:
        tracer = MockTracer()

        with tracer.span("diffmigrate.planner.execute", {ATTR_RUN_ID: "run-1"}):
            with tracer.span("diffmigrate.planner.entity", {ATTR_ENTITY_TYPE: "offices"}):
                pass

        assert tracer.span_names == ["diffmigrate.planner.execute", "diffmigrate.planner.entity"]
        assert tracer.attributes_of("diffmigrate.planner.entity") == {ATTR_ENTITY_TYPE: "offices"}

    def test_attributes_of_unknown_span(self) -> None:
        tracer = MockTracer()
        with tracer.span("diffmigrate.run_repo.get_run"):
            pass

        assert tracer.attributes_of("diffmigrate.run_repo.get_run") == {}
        with pytest.raises(KeyError):
            tracer.attributes_of("diffmigrate.run_repo.list_runs")

    def test_clear(self) -> None:
        tracer = MockTracer()
        with tracer.span("diffmigrate.checkpoint_repo.create"):
            pass

        tracer.clear()

        assert tracer.spans == []


class TestOpenTelemetryTracer:
    def test_span_context(self) -> None:
        """Without a configured provider the span is non-recording but usable."""
        tracer = OpenTelemetryTracer("diffmigrate.tests")

        with tracer.span(
            "diffmigrate.detector.detect_changes",
            {ATTR_ENTITY_TYPE: "offices", ATTR_RUN_ID: None},
        ) as span:
            assert span is not None

    def test_none_attributes_dropped(self) -> None:
        assert _drop_none({ATTR_ENTITY_TYPE: "offices", ATTR_RUN_ID: None}) == {
            ATTR_ENTITY_TYPE: "offices"
        }
        assert _drop_none(None) == {}
