"""
Tests for the logging module.
"""

import pytest

from content_pipeline.logging import (
    PipelineTimer,
    add_context_info,
    current_context,
    get_trace_id,
    logging_context,
)


class TestLoggingContext:
    """Test logging context management."""

    def test_logging_context_sets_values(self):
        with logging_context(
            trace_id="trace_123",
            organization_id="org_abc",
            content_item_id="item_xyz",
        ):
            assert get_trace_id() == "trace_123"
            assert current_context() == {
                "trace_id": "trace_123",
                "organization_id": "org_abc",
                "content_item_id": "item_xyz",
            }

    def test_logging_context_restores_values(self):
        with logging_context(trace_id="outer"):
            with logging_context(trace_id="inner"):
                assert get_trace_id() == "inner"
            assert get_trace_id() == "outer"

        assert get_trace_id() is None

    def test_none_leaves_outer_value(self):
        with logging_context(organization_id="org_1"):
            with logging_context(organization_id=None, content_item_id="item_1"):
                assert current_context() == {"organization_id": "org_1", "content_item_id": "item_1"}

    def test_unknown_key_rejected(self):
        with pytest.raises(TypeError):
            with logging_context(tenant_id="t1"):
                pass

    def test_processor_keeps_explicit_values(self):
        with logging_context(organization_id="org_ctx", content_item_id="item_ctx"):
            event = add_context_info(None, "info", {"event": "x", "content_item_id": "item_explicit"})

        assert event["organization_id"] == "org_ctx"
        assert event["content_item_id"] == "item_explicit"


class TestPipelineTimer:
    """Test pipeline timing functionality."""

    def test_timer_records_stages(self):
        timer = PipelineTimer()

        with timer.stage("transcription"):
            pass
        with timer.stage("analysis"):
            pass

        assert set(timer.stages) == {"transcription", "analysis"}
        assert all(v >= 0 for v in timer.stages.values())

    def test_stage_is_bound_while_running(self):
        timer = PipelineTimer()

        with timer.stage("embedding"):
            assert current_context()["stage"] == "embedding"
        assert "stage" not in current_context()

    def test_timer_records_stage_that_raised(self):
        timer = PipelineTimer()
        with pytest.raises(RuntimeError):
            with timer.stage("embedding"):
                raise RuntimeError("boom")

        assert "embedding" in timer.stages

    def test_repeated_stage_accumulates(self):
        timer = PipelineTimer()
        timer.record("analysis", 100.0)
        timer.record("analysis", 50.5)
        timer.record("embedding", 20.0)

        summary = timer.summary()
        assert summary["stages"] == {"analysis": 150.5, "embedding": 20.0}
        assert summary["slowest_stage"] == "analysis"
        assert summary["total_ms"] >= 0

    def test_empty_summary(self):
        assert PipelineTimer().summary()["slowest_stage"] is None
