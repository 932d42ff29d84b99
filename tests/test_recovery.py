"""
test_recovery.py — Render failure boundary: classification, bounded retry,
demo and escape hatches.
"""

import re

import pytest

from civic_heatmap.core.errors import RenderFailure
from civic_heatmap.models.heatmap import HeatmapState
from civic_heatmap.services.recovery import (
    SUGGESTIONS,
    ErrorRecoveryController,
    ErrorReport,
    classify_error,
)


def broken_render(_state):
    raise RuntimeError("WebGL context lost")


def count_points(state: HeatmapState) -> int:
    return len(state.data_points)


class TestClassification:

    @pytest.mark.parametrize("message,category", [
        ("Network request failed", "network"),
        ("Failed to fetch", "network"),
        ("Blocked by CORS policy", "network"),
        ("Canvas is not supported", "render"),
        ("WebGL context lost", "render"),
        ("Unexpected token in JSON", "data"),
        ("Cannot parse response", "data"),
        ("Geolocation permission denied", "permission"),
        ("Access forbidden", "permission"),
        ("Something odd happened", "unknown"),
    ])
    def test_categories(self, message, category):
        assert classify_error(Exception(message)) == category

    def test_first_match_wins(self):
        # "network" is checked before "data"
        assert classify_error(Exception("network data missing")) == "network"

    def test_report(self):
        report = ErrorReport.from_exception(ValueError("bad JSON payload"))
        assert re.fullmatch(r"ERR_\d+_[a-z0-9]{9}", report.error_id)
        assert report.category == "data"
        assert report.suggestions == SUGGESTIONS["data"]
        assert report.error_type == "ValueError"

    def test_every_category_has_suggestions(self):
        for category in ("network", "render", "data", "permission", "unknown"):
            assert len(SUGGESTIONS[category]) == 4


class TestBoundary:

    def test_successful_render_passes_through(self):
        boundary = ErrorRecoveryController()
        assert boundary.render(count_points, HeatmapState()) == 0
        assert boundary.state == "normal"

    def test_failure_is_captured_and_reported(self):
        reported = []
        boundary = ErrorRecoveryController(reporter=lambda err, rep: reported.append((err, rep)))
        assert boundary.render(broken_render, HeatmapState()) is None

        assert boundary.state == "errored"
        assert boundary.report.category == "render"
        assert boundary.report.message == "WebGL context lost"
        [(error, report)] = reported
        assert isinstance(error, RenderFailure)
        assert error.code == "RENDER_FAILURE"
        assert isinstance(error.__cause__, RuntimeError)
        assert error.details["error_id"] == report.error_id
        assert boundary.error is error
        assert report is boundary.report
        assert report.error_type == "RuntimeError"

    def test_errored_boundary_does_not_render(self):
        calls = []
        boundary = ErrorRecoveryController()
        boundary.render(broken_render, HeatmapState())
        boundary.render(lambda s: calls.append(s), HeatmapState())
        assert calls == []

    def test_failing_reporter_is_contained(self):
        def reporter(_err, _rep):
            raise RuntimeError("telemetry down")

        boundary = ErrorRecoveryController(reporter=reporter)
        boundary.render(broken_render, HeatmapState())
        assert boundary.state == "errored"


class TestRetry:

    def test_retry_exhausts_at_max_retries(self):
        boundary = ErrorRecoveryController(max_retries=3)
        for attempt in range(1, 4):
            boundary.render(broken_render, HeatmapState())
            assert boundary.can_retry
            assert "retry" in boundary.available_actions()
            assert boundary.retry()
            assert boundary.retry_count == attempt
            assert boundary.state == "normal"

        boundary.render(broken_render, HeatmapState())
        assert not boundary.can_retry
        assert boundary.available_actions() == ("demo", "reload", "home")
        assert not boundary.retry()
        assert boundary.retry_count == 3
        assert boundary.state == "errored"

    def test_retry_only_when_errored(self):
        boundary = ErrorRecoveryController()
        assert not boundary.retry()
        assert boundary.retry_count == 0

    def test_retry_lets_tree_render_again(self):
        boundary = ErrorRecoveryController()
        boundary.render(broken_render, HeatmapState())
        boundary.retry()
        assert boundary.render(count_points, HeatmapState()) == 0

    def test_reset(self):
        boundary = ErrorRecoveryController(max_retries=1)
        boundary.render(broken_render, HeatmapState())
        boundary.retry()
        boundary.reset()
        assert boundary.retry_count == 0
        assert boundary.state == "normal"


class TestEscapeHatches:

    def test_demo_mode_renders_demo_dataset(self):
        boundary = ErrorRecoveryController()
        boundary.render(broken_render, HeatmapState())
        boundary.enter_demo_mode()

        rendered = boundary.render(lambda s: s, HeatmapState())
        assert boundary.state == "demo"
        assert rendered.demo_mode
        assert rendered.notice
        assert [p.id for p in rendered.data_points] == ["demo-1", "demo-2", "demo-3"]

    @pytest.mark.parametrize("action,target", [("reload", "reload"), ("go_home", "home")])
    def test_leaving_is_terminal(self, action, target):
        visited = []
        boundary = ErrorRecoveryController(navigator=visited.append)
        boundary.render(broken_render, HeatmapState())
        getattr(boundary, action)()

        assert visited == [target]
        assert boundary.state == "terminal"
        assert boundary.render(count_points, HeatmapState()) is None
        assert boundary.available_actions() == ()

    def test_snapshot(self):
        boundary = ErrorRecoveryController(max_retries=2)
        boundary.render(broken_render, HeatmapState())
        snap = boundary.snapshot()
        assert snap["state"] == "errored"
        assert snap["actions"] == ["retry", "demo", "reload", "home"]
        assert snap["report"]["category"] == "render"
