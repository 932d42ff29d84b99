"""
test_bounds.py — Bounds validation and geometry helpers.

Run:
    pytest tests/test_bounds.py -v
"""

import logging
import math

import pytest

from civic_heatmap.core.errors import ValidationError
from civic_heatmap.models.heatmap import HeatmapDataPoint, RegionBounds
from civic_heatmap.services.bounds import (
    check_bounds,
    data_bounds,
    expand_bounds,
    is_valid_bounds,
    validate_bounds,
)

PREVIOUS = RegionBounds.from_edges(77.20, 28.61, 77.22, 28.62)


# ── validate_bounds ──────────────────────────────────────────────────────────

class TestValidateBounds:

    def test_accepts_mapping(self):
        bounds = validate_bounds({"southwest": [72.8, 18.9], "northeast": [72.9, 19.0]})
        assert bounds == RegionBounds(southwest=(72.8, 18.9), northeast=(72.9, 19.0))

    def test_accepts_four_edges(self):
        assert validate_bounds((77.20, 28.61, 77.22, 28.62)) == PREVIOUS

    def test_accepts_region_bounds_instance(self):
        assert validate_bounds(PREVIOUS) == PREVIOUS

    def test_normalises_ints_to_floats(self):
        bounds = validate_bounds({"southwest": [0, 0], "northeast": [1, 1]})
        assert all(isinstance(v, float) for v in (*bounds.southwest, *bounds.northeast))

    def test_result_is_frozen(self):
        bounds = validate_bounds(PREVIOUS)
        with pytest.raises(Exception):
            bounds.southwest = (0.0, 0.0)

    @pytest.mark.parametrize("candidate", [
        # west >= east
        {"southwest": [77.22, 28.61], "northeast": [77.20, 28.62]},
        {"southwest": [77.20, 28.61], "northeast": [77.20, 28.62]},
        # south >= north
        {"southwest": [77.20, 28.62], "northeast": [77.22, 28.61]},
        # out of range
        {"southwest": [-181.0, 10.0], "northeast": [10.0, 20.0]},
        {"southwest": [10.0, 10.0], "northeast": [181.0, 20.0]},
        {"southwest": [10.0, -91.0], "northeast": [20.0, 20.0]},
        {"southwest": [10.0, 10.0], "northeast": [20.0, 90.5]},
        # non-finite / non-numeric
        {"southwest": [math.nan, 10.0], "northeast": [20.0, 20.0]},
        {"southwest": [10.0, 10.0], "northeast": [math.inf, 20.0]},
        {"southwest": ["west", 10.0], "northeast": [20.0, 20.0]},
        {"southwest": [10.0], "northeast": [20.0, 20.0]},
        None,
        "77.2,28.6,77.3,28.7",
    ])
    def test_invalid_returns_previous_unchanged(self, candidate):
        assert validate_bounds(candidate, previous=PREVIOUS) is PREVIOUS

    def test_invalid_without_previous_returns_none(self):
        assert validate_bounds({"southwest": [1, 1], "northeast": [0, 0]}) is None

    def test_rejection_is_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="civic_heatmap.services.bounds"):
            validate_bounds({"southwest": [1, 1], "northeast": [0, 0]}, previous=PREVIOUS)
        assert "Invalid bounds detected" in caplog.text

    def test_extreme_but_valid_ranges_accepted(self):
        assert validate_bounds((-180, -90, 180, 90)) == RegionBounds(
            southwest=(-180.0, -90.0), northeast=(180.0, 90.0)
        )


class TestCheckBounds:

    def test_raises_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            check_bounds({"southwest": [5, 5], "northeast": [4, 6]})
        assert exc_info.value.code == "INVALID_BOUNDS"

    def test_is_valid_bounds(self):
        assert is_valid_bounds(PREVIOUS)
        assert not is_valid_bounds((10, 10, 5, 20))


# ── Helpers ──────────────────────────────────────────────────────────────────

class TestBoundsHelpers:

    def test_edge_properties_and_center(self):
        assert (PREVIOUS.west, PREVIOUS.south, PREVIOUS.east, PREVIOUS.north) == (77.20, 28.61, 77.22, 28.62)
        lng, lat = PREVIOUS.center
        assert lng == pytest.approx(77.21)
        assert lat == pytest.approx(28.615)

    def test_contains(self):
        assert PREVIOUS.contains(28.615, 77.21)
        assert not PREVIOUS.contains(28.70, 77.21)

    def test_to_query_is_lng_lat_pairs(self):
        assert PREVIOUS.to_query() == "[[77.2, 28.61], [77.22, 28.62]]"

    def test_expand_bounds_grows_every_side(self):
        bounds = RegionBounds.from_edges(0, 0, 10, 10)
        expanded = expand_bounds(bounds, 0.1)
        assert expanded == RegionBounds.from_edges(-1, -1, 11, 11)

    def test_expand_bounds_clamps_to_world(self):
        expanded = expand_bounds(RegionBounds.from_edges(-179, -89, 179, 89), 0.5)
        assert expanded.west == -180 and expanded.east == 180
        assert expanded.south == -90 and expanded.north == 90

    def test_data_bounds(self):
        points = [
            HeatmapDataPoint(id="a", coordinates={"latitude": 28.61, "longitude": 77.20}),
            HeatmapDataPoint(id="b", coordinates={"latitude": 28.62, "longitude": 77.25}),
        ]
        assert data_bounds(points) == RegionBounds.from_edges(77.20, 28.61, 77.25, 28.62)

    def test_data_bounds_empty(self):
        assert data_bounds([]) is None
