"""
bounds.py — Geographic bounds validation and helpers.

validate_bounds() is the only gate between viewport interaction and the
fetch layer. It never raises: a rejected candidate is logged and the
previous bounds are returned unchanged.

    from civic_heatmap.services.bounds import validate_bounds

    current = validate_bounds({"southwest": [77.20, 28.61],
                               "northeast": [77.22, 28.62]}, previous=current)
"""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, Optional

import pydantic

from civic_heatmap.core.errors import ValidationError
from civic_heatmap.models.heatmap import HeatmapDataPoint, RegionBounds

logger = logging.getLogger(__name__)

_LON_RANGE = (-180.0, 180.0)
_LAT_RANGE = (-90.0, 90.0)


def _coerce(candidate: Any) -> RegionBounds:
    """Turn a RegionBounds / mapping / 4-tuple of edges into RegionBounds."""
    if isinstance(candidate, RegionBounds):
        return candidate
    if isinstance(candidate, (list, tuple)) and len(candidate) == 4:
        west, south, east, north = candidate
        candidate = {"southwest": (west, south), "northeast": (east, north)}
    try:
        return RegionBounds.model_validate(candidate)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Unreadable bounds: {candidate!r}", details=exc.errors()) from exc


def check_bounds(candidate: Any) -> RegionBounds:
    """
    Normalise and validate a candidate region.

    Raises ValidationError when any coordinate is non-finite or outside the
    lon/lat ranges, or when southwest is not strictly below northeast on
    both axes.
    """
    bounds = _coerce(candidate)
    values = (*bounds.southwest, *bounds.northeast)
    if not all(math.isfinite(v) for v in values):
        raise ValidationError(f"Non-finite coordinate in bounds: {values}")

    for lon, lat in (bounds.southwest, bounds.northeast):
        if not _LON_RANGE[0] <= lon <= _LON_RANGE[1]:
            raise ValidationError(f"Longitude {lon} outside [-180, 180]")
        if not _LAT_RANGE[0] <= lat <= _LAT_RANGE[1]:
            raise ValidationError(f"Latitude {lat} outside [-90, 90]")

    if not (bounds.west < bounds.east and bounds.south < bounds.north):
        raise ValidationError(
            f"Southwest {bounds.southwest} must be strictly below northeast {bounds.northeast}"
        )

    return RegionBounds(
        southwest=(float(bounds.west), float(bounds.south)),
        northeast=(float(bounds.east), float(bounds.north)),
    )


def is_valid_bounds(candidate: Any) -> bool:
    try:
        check_bounds(candidate)
    except ValidationError:
        return False
    return True


def validate_bounds(candidate: Any, previous: Optional[RegionBounds] = None) -> Optional[RegionBounds]:
    """Return the normalised candidate, or `previous` (with a warning) if it is invalid."""
    try:
        return check_bounds(candidate)
    except ValidationError as exc:
        logger.warning("Invalid bounds detected, skipping update: %s", exc.message)
        return previous


# ── Helpers ──────────────────────────────────────────────────────────────────

def expand_bounds(bounds: RegionBounds, percentage: float = 0.1) -> RegionBounds:
    """Grow a region by `percentage` of its span on every side, clamped to valid ranges."""
    lng_pad = (bounds.east - bounds.west) * percentage
    lat_pad = (bounds.north - bounds.south) * percentage
    return RegionBounds(
        southwest=(max(bounds.west - lng_pad, _LON_RANGE[0]), max(bounds.south - lat_pad, _LAT_RANGE[0])),
        northeast=(min(bounds.east + lng_pad, _LON_RANGE[1]), min(bounds.north + lat_pad, _LAT_RANGE[1])),
    )


def data_bounds(points: Iterable[HeatmapDataPoint]) -> Optional[RegionBounds]:
    """Smallest region containing every point, or None for an empty input."""
    lats, lngs = [], []
    for point in points:
        lats.append(point.coordinates.latitude)
        lngs.append(point.coordinates.longitude)
    if not lats:
        return None
    return RegionBounds(southwest=(min(lngs), min(lats)), northeast=(max(lngs), max(lats)))
