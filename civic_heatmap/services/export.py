"""
export.py — Serialise the in-memory heatmap snapshot.

Exports always describe what is currently on screen (the orchestrator's
snapshot), never a fresh query. Three formats:

  json     camelCase dataset + export metadata
  csv      one row per data point
  geojson  FeatureCollection; points, clusters and anomalies are all
           Feature<Point> with the entity fields in `properties`
"""

import csv
import io
import json
from datetime import date, datetime, timezone
from typing import Any, Optional

from civic_heatmap.core.errors import ExportError
from civic_heatmap.models.heatmap import (
    Coordinates,
    HeatmapAnomaly,
    HeatmapCluster,
    HeatmapDataPoint,
    HeatmapState,
)

EXPORT_FORMATS = ("json", "csv", "geojson")

CSV_COLUMNS = [
    "id", "latitude", "longitude", "value", "timestamp",
    "category", "urgency", "status", "title",
]


def export_snapshot(state: HeatmapState, fmt: str, *, now: Optional[datetime] = None) -> str:
    """Serialise `state` to `fmt`. Raises ExportError for empty snapshots or unknown formats."""
    if fmt not in EXPORT_FORMATS:
        raise ExportError(f"Unsupported export format {fmt!r} (expected one of {', '.join(EXPORT_FORMATS)})")
    if state.is_empty:
        raise ExportError("Nothing to export: the current snapshot is empty")

    if fmt == "json":
        return to_json(state, now=now)
    if fmt == "csv":
        return to_csv(state.data_points)
    return to_geojson(state)


def export_filename(fmt: str, today: Optional[date] = None) -> str:
    today = today or datetime.now(tz=timezone.utc).date()
    return f"heatmap-data-{today.isoformat()}.{fmt}"


# ── Formats ───────────────────────────────────────────────────────────────────

def to_json(state: HeatmapState, *, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(tz=timezone.utc)
    document = {
        **state.payload().model_dump(mode="json", by_alias=True),
        "metadata": {
            "totalCount": len(state.data_points),
            "bounds": state.bounds.model_dump(mode="json") if state.bounds else None,
            "demoMode": state.demo_mode,
            "exportedAt": now.isoformat(),
        },
    }
    return json.dumps(document, indent=2)


def to_csv(points: tuple[HeatmapDataPoint, ...]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for point in points:
        writer.writerow([
            point.id,
            point.coordinates.latitude,
            point.coordinates.longitude,
            point.value,
            point.timestamp.isoformat() if point.timestamp else "",
            point.metadata.category,
            point.metadata.urgency,
            point.metadata.status,
            point.metadata.title,
        ])
    return buffer.getvalue()


def to_geojson(state: HeatmapState) -> str:
    features = [_point_feature(p) for p in state.data_points]
    features += [_cluster_feature(c) for c in state.clusters]
    features += [_anomaly_feature(a) for a in state.anomalies]
    return json.dumps({"type": "FeatureCollection", "features": features}, indent=2)


def _feature(where: Coordinates, properties: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "Feature",
        # GeoJSON positions are [lng, lat]
        "geometry": {"type": "Point", "coordinates": [where.longitude, where.latitude]},
        "properties": properties,
    }


def _point_feature(point: HeatmapDataPoint) -> dict[str, Any]:
    return _feature(point.coordinates, {
        "kind": "point",
        "id": point.id,
        "value": point.value,
        "timestamp": point.timestamp.isoformat() if point.timestamp else None,
        **point.metadata.model_dump(mode="json", by_alias=True),
    })


def _cluster_feature(cluster: HeatmapCluster) -> dict[str, Any]:
    return _feature(cluster.center, {
        **cluster.metadata.model_dump(mode="json", by_alias=True),
        "kind": "cluster",
        "id": cluster.id,
        "pointCount": cluster.point_count,
        "averageIntensity": cluster.average_intensity,
        "radius": cluster.radius,
    })


def _anomaly_feature(anomaly: HeatmapAnomaly) -> dict[str, Any]:
    properties = anomaly.model_dump(mode="json", by_alias=True, exclude={"coordinates"})
    return _feature(anomaly.coordinates, {"kind": "anomaly", **properties})
