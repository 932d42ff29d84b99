"""
demo_data.py — The fixed synthetic dataset shown when the backend is down.

Both the orchestrator (backend unavailable) and the error recovery
controller ("Demo mode" button) render this same dataset, so a user sees
identical sample data whichever path led them there.

Three reports in central Delhi, one each for traffic, electricity and
water with distinct urgencies, plus one cluster aggregating them.
Only the timestamps move (relative to `now`); ids, positions and values
are constant.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from civic_heatmap.models.heatmap import HeatmapPayload

DEMO_NOTICE = "Demo mode: using sample data (backend unavailable)"

_DEMO_POINTS = [
    # (id, lat, lng, value, age_hours, category, urgency, title, description, status)
    ("demo-1", 28.6139, 77.2090, 0.8, 0, "traffic", "high",
     "Heavy Traffic Congestion", "Major traffic jam reported on main road", "open"),
    ("demo-2", 28.6150, 77.2100, 0.6, 1, "electricity", "medium",
     "Street Light Not Working", "Street light has been out for 2 days", "in_progress"),
    ("demo-3", 28.6160, 77.2110, 0.9, 2, "water", "critical",
     "Water Pipe Burst", "Major water leak causing flooding", "open"),
]

_DEMO_CLUSTER = {
    "id": "demo-cluster-1",
    "center": {"latitude": 28.6145, "longitude": 77.2095},
    "pointCount": 5,
    "averageIntensity": 0.7,
    "radius": 200,
    "metadata": {"categories": ["traffic", "electricity", "water"]},
}


def demo_payload(now: Optional[datetime] = None) -> HeatmapPayload:
    """Build the demo dataset. `now` anchors the report timestamps."""
    now = now or datetime.now(tz=timezone.utc)
    points = [
        {
            "id": pid,
            "coordinates": {"latitude": lat, "longitude": lng},
            "value": value,
            "timestamp": now - timedelta(hours=age),
            "metadata": {
                "category": category,
                "urgency": urgency,
                "title": title,
                "description": description,
                "status": status,
            },
        }
        for pid, lat, lng, value, age, category, urgency, title, description, status in _DEMO_POINTS
    ]
    return HeatmapPayload.model_validate(
        {"dataPoints": points, "clusters": [_DEMO_CLUSTER], "anomalies": []}
    )
