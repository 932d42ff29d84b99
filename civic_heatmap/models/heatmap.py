"""
heatmap.py — Pydantic models for the heatmap analytics client.

Wire models
───────────
The analytics backend speaks camelCase JSON (dataPoints, pointCount,
averageIntensity, ...). Every wire model uses a camelCase alias generator
with populate_by_name=True, so Python code can build them with snake_case
keyword arguments and payloads validate straight from the JSON.

Coordinates arrive in three shapes depending on the endpoint:

  {"latitude": 28.61, "longitude": 77.20}                   ← demo / legacy
  [77.20, 28.61]                                            ← [lng, lat] array
  {"type": "Point", "coordinates": [77.20, 28.61]}          ← GeoJSON (location / centroid)

All three normalise to a Coordinates instance.

Ownership
─────────
Entities are frozen: a snapshot received from the backend is never
patched in place. The orchestrator replaces the whole HeatmapState (and
its entity tuples) on every change, so a listener never sees a half
applied update.
"""

import json
from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


LayerName = Literal["heatmap", "clusters", "points", "all"]
EntityKind = Literal["point", "cluster", "anomaly"]
FetchStatus = Literal["idle", "loading", "ready", "error"]
ConnectionStatus = Literal["connecting", "connected", "disconnected", "error"]


class WireModel(BaseModel):
    """Base for models that round-trip through the backend's camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


def _coerce_coordinates(value: Any) -> Any:
    """Normalise the accepted coordinate shapes to a latitude/longitude dict."""
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return {"longitude": value[0], "latitude": value[1]}
    if isinstance(value, dict):
        if "coordinates" in value:
            return _coerce_coordinates(value["coordinates"])
        if "lat" in value and "lng" in value:
            return {"latitude": value["lat"], "longitude": value["lng"]}
    return value


# ── Geometry ──────────────────────────────────────────────────────────────────

class Coordinates(WireModel):
    latitude: float
    longitude: float


class RegionBounds(WireModel):
    """
    A rectangular region: southwest and northeast corners as (lon, lat).

    Construction does NOT enforce the geographic constraints; that is the
    bounds validator's job (services/bounds.py), which logs and keeps the
    previous bounds instead of raising.
    """

    southwest: tuple[float, float]  # (lng, lat)
    northeast: tuple[float, float]  # (lng, lat)

    @classmethod
    def from_edges(cls, west: float, south: float, east: float, north: float) -> "RegionBounds":
        return cls(southwest=(west, south), northeast=(east, north))

    @property
    def west(self) -> float:
        return self.southwest[0]

    @property
    def south(self) -> float:
        return self.southwest[1]

    @property
    def east(self) -> float:
        return self.northeast[0]

    @property
    def north(self) -> float:
        return self.northeast[1]

    @property
    def center(self) -> tuple[float, float]:
        """(lng, lat) midpoint."""
        return ((self.west + self.east) / 2, (self.south + self.north) / 2)

    def contains(self, latitude: float, longitude: float) -> bool:
        return self.south <= latitude <= self.north and self.west <= longitude <= self.east

    def to_query(self) -> str:
        """Query-string form expected by the backend: [[w, s], [e, n]]."""
        return json.dumps([list(self.southwest), list(self.northeast)])


# ── Entities ──────────────────────────────────────────────────────────────────

class PointMetadata(WireModel):
    """Free-form report metadata. Unknown backend fields are kept as extras."""

    model_config = ConfigDict(extra="allow")

    category: str = "other"      # traffic | flooding | electricity | water | waste | pothole | streetlight | other
    urgency: str = "low"         # low | medium | high | critical | emergency
    title: str = ""
    description: str = ""
    status: str = "reported"     # reported | verified | acknowledged | in_progress | resolved | closed | open

    @field_validator("description", "title", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class HeatmapDataPoint(WireModel):
    """A single geo-positioned civic issue report."""

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    coordinates: Coordinates
    value: float = 0.0           # scalar intensity, 0–1
    timestamp: Optional[datetime] = None
    metadata: PointMetadata = Field(default_factory=PointMetadata)

    @model_validator(mode="before")
    @classmethod
    def _locate(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("coordinates") is None and "location" in data:
            data["coordinates"] = data["location"]
        if data.get("timestamp") is None and isinstance(data.get("metadata"), dict):
            data["timestamp"] = data["metadata"].get("timestamp")
        return data

    @field_validator("coordinates", mode="before")
    @classmethod
    def _coords(cls, value: Any) -> Any:
        return _coerce_coordinates(value)


class ClusterMetadata(WireModel):
    model_config = ConfigDict(extra="allow")

    categories: tuple[str, ...] = ()


class HeatmapCluster(WireModel):
    """A backend-computed aggregation of nearby points."""

    id: str = Field(validation_alias=AliasChoices("id", "_id", "clusterId"))
    center: Coordinates
    point_count: int = 0
    average_intensity: float = 0.0
    radius: float = 0.0          # metres
    metadata: ClusterMetadata = Field(default_factory=ClusterMetadata)

    @model_validator(mode="before")
    @classmethod
    def _locate(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("center") is None and "centroid" in data:
            data = {**data, "center": data["centroid"]}
        return data

    @field_validator("center", mode="before")
    @classmethod
    def _coords(cls, value: Any) -> Any:
        return _coerce_coordinates(value)


class HeatmapAnomaly(WireModel):
    """An entity the backend flagged as statistically unusual."""

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    coordinates: Coordinates
    anomaly_type: str = Field(
        default="spike",
        validation_alias=AliasChoices("anomalyType", "anomaly_type", "type"),
        serialization_alias="anomalyType",
    )
    severity: str = "medium"     # low | medium | high | critical
    confidence: float = 0.0
    deviation_score: float = 0.0
    description: str = ""
    detected_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("detectedAt", "detected_at", "timestamp"),
        serialization_alias="detectedAt",
    )

    @model_validator(mode="before")
    @classmethod
    def _locate(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("coordinates") is not None:
            return data
        for key in ("location", "center"):
            if key in data:
                return {**data, "coordinates": data[key]}
        return data

    @field_validator("coordinates", mode="before")
    @classmethod
    def _coords(cls, value: Any) -> Any:
        return _coerce_coordinates(value)


HeatmapEntity = Union[HeatmapDataPoint, HeatmapCluster, HeatmapAnomaly]


class HeatmapPayload(WireModel):
    """One query result: everything the backend returned for a bounds+config request."""

    data_points: tuple[HeatmapDataPoint, ...] = ()
    clusters: tuple[HeatmapCluster, ...] = ()
    anomalies: tuple[HeatmapAnomaly, ...] = ()

    @classmethod
    def from_response(cls, body: Any) -> "HeatmapPayload":
        """Accept either the {success, data: {...}} envelope or a bare data object."""
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        return cls.model_validate(body)

    @field_validator("data_points", "clusters", "anomalies", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return () if value is None else value


# ── Configuration records ─────────────────────────────────────────────────────

class AnalyticsConfig(WireModel):
    """Toggles for backend-side computations and the client poll cadence."""

    enable_clustering: bool = True
    enable_anomaly_detection: bool = True
    enable_trends: bool = True
    enable_predictions: bool = False
    historical_depth: int = 30          # days
    refresh_interval: int = 300_000     # ms


class RealtimeConfig(WireModel):
    enabled: bool = True
    update_interval: int = 30_000       # ms between auto-refresh polls
    auto_refresh: bool = True
    push_notifications: bool = False
    anomaly_alerts: bool = True
    prediction_updates: bool = False


class LayerVisibility(BaseModel):
    model_config = ConfigDict(frozen=True)

    heatmap: bool = True
    clusters: bool = True
    points: bool = True
    boundaries: bool = True


class VisualizationState(WireModel):
    """Display parameters. Changed only through the orchestrator's update_visualization."""

    layers: LayerVisibility = Field(default_factory=LayerVisibility)
    selected_layer: LayerName = "all"
    color_scheme: str = "viridis"       # viridis | plasma | magma | inferno | turbo | custom
    opacity: float = 0.8
    radius: float = 20
    blur: float = 15
    cluster_radius: float = 50
    show_labels: bool = True


# ── Interaction state ─────────────────────────────────────────────────────────

class SelectionState(BaseModel):
    """At most one selected entity."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["point", "cluster", "anomaly", "none"] = "none"
    entity: Optional[HeatmapEntity] = None


class TooltipState(BaseModel):
    model_config = ConfigDict(frozen=True)

    visible: bool = False
    x: float = 0
    y: float = 0
    kind: Optional[EntityKind] = None
    entity: Optional[HeatmapEntity] = None


# ── Orchestrator snapshot ─────────────────────────────────────────────────────

class HeatmapState(BaseModel):
    """
    The single authoritative snapshot owned by HeatmapOrchestrator.

    Replaced wholesale (model_copy) on every change, so listeners always get
    an internally consistent object.
    """

    model_config = ConfigDict(frozen=True)

    status: FetchStatus = "idle"
    bounds: Optional[RegionBounds] = None
    data_points: tuple[HeatmapDataPoint, ...] = ()
    clusters: tuple[HeatmapCluster, ...] = ()
    anomalies: tuple[HeatmapAnomaly, ...] = ()
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    visualization: VisualizationState = Field(default_factory=VisualizationState)
    selection: SelectionState = Field(default_factory=SelectionState)
    error: Optional[str] = None       # dismissible error banner text
    notice: Optional[str] = None      # dismissible soft notice (demo mode)
    demo_mode: bool = False
    last_updated: Optional[datetime] = None
    update_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.data_points or self.clusters or self.anomalies)

    @property
    def is_loading(self) -> bool:
        return self.status == "loading"

    def payload(self) -> HeatmapPayload:
        return HeatmapPayload(
            data_points=self.data_points,
            clusters=self.clusters,
            anomalies=self.anomalies,
        )


# ── Push transport frames ─────────────────────────────────────────────────────

class UpdateEvent(WireModel):
    """
    A "data may be stale" signal for one subscription.

    Any data the frame carries is ignored on purpose; the orchestrator
    answers with a full refetch.
    """

    type: str = "data_update"
    subscription_id: str
    region_id: Optional[str] = None
    timestamp: Optional[datetime] = None


class Notification(WireModel):
    """Displayable push notification (e.g. anomaly alert)."""

    id: Optional[str] = None
    type: str = "info"          # info | warning | error | anomaly_detected | trend_alert | system_update
    region_id: Optional[str] = None
    title: str = ""
    message: str = ""
    severity: str = "low"       # low | medium | high | critical
    timestamp: Optional[datetime] = None
    data: Any = None
