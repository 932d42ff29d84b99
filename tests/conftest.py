"""
pytest configuration and shared fixtures for the civic-heatmap tests.

Key concern: tests must not require a live analytics backend or push
server. We achieve this by:
  1. Running a small FastAPI app that impersonates the analytics backend
     (GET /api/heatmap/realtime) and wiring AnalyticsClient to it through
     httpx.ASGITransport.
  2. ScriptedClient for orchestrator ordering tests: every fetch parks on
     a future the test resolves, so responses can arrive in any order.
  3. FakeTransport / FakeConnector in place of a websockets connection.

Retry and reconnect delays are zeroed through env vars before
civic_heatmap.core.config is imported.
"""

import asyncio
import json
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from httpx import ASGITransport

# Set env vars BEFORE importing the package so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RETRY_DELAY", "0")
os.environ.setdefault("WS_RECONNECT_DELAY", "0.01")
os.environ.setdefault("WS_HEARTBEAT_INTERVAL", "0")
os.environ.setdefault("BOUNDS_DEBOUNCE_MS", "0")

from civic_heatmap.models.heatmap import HeatmapPayload, RegionBounds  # noqa: E402
from civic_heatmap.services.analytics_client import AnalyticsClient  # noqa: E402

BASE_URL = "http://test/api"

# sw [77.20, 28.61], ne [77.22, 28.62]
DELHI_BOUNDS = {"southwest": [77.20, 28.61], "northeast": [77.22, 28.62]}
MUMBAI_BOUNDS = {"southwest": [72.80, 18.90], "northeast": [72.90, 19.00]}


def make_point(pid: str, lat: float, lng: float, value: float = 0.5, category: str = "traffic") -> dict:
    return {
        "_id": pid,
        "location": {"type": "Point", "coordinates": [lng, lat]},
        "value": value,
        "metadata": {
            "category": category,
            "urgency": "medium",
            "title": f"Report {pid}",
            "timestamp": "2026-03-01T10:00:00Z",
        },
    }


SAMPLE_POINTS = [
    make_point("p1", 28.612, 77.205, 0.9, "traffic"),
    make_point("p2", 28.615, 77.210, 0.4, "water"),
    make_point("p3", 28.618, 77.215, 0.7, "electricity"),
]

SAMPLE_CLUSTER = {
    "clusterId": "c1",
    "centroid": {"type": "Point", "coordinates": [77.21, 28.615]},
    "pointCount": 3,
    "averageIntensity": 0.66,
    "radius": 150,
    "metadata": {"categories": ["traffic", "water", "electricity"]},
}

SAMPLE_ANOMALY = {
    "_id": "a1",
    "location": {"type": "Point", "coordinates": [77.215, 28.618]},
    "type": "spike",
    "severity": "high",
    "confidence": 0.92,
    "deviationScore": 3.1,
    "description": "Sudden rise in power outage reports",
}


def sample_payload(*ids: str) -> HeatmapPayload:
    """Payload with one point per id; distinguishes which response got applied."""
    return HeatmapPayload.model_validate({
        "dataPoints": [make_point(pid, 28.615, 77.21) for pid in ids],
        "clusters": [],
        "anomalies": [],
    })


# ── Fake analytics backend (FastAPI over ASGITransport) ───────────────────────

@dataclass
class BackendState:
    points: list[dict] = field(default_factory=lambda: list(SAMPLE_POINTS))
    clusters: list[dict] = field(default_factory=lambda: [SAMPLE_CLUSTER])
    anomalies: list[dict] = field(default_factory=lambda: [SAMPLE_ANOMALY])
    # statuses returned before a normal answer, one per request
    fail_statuses: list[int] = field(default_factory=list)
    fail_body: Optional[dict] = None
    body_override: Any = None
    raw_text: Optional[str] = None
    requests: list[dict[str, str]] = field(default_factory=list)


def build_backend(state: BackendState) -> FastAPI:
    app = FastAPI()

    @app.get("/api/heatmap/realtime")
    async def realtime(request: Request):
        params = dict(request.query_params)
        state.requests.append(params)

        if state.fail_statuses:
            status = state.fail_statuses.pop(0)
            body = state.fail_body or {
                "success": False,
                "error": {"code": "SERVER_ERROR", "message": f"backend failed with {status}"},
            }
            return JSONResponse(status_code=status, content=body)
        if state.raw_text is not None:
            return PlainTextResponse(state.raw_text)
        if state.body_override is not None:
            return JSONResponse(content=state.body_override)

        layers = params.get("layers", "points").split(",")
        return {
            "success": True,
            "data": {
                "dataPoints": state.points,
                "clusters": state.clusters if "clusters" in layers else [],
                "anomalies": state.anomalies if "anomalies" in layers else [],
                "metadata": {"totalCount": len(state.points)},
            },
        }

    return app


@pytest.fixture()
def backend() -> BackendState:
    return BackendState()


@pytest.fixture()
def analytics(backend) -> AnalyticsClient:
    """
    AnalyticsClient wired to the fake FastAPI backend.

    Usage:
        async def test_something(analytics, backend):
            payload = await analytics.fetch_heatmap(bounds, AnalyticsConfig())
            assert len(backend.requests) == 1
    """
    return AnalyticsClient(
        BASE_URL,
        transport=ASGITransport(app=build_backend(backend)),
        retry_attempts=1,
        retry_delay=0,
        enable_cache=True,
    )


@pytest.fixture()
def unavailable_client() -> AnalyticsClient:
    """AnalyticsClient whose every request fails at the connection level."""

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    return AnalyticsClient(BASE_URL, transport=httpx.MockTransport(refuse), retry_delay=0)


# ── Scripted client for ordering tests ────────────────────────────────────────

@dataclass
class PendingCall:
    bounds: RegionBounds
    config: Any
    use_cache: bool
    future: asyncio.Future

    def resolve(self, payload: HeatmapPayload) -> None:
        if not self.future.done():
            self.future.set_result(payload)

    def fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)


class ScriptedClient:
    """Stands in for AnalyticsClient; each fetch waits until the test resolves it."""

    def __init__(self) -> None:
        self.calls: list[PendingCall] = []

    async def fetch_heatmap(self, bounds, config, *, use_cache=True):
        call = PendingCall(bounds, config, use_cache, asyncio.get_running_loop().create_future())
        self.calls.append(call)
        # shield: a superseded fetch may still be resolved by the test afterwards
        return await asyncio.shield(call.future)


@pytest.fixture()
def scripted() -> ScriptedClient:
    return ScriptedClient()


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ── Fake push transport ───────────────────────────────────────────────────────

_CLOSED = object()


class FakeTransport:
    def __init__(self, send_delay: float = 0) -> None:
        self.send_delay = send_delay
        self.sent: list[dict] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("transport closed")
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        item = await self.inbox.get()
        if item is _CLOSED:
            raise ConnectionError("connection closed by server")
        return item

    async def close(self) -> None:
        self.closed = True

    def push(self, frame: dict) -> None:
        self.inbox.put_nowait(json.dumps(frame))

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self.inbox.put_nowait(_CLOSED)

    def frames(self, frame_type: str) -> list[dict]:
        return [f for f in self.sent if f.get("type") == frame_type]


class FakeConnector:
    def __init__(self, fail_times: int = 0, send_delay: float = 0) -> None:
        self.fail_times = fail_times
        self.send_delay = send_delay
        self.transports: list[FakeTransport] = []

    async def __call__(self) -> FakeTransport:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionRefusedError("Connection refused")
        transport = FakeTransport(self.send_delay)
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture()
def connector() -> FakeConnector:
    return FakeConnector()
