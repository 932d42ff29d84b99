"""
AnalyticsClient — Async wrapper around the analytics/query backend.

One operation matters to the rest of the client:

    payload = await analytics_client.fetch_heatmap(bounds, config)

which issues GET {base}/heatmap/realtime and returns a HeatmapPayload
(dataPoints + clusters + anomalies). Clustering and anomaly detection are
computed by the backend; the flags in AnalyticsConfig just ask for them.

Failure translation (see core/errors.py):
  - connection refused / DNS / timeout  → BackendUnavailableError
  - 408 / 429 / 5xx                     → retried with exponential backoff,
                                          then QueryError
  - other 4xx, success=false, bad JSON  → QueryError

Responses are cached for `cache_ttl` seconds keyed on path + params, so
panning back to a region seen a moment ago does not hit the backend.
Pass use_cache=False to force a fresh query (realtime refetches do).
"""

import asyncio
import json
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, TypeVar

import httpx
import pydantic

from civic_heatmap.core.config import settings
from civic_heatmap.core.errors import BackendUnavailableError, QueryError
from civic_heatmap.models.heatmap import AnalyticsConfig, HeatmapPayload, RegionBounds

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEATMAP_PATH = "/heatmap/realtime"

# Statuses worth another attempt; everything else fails immediately.
_RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}


class ResponseCache:
    """Small TTL cache; evicts the oldest entry once max_size is reached."""

    def __init__(self, max_size: int = 100) -> None:
        self.max_size = max_size
        self._entries: "OrderedDict[str, tuple[float, Any]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (time.monotonic() + ttl, value)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }


class AnalyticsClient:
    """
    Thin async client for the analytics backend.

    `transport` is handed to httpx.AsyncClient; tests pass an
    httpx.ASGITransport (fake FastAPI backend) or httpx.MockTransport.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        enable_cache: Optional[bool] = None,
        cache_ttl: Optional[float] = None,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.analytics_base_url).rstrip("/")
        self.timeout = settings.request_timeout if timeout is None else timeout
        self.retry_attempts = settings.retry_attempts if retry_attempts is None else retry_attempts
        self.retry_delay = settings.retry_delay if retry_delay is None else retry_delay
        self.enable_cache = settings.enable_cache if enable_cache is None else enable_cache
        self.cache_ttl = settings.cache_ttl if cache_ttl is None else cache_ttl
        self.auth_token = settings.auth_token if auth_token is None else auth_token
        self.cache = ResponseCache()
        self._transport = transport

        self.total_requests = 0
        self.failed_requests = 0
        self.last_latency_ms = 0.0

    # ── Public API ──────────────────────────────────────────────────────────

    async def fetch_heatmap(
        self,
        bounds: RegionBounds,
        config: AnalyticsConfig,
        *,
        use_cache: bool = True,
    ) -> HeatmapPayload:
        """Query points, clusters and anomalies for a region."""
        params = self.build_params(bounds, config)
        return await self._get(HEATMAP_PATH, params, use_cache=use_cache, parse=self._parse_heatmap)

    @staticmethod
    def _parse_heatmap(body: Any) -> HeatmapPayload:
        if isinstance(body, dict) and body.get("success") is False:
            error = body.get("error") or {}
            raise QueryError(
                error.get("message") or "Analytics query failed",
                code=error.get("code"),
                details=error.get("details"),
            )

        try:
            return HeatmapPayload.from_response(body)
        except pydantic.ValidationError as exc:
            logger.error("Malformed heatmap payload: %s", exc)
            raise QueryError(
                "Malformed heatmap data in backend response",
                code="INVALID_RESPONSE",
                details=exc.errors(include_url=False),
            ) from exc

    @staticmethod
    def build_params(bounds: RegionBounds, config: AnalyticsConfig) -> dict[str, Any]:
        layers = ["points"]
        if config.enable_clustering:
            layers.append("clusters")
        if config.enable_anomaly_detection:
            layers.append("anomalies")
        if config.enable_predictions:
            layers.append("predictions")
        return {
            "bounds": bounds.to_query(),
            "layers": ",".join(layers),
            **config.model_dump(by_alias=True, exclude={"refresh_interval"}),
        }

    def performance_stats(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "error_rate": self.failed_requests / self.total_requests if self.total_requests else 0.0,
            "network_latency_ms": self.last_latency_ms,
            "cache": self.cache.stats(),
        }

    # ── Internals ───────────────────────────────────────────────────────────

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def _get(
        self,
        path: str,
        params: dict[str, Any],
        *,
        use_cache: bool,
        parse: Callable[[Any], T],
    ) -> T:
        cache_key = f"{path}:{json.dumps(params, sort_keys=True)}"
        caching = use_cache and self.enable_cache
        if caching:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug("Cache hit for %s", cache_key)
                return cached

        body = await self._request_with_retry(path, params)
        # Only parsed results are stored; refreshed entries are stored even
        # when the read bypassed the cache.
        result = parse(body)
        if self.enable_cache:
            self.cache.set(cache_key, result, self.cache_ttl)
        return result

    async def _request_with_retry(self, path: str, params: dict[str, Any]) -> Any:
        attempt = 0
        while True:
            started = time.perf_counter()
            self.total_requests += 1
            try:
                async with httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=self.timeout,
                    headers=self._headers(),
                    transport=self._transport,
                ) as client:
                    response = await client.get(path, params=params)
                    response.raise_for_status()
                    self.last_latency_ms = (time.perf_counter() - started) * 1000
                    return response.json()

            except httpx.HTTPStatusError as exc:
                self.failed_requests += 1
                status = exc.response.status_code
                if status in _RETRYABLE_STATUSES and attempt < self.retry_attempts:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(
                        "Analytics %s returned %s, retrying in %.2fs (attempt %d)",
                        path, status, delay, attempt + 1,
                    )
                    attempt += 1
                    await asyncio.sleep(delay)
                    continue
                raise self._status_error(exc) from exc

            except httpx.TransportError as exc:
                # Network-level failures are not retried; demo mode answers faster.
                self.failed_requests += 1
                logger.warning("Analytics backend unreachable at %s: %s", self.base_url, exc)
                raise BackendUnavailableError(
                    f"Backend server unavailable: {str(exc) or type(exc).__name__}"
                ) from exc

            except ValueError as exc:
                # response.json() on a non-JSON body
                self.failed_requests += 1
                logger.error("Analytics %s returned a non-JSON body: %s", path, exc)
                raise QueryError("Backend returned invalid JSON", code="INVALID_RESPONSE") from exc

    @staticmethod
    def _status_error(exc: httpx.HTTPStatusError) -> QueryError:
        response = exc.response
        try:
            body = response.json()
        except ValueError:
            body = None

        message, code = None, None
        if isinstance(body, dict):
            error = body.get("error") if isinstance(body.get("error"), dict) else body
            message = error.get("message") or body.get("detail")
            message = str(message) if message else None
            code = error.get("code")

        logger.error("Analytics API error: %s: %s", response.status_code, response.text[:200])
        return QueryError(
            message or f"Analytics request failed with HTTP {response.status_code}",
            status=response.status_code,
            code=code,
            details=body,
        )


# Module-level singleton
analytics_client = AnalyticsClient()
