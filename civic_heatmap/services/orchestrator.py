"""
orchestrator.py — The Data Fetch Orchestrator.

HeatmapOrchestrator owns the single authoritative HeatmapState snapshot
(points, clusters, anomalies, configs, visualization, selection) and the
action set every other component goes through to change it.

STATE MACHINE
─────────────
    idle ──► loading ──► ready
                │  ▲       │
                ▼  └───────┤   any bounds/config change
              error ◄──────┘

While loading, the previous snapshot stays in place (stale-while-
revalidate): only `status` flips, the entity tuples are untouched until a
response is applied in one model_copy().

ORDERING
────────
Every bounds/config change bumps a generation counter and cancels the
in-flight fetch. A response is applied only if its generation is still
current, so a slow answer for old bounds can never overwrite newer data.
refetch() does not bump the generation: if a fetch for the current
generation is already running it is returned as-is (realtime signals
coalesce with user refreshes).

FAILURES
────────
  BackendUnavailableError → status "ready" with the fixed demo dataset,
                            demo_mode=True and a dismissible notice
  any other HeatmapError  → status "error", raw message in `error`,
                            last good snapshot retained
Nothing raised by the analytics client escapes an action.

All actions must be called from the running event loop.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from civic_heatmap.core.config import settings
from civic_heatmap.core.errors import BackendUnavailableError, HeatmapError
from civic_heatmap.models.heatmap import (
    AnalyticsConfig,
    HeatmapAnomaly,
    HeatmapCluster,
    HeatmapDataPoint,
    HeatmapPayload,
    HeatmapState,
    RealtimeConfig,
    RegionBounds,
    SelectionState,
    VisualizationState,
)
from civic_heatmap.services.analytics_client import AnalyticsClient, analytics_client
from civic_heatmap.services.bounds import validate_bounds
from civic_heatmap.services.demo_data import DEMO_NOTICE, demo_payload
from civic_heatmap.services.export import export_snapshot
from civic_heatmap.services.layers import LAYER_NAMES, resolve_layer_visibility

logger = logging.getLogger(__name__)

StateListener = Callable[[HeatmapState], None]


class HeatmapOrchestrator:
    def __init__(
        self,
        client: Optional[AnalyticsClient] = None,
        *,
        bounds: Any = None,
        analytics: Optional[AnalyticsConfig] = None,
        realtime: Optional[RealtimeConfig] = None,
        visualization: Optional[VisualizationState] = None,
        demo_on_unavailable: Optional[bool] = None,
        on_update: Optional[Callable[[HeatmapPayload], None]] = None,
        on_error: Optional[Callable[[HeatmapError], None]] = None,
    ) -> None:
        self.client = client or analytics_client
        self.demo_on_unavailable = (
            settings.demo_on_unavailable if demo_on_unavailable is None else demo_on_unavailable
        )
        self._on_update = on_update
        self._on_error = on_error

        self._state = HeatmapState(
            bounds=validate_bounds(bounds) if bounds is not None else None,
            analytics=analytics or AnalyticsConfig(),
            realtime=realtime or RealtimeConfig(),
            visualization=visualization or VisualizationState(),
        )
        self._listeners: list[StateListener] = []

        self._generation = 0
        self._inflight: Optional[asyncio.Task] = None
        self._inflight_generation = -1
        self._last_request: Optional[tuple[RegionBounds, AnalyticsConfig]] = None

        self._refresh_task: Optional[asyncio.Task] = None
        self._started = False
        self._closed = False

    # ── Observation ─────────────────────────────────────────────────────────

    @property
    def state(self) -> HeatmapState:
        return self._state

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state observer. Returns a callable that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, **changes: Any) -> None:
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Heatmap state listener failed")

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def start(self) -> Optional[asyncio.Task]:
        """Kick off the initial fetch (if bounds are known) and the auto-refresh loop."""
        self._started = True
        self._restart_auto_refresh()
        if self._state.bounds is None:
            return None
        return self._schedule_fetch(self._state.bounds, self._state.analytics, use_cache=True)

    async def close(self) -> None:
        """Cancel every task this orchestrator owns; later responses are ignored."""
        self._closed = True
        tasks = [t for t in (self._inflight, self._refresh_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight = None
        self._refresh_task = None
        self._listeners.clear()

    @property
    def closed(self) -> bool:
        return self._closed

    async def wait_idle(self) -> None:
        """Wait until no fetch is in flight (including fetches started meanwhile)."""
        while self._inflight is not None and not self._inflight.done():
            await asyncio.wait({self._inflight})

    # ── Data actions ────────────────────────────────────────────────────────

    def set_bounds(self, bounds: Any) -> bool:
        """
        Validate and apply new bounds, superseding any in-flight fetch.

        Returns False when the candidate was rejected (state untouched).
        """
        if self._closed:
            return False
        accepted = validate_bounds(bounds)
        if accepted is None:
            return False
        if accepted == self._state.bounds and self._state.status in ("loading", "ready"):
            return True
        self._schedule_fetch(accepted, self._state.analytics, use_cache=True, changes={"bounds": accepted})
        return True

    def update_config(self, partial: dict[str, Any]) -> None:
        """Shallow-merge AnalyticsConfig options and refetch for the current bounds."""
        merged = AnalyticsConfig.model_validate({**self._state.analytics.model_dump(), **partial})
        if self._state.bounds is None or self._closed:
            self._set_state(analytics=merged)
            return
        self._schedule_fetch(self._state.bounds, merged, use_cache=True, changes={"analytics": merged})

    def refetch(self) -> Optional[asyncio.Task]:
        """
        Re-issue the last successful request (bypassing the response cache).

        Coalesces with a fetch already in flight for the current bounds.
        """
        if self._closed or self._state.bounds is None:
            return None
        if (
            self._inflight is not None
            and not self._inflight.done()
            and self._inflight_generation == self._generation
        ):
            logger.debug("Refetch coalesced with in-flight request")
            return self._inflight

        bounds, config = self._state.bounds, self._state.analytics
        if self._last_request is not None and self._last_request[0] == bounds:
            bounds, config = self._last_request
        return self._schedule_fetch(bounds, config, use_cache=False, supersede=False)

    def export_data(self, fmt: str) -> str:
        """Serialise the current snapshot. Raises ExportError; state is never touched."""
        content = export_snapshot(self._state, fmt)
        logger.info("Exported %d points as %s", len(self._state.data_points), fmt.upper())
        return content

    def clear_error(self) -> None:
        """Dismiss the error banner without retrying."""
        if self._state.error is None:
            return
        status = self._state.status
        if status == "error":
            status = "idle" if self._state.is_empty else "ready"
        self._set_state(error=None, status=status)

    def dismiss_notice(self) -> None:
        if self._state.notice is not None:
            self._set_state(notice=None)

    def reset_state(self) -> None:
        """Drop data, selection and messages; bounds and configs are kept."""
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._generation += 1
        self._last_request = None
        self._set_state(
            status="idle",
            data_points=(),
            clusters=(),
            anomalies=(),
            selection=SelectionState(),
            error=None,
            notice=None,
            demo_mode=False,
            last_updated=None,
            update_count=0,
        )

    # ── Selection actions (no network effect) ───────────────────────────────

    def select_point(self, point: Optional[HeatmapDataPoint]) -> None:
        self._select("point", point)

    def select_cluster(self, cluster: Optional[HeatmapCluster]) -> None:
        self._select("cluster", cluster)

    def select_anomaly(self, anomaly: Optional[HeatmapAnomaly]) -> None:
        self._select("anomaly", anomaly)

    def clear_selection(self) -> None:
        self._select("none", None)

    def _select(self, kind: str, entity: Any) -> None:
        if entity is None:
            kind = "none"
        self._set_state(selection=SelectionState(kind=kind, entity=entity))

    # ── Display / realtime configuration ────────────────────────────────────

    def update_visualization(self, partial: dict[str, Any]) -> None:
        """Shallow-merge display parameters. Never triggers a fetch."""
        current = self._state.visualization.model_dump()
        unknown = set(partial) - set(current)
        if unknown:
            logger.warning("Ignoring unknown visualization options: %s", sorted(unknown))
        updates = {k: v for k, v in partial.items() if k not in unknown}
        if "selected_layer" in updates:
            # layer flags always follow the selected layer
            layer = updates["selected_layer"]
            updates["layers"] = resolve_layer_visibility(layer)
            updates["selected_layer"] = layer if layer in LAYER_NAMES else "all"
        merged = VisualizationState.model_validate({**current, **updates})
        self._set_state(visualization=merged)

    def set_selected_layer(self, layer: str) -> None:
        self.update_visualization({"selected_layer": layer})

    def toggle_realtime(self, enabled: bool) -> None:
        self._set_state(realtime=self._state.realtime.model_copy(update={"enabled": enabled}))
        if self._started and not self._closed:
            self._restart_auto_refresh()

    # ── Internals ───────────────────────────────────────────────────────────

    def _schedule_fetch(
        self,
        bounds: RegionBounds,
        config: AnalyticsConfig,
        *,
        use_cache: bool,
        supersede: bool = True,
        changes: Optional[dict[str, Any]] = None,
    ) -> asyncio.Task:
        if supersede:
            self._generation += 1
            if self._inflight is not None and not self._inflight.done():
                logger.debug("Cancelling fetch for superseded bounds")
                self._inflight.cancel()

        generation = self._generation
        self._set_state(status="loading", error=None, **(changes or {}))
        task = asyncio.create_task(
            self._fetch(generation, bounds, config, use_cache),
            name=f"heatmap-fetch-{generation}",
        )
        self._inflight = task
        self._inflight_generation = generation
        return task

    def _is_stale(self, generation: int) -> bool:
        return self._closed or generation != self._generation

    async def _fetch(
        self,
        generation: int,
        bounds: RegionBounds,
        config: AnalyticsConfig,
        use_cache: bool,
    ) -> None:
        logger.debug("Fetching heatmap for %s (generation %d)", bounds.to_query(), generation)
        try:
            payload = await self.client.fetch_heatmap(bounds, config, use_cache=use_cache)
        except asyncio.CancelledError:
            logger.debug("Heatmap fetch %d cancelled", generation)
            raise
        except BackendUnavailableError as exc:
            if self._is_stale(generation):
                return
            if self.demo_on_unavailable:
                self._apply_demo(exc)
            else:
                self._apply_error(exc)
            return
        except HeatmapError as exc:
            if not self._is_stale(generation):
                self._apply_error(exc)
            return
        except Exception as exc:
            logger.exception("Unexpected failure while fetching heatmap data")
            if not self._is_stale(generation):
                self._apply_error(HeatmapError(str(exc) or type(exc).__name__))
            return

        if self._is_stale(generation):
            logger.debug("Discarding heatmap response for superseded bounds %s", bounds.to_query())
            return

        self._last_request = (bounds, config)
        self._apply_payload(payload, demo=False)
        logger.info(
            "Heatmap updated: %d points, %d clusters, %d anomalies",
            len(payload.data_points), len(payload.clusters), len(payload.anomalies),
        )

    def _apply_payload(self, payload: HeatmapPayload, *, demo: bool, notice: Optional[str] = None) -> None:
        self._set_state(
            status="ready",
            data_points=payload.data_points,
            clusters=payload.clusters,
            anomalies=payload.anomalies,
            error=None,
            notice=notice,
            demo_mode=demo,
            last_updated=datetime.now(tz=timezone.utc),
            update_count=self._state.update_count + 1,
        )
        if self._on_update is not None:
            try:
                self._on_update(payload)
            except Exception:
                logger.exception("on_update callback failed")

    def _apply_demo(self, exc: BackendUnavailableError) -> None:
        logger.warning("API call failed, falling back to demo data: %s", exc.message)
        payload = demo_payload()
        self._apply_payload(payload, demo=True, notice=DEMO_NOTICE)

    def _apply_error(self, exc: HeatmapError) -> None:
        logger.error("Heatmap data error [%s]: %s", exc.code, exc.message)
        self._set_state(status="error", error=exc.message)
        if self._on_error is not None:
            try:
                self._on_error(exc)
            except Exception:
                logger.exception("on_error callback failed")

    def _restart_auto_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None

        realtime = self._state.realtime
        if not (realtime.enabled and realtime.auto_refresh) or realtime.update_interval <= 0:
            return
        self._refresh_task = asyncio.create_task(
            self._auto_refresh_loop(realtime.update_interval / 1000),
            name="heatmap-auto-refresh",
        )

    async def _auto_refresh_loop(self, interval: float) -> None:
        while not self._closed:
            await asyncio.sleep(interval)
            self.refetch()
