"""
visualization.py — One heatmap view, wired end to end.

HeatmapSession is the composition point the rendering surface talks to.
It owns one orchestrator, one selection controller, one error recovery
boundary and (when realtime is enabled) one subscription manager, and
connects them:

  bounds changes   → debounced → orchestrator.set_bounds()
                     → "main-region" subscription torn down and recreated
  realtime update  → orchestrator.refetch()  (coalesces with in-flight fetch)
  notification     → kept in `notifications` + on_notification callback
  clicks           → SelectionController
  render(fn)       → ErrorRecoveryController boundary over the current state

USAGE
─────
    async with HeatmapSession(bounds=(77.20, 28.61, 77.22, 28.62)) as session:
        session.add_listener(redraw)
        session.on_bounds_change(new_viewport_bounds)
        await session.flush()

Transport failures only show up in `realtime_status` / `realtime_error`;
fetch-based data keeps working without the push channel.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from civic_heatmap.core.config import settings
from civic_heatmap.core.errors import HeatmapError, TransportError
from civic_heatmap.models.heatmap import (
    AnalyticsConfig,
    ConnectionStatus,
    HeatmapAnomaly,
    HeatmapCluster,
    HeatmapDataPoint,
    HeatmapPayload,
    HeatmapState,
    LayerVisibility,
    Notification,
    RealtimeConfig,
    RegionBounds,
    TooltipState,
    UpdateEvent,
    VisualizationState,
)
from civic_heatmap.services.analytics_client import AnalyticsClient
from civic_heatmap.services.orchestrator import HeatmapOrchestrator, StateListener
from civic_heatmap.services.realtime import RealtimeSubscriptionManager
from civic_heatmap.services.recovery import ErrorRecoveryController, Navigator, Reporter
from civic_heatmap.services.selection import SelectionController

logger = logging.getLogger(__name__)

REGION_LABEL = "main-region"
MAX_NOTIFICATIONS = 50

T = TypeVar("T")


class HeatmapOptions(BaseModel):
    """Feature switches for one view. Defaults come from settings."""

    model_config = ConfigDict(frozen=True)

    enable_realtime: bool = Field(default_factory=lambda: settings.enable_realtime)
    enable_controls: bool = Field(default_factory=lambda: settings.enable_controls)
    enable_sidebar: bool = Field(default_factory=lambda: settings.enable_sidebar)
    enable_tooltips: bool = Field(default_factory=lambda: settings.enable_tooltips)
    enable_analytics: bool = Field(default_factory=lambda: settings.enable_analytics)
    bounds_debounce_ms: int = Field(default_factory=lambda: settings.bounds_debounce_ms)


class HeatmapSession:
    def __init__(
        self,
        *,
        bounds: Any = None,
        client: Optional[AnalyticsClient] = None,
        realtime: Optional[RealtimeSubscriptionManager] = None,
        options: Optional[HeatmapOptions] = None,
        analytics: Optional[AnalyticsConfig] = None,
        realtime_config: Optional[RealtimeConfig] = None,
        visualization: Optional[VisualizationState] = None,
        on_update: Optional[Callable[[HeatmapPayload], None]] = None,
        on_error: Optional[Callable[[HeatmapError], None]] = None,
        on_notification: Optional[Callable[[Notification], None]] = None,
        reporter: Optional[Reporter] = None,
        navigator: Optional[Navigator] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self.options = options or HeatmapOptions()
        self.orchestrator = HeatmapOrchestrator(
            client,
            bounds=bounds,
            analytics=analytics,
            realtime=realtime_config or RealtimeConfig(enabled=self.options.enable_realtime),
            visualization=visualization,
            on_update=on_update,
            on_error=on_error,
        )
        self.selection = SelectionController(self.orchestrator, enable_tooltips=self.options.enable_tooltips)
        self.recovery = ErrorRecoveryController(
            max_retries=max_retries, reporter=reporter, navigator=navigator
        )

        self.realtime: Optional[RealtimeSubscriptionManager] = None
        if self.options.enable_realtime:
            self.realtime = realtime or RealtimeSubscriptionManager()
            self.realtime.on_update = self._on_realtime_update
            self.realtime.on_notification = self._on_notification
            self.realtime.add_status_listener(self._on_realtime_status)
            self.realtime.add_error_listener(self._on_realtime_error)

        self._on_notification_cb = on_notification
        self.notifications: list[Notification] = []
        self.realtime_error: Optional[str] = None

        self._subscription_id: Optional[str] = None
        self._pending_bounds: Any = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._debounce_waiting = False
        self._tasks: set[asyncio.Task] = set()
        self._subscription_lock = asyncio.Lock()
        self._closed = False

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Initial fetch plus (if enabled) transport connect and region subscription."""
        self.orchestrator.start()
        if self._realtime_active:
            try:
                await self.realtime.connect()
            except TransportError as exc:
                self.realtime_error = exc.message
                logger.warning("Realtime unavailable, continuing without push updates: %s", exc.message)
            await self._sync_subscription()

    async def close(self) -> None:
        """Tear down subscription, transport, timers and in-flight fetches."""
        if self._closed:
            return
        self._closed = True
        tasks = [t for t in (self._debounce_task, *self._tasks) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._debounce_task = None
        self._tasks.clear()

        if self.realtime is not None:
            await self.realtime.unsubscribe_all()
            await self.realtime.close()
            self._subscription_id = None
        await self.orchestrator.close()
        logger.info("Heatmap session closed")

    async def __aenter__(self) -> "HeatmapSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def flush(self) -> None:
        """Wait for pending debounced bounds and the resulting fetch."""
        while self._debounce_task is not None and not self._debounce_task.done():
            await asyncio.wait({self._debounce_task})
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            await asyncio.wait(pending)
        await self.orchestrator.wait_idle()

    # ── State access ────────────────────────────────────────────────────────

    @property
    def state(self) -> HeatmapState:
        return self.orchestrator.state

    @property
    def layer_visibility(self) -> LayerVisibility:
        return self.orchestrator.state.visualization.layers

    @property
    def tooltip(self) -> TooltipState:
        return self.selection.tooltip

    @property
    def realtime_status(self) -> ConnectionStatus:
        return self.realtime.status if self.realtime is not None else "disconnected"

    @property
    def subscription_id(self) -> Optional[str]:
        return self._subscription_id

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        return self.orchestrator.add_listener(listener)

    # ── Bounds ──────────────────────────────────────────────────────────────

    def on_bounds_change(self, bounds: Any) -> None:
        """Viewport moved. Bursts within bounds_debounce_ms collapse to the last one."""
        if self._closed:
            return
        self._pending_bounds = bounds
        self._drop_debounce()
        self._debounce_waiting = True
        self._debounce_task = asyncio.create_task(self._debounced_apply(), name="heatmap-bounds-debounce")

    async def set_bounds(self, bounds: Any) -> bool:
        """Apply bounds immediately, dropping any pending debounced change."""
        self._drop_debounce()
        self._pending_bounds = None
        return await self._apply_bounds(bounds)

    async def _debounced_apply(self) -> None:
        delay = self.options.bounds_debounce_ms / 1000
        if delay > 0:
            await asyncio.sleep(delay)
        self._debounce_waiting = False
        bounds, self._pending_bounds = self._pending_bounds, None
        await self._apply_bounds(bounds)

    def _drop_debounce(self) -> None:
        """Cancel the debounce task if it is still waiting; once applying, let it finish."""
        task = self._debounce_task
        if task is None or task.done():
            return
        if self._debounce_waiting:
            task.cancel()
        else:
            self._track(task)

    async def _apply_bounds(self, bounds: Any) -> bool:
        previous = self.orchestrator.state.bounds
        if not self.orchestrator.set_bounds(bounds):
            return False
        if self.orchestrator.state.bounds != previous or self._subscription_id is None:
            await self._sync_subscription()
        return True

    # ── Realtime ────────────────────────────────────────────────────────────

    @property
    def _realtime_active(self) -> bool:
        return (
            self.realtime is not None
            and not self._closed
            and self.orchestrator.state.realtime.enabled
        )

    async def _sync_subscription(self) -> None:
        """Replace the region subscription so it tracks the current bounds."""
        if self.realtime is None:
            return
        async with self._subscription_lock:
            await self._resubscribe()

    async def _ensure_subscription(self) -> None:
        async with self._subscription_lock:
            if self._subscription_id is None:
                await self._resubscribe()

    async def _resubscribe(self) -> None:
        if self._subscription_id is not None:
            stale, self._subscription_id = self._subscription_id, None
            await self.realtime.unsubscribe(stale)
        bounds: Optional[RegionBounds] = self.orchestrator.state.bounds
        if self._realtime_active and self.realtime.is_connected and bounds is not None:
            self._subscription_id = await self.realtime.subscribe(REGION_LABEL, bounds)

    async def toggle_realtime(self, enabled: bool) -> None:
        self.orchestrator.toggle_realtime(enabled)
        if self.realtime is None:
            if enabled:
                logger.warning("Realtime was disabled for this session; toggle ignored")
            return
        if enabled:
            if not self.realtime.is_connected:
                try:
                    await self.realtime.connect()
                except TransportError as exc:
                    self.realtime_error = exc.message
                    logger.warning("Realtime reconnect failed: %s", exc.message)
            await self._sync_subscription()
        else:
            await self._sync_subscription()
            await self.realtime.disconnect()

    def _on_realtime_update(self, event: UpdateEvent) -> None:
        if self._closed or event.subscription_id != self._subscription_id:
            return
        logger.debug("Realtime update for %s, refetching", event.region_id)
        self.orchestrator.refetch()

    def _on_notification(self, notification: Notification) -> None:
        if self._closed:
            return
        self.notifications = [notification, *self.notifications][:MAX_NOTIFICATIONS]
        if self._on_notification_cb is not None:
            self._on_notification_cb(notification)

    def _on_realtime_status(self, status: ConnectionStatus) -> None:
        if status == "connected":
            self.realtime_error = None
            # a late (re)connect needs the region subscription if we never made one
            if self._subscription_id is None and not self._closed:
                self._track(asyncio.create_task(self._ensure_subscription(), name="heatmap-resubscribe"))

    def _on_realtime_error(self, error: TransportError) -> None:
        self.realtime_error = error.message

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── Interaction ─────────────────────────────────────────────────────────

    def click_point(self, point: HeatmapDataPoint, x: float, y: float) -> None:
        self.selection.click_point(point, x, y)

    def click_cluster(self, cluster: HeatmapCluster, x: float, y: float) -> None:
        self.selection.click_cluster(cluster, x, y)

    def click_anomaly(self, anomaly: HeatmapAnomaly, x: float, y: float) -> None:
        self.selection.click_anomaly(anomaly, x, y)

    def click_outside(self) -> None:
        self.selection.click_outside()

    def render(self, render_fn: Callable[[HeatmapState], T]) -> Optional[T]:
        return self.recovery.render(render_fn, self.orchestrator.state)

    def export(self, fmt: str) -> str:
        return self.orchestrator.export_data(fmt)
