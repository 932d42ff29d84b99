"""
Selection & tooltip controller.

Clicks on map entities select them through the orchestrator and, when
tooltips are enabled, open the single tooltip at the click position.
Selection and tooltip are independent: closing the tooltip (outside
click) leaves the selection in place for consumers like a detail sidebar.
"""

import logging
from typing import Callable, Optional

from civic_heatmap.core.config import settings
from civic_heatmap.models.heatmap import (
    EntityKind,
    HeatmapAnomaly,
    HeatmapCluster,
    HeatmapDataPoint,
    HeatmapEntity,
    TooltipState,
)
from civic_heatmap.services.orchestrator import HeatmapOrchestrator

logger = logging.getLogger(__name__)


class SelectionController:
    def __init__(
        self,
        orchestrator: HeatmapOrchestrator,
        *,
        enable_tooltips: Optional[bool] = None,
        on_tooltip: Optional[Callable[[TooltipState], None]] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.enable_tooltips = settings.enable_tooltips if enable_tooltips is None else enable_tooltips
        self._on_tooltip = on_tooltip
        self._tooltip = TooltipState()

    @property
    def tooltip(self) -> TooltipState:
        return self._tooltip

    def click_point(self, point: HeatmapDataPoint, x: float, y: float) -> None:
        self.orchestrator.select_point(point)
        self._open_tooltip("point", point, x, y)

    def click_cluster(self, cluster: HeatmapCluster, x: float, y: float) -> None:
        self.orchestrator.select_cluster(cluster)
        self._open_tooltip("cluster", cluster, x, y)

    def click_anomaly(self, anomaly: HeatmapAnomaly, x: float, y: float) -> None:
        self.orchestrator.select_anomaly(anomaly)
        self._open_tooltip("anomaly", anomaly, x, y)

    def click_outside(self) -> None:
        """Close the tooltip if open. Selection is left alone."""
        if self._tooltip.visible:
            self._set_tooltip(TooltipState())

    def close_tooltip(self) -> None:
        self.click_outside()

    def _open_tooltip(self, kind: EntityKind, entity: HeatmapEntity, x: float, y: float) -> None:
        if not self.enable_tooltips:
            return
        # replaces any open tooltip: only one is ever visible
        self._set_tooltip(TooltipState(visible=True, x=x, y=y, kind=kind, entity=entity))
        logger.debug("Tooltip opened for %s %s at (%s, %s)", kind, entity.id, x, y)

    def _set_tooltip(self, tooltip: TooltipState) -> None:
        self._tooltip = tooltip
        if self._on_tooltip is not None:
            self._on_tooltip(tooltip)
