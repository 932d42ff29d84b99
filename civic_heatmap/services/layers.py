"""Selected-layer → per-layer visibility flags."""

import logging

from civic_heatmap.models.heatmap import LayerVisibility

logger = logging.getLogger(__name__)

_VISIBILITY: dict[str, LayerVisibility] = {
    "heatmap":  LayerVisibility(heatmap=True,  clusters=False, points=False, boundaries=False),
    "clusters": LayerVisibility(heatmap=False, clusters=True,  points=False, boundaries=False),
    "points":   LayerVisibility(heatmap=False, clusters=False, points=True,  boundaries=False),
    "all":      LayerVisibility(heatmap=True,  clusters=True,  points=True,  boundaries=True),
}

LAYER_NAMES = tuple(_VISIBILITY)


def resolve_layer_visibility(selected_layer: str) -> LayerVisibility:
    """Unknown layer names fall back to "all" (everything visible)."""
    visibility = _VISIBILITY.get(selected_layer)
    if visibility is None:
        logger.warning("Unknown layer %r, showing all layers", selected_layer)
        return _VISIBILITY["all"]
    return visibility
