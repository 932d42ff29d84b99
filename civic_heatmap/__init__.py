"""Real-time geospatial analytics client for civic-issue heatmaps."""

__version__ = "0.1.0"
