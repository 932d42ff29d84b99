"""
errors.py — Exception taxonomy for the heatmap client.

Every failure the data layer can produce is one of these. Adapters
(analytics_client, realtime) translate httpx / websockets / pydantic
errors into this taxonomy at their boundary so the orchestrator only
has to reason about six cases:

  ValidationError          malformed bounds: logged and ignored
  BackendUnavailableError  backend unreachable: demo-mode fallback
  QueryError               backend answered with an error: dismissible banner
  TransportError           push channel failure: realtime status only
  RenderFailure            rendering-path crash: error recovery boundary
  ExportError              export of an empty/unknown snapshot: raised to caller
"""

from typing import Any, Optional


class HeatmapError(Exception):
    """Base class for every heatmap client error."""

    code = "HEATMAP_ERROR"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(HeatmapError):
    code = "INVALID_BOUNDS"


class BackendUnavailableError(HeatmapError):
    code = "BACKEND_UNAVAILABLE"


class QueryError(HeatmapError):
    code = "API_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status = status
        if code:
            self.code = code


class TransportError(HeatmapError):
    code = "TRANSPORT_ERROR"


class RenderFailure(HeatmapError):
    code = "RENDER_FAILURE"


class ExportError(HeatmapError):
    code = "EXPORT_ERROR"
