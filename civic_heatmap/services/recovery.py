"""
recovery.py — Last-resort boundary around the rendering path.

Network and query failures never reach this module; the orchestrator
turns those into state. What lands here is an exception raised while
rendering (canvas/WebGL faults, a broken entity, a bug in a view).

STATES
──────
    normal ──(render raises)──► errored ──retry()──────► normal
                                   │
                                   ├──enter_demo_mode()─► demo
                                   └──reload()/go_home()► terminal

retry() is bounded: it is offered while retry_count < max_retries.
With max_retries=3 the fourth retry is refused and only demo / reload /
home remain. retry_count is not reset by a successful render; reset()
starts over.

Each caught failure is wrapped in RenderFailure (original exception as
__cause__) and gets an ErrorReport (id ERR_<ms>_<rand9>, category,
message, suggestions); both are logged and handed to the injected
reporter callback.

CLASSIFICATION
──────────────
First match on the lower-cased message wins:
  network     network, fetch, cors
  render      render, canvas, webgl
  data        data, parse, json
  permission  permission, geolocation, access
  unknown     anything else
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from civic_heatmap.core.config import settings
from civic_heatmap.core.errors import RenderFailure
from civic_heatmap.core.ids import make_id
from civic_heatmap.models.heatmap import HeatmapState
from civic_heatmap.services.demo_data import demo_payload

logger = logging.getLogger(__name__)

ErrorCategory = Literal["network", "render", "data", "permission", "unknown"]
RecoveryState = Literal["normal", "errored", "demo", "terminal"]
RecoveryAction = Literal["retry", "demo", "reload", "home"]

T = TypeVar("T")

DEMO_BANNER = "Demo mode: showing sample data after a rendering failure"

_CATEGORY_KEYWORDS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    ("network", ("network", "fetch", "cors")),
    ("render", ("render", "canvas", "webgl")),
    ("data", ("data", "parse", "json")),
    ("permission", ("permission", "geolocation", "access")),
]

SUGGESTIONS: dict[ErrorCategory, tuple[str, ...]] = {
    "network": (
        "Check your internet connection",
        "Verify the backend service is running",
        "Check for CORS issues",
        "Try refreshing the page",
    ),
    "render": (
        "Update your browser to the latest version",
        "Enable hardware acceleration",
        "Clear browser cache and cookies",
        "Try a different browser",
    ),
    "data": (
        "Verify data format and structure",
        "Check API endpoint responses",
        "Clear local storage and cache",
        "Contact system administrator",
    ),
    "permission": (
        "Grant required permissions in browser",
        "Check location services settings",
        "Verify user authentication",
        "Contact support for access",
    ),
    "unknown": (
        "Try refreshing the page",
        "Clear browser cache",
        "Check browser console for details",
        "Contact technical support",
    ),
}


def classify_error(error: BaseException) -> ErrorCategory:
    message = str(error).lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return category
    return "unknown"


class ErrorReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    error_id: str
    category: ErrorCategory
    message: str
    error_type: str
    suggestions: tuple[str, ...]
    retry_count: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @classmethod
    def from_exception(cls, error: BaseException, *, retry_count: int = 0) -> "ErrorReport":
        category = classify_error(error)
        return cls(
            error_id=make_id("ERR"),
            category=category,
            message=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            suggestions=SUGGESTIONS[category],
            retry_count=retry_count,
        )


Reporter = Callable[[RenderFailure, ErrorReport], None]
Navigator = Callable[[str], None]


class ErrorRecoveryController:
    def __init__(
        self,
        *,
        max_retries: Optional[int] = None,
        reporter: Optional[Reporter] = None,
        navigator: Optional[Navigator] = None,
    ) -> None:
        self.max_retries = settings.max_render_retries if max_retries is None else max_retries
        self._reporter = reporter
        self._navigator = navigator

        self.state: RecoveryState = "normal"
        self.retry_count = 0
        self.report: Optional[ErrorReport] = None
        self.error: Optional[RenderFailure] = None

    # ── Boundary ────────────────────────────────────────────────────────────

    def render(self, render_fn: Callable[[HeatmapState], T], state: HeatmapState) -> Optional[T]:
        """
        Run `render_fn(state)` inside the boundary.

        Returns the render result, or None when nothing was rendered (the
        call failed, or the boundary is errored/terminal). In demo state
        render_fn receives the demo dataset instead of `state`.
        """
        if self.state in ("errored", "terminal"):
            return None
        target = self._demo_state(state) if self.state == "demo" else state
        try:
            return render_fn(target)
        except Exception as exc:
            self._capture(exc)
            return None

    def _capture(self, error: Exception) -> None:
        report = ErrorReport.from_exception(error, retry_count=self.retry_count)
        failure = RenderFailure(report.message, details=report.model_dump(mode="json"))
        failure.__cause__ = error
        self.state = "errored"
        self.error = failure
        self.report = report
        logger.error(
            "Heatmap render failure %s [%s]: %s",
            report.error_id, report.category, report.message,
            exc_info=error,
        )
        if self._reporter is not None:
            try:
                self._reporter(failure, report)
            except Exception:
                logger.exception("Error reporter failed for %s", report.error_id)

    @staticmethod
    def _demo_state(state: HeatmapState) -> HeatmapState:
        payload = demo_payload()
        return state.model_copy(update={
            "status": "ready",
            "data_points": payload.data_points,
            "clusters": payload.clusters,
            "anomalies": payload.anomalies,
            "error": None,
            "notice": DEMO_BANNER,
            "demo_mode": True,
        })

    # ── Recovery actions ────────────────────────────────────────────────────

    @property
    def can_retry(self) -> bool:
        return self.state == "errored" and self.retry_count < self.max_retries

    def available_actions(self) -> tuple[RecoveryAction, ...]:
        if self.state != "errored":
            return ()
        actions: tuple[RecoveryAction, ...] = ("demo", "reload", "home")
        return ("retry", *actions) if self.can_retry else actions

    def retry(self) -> bool:
        """Clear the errored state so the next render() runs again. False when exhausted."""
        if not self.can_retry:
            logger.warning(
                "Retry unavailable (state=%s, %d/%d used)", self.state, self.retry_count, self.max_retries
            )
            return False
        self.retry_count += 1
        logger.info("Retrying render (attempt %d/%d)", self.retry_count, self.max_retries)
        self._clear("normal")
        return True

    def enter_demo_mode(self) -> None:
        logger.info("Switching heatmap view to demo mode")
        self._clear("demo")

    def reload(self) -> None:
        self._leave("reload")

    def go_home(self) -> None:
        self._leave("home")

    def reset(self) -> None:
        self.retry_count = 0
        self._clear("normal")

    def _leave(self, target: str) -> None:
        logger.info("Leaving heatmap view: %s", target)
        self.state = "terminal"
        if self._navigator is not None:
            self._navigator(target)

    def _clear(self, state: RecoveryState) -> None:
        self.state = state
        self.error = None
        self.report = None

    @property
    def is_demo(self) -> bool:
        return self.state == "demo"

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "actions": list(self.available_actions()),
            "report": self.report.model_dump(mode="json") if self.report else None,
        }
