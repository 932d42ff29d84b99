"""
Client configuration loaded from environment variables.

Uses pydantic-settings for type-safe env var parsing with automatic
.env file loading. The analytics backend URL and the push transport URL
are the only things most deployments need to set.

To extend: add new fields here and document them in .env.example.
See https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from urllib.parse import urlsplit

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ─── Core ──────────────────────────────────────────────────────
    environment: str = "development"
    debug: bool = False

    # ─── Analytics backend ─────────────────────────────────────────
    # Base URL of the analytics/query service. Heatmap queries go to
    # {analytics_base_url}/heatmap/realtime.
    analytics_base_url: str = "http://localhost:3000/api"
    request_timeout: float = 5.0   # seconds; short so demo fallback kicks in fast
    retry_attempts: int = 1        # extra attempts on 408/429/5xx
    retry_delay: float = 1.0       # seconds; doubled on every attempt
    enable_cache: bool = True
    cache_ttl: float = 60.0        # seconds

    # When the backend is unreachable, load the fixed demo dataset instead
    # of surfacing a hard error.
    demo_on_unavailable: bool = True

    # ─── Push transport ────────────────────────────────────────────
    # Leave empty to derive ws(s)://<analytics host>/api/heatmap/ws
    realtime_ws_url: str = ""
    ws_reconnect_attempts: int = 5
    ws_reconnect_delay: float = 2.0      # seconds, exponential backoff base
    ws_heartbeat_interval: float = 30.0  # seconds between pings
    ws_connect_timeout: float = 10.0
    auth_token: str = ""

    # ─── Visualization options ─────────────────────────────────────
    enable_realtime: bool = True
    enable_controls: bool = True
    enable_sidebar: bool = True
    enable_tooltips: bool = True
    enable_analytics: bool = True

    # Bounds changes arriving faster than this are collapsed into one.
    bounds_debounce_ms: int = 300
    max_render_retries: int = 3

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Don't fail on unknown env vars
    )

    @property
    def websocket_url(self) -> str:
        if self.realtime_ws_url:
            return self.realtime_ws_url
        parts = urlsplit(self.analytics_base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        return f"{scheme}://{parts.netloc}/api/heatmap/ws"


# Module-level singleton: import this everywhere instead of instantiating Settings()
settings = Settings()
