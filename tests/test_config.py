"""
test_config.py — Settings defaults and derived values.
"""

from civic_heatmap.core.config import Settings


class TestSettings:

    def test_websocket_url_derived_from_analytics_url(self):
        assert Settings(analytics_base_url="http://localhost:3000/api").websocket_url == (
            "ws://localhost:3000/api/heatmap/ws"
        )
        assert Settings(analytics_base_url="https://civic.example.org/api").websocket_url == (
            "wss://civic.example.org/api/heatmap/ws"
        )

    def test_explicit_websocket_url_wins(self):
        settings = Settings(realtime_ws_url="ws://push.example.org/stream")
        assert settings.websocket_url == "ws://push.example.org/stream"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MAX_RENDER_RETRIES", "5")
        monkeypatch.setenv("ENABLE_TOOLTIPS", "false")
        settings = Settings()
        assert settings.max_render_retries == 5
        assert settings.enable_tooltips is False

    def test_feature_switch_defaults(self, monkeypatch):
        for name in ("ENABLE_REALTIME", "ENABLE_CONTROLS", "ENABLE_SIDEBAR", "ENABLE_TOOLTIPS", "ENABLE_ANALYTICS"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings()
        assert all([
            settings.enable_realtime, settings.enable_controls, settings.enable_sidebar,
            settings.enable_tooltips, settings.enable_analytics,
        ])
