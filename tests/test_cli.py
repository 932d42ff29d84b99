"""
test_cli.py — `python -m civic_heatmap` against the fake backend.
"""

import json
from unittest.mock import patch

import httpx
import pytest

import civic_heatmap.__main__ as cli
from civic_heatmap.services.analytics_client import AnalyticsClient
from conftest import BASE_URL, build_backend

DELHI_ARGS = ["--bounds", "77.20", "28.61", "77.22", "28.62"]


@pytest.fixture()
def fake_backend_client(backend):
    def factory(base_url=None, **kwargs):
        return AnalyticsClient(BASE_URL, transport=httpx.ASGITransport(app=build_backend(backend)), **kwargs)

    with patch.object(cli, "AnalyticsClient", side_effect=factory):
        yield backend


class TestCli:

    def test_prints_summary(self, fake_backend_client, capsys):
        assert cli.main(DELHI_ARGS) == 0
        out = capsys.readouterr().out
        assert "Points     : 3" in out
        assert "Clusters   : 1" in out

    def test_export_to_directory(self, fake_backend_client, tmp_path):
        assert cli.main([*DELHI_ARGS, "--export", "geojson", "--output", f"{tmp_path}/"]) == 0
        [written] = list(tmp_path.glob("heatmap-data-*.geojson"))
        assert json.loads(written.read_text())["type"] == "FeatureCollection"

    def test_export_to_file(self, fake_backend_client, tmp_path):
        target = tmp_path / "snapshot.json"
        assert cli.main([*DELHI_ARGS, "--export", "json", "--output", str(target)]) == 0
        assert json.loads(target.read_text())["metadata"]["totalCount"] == 3

    def test_no_clustering_flag(self, fake_backend_client):
        cli.main([*DELHI_ARGS, "--no-clustering"])
        assert "clusters" not in fake_backend_client.requests[0]["layers"]

    def test_query_error_exit_code(self, fake_backend_client, capsys):
        fake_backend_client.fail_statuses = [404]
        assert cli.main(DELHI_ARGS) == 1
        assert "ERROR" in capsys.readouterr().out

    def test_invalid_bounds(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--bounds", "77.22", "28.61", "77.20", "28.62"])
        assert exc_info.value.code == 2

    def test_demo_mode_when_unreachable(self, capsys):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        def factory(base_url=None, **kwargs):
            return AnalyticsClient(BASE_URL, transport=httpx.MockTransport(refuse), **kwargs)

        with patch.object(cli, "AnalyticsClient", side_effect=factory):
            assert cli.main(DELHI_ARGS) == 0
        out = capsys.readouterr().out
        assert "(demo data)" in out
        assert "Points     : 3" in out
