"""
Fetch one heatmap snapshot from the command line.

Usage:
    python -m civic_heatmap --bounds 77.20 28.61 77.22 28.62
    python -m civic_heatmap --bounds 77.20 28.61 77.22 28.62 --export geojson
    python -m civic_heatmap --bounds ... --export csv --output reports/ --no-clustering

The analytics backend comes from ANALYTICS_BASE_URL (or .env). When it is
unreachable the demo dataset is used, same as in the interactive client.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from civic_heatmap.core.errors import ExportError
from civic_heatmap.core.logging_config import configure_logging
from civic_heatmap.models.heatmap import AnalyticsConfig, RealtimeConfig
from civic_heatmap.services.analytics_client import AnalyticsClient
from civic_heatmap.services.bounds import is_valid_bounds
from civic_heatmap.services.export import EXPORT_FORMATS, export_filename
from civic_heatmap.services.orchestrator import HeatmapOrchestrator


async def run(args: argparse.Namespace) -> int:
    client = AnalyticsClient(args.base_url, enable_cache=False)
    orchestrator = HeatmapOrchestrator(
        client,
        bounds=tuple(args.bounds),
        analytics=AnalyticsConfig(
            enable_clustering=not args.no_clustering,
            enable_anomaly_detection=not args.no_anomalies,
        ),
        realtime=RealtimeConfig(enabled=False),
    )
    try:
        orchestrator.start()
        await orchestrator.wait_idle()
        state = orchestrator.state

        if state.status == "error":
            print(f"ERROR: {state.error}")
            return 1

        print(f"Status     : {state.status}{'  (demo data)' if state.demo_mode else ''}")
        print(f"Points     : {len(state.data_points)}")
        print(f"Clusters   : {len(state.clusters)}")
        print(f"Anomalies  : {len(state.anomalies)}")
        if state.notice:
            print(f"Notice     : {state.notice}")

        if args.export:
            try:
                content = orchestrator.export_data(args.export)
            except ExportError as exc:
                print(f"ERROR: {exc.message}")
                return 1
            target = Path(args.output)
            if target.is_dir() or args.output.endswith("/"):
                target.mkdir(parents=True, exist_ok=True)
                target = target / export_filename(args.export)
            target.write_text(content, encoding="utf-8")
            print(f"\n✓ Exported {args.export.upper()} to {target}")
        return 0
    finally:
        await orchestrator.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="civic_heatmap",
        description="Fetch a civic-issue heatmap snapshot for a region",
    )
    parser.add_argument(
        "--bounds",
        nargs=4,
        type=float,
        required=True,
        metavar=("WEST", "SOUTH", "EAST", "NORTH"),
        help="Region edges in degrees (lon/lat)",
    )
    parser.add_argument("--base-url", default=None, help="Analytics backend base URL")
    parser.add_argument("--export", choices=EXPORT_FORMATS, help="Write the snapshot in this format")
    parser.add_argument("--output", default=".", help="Export file or directory (default: .)")
    parser.add_argument("--no-clustering", action="store_true", help="Do not request clusters")
    parser.add_argument("--no-anomalies", action="store_true", help="Do not request anomaly detection")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    configure_logging(debug=args.debug or None)

    if not is_valid_bounds(tuple(args.bounds)):
        parser.error("bounds must be WEST SOUTH EAST NORTH with west < east and south < north")

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
