#!/usr/bin/env python3
"""Command line tools for the territory engine."""

import argparse
import asyncio
import json
import sys

from spatial.path import PathResolver
from territory.config import TerritoryConfig
from territory.engine import create_store
from territory.exceptions import TerritoryException
from territory.logging import configure_logging, get_logger
from territory.reconciliation import Reconciler
from territory.seasons import SeasonStore

logger = get_logger(__name__)


def _load_route(path: str) -> list:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    # Either a bare list of points or an activity document with a route
    if isinstance(data, dict):
        return data.get("route", [])
    return data


def analyze_route(config: TerritoryConfig, path: str) -> int:
    """Print the cells a route covers and the GPS jumps that were not interpolated."""
    resolver = PathResolver.from_config(config)
    resolution = resolver.resolve_detailed(_load_route(path))

    print(f"Points used:    {resolution.points_used}")
    print(f"Points dropped: {resolution.points_dropped}")
    print(f"Distance:       {resolution.total_distance_meters:.1f} m")
    print(f"Cells:          {len(resolution.cell_ids)}")
    for cell_id in sorted(resolution.cell_ids):
        print(f"  {cell_id}")

    if resolution.anomalies:
        print(f"\nGPS jumps over {resolver.max_interpolation_distance_meters:.0f} m:")
        for anomaly in resolution.anomalies:
            speed = anomaly.apparent_speed_kmh
            speed_text = f", {speed:.1f} km/h" if speed is not None else ""
            print(
                f"  points {anomaly.start_index}->{anomaly.end_index}: "
                f"{anomaly.distance_meters:.1f} m{speed_text}"
            )
    return 0


async def reconcile(config: TerritoryConfig) -> int:
    store = create_store(config)
    await store.initialize()
    try:
        report = await Reconciler(store, config).run_full_sweep()
    finally:
        await store.close()

    for key, value in report.to_dict().items():
        print(f"  {key}: {value}")
    return 1 if report.errors else 0


async def reset_season(config: TerritoryConfig, season_id: str) -> int:
    store = create_store(config)
    await store.initialize()
    try:
        archive = await SeasonStore(config.archive_dir).archive_and_reset(store, season_id)
    finally:
        await store.close()

    print(f"Season {archive.season_id} archived: {archive.owned_cell_count} owned cells")
    return 0


async def list_seasons(config: TerritoryConfig) -> int:
    for archive in await SeasonStore(config.archive_dir).list_archives():
        print(f"  {archive.season_id}  {archive.archived_at.isoformat()}  cells={len(archive.cells)}")
    return 0


def serve(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run("api:app", host=host, port=port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="territory", description=__doc__)
    parser.add_argument("--log-level", default=None, help="Override TERRITORY_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze-route", help="Resolve a JSON route to grid cells")
    analyze.add_argument("path", help="JSON file with a list of points or an activity")

    sub.add_parser("reconcile", help="Repair vengeance targets and rivalry counters")

    reset = sub.add_parser("reset-season", help="Archive the world and clear it")
    reset.add_argument("season_id")

    sub.add_parser("list-seasons", help="List archived seasons")

    server = sub.add_parser("serve", help="Run the HTTP/WebSocket API")
    server.add_argument("--host", default="0.0.0.0")
    server.add_argument("--port", type=int, default=8000)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    config = TerritoryConfig()
    configure_logging(args.log_level or config.log_level)

    try:
        if args.command == "analyze-route":
            return analyze_route(config, args.path)
        if args.command == "reconcile":
            return asyncio.run(reconcile(config))
        if args.command == "reset-season":
            return asyncio.run(reset_season(config, args.season_id))
        if args.command == "list-seasons":
            return asyncio.run(list_seasons(config))
        if args.command == "serve":
            return serve(args.host, args.port)
    except (TerritoryException, OSError, ValueError) as e:
        logger.error("cli.command_failed", command=args.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 2


if __name__ == "__main__":
    sys.exit(main())
