"""Command line entry points.

Usage:
  rest-raster sources                       # every catalogued service
  rest-raster sources --source USGS         # services of one source
  rest-raster fetch --url URL --service-epsg 3857 --bbox XMIN YMIN XMAX YMAX --run
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Sequence

from pyproj.exceptions import CRSError

from .services.catalog import raster_sources, services_for
from .services.orchestrator import (
    DEFAULT_IMAGE_TYPE,
    DEFAULT_PREFIX,
    DEFAULT_RESOLUTION,
    FetchBatch,
    fetch_boundaries,
)
from .services.query import BoundingBox
from .services.transform import build_transform, parse_epsg

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rest-raster",
        description="Fetch raster imagery from ArcGIS REST export endpoints.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    sources = commands.add_parser("sources", help="List catalogued REST raster services")
    sources.add_argument("--source", help="Only list services from this source")

    fetch = commands.add_parser("fetch", help="Fetch one image per bounding box")
    fetch.add_argument("--url", required=True, help="REST service URL (…/MapServer/ or …/export?)")
    fetch.add_argument(
        "--bbox",
        type=float,
        nargs=4,
        action="append",
        required=True,
        metavar=("XMIN", "YMIN", "XMAX", "YMAX"),
        help="Boundary extent in the source coordinate system; repeat for several",
    )
    fetch.add_argument("--service-epsg", required=True, help="Spatial reference sent to the service")
    fetch.add_argument("--source-epsg", help="Spatial reference of --bbox (defaults to the service's)")
    fetch.add_argument("--resolution", type=int, default=DEFAULT_RESOLUTION)
    fetch.add_argument("--folder", help="Target folder (defaults to the system temp dir)")
    fetch.add_argument("--prefix", default=DEFAULT_PREFIX)
    fetch.add_argument("--image-type", default=DEFAULT_IMAGE_TYPE)
    fetch.add_argument("--concurrency", type=int, default=1)
    fetch.add_argument("--run", action="store_true", help="Download imagery instead of printing queries")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "sources":
        return _list_sources(args.source)
    return _fetch(args)


def _list_sources(source: str | None) -> int:
    entries = services_for(source) if source else raster_sources()
    if not entries:
        print(f"No services found for source {source!r}", file=sys.stderr)
        return 1
    for entry in entries:
        print(f"{entry.source}\t{entry.service}\t{entry.url}")
    return 0


def _fetch(args: argparse.Namespace) -> int:
    try:
        service_epsg = parse_epsg(args.service_epsg)
        source_epsg = parse_epsg(args.source_epsg) if args.source_epsg else None
        transform = build_transform(service_epsg, source_epsg)
    except (ValueError, CRSError) as exc:
        print(f"Invalid spatial reference: {exc}", file=sys.stderr)
        return 2

    boundaries: List[BoundingBox] = [BoundingBox(*values) for values in args.bbox]
    try:
        batch = asyncio.run(
            fetch_boundaries(
                boundaries,
                url=args.url,
                transform=transform,
                resolution=args.resolution,
                folder=args.folder,
                prefix=args.prefix,
                image_type=args.image_type,
                run=args.run,
                max_concurrency=args.concurrency,
            )
        )
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    if args.run:
        from .services.usage import record_batch_usage

        record_batch_usage(args.url, (result.request_count for result in batch.results))

    _print_batch(batch)
    return 1 if batch.aborted else 0


def _print_batch(batch: FetchBatch) -> None:
    for result in batch.results:
        frame = ""
        if result.rectangle is not None:
            rect = result.rectangle
            frame = f"{rect.xmin},{rect.ymin},{rect.xmax},{rect.ymax}"
        print(f"{result.index}\t{result.status.value}\t{result.path}\t{frame}\t{result.query}")
    if batch.aborted:
        print(f"Aborted: {batch.error}", file=sys.stderr)
    elif batch.cancelled:
        print("Cancelled.", file=sys.stderr)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
