from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Protocol, Sequence, Tuple

import httpx

from .fetcher import RESOLUTION_ERROR_MESSAGE, fetch_service_image
from .probe import ServiceMetadata, probe_service_metadata
from .query import (
    BoundingBox,
    RequestDescriptor,
    normalize_image_type,
    normalize_service_url,
)
from .transform import SpatialTransform

logger = logging.getLogger(__name__)

# Resolutions tried, in order, after the requested one is rejected.
RESOLUTION_LADDER: Tuple[int, ...] = (1700, 1200)
DEFAULT_RESOLUTION = 1024
DEFAULT_PREFIX = "restRaster"
DEFAULT_IMAGE_TYPE = "jpg"
FAILED_DOWNLOAD_MESSAGE = "Failed to download image."

REQUEST_TIMEOUT_ENV = "REST_RASTER_TIMEOUT"
DEFAULT_REQUEST_TIMEOUT = 60.0
REQUEST_DELAY_ENV = "REST_RASTER_REQUEST_DELAY"
DEFAULT_REQUEST_DELAY = 0.0
OUTPUT_DIR_ENV = "REST_RASTER_OUTPUT_DIR"


class FetchCancelledError(Exception):
    """Raised internally when a batch is cancelled between ladder attempts."""


class FetchStatus(str, Enum):
    SUCCEEDED = "succeeded"
    NOT_RUN = "not_run"
    FAILED = "failed"


class SupportsBoundingBox(Protocol):
    def bounding_box(self) -> BoundingBox:
        ...


@dataclass(frozen=True)
class Boundary:
    """Caller-space outline of an area to fetch imagery for."""

    points: Tuple[Tuple[float, float], ...]

    @classmethod
    def from_points(cls, points: Iterable[Sequence[float]]) -> "Boundary":
        return cls(tuple((float(point[0]), float(point[1])) for point in points))

    def bounding_box(self) -> BoundingBox:
        return BoundingBox.from_points(self.points)


@dataclass
class FetchResult:
    """Outcome for one boundary, in the caller's coordinate system."""

    index: int
    status: FetchStatus
    path: str = ""
    rectangle: BoundingBox | None = None
    query: str = ""
    resolution: int | None = None
    request_count: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == FetchStatus.SUCCEEDED


@dataclass
class FetchBatch:
    results: List[FetchResult] = field(default_factory=list)
    aborted: bool = False
    cancelled: bool = False
    error: str | None = None

    @property
    def queries(self) -> List[str]:
        return [result.query for result in self.results]


class FetchController:
    def __init__(self) -> None:
        self.cancel_event = asyncio.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def resolution_ladder(requested: int, fallbacks: Sequence[int] = RESOLUTION_LADDER) -> List[int]:
    return [int(requested), *(int(value) for value in fallbacks)]


def image_path(folder: Path, prefix: str, index: int, image_type: str) -> Path:
    return folder / f"{prefix}_{index}.{normalize_image_type(image_type)}"


def default_output_dir() -> Path:
    override = os.getenv(OUTPUT_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path(tempfile.gettempdir())


def request_timeout() -> httpx.Timeout:
    raw_value = os.getenv(REQUEST_TIMEOUT_ENV, "").strip()
    seconds = DEFAULT_REQUEST_TIMEOUT
    if raw_value:
        try:
            seconds = float(raw_value)
        except ValueError:
            seconds = DEFAULT_REQUEST_TIMEOUT
    if seconds <= 0:
        seconds = DEFAULT_REQUEST_TIMEOUT
    return httpx.Timeout(seconds)


def _request_delay_seconds() -> float:
    raw_value = os.getenv(REQUEST_DELAY_ENV, "").strip()
    if not raw_value:
        return DEFAULT_REQUEST_DELAY
    try:
        delay = float(raw_value)
    except ValueError:
        return DEFAULT_REQUEST_DELAY
    return max(0.0, delay)


async def _respect_rate_limit() -> None:
    delay = _request_delay_seconds()
    if delay > 0:
        await asyncio.sleep(delay)


async def fetch_boundaries(
    boundaries: Sequence[SupportsBoundingBox],
    *,
    url: str,
    transform: SpatialTransform,
    resolution: int = DEFAULT_RESOLUTION,
    folder: Path | str | None = None,
    prefix: str = DEFAULT_PREFIX,
    image_type: str = DEFAULT_IMAGE_TYPE,
    run: bool = False,
    client: httpx.AsyncClient | None = None,
    controller: FetchController | None = None,
    ladder: Sequence[int] = RESOLUTION_LADDER,
    max_concurrency: int = 1,
) -> FetchBatch:
    """Fetch one image per boundary from a REST export endpoint.

    Every boundary is tried at the requested resolution and then at each
    ladder value. A boundary that exhausts the ladder aborts the batch:
    results for earlier boundaries are kept and later ones are not
    attempted. With ``run=False`` only the query text is produced.
    """

    base_url = normalize_service_url(url)
    target = Path(folder) if folder else default_output_dir()
    if run:
        target.mkdir(parents=True, exist_ok=True)
    controller = controller or FetchController()

    if client is None:
        async with httpx.AsyncClient(timeout=request_timeout()) as owned_client:
            return await _run_batch(
                owned_client,
                boundaries,
                base_url=base_url,
                transform=transform,
                resolution=resolution,
                folder=target,
                prefix=prefix,
                image_type=image_type,
                run=run,
                controller=controller,
                ladder=ladder,
                max_concurrency=max_concurrency,
            )

    return await _run_batch(
        client,
        boundaries,
        base_url=base_url,
        transform=transform,
        resolution=resolution,
        folder=target,
        prefix=prefix,
        image_type=image_type,
        run=run,
        controller=controller,
        ladder=ladder,
        max_concurrency=max_concurrency,
    )


async def _run_batch(
    client: httpx.AsyncClient,
    boundaries: Sequence[SupportsBoundingBox],
    *,
    base_url: str,
    transform: SpatialTransform,
    resolution: int,
    folder: Path,
    prefix: str,
    image_type: str,
    run: bool,
    controller: FetchController,
    ladder: Sequence[int],
    max_concurrency: int,
) -> FetchBatch:
    results: Dict[int, FetchResult] = {}
    failed_indices: List[int] = []
    abort_event = asyncio.Event()

    async def run_one(index: int, boundary: SupportsBoundingBox) -> None:
        if abort_event.is_set() or controller.cancelled:
            return
        try:
            result = await _fetch_boundary(
                client,
                index,
                boundary,
                base_url=base_url,
                transform=transform,
                resolution=resolution,
                folder=folder,
                prefix=prefix,
                image_type=image_type,
                run=run,
                controller=controller,
                ladder=ladder,
            )
        except FetchCancelledError:
            logger.info("Fetch cancelled before boundary %d completed.", index)
            return

        results[index] = result
        # Only downloading batches abort; previews record the failure and go on.
        if run and result.status == FetchStatus.FAILED:
            failed_indices.append(index)
            abort_event.set()

    if max_concurrency <= 1:
        for index, boundary in enumerate(boundaries):
            await run_one(index, boundary)
            if abort_event.is_set() or controller.cancelled:
                break
    else:
        semaphore = asyncio.Semaphore(max_concurrency)

        async def guarded(index: int, boundary: SupportsBoundingBox) -> None:
            async with semaphore:
                await run_one(index, boundary)

        await asyncio.gather(
            *(guarded(index, boundary) for index, boundary in enumerate(boundaries))
        )

    batch = FetchBatch(cancelled=controller.cancelled)
    first_failure = min(failed_indices) if failed_indices else None
    for index in sorted(results):
        if first_failure is not None and index > first_failure:
            _discard_result(results[index])
            continue
        batch.results.append(results[index])

    if first_failure is not None:
        batch.aborted = True
        batch.error = results[first_failure].error or FAILED_DOWNLOAD_MESSAGE
        logger.error(
            "Aborting batch at boundary %d of %d: %s",
            first_failure,
            len(boundaries),
            batch.error,
        )
    return batch


def _discard_result(result: FetchResult) -> None:
    """Remove the image of a result dropped after a concurrent abort."""

    if not result.path:
        return
    try:
        Path(result.path).unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Unable to remove %s after abort: %s", result.path, exc)
    else:
        logger.info(
            "Boundary %d: removed %s, finished after the batch aborted.", result.index, result.path
        )


async def _fetch_boundary(
    client: httpx.AsyncClient,
    index: int,
    boundary: SupportsBoundingBox,
    *,
    base_url: str,
    transform: SpatialTransform,
    resolution: int,
    folder: Path,
    prefix: str,
    image_type: str,
    run: bool,
    controller: FetchController,
    ladder: Sequence[int],
) -> FetchResult:
    try:
        service_bbox = transform.forward(boundary.bounding_box())
        descriptor = RequestDescriptor(
            base_url=base_url,
            bbox=service_bbox,
            resolution=int(resolution),
            srid=transform.srid,
            image_format=image_type,
        )
        query = descriptor.query()
    except ValueError as exc:
        logger.error("Boundary %d cannot be requested: %s", index, exc)
        return FetchResult(index=index, status=FetchStatus.FAILED, error=str(exc))

    if not run:
        return FetchResult(index=index, status=FetchStatus.NOT_RUN, query=f"{query}&f=image")

    path = image_path(folder, prefix, index, image_type)
    request_count = 0
    resolutions = resolution_ladder(resolution, ladder)

    for attempt, value in enumerate(resolutions):
        if controller.cancelled:
            raise FetchCancelledError(f"cancelled before boundary {index} attempt {attempt}")
        if attempt:
            logger.info(
                "Boundary %d: retrying with smaller resolution %d (attempt %d of %d).",
                index,
                value,
                attempt + 1,
                len(resolutions),
            )

        await _respect_rate_limit()
        descriptor = replace(descriptor, resolution=value)
        query = descriptor.query()
        metadata: ServiceMetadata | None = None

        try:
            metadata = await probe_service_metadata(client, descriptor)
            request_count += metadata.requests
            query = metadata.query
            if metadata.extent is None:
                logger.warning(
                    "Boundary %d: service returned no extent at resolution %d%s.",
                    index,
                    value,
                    f" ({metadata.error})" if metadata.error else "",
                )
                outcome = RESOLUTION_ERROR_MESSAGE
            else:
                outcome, used = await fetch_service_image(client, metadata, path)
                request_count += used
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as exc:
            logger.warning("Boundary %d: request failed at resolution %d: %s", index, value, exc)
            outcome = RESOLUTION_ERROR_MESSAGE

        if outcome:
            continue

        rectangle: BoundingBox | None = transform.inverse(metadata.extent)
        if not rectangle.is_valid:
            logger.warning("Boundary %d: service extent maps to a degenerate rectangle.", index)
            rectangle = None

        logger.info("Boundary %d: saved %s at resolution %d.", index, path, value)
        return FetchResult(
            index=index,
            status=FetchStatus.SUCCEEDED,
            path=str(path),
            rectangle=rectangle,
            query=f"{query}&f=image",
            resolution=value,
            request_count=request_count,
        )

    logger.error(
        "Boundary %d: failed to download image after trying resolutions %s.",
        index,
        resolutions,
    )
    return FetchResult(
        index=index,
        status=FetchStatus.FAILED,
        query=f"{query}&f=image",
        request_count=request_count,
        error=FAILED_DOWNLOAD_MESSAGE,
    )
