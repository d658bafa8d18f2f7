from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, List, Sequence
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field
from pyproj.exceptions import CRSError
from sqlmodel import Session, delete, select

from .database import get_session, init_db
from .models import ApiUsageStat, FetchRecord
from .services.catalog import raster_sources, services_for, source_names
from .services.orchestrator import (
    DEFAULT_IMAGE_TYPE,
    DEFAULT_PREFIX,
    DEFAULT_RESOLUTION,
    Boundary,
    FetchBatch,
    FetchController,
    FetchResult,
    fetch_boundaries,
)
from .services.query import BoundingBox
from .services.transform import build_transform
from .services.usage import record_batch_usage

app = FastAPI(title="REST Raster Fetcher", version="0.1.0")

logger = logging.getLogger(__name__)


class FetchRequestPayload(BaseModel):
    boundaries: List[List[float] | List[List[float]]]
    url: str
    service_epsg: int
    source_epsg: int | None = None
    resolution: int = Field(default=DEFAULT_RESOLUTION, gt=0)
    folder: str | None = None
    prefix: str = DEFAULT_PREFIX
    image_type: str = DEFAULT_IMAGE_TYPE
    run: bool = False
    max_concurrency: int = Field(default=1, ge=1, le=16)
    batch_id: str | None = None


class StopFetchRequest(BaseModel):
    batch_id: str


_active_batches: Dict[str, FetchController] = {}
_batch_lock = asyncio.Lock()


async def _register_batch(batch_id: str) -> FetchController:
    async with _batch_lock:
        if batch_id in _active_batches:
            raise HTTPException(status_code=409, detail="Fetch already in progress")
        controller = FetchController()
        _active_batches[batch_id] = controller
        return controller


async def _lookup_batch(batch_id: str) -> FetchController | None:
    async with _batch_lock:
        return _active_batches.get(batch_id)


async def _unregister_batch(batch_id: str) -> None:
    async with _batch_lock:
        _active_batches.pop(batch_id, None)


@app.on_event("startup")
def on_startup() -> None:
    init_db()


@app.get("/sources")
def list_sources(source: str | None = Query(default=None)) -> List[Dict[str, str]]:
    entries = services_for(source) if source else raster_sources()
    return [{"source": entry.source, "service": entry.service, "url": entry.url} for entry in entries]


@app.get("/sources/names")
def list_source_names() -> List[str]:
    return source_names()


@app.post("/fetch")
async def fetch_imagery(
    payload: FetchRequestPayload, session: Session = Depends(get_session)
) -> Dict[str, object]:
    try:
        boundaries = [_boundary_from_payload(value) for value in payload.boundaries]
        transform = build_transform(payload.service_epsg, payload.source_epsg)
    except (ValueError, CRSError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if not boundaries:
        raise HTTPException(status_code=400, detail="At least one boundary is required")

    batch_id = (payload.batch_id or "").strip() or uuid4().hex
    controller = await _register_batch(batch_id)
    try:
        batch = await fetch_boundaries(
            boundaries,
            url=payload.url,
            transform=transform,
            resolution=payload.resolution,
            folder=payload.folder,
            prefix=payload.prefix,
            image_type=payload.image_type,
            run=payload.run,
            controller=controller,
            max_concurrency=payload.max_concurrency,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        await _unregister_batch(batch_id)

    for result in batch.results:
        session.add(_record_from_result(batch_id, payload.url, result))
    session.commit()

    if payload.run:
        record_batch_usage(payload.url, (result.request_count for result in batch.results))

    return _batch_payload(batch_id, batch)


@app.post("/fetch/stop")
async def stop_fetch(request: StopFetchRequest) -> Dict[str, object]:
    batch_id = request.batch_id.strip()
    if not batch_id:
        raise HTTPException(status_code=400, detail="batch_id is required")

    controller = await _lookup_batch(batch_id)
    if controller is None:
        return {"status": "not_found"}

    controller.cancel()
    return {"status": "stopping"}


@app.get("/results")
def list_results(session: Session = Depends(get_session)) -> List[Dict[str, object]]:
    return _build_results(session)


@app.post("/results/clear")
def clear_results(session: Session = Depends(get_session)) -> Dict[str, object]:
    result = session.exec(delete(FetchRecord))
    session.commit()
    cleared = result.rowcount if result and result.rowcount is not None else 0
    return {"status": "ok", "cleared": cleared}


@app.get("/usage")
def list_usage(session: Session = Depends(get_session)) -> List[Dict[str, object]]:
    statement = select(ApiUsageStat).order_by(ApiUsageStat.provider)
    stats: Sequence[ApiUsageStat] = session.exec(statement).all()
    return [
        {
            "service": stat.provider,
            "request_count": stat.request_count,
            "last_used_at": stat.last_used_at,
        }
        for stat in stats
    ]


def _boundary_from_payload(value: Sequence[object]) -> BoundingBox | Boundary:
    if not value:
        raise ValueError("Boundary must not be empty")
    if all(isinstance(item, (int, float)) for item in value):
        if len(value) != 4:
            raise ValueError("Bounding boxes must have exactly four values: xmin, ymin, xmax, ymax")
        xmin, ymin, xmax, ymax = (float(item) for item in value)  # type: ignore[arg-type]
        return BoundingBox(xmin, ymin, xmax, ymax)

    points = []
    for item in value:
        if not isinstance(item, (list, tuple)) or len(item) < 2:
            raise ValueError("Boundary points must be [x, y] pairs")
        points.append((float(item[0]), float(item[1])))
    return Boundary.from_points(points)


def _rectangle_payload(rectangle: BoundingBox | None) -> Dict[str, float] | None:
    if rectangle is None:
        return None
    return {
        "xmin": rectangle.xmin,
        "ymin": rectangle.ymin,
        "xmax": rectangle.xmax,
        "ymax": rectangle.ymax,
    }


def _record_from_result(batch_id: str, url: str, result: FetchResult) -> FetchRecord:
    rectangle = _rectangle_payload(result.rectangle)
    return FetchRecord(
        batch_id=batch_id,
        boundary_index=result.index,
        status=result.status.value,
        service_url=url,
        query=result.query,
        image_path=result.path,
        resolution=result.resolution,
        rectangle_payload=json.dumps(rectangle) if rectangle else "",
        error=result.error,
    )


def _batch_payload(batch_id: str, batch: FetchBatch) -> Dict[str, object]:
    return {
        "batch_id": batch_id,
        "aborted": batch.aborted,
        "cancelled": batch.cancelled,
        "error": batch.error,
        "results": [
            {
                "index": result.index,
                "status": result.status.value,
                "image": result.path,
                "image_frame": _rectangle_payload(result.rectangle),
                "query": result.query,
                "resolution": result.resolution,
                "request_count": result.request_count,
                "error": result.error,
            }
            for result in batch.results
        ],
    }


def _build_results(session: Session) -> List[Dict[str, object]]:
    statement = select(FetchRecord).order_by(
        FetchRecord.created_at.desc(), FetchRecord.boundary_index
    )
    records: Sequence[FetchRecord] = session.exec(statement).all()
    return [
        {
            "id": record.id,
            "batch_id": record.batch_id,
            "index": record.boundary_index,
            "status": record.status,
            "service_url": record.service_url,
            "query": record.query,
            "image": record.image_path,
            "image_frame": record.rectangle(),
            "resolution": record.resolution,
            "error": record.error,
            "created_at": record.created_at,
        }
        for record in records
    ]
