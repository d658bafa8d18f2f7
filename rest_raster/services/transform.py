"""Coordinate transforms between the caller's working system and the service's.

The fetch core only needs two operations: map a caller-space bounding box
into the service's spatial reference (``forward``) and map a service-space
extent back (``inverse``). The service spatial reference is identified by
its EPSG code (``srid``), which is also sent as ``bboxSR``/``imageSR``.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pyproj import CRS, Transformer

from .query import BoundingBox

logger = logging.getLogger(__name__)

# Number of intermediate points per edge used when projecting rectangles.
DENSIFY_POINTS = 21


class SpatialTransform(Protocol):
    srid: int

    def forward(self, bbox: BoundingBox) -> BoundingBox:
        ...

    def inverse(self, bbox: BoundingBox) -> BoundingBox:
        ...


class IdentityTransform:
    """Used when the caller already works in the service's spatial reference."""

    def __init__(self, srid: int) -> None:
        self.srid = int(srid)

    def forward(self, bbox: BoundingBox) -> BoundingBox:
        return bbox

    def inverse(self, bbox: BoundingBox) -> BoundingBox:
        return bbox


class ProjTransform:
    """pyproj-backed transform between two EPSG coordinate systems."""

    def __init__(self, source_epsg: int, service_epsg: int) -> None:
        self.source_epsg = int(source_epsg)
        self.srid = int(service_epsg)
        self._forward = _transformer(self.source_epsg, self.srid)
        self._inverse = _transformer(self.srid, self.source_epsg)

    def forward(self, bbox: BoundingBox) -> BoundingBox:
        return _transform_bbox(self._forward, bbox)

    def inverse(self, bbox: BoundingBox) -> BoundingBox:
        return _transform_bbox(self._inverse, bbox)

    def __repr__(self) -> str:
        return f"ProjTransform(EPSG:{self.source_epsg} -> EPSG:{self.srid})"


def build_transform(service_epsg: int, source_epsg: int | None = None) -> SpatialTransform:
    if source_epsg is None or int(source_epsg) == int(service_epsg):
        return IdentityTransform(service_epsg)
    return ProjTransform(source_epsg, service_epsg)


def parse_epsg(value: str | int) -> int:
    token = str(value or "").strip().upper()
    if token.startswith("EPSG:"):
        token = token.split("EPSG:", 1)[1].strip()
    try:
        return int(token)
    except ValueError as exc:
        raise ValueError(f"Invalid EPSG code: {value!r}") from exc


def _transformer(from_epsg: int, to_epsg: int) -> Transformer:
    return Transformer.from_crs(CRS.from_epsg(from_epsg), CRS.from_epsg(to_epsg), always_xy=True)


def _transform_bbox(transformer: Transformer, bbox: BoundingBox) -> BoundingBox:
    xmin, ymin, xmax, ymax = transformer.transform_bounds(
        bbox.xmin, bbox.ymin, bbox.xmax, bbox.ymax, densify_pts=DENSIFY_POINTS
    )
    logger.debug(
        "Transformed bbox (%s, %s, %s, %s) -> (%s, %s, %s, %s)",
        bbox.xmin,
        bbox.ymin,
        bbox.xmax,
        bbox.ymax,
        xmin,
        ymin,
        xmax,
        ymax,
    )
    return BoundingBox(xmin, ymin, xmax, ymax)
