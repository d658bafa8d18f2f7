"""Service utilities exposed by the ``rest_raster.services`` package."""

from .orchestrator import Boundary, FetchBatch, FetchController, FetchResult, fetch_boundaries
from .query import BoundingBox, RequestDescriptor, build_request_query, normalize_image_type

__all__ = [
    "Boundary",
    "BoundingBox",
    "FetchBatch",
    "FetchController",
    "FetchResult",
    "RequestDescriptor",
    "build_request_query",
    "fetch_boundaries",
    "normalize_image_type",
]
