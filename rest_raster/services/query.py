from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple

GENERIC_EXPORT_PATH = "export?"
IMAGE_EXPORT_PATH = "exportImage?"
COMMA = "%2C"

# Trailing bit-depth markers removed from format names such as png32 or png8.
BIT_DEPTH_SUFFIXES: Tuple[str, ...] = ("32", "16", "8")
TIFF_SUFFIXES: Tuple[str, ...] = ("geotiff", "tiff")
TIFF_EXTENSION = "tif"


class InvalidBoundingBoxError(ValueError):
    """Raised when a bounding box cannot be turned into an image request."""


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle expressed as min/max coordinates."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @classmethod
    def from_points(cls, points: Iterable[Sequence[float]]) -> "BoundingBox":
        xs: list[float] = []
        ys: list[float] = []
        for point in points:
            xs.append(float(point[0]))
            ys.append(float(point[1]))
        if not xs:
            raise InvalidBoundingBoxError("A bounding box requires at least one point.")
        return cls(min(xs), min(ys), max(xs), max(ys))

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def is_valid(self) -> bool:
        return self.width > 0 and self.height > 0

    @property
    def ratio(self) -> float:
        """Width over height; only defined for boxes with a positive height."""

        if self.height <= 0:
            raise InvalidBoundingBoxError(
                "Bounding box height must be positive to compute its aspect ratio."
            )
        return self.width / self.height

    def corners(self) -> Tuple[Tuple[float, float], ...]:
        return (
            (self.xmin, self.ymin),
            (self.xmax, self.ymin),
            (self.xmax, self.ymax),
            (self.xmin, self.ymax),
        )

    def bounding_box(self) -> "BoundingBox":
        return self


@dataclass(frozen=True)
class RequestDescriptor:
    """Everything needed to issue one export request against a REST image service."""

    base_url: str
    bbox: BoundingBox
    resolution: int
    srid: int
    image_format: str

    def query(self) -> str:
        return build_request_query(
            self.base_url, self.bbox, self.resolution, self.srid, self.image_format
        )

    def json_query(self) -> str:
        return f"{self.query()}&f=json"

    def image_query(self) -> str:
        return f"{self.query()}&f=image"


def normalize_service_url(url: str) -> str:
    """Point bare service URLs at the generic export operation."""

    url = (url or "").strip()
    if not url:
        raise ValueError("A REST service URL is required.")
    if url.endswith("/"):
        return f"{url}{GENERIC_EXPORT_PATH}"
    return url


def alternate_endpoint(query: str) -> str:
    """Swap the generic export path for the image-specific one."""

    return query.replace(GENERIC_EXPORT_PATH, IMAGE_EXPORT_PATH)


def build_request_query(
    base_url: str,
    bbox: BoundingBox,
    resolution: int,
    srid: int,
    image_format: str,
) -> str:
    if not bbox.is_valid:
        raise InvalidBoundingBoxError(
            "Bounding box must have a positive width and height "
            f"(got {bbox.width!r} x {bbox.height!r})."
        )
    if resolution <= 0:
        raise ValueError(f"Resolution must be a positive number of pixels (got {resolution}).")

    parts = [
        base_url,
        bounding_box_clause(bbox),
        f"&bboxSR={srid}",
        image_size_clause(resolution, bbox),
        f"&imageSR={srid}",
        f"&format={image_format}",
    ]
    return "".join(parts)


def bounding_box_clause(bbox: BoundingBox) -> str:
    values = (bbox.xmin, bbox.ymin, bbox.xmax, bbox.ymax)
    return "bbox=" + COMMA.join(format_number(value) for value in values)


def image_size(resolution: int, bbox: BoundingBox) -> Tuple[float, float]:
    """Return (width, height) in pixels, keeping the long edge at ``resolution``."""

    ratio = bbox.ratio
    if ratio > 1:
        return float(resolution), resolution / ratio
    return resolution * ratio, float(resolution)


def image_size_clause(resolution: int, bbox: BoundingBox) -> str:
    width, height = image_size(resolution, bbox)
    return f"&size={format_number(width)}{COMMA}{format_number(height)}"


def format_number(value: float) -> str:
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return repr(number)


def normalize_image_type(image_type: str) -> str:
    """Turn a service format name into a file extension.

    Bit-depth markers are stripped (``png32`` -> ``png``) and any TIFF
    flavour collapses to ``tif``. The service request keeps the original
    format name.
    """

    token = (image_type or "").strip()
    for suffix in BIT_DEPTH_SUFFIXES:
        if token.endswith(suffix):
            token = token[: -len(suffix)]

    lowered = token.lower()
    for suffix in TIFF_SUFFIXES:
        if lowered.endswith(suffix):
            token = token[: -len(suffix)] + TIFF_EXTENSION
            break
    return token
