import os
import re
import tempfile
from typing import Callable, Dict, List

import httpx

# The database module creates its SQLite file on import; keep it out of the repo.
os.environ.setdefault("REST_RASTER_DATA_DIR", tempfile.mkdtemp(prefix="rest-raster-tests-"))
os.environ.setdefault("REST_RASTER_REQUEST_DELAY", "0")

SIZE_PATTERN = re.compile(r"size=([\d.]+)%2C([\d.]+)")
BBOX_PATTERN = re.compile(r"bbox=([-\d.e]+)%2C([-\d.e]+)%2C([-\d.e]+)%2C([-\d.e]+)")
JPEG_BYTES = b"\xff\xd8\xff\xe0fake-jpeg-payload\xff\xd9"


def json_response(url: str, payload: Dict, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload, request=httpx.Request("GET", url))


def image_response(url: str, content: bytes = JPEG_BYTES) -> httpx.Response:
    return httpx.Response(
        200,
        content=content,
        headers={"Content-Type": "image/jpeg"},
        request=httpx.Request("GET", url),
    )


class StubAsyncClient:
    """Records every GET and answers through ``handler``."""

    def __init__(self, handler: Callable[[str], httpx.Response]):
        self.handler = handler
        self.calls: List[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def get(self, url: str, params=None, headers=None):
        self.calls.append(url)
        return self.handler(url)


class FakeExportService:
    """Mimics an ArcGIS ``exportImage`` endpoint.

    Requests whose long edge exceeds ``max_size`` (or whose bbox starts at or
    beyond ``broken_from_x``) are answered with an error document on HTTP 200.
    """

    def __init__(self, *, max_size: float = 4096, broken_from_x: float | None = None):
        self.max_size = max_size
        self.broken_from_x = broken_from_x
        self.json_sizes: List[float] = []
        self.image_downloads: List[str] = []
        self.on_image: Callable[[str], None] | None = None

    def __call__(self, url: str) -> httpx.Response:
        if url.startswith("https://cdn.example.test/"):
            self.image_downloads.append(url)
            if self.on_image is not None:
                self.on_image(url)
            return image_response(url)

        width, height = (float(value) for value in SIZE_PATTERN.search(url).groups())
        xmin, ymin, xmax, ymax = (float(value) for value in BBOX_PATTERN.search(url).groups())
        if url.endswith("&f=json"):
            if "export?" in url:
                self.json_sizes.append(max(width, height))
            if "exportImage?" not in url:
                return json_response(url, {"error": {"code": 400, "message": "Invalid URL"}})
            if max(width, height) > self.max_size or (
                self.broken_from_x is not None and xmin >= self.broken_from_x
            ):
                return json_response(
                    url,
                    {"error": {"code": 500, "message": "Error exporting image", "details": []}},
                )
            name = f"img_{int(xmin)}_{int(max(width, height))}.jpg"
            return json_response(
                url,
                {
                    "href": f"https://cdn.example.test/output/{name}",
                    "width": width,
                    "height": height,
                    "extent": {"xmin": xmin, "ymin": ymin, "xmax": xmax, "ymax": ymax},
                },
            )

        return json_response(url, {"error": {"code": 500, "message": "Unexpected request"}})


class ShiftTransform:
    """Affine stand-in for a projection: service space is caller space shifted."""

    def __init__(self, srid: int = 3857, dx: float = 1000.0, dy: float = -500.0):
        self.srid = srid
        self.dx = dx
        self.dy = dy

    def forward(self, bbox):
        return type(bbox)(bbox.xmin + self.dx, bbox.ymin + self.dy, bbox.xmax + self.dx, bbox.ymax + self.dy)

    def inverse(self, bbox):
        return type(bbox)(bbox.xmin - self.dx, bbox.ymin - self.dy, bbox.xmax - self.dx, bbox.ymax - self.dy)
