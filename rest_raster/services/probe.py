from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict

import httpx

from .query import BoundingBox, RequestDescriptor, alternate_endpoint

logger = logging.getLogger(__name__)

EXTENT_KEYS = ("xmin", "ymin", "xmax", "ymax")


@dataclass(frozen=True)
class ServiceMetadata:
    """What the service says an export request would return."""

    query: str
    extent: BoundingBox | None = None
    href: str | None = None
    has_href_key: bool = False
    error: str | None = None
    requests: int = 1

    @property
    def image_query(self) -> str:
        return f"{self.query}&f=image"


async def probe_service_metadata(
    client: httpx.AsyncClient, descriptor: RequestDescriptor
) -> ServiceMetadata:
    """Ask the service to describe the export for ``descriptor``.

    Services publish either ``export`` or ``exportImage``. When the first
    answer carries no ``href`` key the image-specific endpoint is probed once.
    Missing extents are reported as ``extent=None`` rather than raised.
    """

    query = descriptor.query()
    requests = 1
    document = await _fetch_document(client, f"{query}&f=json")

    if "href" not in document:
        alternate = alternate_endpoint(query)
        if alternate != query:
            logger.info("No href in export response; retrying with %s", alternate)
            query = alternate
            requests += 1
            document = await _fetch_document(client, f"{query}&f=json")

    return parse_service_metadata(document, query=query, requests=requests)


def parse_service_metadata(
    document: Dict[str, Any], *, query: str, requests: int = 1
) -> ServiceMetadata:
    href = document.get("href")
    if not isinstance(href, str) or not href.strip():
        href = None
    else:
        href = href.strip()

    return ServiceMetadata(
        query=query,
        extent=_parse_extent(document.get("extent")),
        href=href,
        has_href_key="href" in document,
        error=_service_error_detail(document),
        requests=requests,
    )


async def _fetch_document(client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
    logger.debug("Probing service metadata: %s", url)
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        logger.warning(
            "Service metadata request failed with status %s: %s",
            exc.response.status_code,
            short_error_detail(exc.response.text),
        )
        return {}
    except httpx.RequestError as exc:
        logger.warning("Service metadata request error: %s", exc)
        return {}
    except (httpx.InvalidURL, ValueError) as exc:
        logger.warning("Service metadata URL is not valid: %s", exc)
        return {}

    try:
        payload = response.json()
    except ValueError:
        logger.warning(
            "Service metadata response is not JSON: %s", short_error_detail(response.text)
        )
        return {}

    if not isinstance(payload, dict):
        logger.warning("Service metadata response is not a JSON object.")
        return {}
    return payload


def _parse_extent(extent: Any) -> BoundingBox | None:
    if not isinstance(extent, dict):
        return None
    try:
        values = [float(extent[key]) for key in EXTENT_KEYS]
    except (KeyError, TypeError, ValueError):
        return None
    return BoundingBox(*values)


def _service_error_detail(document: Dict[str, Any]) -> str | None:
    error = document.get("error")
    if not isinstance(error, dict):
        return None
    message = error.get("message")
    details = error.get("details")
    parts = [str(message)] if message else []
    if isinstance(details, list):
        parts.extend(str(item) for item in details if item)
    if not parts:
        return None
    detail = "; ".join(parts)
    logger.warning("Service reported an error: %s", detail)
    return short_error_detail(detail)


def short_error_detail(detail: str) -> str:
    detail = detail.strip()
    if len(detail) > 160:
        return f"{detail[:157]}..."
    return detail or "(no detail)"
