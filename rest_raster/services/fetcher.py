from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple

import httpx

from .probe import ServiceMetadata, short_error_detail

logger = logging.getLogger(__name__)

RESOLUTION_ERROR_MESSAGE = "Try smaller resolution"


async def download_image(client: httpx.AsyncClient, url: str, path: Path) -> str:
    """Save the image behind ``url`` to ``path``.

    Returns an empty string on success and a short diagnostic otherwise.
    An HTTP 200 carrying a JSON error body counts as a failure.
    """

    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        return f"{exc.response.status_code} {short_error_detail(exc.response.text)}"
    except httpx.RequestError as exc:
        return f"request error: {exc}"
    except (httpx.InvalidURL, ValueError) as exc:
        return f"invalid image URL: {exc}"

    if not _is_image_response(response):
        content_type = response.headers.get("Content-Type", "unknown")
        return f"unexpected payload ({content_type}): {short_error_detail(response.text)}"

    content = response.content
    if not content:
        return "empty image payload"

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    except OSError as exc:
        return f"unable to write {path}: {exc}"

    logger.debug("Saved %d bytes from %s to %s", len(content), url, path)
    return ""


async def fetch_service_image(
    client: httpx.AsyncClient, metadata: ServiceMetadata, path: Path
) -> Tuple[str, int]:
    """Download the probed image, preferring the service-provided link.

    Returns ``(diagnostic, request_count)``; the diagnostic is empty on success
    and ``RESOLUTION_ERROR_MESSAGE`` for any failure.
    """

    requests = 0
    result = ""
    if metadata.href:
        requests += 1
        result = await download_image(client, metadata.href, path)
        if result:
            logger.warning(
                "Download from service link %s failed (%s); falling back to image query.",
                metadata.href,
                result,
            )
            requests += 1
            result = await download_image(client, metadata.image_query, path)
    else:
        requests += 1
        result = await download_image(client, metadata.image_query, path)

    if result:
        logger.warning("Image download failed: %s", result)
        return RESOLUTION_ERROR_MESSAGE, requests
    return "", requests


def _is_image_response(response: httpx.Response) -> bool:
    content_type = response.headers.get("Content-Type", "")
    return "image" in content_type.lower()
