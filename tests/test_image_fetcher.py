import asyncio

import httpx

from conftest import JPEG_BYTES, StubAsyncClient, image_response, json_response
from rest_raster.services.fetcher import (
    RESOLUTION_ERROR_MESSAGE,
    download_image,
    fetch_service_image,
)
from rest_raster.services.probe import ServiceMetadata
from rest_raster.services.query import BoundingBox

QUERY = "https://svc.example.test/arcgis/rest/services/Ortho/ImageServer/exportImage?bbox=0%2C0%2C10%2C10"
HREF = "https://cdn.example.test/output/img.jpg"


def _metadata(href: str | None) -> ServiceMetadata:
    return ServiceMetadata(query=QUERY, extent=BoundingBox(0, 0, 10, 10), href=href, has_href_key=True)


def test_download_creates_parent_directories(tmp_path):
    client = StubAsyncClient(image_response)
    target = tmp_path / "nested" / "deeper" / "img.jpg"

    result = asyncio.run(download_image(client, HREF, target))

    assert result == ""
    assert target.read_bytes() == JPEG_BYTES


def test_download_rejects_json_error_bodies(tmp_path):
    client = StubAsyncClient(lambda url: json_response(url, {"error": {"message": "too big"}}))
    target = tmp_path / "img.jpg"

    result = asyncio.run(download_image(client, HREF, target))

    assert "unexpected payload" in result
    assert not target.exists()


def test_download_overwrites_previous_file(tmp_path):
    target = tmp_path / "img.jpg"
    target.write_bytes(b"old")
    client = StubAsyncClient(image_response)

    assert asyncio.run(download_image(client, HREF, target)) == ""
    assert target.read_bytes() == JPEG_BYTES


def test_service_link_is_used_first(tmp_path):
    client = StubAsyncClient(image_response)

    result, requests = asyncio.run(fetch_service_image(client, _metadata(HREF), tmp_path / "a.jpg"))

    assert result == ""
    assert requests == 1
    assert client.calls == [HREF]


def test_failed_service_link_falls_back_to_image_query(tmp_path):
    def handler(url: str) -> httpx.Response:
        if url == HREF:
            return httpx.Response(404, text="gone", request=httpx.Request("GET", url))
        return image_response(url)

    client = StubAsyncClient(handler)

    result, requests = asyncio.run(fetch_service_image(client, _metadata(HREF), tmp_path / "a.jpg"))

    assert result == ""
    assert requests == 2
    assert client.calls == [HREF, f"{QUERY}&f=image"]


def test_missing_link_goes_straight_to_image_query(tmp_path):
    client = StubAsyncClient(image_response)

    result, requests = asyncio.run(fetch_service_image(client, _metadata(None), tmp_path / "a.jpg"))

    assert result == ""
    assert requests == 1
    assert client.calls == [f"{QUERY}&f=image"]


def test_any_download_failure_becomes_resolution_error(tmp_path):
    def handler(url: str) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=httpx.Request("GET", url))

    client = StubAsyncClient(handler)

    result, requests = asyncio.run(fetch_service_image(client, _metadata(HREF), tmp_path / "a.jpg"))

    assert result == RESOLUTION_ERROR_MESSAGE
    assert requests == 2
    assert not (tmp_path / "a.jpg").exists()


def test_unparsable_service_link_falls_back_to_image_query(tmp_path):
    bad_href = "http://cdn.example.test:abc/out.jpg"
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=JPEG_BYTES, headers={"Content-Type": "image/jpeg"})

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_service_image(client, _metadata(bad_href), tmp_path / "a.jpg")

    result, requests = asyncio.run(run())

    assert result == ""
    assert requests == 2
    assert len(seen) == 1 and seen[0].endswith("f=image")
    assert (tmp_path / "a.jpg").read_bytes() == JPEG_BYTES


def test_unparsable_url_is_reported_not_raised(tmp_path):
    transport = httpx.MockTransport(lambda request: httpx.Response(500))

    async def run():
        async with httpx.AsyncClient(transport=transport) as client:
            return await download_image(
                client, "http://cdn.example.test:abc/out.jpg", tmp_path / "a.jpg"
            )

    result = asyncio.run(run())

    assert result.startswith("invalid image URL")
    assert not (tmp_path / "a.jpg").exists()
