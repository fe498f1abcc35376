from __future__ import annotations

import httpx
import pytest

from channelhub.adapters.media import MediaMapper
from channelhub.core.domain import Attachment, AttachmentType, ChannelType
from tests.factories import meta_credentials

pytestmark = pytest.mark.unit


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class GraphMedia:
    """Answers media lookups with a URL derived from the requested id."""

    def __init__(self) -> None:
        self.paths: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        media_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(
            200, json={"url": f"https://cdn.test/{media_id}", "mime_type": "image/jpeg"}
        )


def _mapper(graph: GraphMedia, clock: Clock) -> MediaMapper:
    client = httpx.AsyncClient(transport=httpx.MockTransport(graph))
    return MediaMapper(client, ttl_seconds=300, clock=clock)


def _image(media_id: str) -> Attachment:
    return Attachment(type=AttachmentType.IMAGE, url=media_id)


@pytest.mark.asyncio
async def test_resolved_media_is_cached_within_ttl() -> None:
    graph, clock = GraphMedia(), Clock()
    mapper = _mapper(graph, clock)

    first = await mapper.map_attachment(_image("m-1"), ChannelType.WHATSAPP, meta_credentials())
    clock.now += 100
    second = await mapper.map_attachment(_image("m-1"), ChannelType.WHATSAPP, meta_credentials())

    assert first.url == second.url == "https://cdn.test/m-1"
    assert second.mime_type == "image/jpeg"
    assert len(graph.paths) == 1


@pytest.mark.asyncio
async def test_expired_entry_is_evicted_and_fetched_again() -> None:
    graph, clock = GraphMedia(), Clock()
    mapper = _mapper(graph, clock)
    await mapper.map_attachment(_image("m-1"), ChannelType.WHATSAPP, meta_credentials())

    clock.now += 301
    await mapper.map_attachment(_image("m-1"), ChannelType.WHATSAPP, meta_credentials())

    assert len(graph.paths) == 2
    assert mapper.cache_size == 1


@pytest.mark.asyncio
async def test_map_attachments_purges_stale_entries() -> None:
    graph, clock = GraphMedia(), Clock()
    mapper = _mapper(graph, clock)
    await mapper.map_attachments(
        [_image("m-1"), _image("m-2")], ChannelType.FACEBOOK, meta_credentials()
    )
    assert mapper.cache_size == 2

    clock.now += 400
    await mapper.map_attachments([_image("m-3")], ChannelType.FACEBOOK, meta_credentials())

    assert mapper.cache_size == 1


@pytest.mark.asyncio
async def test_clean_expired_cache_keeps_fresh_entries() -> None:
    graph, clock = GraphMedia(), Clock()
    mapper = _mapper(graph, clock)
    await mapper.map_attachment(_image("old"), ChannelType.WHATSAPP, meta_credentials())
    clock.now += 200
    await mapper.map_attachment(_image("new"), ChannelType.WHATSAPP, meta_credentials())

    clock.now += 150
    assert mapper.clean_expired_cache() == 1
    assert mapper.cache_size == 1


@pytest.mark.asyncio
async def test_urls_and_tiktok_media_pass_through() -> None:
    graph = GraphMedia()
    mapper = _mapper(graph, Clock())
    url = Attachment(type=AttachmentType.IMAGE, url="https://example.test/a.png")

    assert await mapper.map_attachment(url, ChannelType.FACEBOOK, meta_credentials()) is url
    tiktok = _image("tt-1")
    assert await mapper.map_attachment(tiktok, ChannelType.TIKTOK, meta_credentials()) is tiktok
    assert graph.paths == []
