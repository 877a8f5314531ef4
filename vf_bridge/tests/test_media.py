import asyncio
import contextlib
import json

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from vf_bridge.enums import MediaKind
from vf_bridge.exceptions import MediaDownloadError
from vf_bridge.media_cache import MediaCache
from vf_bridge.media_resolver import MediaDownloader, MediaResolver, filename_for, methods_for
from vf_bridge.models import MediaBuffer
from vf_bridge.utils.media_urls import cache_key_for, normalize_direct_url


class StubDownloader:
    def __init__(self, fail=False):
        self.fail = fail
        self.fetched = []

    async def fetch(self, url):
        self.fetched.append(url)
        if self.fail:
            raise MediaDownloadError("boom")
        return MediaBuffer(data=b"GIF89a", filename=filename_for(url, ""))


@pytest.mark.asyncio
async def test_second_send_reuses_issued_file_id(sink, resolver, media_cache):
    url = "https://x.com/cat.png"
    await resolver.send(sink, 10, url, caption="Cat")
    await resolver.send(sink, 10, url)

    first, second = sink.ops("send_media")
    assert first["source"] == "url"
    assert first["caption"] == "Cat"
    assert second["source"] == "handle"
    assert second["media"] == f"file-photo-{first['message_id']}"
    assert media_cache.get("HTTPS://X.COM/CAT.PNG").kind is MediaKind.PHOTO


@pytest.mark.asyncio
async def test_rejected_cached_handle_is_evicted(sink, resolver, media_cache):
    url = "https://x.com/cat.png"
    media_cache.remember(url, MediaKind.PHOTO, "file-stale")
    sink.media_rule = lambda kind, source, media: media != "file-stale"

    await resolver.send(sink, 10, url)

    sent = sink.ops("send_media")
    assert [s["source"] for s in sent] == ["url"]
    assert media_cache.get(url).file_id == f"file-photo-{sent[0]['message_id']}"


@pytest.mark.asyncio
async def test_animated_url_tries_animation_then_document(sink, resolver):
    tried = []

    def rule(kind, source, media):
        tried.append(kind)
        return kind is MediaKind.DOCUMENT

    sink.media_rule = rule
    sent = await resolver.send(sink, 10, "https://x.com/dance.gif")
    assert tried == [MediaKind.ANIMATION, MediaKind.DOCUMENT]
    assert sink.ops("send_media")[0]["message_id"] == sent.message_id
    assert resolver.cache.get("https://x.com/dance.gif").kind is MediaKind.DOCUMENT


@pytest.mark.asyncio
async def test_force_upload_skips_url_strategy(sink, media_cache):
    downloader = StubDownloader()
    resolver = MediaResolver(media_cache, downloader, force_upload=True, debug=True)
    await resolver.send(sink, 10, "https://x.com/a.gif")

    sent = sink.ops("send_media")
    assert [s["source"] for s in sent] == ["buffer"]
    assert sent[0]["media"].filename == "media.gif"
    assert downloader.fetched == ["https://x.com/a.gif"]


@pytest.mark.asyncio
async def test_upload_used_when_platform_refuses_url(sink, media_cache):
    sink.media_rule = lambda kind, source, media: source != "url"
    resolver = MediaResolver(media_cache, StubDownloader(), force_upload=False, debug=False)
    await resolver.send(sink, 10, "https://x.com/p.jpg")
    assert [s["source"] for s in sink.ops("send_media")] == ["buffer"]


@pytest.mark.asyncio
async def test_everything_fails_sends_url_as_text(sink, media_cache):
    sink.media_rule = lambda kind, source, media: False
    resolver = MediaResolver(media_cache, StubDownloader(fail=True), force_upload=False, debug=False)
    sent = await resolver.send(sink, 10, "https://x.com/p.jpg?a=1&b=2")

    assert sink.ops("send_text")[0]["html"] == "https://x.com/p.jpg?a=1&amp;b=2"
    assert sent.message_id == sink.ops("send_text")[0]["message_id"]
    assert len(media_cache) == 0


@pytest.mark.asyncio
async def test_share_links_are_rewritten_before_sending(sink, resolver):
    await resolver.send(sink, 10, "https://drive.google.com/file/d/abc123/view?usp=sharing")
    assert sink.ops("send_media")[0]["media"] == "https://drive.google.com/uc?export=download&id=abc123"


def test_normalize_direct_url():
    assert normalize_direct_url("https://www.dropbox.com/s/xyz/a.png?dl=0") == "https://dl.dropboxusercontent.com/s/xyz/a.png"
    assert normalize_direct_url("https://i.imgur.com/abc.gifv") == "https://i.imgur.com/abc.mp4"
    assert normalize_direct_url("https://x.com/a.png") == "https://x.com/a.png"
    assert normalize_direct_url(None) == ""
    assert cache_key_for(" HTTPS://X.com/A.png ") == "https://x.com/a.png"


def test_methods_and_filenames():
    assert methods_for("https://x.com/a.mp4?x=1") == (MediaKind.ANIMATION, MediaKind.DOCUMENT, MediaKind.PHOTO)
    assert methods_for("https://x.com/a.jpeg") == (MediaKind.PHOTO, MediaKind.DOCUMENT)
    assert filename_for("https://x.com/file", "image/webp") == "media.webp"
    assert filename_for("https://x.com/a.gif", "") == "media.gif"
    assert filename_for("https://x.com/a.png", "application/octet-stream") == "media.jpg"
    assert filename_for("https://x.com/blob", "") == "media"


def test_cache_persists_and_evicts_oldest(tmp_path):
    path = tmp_path / "cache.json"
    cache = MediaCache(path, max_entries=2, save_delay=0.0)
    cache.remember("https://x.com/1.png", MediaKind.PHOTO, "f1")
    cache.remember("https://x.com/2.png", MediaKind.PHOTO, "f2")
    cache.remember("https://x.com/3.gif", MediaKind.ANIMATION, "f3")

    assert "https://x.com/1.png" not in cache
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["https://x.com/3.gif"] == {"kind": "animation", "fileId": "f3"}

    reloaded = MediaCache(path, max_entries=2, save_delay=0.0)
    assert len(reloaded) == 2
    assert reloaded.get("https://x.com/2.png").file_id == "f2"


def test_cache_ignores_corrupt_file(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text("{not json", encoding="utf-8")
    assert len(MediaCache(path)) == 0


@pytest.mark.asyncio
async def test_cache_write_is_deferred_inside_loop(tmp_path):
    path = tmp_path / "cache.json"
    cache = MediaCache(path, save_delay=0.01)
    cache.remember("https://x.com/1.png", MediaKind.PHOTO, "f1")
    assert not path.exists()
    await asyncio.sleep(0.05)
    assert "https://x.com/1.png" in json.loads(path.read_text(encoding="utf-8"))


@contextlib.asynccontextmanager
async def media_server():
    async def gif(request):
        assert request.headers["User-Agent"].startswith("Mozilla/5.0")
        return web.Response(body=b"GIF89a" * 10, content_type="image/gif")

    async def big(request):
        return web.Response(body=b"x" * 4096, content_type="image/png")

    async def missing(request):
        return web.Response(status=404)

    app = web.Application()
    app.router.add_get("/a.gif", gif)
    app.router.add_get("/big.png", big)
    app.router.add_get("/missing.png", missing)
    server = TestServer(app)
    await server.start_server()
    session = aiohttp.ClientSession()

    async def session_factory():
        return session

    try:
        yield server, session_factory
    finally:
        await session.close()
        await server.close()


@pytest.mark.asyncio
async def test_downloader_fetches_bytes_and_names_file():
    async with media_server() as (server, factory):
        buffer = await MediaDownloader(factory, max_bytes=1024).fetch(str(server.make_url("/a.gif")))
    assert buffer.data == b"GIF89a" * 10
    assert buffer.filename == "media.gif"


@pytest.mark.asyncio
async def test_downloader_rejects_errors_and_oversize():
    async with media_server() as (server, factory):
        downloader = MediaDownloader(factory, max_bytes=1024)
        with pytest.raises(MediaDownloadError):
            await downloader.fetch(str(server.make_url("/missing.png")))
        with pytest.raises(MediaDownloadError):
            await downloader.fetch(str(server.make_url("/big.png")))
