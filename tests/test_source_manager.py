import pytest

from config import config
from errors import FeedParseError, IngestError
from fakes import FakeFetchClient, story
from mirrors import MirrorResolver
from source_manager import SourceManager

FEED_URL = "https://example.com/feed.xml"


def manager(db, client):
    resolver = MirrorResolver(client, instances=[], default="https://mirror.example")
    return SourceManager(db, client, resolver=resolver)


@pytest.mark.asyncio
async def test_validate_reports_channel_metadata(db, rss):
    client = FakeFetchClient(feeds={FEED_URL: rss([story(1), story(2)], title="Harbour News")})
    info = await manager(db, client).validate_feed(FEED_URL)

    assert info["title"] == "Harbour News"
    assert info["description"] == "Example description"
    assert info["item_count"] == "2"


@pytest.mark.asyncio
async def test_validate_rejects_bad_input(db):
    client = FakeFetchClient(feeds={FEED_URL: b"not a feed"})
    sources = manager(db, client)

    with pytest.raises(IngestError):
        await sources.validate_feed("ftp://example.com/feed")
    with pytest.raises(FeedParseError):
        await sources.validate_feed(FEED_URL)


@pytest.mark.asyncio
async def test_add_uses_feed_title_and_rejects_duplicates(db, rss):
    client = FakeFetchClient(feeds={FEED_URL: rss([story(1)], title="Harbour News")})
    sources = manager(db, client)

    source = await sources.add_source(FEED_URL, category="Local")
    assert source.name == "Harbour News"
    assert source.category == "Local"
    assert source.content_mode == "image_text"

    with pytest.raises(IngestError):
        await sources.add_source(FEED_URL)
    with pytest.raises(IngestError):
        await sources.add_source("https://other.example/feed", content_mode="video", validate=False)


@pytest.mark.asyncio
async def test_indirection_source_validated_through_mirror(db, rss):
    client = FakeFetchClient(feeds={"https://mirror.example/github/trending/daily": rss([story(1)], title="")})
    source = await manager(db, client).add_source("rsshub://github/trending/daily")

    assert source.url == "rsshub://github/trending/daily"
    assert source.name == "GitHub repository activity"


@pytest.mark.asyncio
async def test_update_reorder_and_delete(db):
    sources = manager(db, FakeFetchClient())
    a = await sources.add_source("https://a.example/feed", name="A", validate=False)
    b = await sources.add_source("https://b.example/feed", name="B", validate=False)

    assert await sources.update_source(a.id, name="Renamed", content_mode="text")
    updated = await sources.get_source(a.id)
    assert updated.name == "Renamed"
    assert updated.content_mode == "text"
    with pytest.raises(IngestError):
        await sources.update_source(a.id, content_mode="video")

    await sources.reorder_sources([b.id, a.id])
    assert [s.id for s in await sources.list_sources()] == [b.id, a.id]

    assert await sources.delete_source(a.id)
    assert await sources.get_source(a.id) is None
    assert not await sources.delete_source(a.id)


@pytest.mark.asyncio
async def test_sync_from_config_and_slugs(db, monkeypatch):
    configured = {
        "harbour": {"url": "https://harbour.example/feed", "name": "Harbour", "category": "Local",
                    "content_mode": "text", "active": True},
        "quiet": {"url": "https://quiet.example/feed", "name": "Quiet", "category": "Misc",
                  "content_mode": "image_text", "active": False},
    }
    monkeypatch.setattr(config, "SOURCES", configured)
    sources = manager(db, FakeFetchClient())

    assert await sources.sync_from_config() == 2
    configured["harbour"]["name"] = "Harbour Daily"
    assert await sources.sync_from_config() == 0

    active = await sources.list_sources()
    assert [s.name for s in active] == ["Harbour Daily"]
    assert len(await sources.list_sources(active_only=False)) == 2

    selected = await sources.sources_by_slugs(["quiet", "missing"])
    assert [s.name for s in selected] == ["Quiet"]
