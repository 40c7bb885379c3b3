import asyncio

import pytest

from errors import MirrorResolutionError
from mirrors import MirrorResolver, convert, describe, is_indirection_url, validate_path


class FakeProbe:
    def __init__(self, healthy=()):
        self.healthy = set(healthy)
        self.calls = []

    async def probe(self, url, timeout=None):
        self.calls.append(url)
        await asyncio.sleep(0)
        return url in self.healthy


def test_path_validation():
    assert validate_path("rsshub://github/issue/owner/repo")
    assert validate_path("rsshub://twitter/user/some_name-1")
    assert not validate_path("rsshub://")
    assert not validate_path("rsshub://github/../../etc?x=1")
    assert not validate_path("https://example.com/feed")


def test_convert_and_describe():
    assert convert("rsshub://github/trending/daily", "https://rsshub.example.org/") == \
        "https://rsshub.example.org/github/trending/daily"

    info = describe("rsshub://github/trending/daily")
    assert info.platform == "github"
    assert info.route == "trending/daily"
    assert info.description == "GitHub repository activity"
    assert describe("rsshub://somesite/x").description == "somesite feed"

    with pytest.raises(MirrorResolutionError):
        convert("https://example.com/feed", "https://rsshub.example.org")
    assert not is_indirection_url("")


@pytest.mark.asyncio
async def test_first_healthy_instance_wins_and_is_cached():
    probe = FakeProbe(healthy={"https://b.example/"})
    resolver = MirrorResolver(probe, instances=["https://a.example", "https://b.example", "https://c.example"],
                              default="https://default.example")

    assert await resolver.resolve("rsshub://v2ex/topics/latest") == "https://b.example/v2ex/topics/latest"
    assert probe.calls == ["https://a.example/", "https://b.example/"]

    assert await resolver.resolve("rsshub://sspai/index") == "https://b.example/sspai/index"
    assert len(probe.calls) == 2


@pytest.mark.asyncio
async def test_falls_back_to_default_when_all_probes_fail():
    probe = FakeProbe()
    resolver = MirrorResolver(probe, instances=["https://a.example", "https://b.example"],
                              default="https://default.example")

    assert await resolver.resolve("rsshub://github/trending") == "https://default.example/github/trending"
    assert probe.calls == ["https://a.example/", "https://b.example/"]


@pytest.mark.asyncio
async def test_plain_urls_pass_through_without_probing():
    probe = FakeProbe()
    resolver = MirrorResolver(probe, instances=["https://a.example"], default="https://default.example")

    assert await resolver.resolve("https://example.com/feed.xml") == "https://example.com/feed.xml"
    assert probe.calls == []


@pytest.mark.asyncio
async def test_invalid_path_is_rejected():
    resolver = MirrorResolver(FakeProbe(), instances=[], default="https://default.example")
    with pytest.raises(MirrorResolutionError):
        await resolver.resolve("rsshub://github/<script>")


@pytest.mark.asyncio
async def test_concurrent_resolves_share_one_health_check():
    probe = FakeProbe(healthy={"https://a.example/"})
    resolver = MirrorResolver(probe, instances=["https://a.example"], default="https://default.example")

    urls = await asyncio.gather(*(resolver.resolve("rsshub://github/trending") for _ in range(3)))

    assert urls == ["https://a.example/github/trending"] * 3
    assert probe.calls == ["https://a.example/"]
