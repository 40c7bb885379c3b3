import pytest

from content_normalizer import ContentNormalizer, extract_main_content, sanitize_html
from errors import FetchError, HTTPStatusError
from utils import RateLimiter

LONG_PARAGRAPH = (
    "The harbour authority confirmed on Tuesday that the new breakwater will be finished "
    "before the winter storms arrive, following two years of delays and budget overruns. "
)


class FakePages:
    """Async page fetcher returning canned HTML and recording requested URLs."""

    def __init__(self, page=None, error=None):
        self.page = page
        self.error = error
        self.calls = []

    async def __call__(self, url):
        self.calls.append(url)
        if self.error:
            raise self.error
        return self.page


def make_normalizer(pages=None, **kwargs):
    return ContentNormalizer(page_fetcher=pages, rate_limiter=RateLimiter(0), **kwargs)


def test_sanitize_removes_active_content_and_handlers():
    html = (
        '<header>Site</header><p onclick="steal()">Hello <a href="javascript:alert(1)">x</a>'
        '<a href="https://example.com">y</a></p><script>evil()</script>'
        "<style>p{}</style><nav><ul><li>Home</li></ul></nav><iframe src='https://ads'></iframe>"
        "<footer>bye</footer>"
    )
    cleaned = sanitize_html(html)

    assert "script" not in cleaned
    assert "style" not in cleaned
    assert "<nav" not in cleaned
    assert "<header" not in cleaned
    assert "<footer" not in cleaned
    assert "iframe" not in cleaned
    assert "onclick" not in cleaned
    assert "javascript:" not in cleaned
    assert '<a href="https://example.com">y</a>' in cleaned
    assert cleaned.startswith("<p>Hello")


def test_sanitize_strips_media_only_on_request():
    html = '<p>Text</p><figure><img src="https://e.com/a.jpg"><figcaption>c</figcaption></figure><video></video>'
    assert "<img" in sanitize_html(html)
    stripped = sanitize_html(html, strip_media=True)
    assert "<img" not in stripped
    assert "<figure" not in stripped
    assert "<video" not in stripped
    assert "<p>Text</p>" in stripped


@pytest.mark.asyncio
async def test_normalize_computes_counts_from_sanitized_text():
    result = await make_normalizer().normalize("<p>Hello world</p><script>var a = 1;</script>")

    assert result.html == "<p>Hello world</p>"
    assert result.summary == "Hello world"
    assert result.word_count == 2
    assert result.reading_time == 1
    assert result.backfilled is False


@pytest.mark.asyncio
async def test_short_excerpt_is_backfilled_from_article_block():
    body = "".join(f"<p>{LONG_PARAGRAPH}</p>" for _ in range(6))
    page = f"<html><body><nav>menu</nav><article>{body}</article><footer>f</footer></body></html>"
    pages = FakePages(page=page)

    result = await make_normalizer(pages).normalize("<p>Teaser</p>", item_url="https://example.com/story")

    assert pages.calls == ["https://example.com/story"]
    assert result.backfilled is True
    assert result.html.startswith("<article>")
    assert "breakwater" in result.summary
    assert result.word_count > 100


@pytest.mark.asyncio
async def test_backfill_failure_keeps_excerpt():
    pages = FakePages(error=HTTPStatusError(404, url="https://example.com/gone"))
    result = await make_normalizer(pages).normalize("<p>Teaser text</p>", item_url="https://example.com/gone")

    assert result.backfilled is False
    assert result.html == "<p>Teaser text</p>"

    pages = FakePages(error=FetchError("connection reset"))
    result = await make_normalizer(pages).normalize("<p>Teaser text</p>", item_url="https://example.com/gone")
    assert result.html == "<p>Teaser text</p>"


@pytest.mark.asyncio
async def test_backfill_ignores_pages_without_substantial_block():
    pages = FakePages(page="<html><body><article><p>Too short.</p></article></body></html>")
    result = await make_normalizer(pages).normalize("<p>Teaser</p>", item_url="https://example.com/story")

    assert result.backfilled is False
    assert result.html == "<p>Teaser</p>"


@pytest.mark.asyncio
async def test_long_content_and_missing_url_skip_backfill():
    pages = FakePages(page="<article>unused</article>")
    normalizer = make_normalizer(pages)

    long_html = f"<p>{LONG_PARAGRAPH * 3}</p>"
    await normalizer.normalize(long_html, item_url="https://example.com/a")
    await normalizer.normalize("<p>short</p>", item_url=None)

    assert pages.calls == []


@pytest.mark.asyncio
async def test_text_mode_strips_images():
    html = f'<p>{LONG_PARAGRAPH * 2}</p><img src="https://example.com/a.jpg">'
    result = await make_normalizer().normalize(html, content_mode="text")
    assert "<img" not in result.html


def test_extract_main_content_ranks_selectors():
    body = "".join(f"<p>{LONG_PARAGRAPH}</p>" for _ in range(5))
    page = (
        f'<html><body><div class="sidebar">{body}</div>'
        f'<div class="entry-content">{body}</div><main><p>short</p></main></body></html>'
    )
    block = extract_main_content(page, min_length=500)
    assert block.startswith('<div class="entry-content">')

    assert extract_main_content("", min_length=10) is None


def test_extract_main_content_falls_back_to_readability():
    body = "".join(f"<p>{LONG_PARAGRAPH}</p>" for _ in range(8))
    page = f'<html><head><title>Story</title></head><body><div id="story">{body}</div></body></html>'
    block = extract_main_content(page, min_length=500)

    assert block is not None
    assert "breakwater" in block
