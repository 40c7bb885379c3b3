import pytest

from image_selector import ImageSelector, unwrap_cdn_url
from records import Enclosure, FeedItem, MediaContent, MediaThumbnail


def make_item(**kwargs):
    kwargs.setdefault("title", "Story")
    kwargs.setdefault("link", "https://news.example.com/2024/story")
    return FeedItem(**kwargs)


@pytest.fixture
def selector():
    return ImageSelector()


def test_media_content_prefers_image_medium(selector):
    item = make_item(media_content=[
        MediaContent(url="https://cdn.example.com/clip.mp4", medium="video"),
        MediaContent(url="https://cdn.example.com/photo.jpg", medium="image", description="A photo", credit="Ann"),
    ])
    selection = selector.select_best_image(item)

    assert selection.url == "https://cdn.example.com/photo.jpg"
    assert selection.origin == "media_content"
    assert selection.caption == "A photo"
    assert selection.credit == "Ann"


def test_placeholder_media_content_falls_through(selector):
    item = make_item(
        media_content=[MediaContent(url="https://cdn.example.com/grey-placeholder.png", medium="image")],
        media_thumbnail=MediaThumbnail(url="https://cdn.example.com/thumb.jpg"),
    )
    selection = selector.select_best_image(item)

    assert selection.url == "https://cdn.example.com/thumb.jpg"
    assert selection.origin == "media_thumbnail"


def test_resizing_cdn_urls_are_unwrapped(selector):
    wrapped = "https://o.aolcdn.com/images/dims?quality=85&image_uri=https%3A%2F%2Fs.example.com%2Freal.jpg&w=600"
    item = make_item(media_content=[MediaContent(url=wrapped, medium="image")])

    assert selector.select_best_image(item).url == "https://s.example.com/real.jpg"
    assert unwrap_cdn_url("https://cdn.example.com/a.jpg") == "https://cdn.example.com/a.jpg"


def test_thumbnail_borrows_caption_from_first_media_content(selector):
    item = make_item(
        media_content=[MediaContent(url="https://cdn.example.com/spacer.gif", description="Harbour at dusk", credit="Reuters")],
        media_thumbnail=MediaThumbnail(url="https://cdn.example.com/harbour-small.jpg"),
    )
    selection = selector.select_best_image(item)

    assert selection.url == "https://cdn.example.com/harbour-small.jpg"
    assert selection.caption == "Harbour at dusk"
    assert selection.credit == "Reuters"


def test_image_enclosure_used_when_no_media(selector):
    item = make_item(enclosures=[
        Enclosure(url="https://cdn.example.com/episode.mp3", mime_type="audio/mpeg"),
        Enclosure(url="https://cdn.example.com/cover.png", mime_type="image/png"),
    ])
    selection = selector.select_best_image(item)

    assert selection.url == "https://cdn.example.com/cover.png"
    assert selection.origin == "enclosure"


def test_figure_caption_from_figcaption(selector):
    html = (
        "<p>Intro</p>"
        '<figure><img src="https://cdn.example.com/fig.jpg" alt="alt text">'
        "<figcaption>  The   caption </figcaption></figure>"
        '<img src="https://cdn.example.com/other.jpg">'
    )
    selection = selector.select_best_image(make_item(raw_content_html=html))

    assert selection.url == "https://cdn.example.com/fig.jpg"
    assert selection.origin == "figure"
    assert selection.caption == "The caption"


def test_figure_without_caption_uses_alt(selector):
    html = '<figure><img src="https://cdn.example.com/fig.jpg" alt="Bridge"></figure>'
    assert selector.select_best_image(make_item(raw_content_html=html)).caption == "Bridge"


def test_relative_and_protocol_relative_images(selector):
    item = make_item(raw_content_html='<img src="/media/photo.jpg" alt="">')
    assert selector.select_best_image(item).url == "https://news.example.com/media/photo.jpg"

    item = make_item(raw_content_html='<img src="//cdn.example.com/photo.jpg">')
    assert selector.select_best_image(item).url == "https://cdn.example.com/photo.jpg"

    item = make_item(raw_content_html='<img src="data:image/png;base64,AAAA"><img src="images/x.jpg">')
    assert selector.select_best_image(item) is None


def test_loading_alt_is_skipped(selector):
    html = '<img src="https://cdn.example.com/lazy.jpg" alt="Loading"><img src="https://cdn.example.com/real.jpg">'
    assert selector.select_best_image(make_item(raw_content_html=html)).url == "https://cdn.example.com/real.jpg"


def test_all_placeholders_yield_nothing(selector):
    item = make_item(
        media_content=[MediaContent(url="https://cdn.example.com/placeholder.jpg", medium="image")],
        enclosures=[Enclosure(url="https://cdn.example.com/default.jpg", mime_type="image/jpeg")],
        raw_content_html='<img src="https://cdn.example.com/blank.gif">',
    )
    assert selector.select_best_image(item) is None


def test_text_mode_skips_selection(selector):
    item = make_item(media_content=[MediaContent(url="https://cdn.example.com/photo.jpg", medium="image")])
    assert selector.select_best_image(item, content_mode="text") is None


def test_decorative_images_and_tracking_pixels(selector):
    assert selector.is_decorative("https://example.com/static/logo.png")
    assert selector.is_decorative("https://example.com/img/site-logo-2x.png")
    assert selector.is_decorative("https://example.com/avatars/42.jpg")
    assert selector.is_tracking_pixel(width=1, height=1)
    assert not selector.is_tracking_pixel(width=640)
    assert not selector.is_decorative("https://example.com/img/biologos.jpg")
    assert not selector.is_decorative("https://example.com/img/catalogue.jpg")

    html = (
        '<img src="https://stats.example.com/t.gif" width="1" height="1">'
        '<img src="https://example.com/static/logo.png">'
        '<img src="https://example.com/photos/lake.jpg">'
    )
    selection = selector.select_best_image(make_item(raw_content_html=html))
    assert selection.url == "https://example.com/photos/lake.jpg"


def test_relative_images_resolve_against_source_url_without_link(selector):
    item = make_item(link="", raw_content_html='<img src="/a.jpg">')
    selection = selector.select_best_image(item, source_url="https://blog.example.org/feed")
    assert selection.url == "https://blog.example.org/a.jpg"


@pytest.mark.parametrize("url", [
    "https://cdn.example.com/2024/pixel-9-pro-review.jpg",
    "https://cdn.example.com/icon-of-the-seas-launch.jpg",
    "https://cdn.example.com/apple-logo-redesign.jpg",
])
def test_feed_declared_media_keeps_editorial_photos(selector, url):
    item = make_item(media_content=[MediaContent(url=url, medium="image")])
    assert selector.select_best_image(item).url == url

    item = make_item(enclosures=[Enclosure(url=url, mime_type="image/jpeg")])
    assert selector.select_best_image(item).url == url


def test_tracking_pixel_media_content_is_skipped(selector):
    item = make_item(
        media_content=[MediaContent(url="https://stats.example.com/p.gif", medium="image", width=1, height=1)],
        media_thumbnail=MediaThumbnail(url="https://cdn.example.com/thumb.jpg"),
    )
    assert selector.select_best_image(item).url == "https://cdn.example.com/thumb.jpg"
