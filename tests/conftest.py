from html import escape

import pytest
import pytest_asyncio

from models import DatabaseQueue


def build_rss(items, title="Example Feed", item_attrs=None):
    """Render a small RSS 2.0 document with the Media RSS namespace declared.

    ``items`` is a list of dicts with link/title/pub_date/description and an
    optional raw ``extra`` XML snippet appended inside the item.
    """
    parts = []
    for index, item in enumerate(items):
        attrs = ""
        if item_attrs and index < len(item_attrs):
            attrs = "".join(f' {k}="{escape(str(v))}"' for k, v in item_attrs[index].items())
        parts.append(
            f"<item{attrs}>"
            f"<title>{escape(item['title'])}</title>"
            f"<link>{escape(item['link'])}</link>"
            f"<guid>{escape(item.get('guid', item['link']))}</guid>"
            f"<pubDate>{item.get('pub_date', 'Fri, 01 Mar 2024 10:00:00 GMT')}</pubDate>"
            f"<description>{escape(item.get('description', '<p>Body text</p>'))}</description>"
            f"{item.get('extra', '')}"
            "</item>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">'
        f"<channel><title>{escape(title)}</title><link>https://example.com/</link>"
        "<description>Example description</description>"
        f"{''.join(parts)}</channel></rss>"
    ).encode("utf-8")


@pytest_asyncio.fixture
async def db(tmp_path):
    """A started database queue on an isolated temp file."""
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
def rss():
    return build_rss
