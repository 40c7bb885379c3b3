from datetime import datetime, timedelta, timezone

from incremental_diff import find_new_item_boundary
from records import FeedItem, StoredArticleRef

BASE = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def item(n, title=None, published=None):
    return FeedItem(
        title=title or f"Story {n}",
        link=f"https://example.com/{n}",
        published_at=published or BASE - timedelta(hours=n),
    )


def stored(n, title=None, published=None, url=None):
    return StoredArticleRef(
        url=url or f"https://example.com/{n}",
        title=title or f"Story {n}",
        published_at=published or BASE - timedelta(hours=n),
    )


def test_boundary_at_first_known_url():
    parsed = [item(n) for n in range(5)]
    assert find_new_item_boundary(parsed, [stored(2), stored(3), stored(4)]) == 2


def test_nothing_stored_means_everything_is_new():
    parsed = [item(n) for n in range(4)]
    assert find_new_item_boundary(parsed, []) == 4


def test_no_new_items():
    parsed = [item(n) for n in range(3)]
    assert find_new_item_boundary(parsed, [stored(0)]) == 0


def test_no_overlap_means_everything_is_new():
    parsed = [item(n) for n in range(3)]
    assert find_new_item_boundary(parsed, [stored(10), stored(11)]) == 3


def test_title_match_within_tolerance():
    moved = stored(1, url="https://example.com/old-permalink", published=BASE - timedelta(hours=1, seconds=30))
    parsed = [item(0), item(1)]
    assert find_new_item_boundary(parsed, [moved], tolerance_seconds=60) == 1


def test_title_match_outside_tolerance_is_new():
    moved = stored(1, url="https://example.com/old-permalink", published=BASE - timedelta(hours=1, minutes=5))
    parsed = [item(0), item(1)]
    assert find_new_item_boundary(parsed, [moved], tolerance_seconds=60) == 2


def test_naive_stored_dates_are_treated_as_utc():
    naive = stored(1, url="https://example.com/other", published=(BASE - timedelta(hours=1)).replace(tzinfo=None))
    assert find_new_item_boundary([item(0), item(1)], [naive], tolerance_seconds=60) == 1
