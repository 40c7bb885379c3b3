from utils import clean_text_content, count_words, generate_summary, reading_time_minutes, RetryHelper


def test_word_count_mixes_latin_and_cjk():
    assert count_words("Hello world 你好世界") == 6


def test_word_count_joins_latin_around_ideographs():
    assert count_words("Hello世界world") == 3
    assert count_words("안녕 hello") == 1


def test_word_count_empty():
    assert count_words("") == 0
    assert count_words("   ") == 0


def test_summary_untouched_when_short():
    assert generate_summary("  A short   sentence. ") == "A short sentence."


def test_summary_truncates_on_word_boundary():
    text = " ".join(["word"] * 100)
    summary = generate_summary(text, 200)

    assert summary.endswith("...")
    body = summary[:-3]
    assert len(body) <= 200
    assert not body.endswith(" ")
    assert body.split(" ")[-1] == "word"


def test_reading_time_rounds_up():
    assert reading_time_minutes(0) == 0
    assert reading_time_minutes(200) == 1
    assert reading_time_minutes(201) == 2


def test_clean_text_content_strips_tags_and_entities():
    assert clean_text_content("<b>Tom &amp; Jerry</b>\n  show ") == "Tom & Jerry show"
    assert clean_text_content(None) == ""


def test_retry_delay_is_exponential_and_capped():
    helper = RetryHelper(max_retries=5, base_delay=2.0, max_delay=10.0)
    assert [helper.calculate_delay(i) for i in range(4)] == [2.0, 4.0, 8.0, 10.0]
