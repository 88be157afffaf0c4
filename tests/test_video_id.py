import pytest

from watchsync import (
    InvalidIdentifierError,
    canonical_url,
    extract_video_id,
    parse_video_id,
)

VIDEO_ID = "dQw4w9WgXcQ"


@pytest.mark.parametrize(
    "url",
    [
        f"https://youtu.be/{VIDEO_ID}",
        f"https://www.youtube.com/embed/{VIDEO_ID}",
        f"https://www.youtube.com/v/{VIDEO_ID}?version=3",
        f"https://www.youtube.com/watch?v={VIDEO_ID}",
        f"https://www.youtube.com/watch?feature=share&v={VIDEO_ID}",
        f"https://www.youtube.com/watch?v={VIDEO_ID}&t=42s",
        f"https://youtu.be/{VIDEO_ID}#comments",
        f"https://www.youtube.com/user/u/1/{VIDEO_ID}",
        VIDEO_ID,
        f"  {VIDEO_ID}\n",
    ],
)
def test_recognised_shapes(url):
    assert extract_video_id(url) == VIDEO_ID


@pytest.mark.parametrize(
    "url",
    [
        "",
        "not a url",
        "https://example.com/",
        "https://youtu.be/short",
        "https://www.youtube.com/watch?v=dQw4w9WgXcQextra",
        "https://www.youtube.com/watch?list=PL123",
        "dQw4w9WgXc",
    ],
)
def test_unrecognised_strings(url):
    assert extract_video_id(url) is None


def test_non_string_is_not_an_id():
    assert extract_video_id(None) is None


def test_canonical_url_extracts_back():
    assert extract_video_id(canonical_url(VIDEO_ID)) == VIDEO_ID


def test_parse_video_id_raises():
    with pytest.raises(InvalidIdentifierError) as excinfo:
        parse_video_id("https://example.com/")
    assert excinfo.value.url == "https://example.com/"
    assert parse_video_id(f"https://youtu.be/{VIDEO_ID}") == VIDEO_ID
