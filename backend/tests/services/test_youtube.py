import pytest

from learnflow.services.youtube import extract_video_id, is_valid_youtube_url


@pytest.mark.unit
@pytest.mark.parametrize("url,video_id", [
    ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
    ("https://youtube.com/watch?feature=share&v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
    ("https://youtu.be/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
    ("https://m.youtube.com/shorts/abcdefGHIJ1", "abcdefGHIJ1"),
    ("https://www.youtube.com/embed/dQw4w9WgXcQ?start=10", "dQw4w9WgXcQ"),
])
def test_extract_video_id(url, video_id):
    assert extract_video_id(url) == video_id
    assert is_valid_youtube_url(url)


@pytest.mark.unit
@pytest.mark.parametrize("url", [
    "",
    "not a url",
    "https://vimeo.com/123456",
    "https://www.youtube.com/",
    "https://www.youtube.com/feed/subscriptions",
    "ftp://youtube.com/watch?v=dQw4w9WgXcQ",
])
def test_rejects_non_video_urls(url):
    assert not is_valid_youtube_url(url)
