"""
YouTube URL helpers
"""

import re
from typing import Optional

_URL_PATTERN = re.compile(r"^https?://(www\.|m\.)?(youtube\.com|youtu\.be)/.+", re.IGNORECASE)
_VIDEO_ID_PATTERN = re.compile(
    r"(?:youtube\.com/watch\?(?:.*&)?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/v/|youtube\.com/shorts/)"
    r"([A-Za-z0-9_-]{6,20})"
)


def extract_video_id(url: str) -> Optional[str]:
    match = _VIDEO_ID_PATTERN.search(url or "")
    return match.group(1) if match else None


def is_valid_youtube_url(url: str) -> bool:
    """A youtube.com/youtu.be link that names a video"""
    if not url or not _URL_PATTERN.match(url):
        return False
    return extract_video_id(url) is not None
