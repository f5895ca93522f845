from __future__ import annotations

import re
from typing import Optional

_VIDEO_ID_PATTERNS = [
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([^&\n?#]+)"),
    re.compile(r"youtube\.com/shorts/([^&\n?#]+)"),
]


def extract_video_id(url: Optional[str]) -> Optional[str]:
    """
    Pull the video ID out of a YouTube URL.

    Handles watch, youtu.be, embed and shorts links. Returns None for anything else.
    """
    if not url:
        return None
    for pat in _VIDEO_ID_PATTERNS:
        m = pat.search(url)
        if m:
            return m.group(1)
    return None


def thumbnail_url(url: Optional[str]) -> Optional[str]:
    video_id = extract_video_id(url)
    if not video_id:
        return None
    return f"https://img.youtube.com/vi/{video_id}/mqdefault.jpg"
