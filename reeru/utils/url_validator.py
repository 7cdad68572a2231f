import re
from typing import Any

from reeru.errors import InvalidInput

MAX_URL_LENGTH = 2048


class VideoURLValidator:
    """Source video URLs accepted for conversion. Only YouTube is supported."""

    YOUTUBE_PATTERN = re.compile(
        r"^https?://(www\.)?(youtube\.com/(watch\?v=|embed/|v/)|youtu\.be/)[\w\-]+(&[\w=]*)?$"
    )

    @classmethod
    def is_supported(cls, url: str) -> bool:
        return cls.YOUTUBE_PATTERN.match(url.strip()) is not None

    @classmethod
    def validate(cls, url: Any) -> str:
        if url is None or (isinstance(url, str) and not url.strip()):
            raise InvalidInput("Missing video_url")
        if not isinstance(url, str) or len(url) > MAX_URL_LENGTH:
            raise InvalidInput("Invalid video_url")
        if not cls.is_supported(url):
            raise InvalidInput("Currently only YouTube videos are supported")
        return url.strip()
