"""URL parsing for supported platforms.

Derives the identifiers the pipeline uses as cache and deduplication keys.
"""

import re

from reel_analyzer.core.exceptions import InvalidInputError

# Matches instagram.com/p/<shortcode> and instagram.com/reel(s)/<shortcode>
INSTAGRAM_POST_PATTERN = re.compile(
    r"^https://(?:www\.)?instagram\.com/(?:p|reels?)/([a-zA-Z0-9_-]+)/?"
)

YOUTUBE_URL_PATTERN = re.compile(
    r"^(https?://)?(www\.)?"
    r"(youtube\.com/(watch\?v=|embed/|v/|shorts/)|youtu\.be/)[\w-]+(&[\w=]*)?$"
)

YOUTUBE_ID_PATTERN = re.compile(
    r"(?:youtube\.com/watch\?v=|youtube\.com/shorts/|youtu\.be/|youtube\.com/embed/)"
    r"([^&\n?#]+)"
)


def get_post_id(post_url: str | None) -> str:
    """Extract the Instagram shortcode from a post or reel URL.

    Args:
        post_url: e.g. https://www.instagram.com/reel/C9xYz12AbCd/

    Returns:
        The shortcode, never empty.

    Raises:
        InvalidInputError: If the URL is missing or not a post/reel URL.
    """
    if not post_url:
        raise InvalidInputError("Post URL is required")

    match = isinstance(post_url, str) and INSTAGRAM_POST_PATTERN.match(post_url)
    if not match:
        raise InvalidInputError("Invalid URL, post ID not found")
    return match.group(1)


def canonical_post_url(post_id: str) -> str:
    """The URL the browser loads for a shortcode."""
    return f"https://www.instagram.com/p/{post_id}/"


def is_youtube_url(url: object) -> bool:
    return isinstance(url, str) and YOUTUBE_URL_PATTERN.match(url) is not None


def get_youtube_id(url: str) -> str:
    """Extract the YouTube video ID, falling back to the URL itself."""
    match = YOUTUBE_ID_PATTERN.search(url)
    return match.group(1) if match else url
