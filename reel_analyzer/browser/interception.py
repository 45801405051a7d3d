"""Request interception filter for scraping pages.

Blocks resources the extractor never needs (stylesheets, fonts, images,
media, analytics beacons) so a post page reaches network idle sooner. The
document and scripts that carry the embedded post JSON are always allowed.
"""

import logging
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

BLOCKED_RESOURCE_TYPES = frozenset({"stylesheet", "font", "image", "media"})

# Hosts (or parent domains) of analytics and tracking endpoints
BLOCKED_HOSTS = frozenset(
    {
        "google-analytics.com",
        "googletagmanager.com",
        "doubleclick.net",
        "connect.facebook.net",
        "graph.facebook.com",
        "pixel.facebook.com",
        "analytics.tiktok.com",
        "scorecardresearch.com",
        "hotjar.com",
        "segment.io",
    }
)


def is_tracking_host(url: str) -> bool:
    """Check whether a URL points at a known analytics/tracking host."""
    host = urlparse(url).hostname or ""
    host = host.lower()
    return any(host == blocked or host.endswith("." + blocked) for blocked in BLOCKED_HOSTS)


def should_block(resource_type: str, url: str) -> bool:
    """Decide whether a page request should be aborted.

    Args:
        resource_type: Playwright resource type ("document", "script", ...).
        url: Requested URL.

    Returns:
        True for blocked resource types and tracking hosts.
    """
    if resource_type in BLOCKED_RESOURCE_TYPES:
        return True
    return is_tracking_host(url)


async def handle_blocked_resources(route) -> None:
    """Playwright route handler applying should_block()."""
    request = route.request
    if should_block(request.resource_type, request.url):
        await route.abort()
    else:
        await route.continue_()
