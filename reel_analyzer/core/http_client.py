"""HTTP client for external requests.

Configures httpx clients with sensible defaults for timeouts and user agent.
Used by the media downloader and the content API notifier.
"""

import httpx

# Default timeout configuration (in seconds)
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 60.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0

# Media CDNs reject obvious bot user agents
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/133.0.0.0 Safari/537.36"
)


def get_timeout(read: float = DEFAULT_READ_TIMEOUT) -> httpx.Timeout:
    """Get default timeout configuration.

    Args:
        read: Read timeout in seconds.

    Returns:
        httpx.Timeout with configured connect/read/write/pool timeouts.
    """
    return httpx.Timeout(
        connect=DEFAULT_CONNECT_TIMEOUT,
        read=read,
        write=DEFAULT_WRITE_TIMEOUT,
        pool=DEFAULT_POOL_TIMEOUT,
    )


def get_headers() -> dict[str, str]:
    """Get default headers for requests."""
    return {
        "User-Agent": USER_AGENT,
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.5",
    }


def create_client(
    *,
    timeout: httpx.Timeout | None = None,
    follow_redirects: bool = True,
    max_redirects: int = 10,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create an async HTTP client with configured defaults.

    Args:
        timeout: Custom timeout configuration. Uses defaults if not provided.
        follow_redirects: Whether to follow redirects (default: True).
        max_redirects: Maximum number of redirects to follow (default: 10).
        transport: Optional transport override (tests pass httpx.MockTransport).

    Returns:
        Configured httpx.AsyncClient ready for use.

    Example:
        async with create_client() as client:
            response = await client.get("https://example.com")
    """
    return httpx.AsyncClient(
        timeout=timeout or get_timeout(),
        headers=get_headers(),
        follow_redirects=follow_redirects,
        max_redirects=max_redirects,
        transport=transport,
    )
