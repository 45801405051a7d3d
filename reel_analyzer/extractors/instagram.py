"""Instagram media extractor.

Locates the media of a post inside the JSON blobs Instagram embeds in
<script> tags, falling back to <video> elements and Open Graph tags.
Carousel posts yield one asset per slide; single posts yield their image
and/or video.
"""

import json
import logging
from collections.abc import Callable
from typing import Any, Union

from bs4 import BeautifulSoup

from reel_analyzer.core.exceptions import (
    InvalidInputError,
    NotFoundError,
    UpstreamBlockedError,
)
from reel_analyzer.core.media import MediaAsset, MediaType

logger = logging.getLogger(__name__)

JSONValue = Union[dict[str, Any], list[Any], str, int, float, bool, None]

NOT_AVAILABLE_SELECTOR = "main > div > div > span"
LOGIN_FORM_SELECTOR = 'input[name="username"]'


def find_nodes(
    tree: JSONValue, predicate: Callable[[dict[str, Any]], bool]
) -> list[dict[str, Any]]:
    """Collect every object in a JSON tree that satisfies predicate.

    Traversal is depth-first in document order. Arrays and scalars are
    never matched themselves but arrays are descended into.
    """
    matches: list[dict[str, Any]] = []
    stack: list[JSONValue] = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            if predicate(node):
                matches.append(node)
            stack.extend(reversed(list(node.values())))
        elif isinstance(node, list):
            stack.extend(reversed(node))
    return matches


def _clean_url(url: str) -> str:
    return url.replace("\\u0026", "&").replace("\\", "")


def _first_image_url(node: dict[str, Any]) -> str | None:
    versions = node.get("image_versions2")
    if not isinstance(versions, dict):
        return None
    candidates = versions.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        url = candidates[0].get("url")
        if isinstance(url, str) and url:
            return _clean_url(url)
    return None


def _first_video_url(node: dict[str, Any]) -> str | None:
    versions = node.get("video_versions")
    if isinstance(versions, list) and versions and isinstance(versions[0], dict):
        url = versions[0].get("url")
        if isinstance(url, str) and url:
            return _clean_url(url)
    return None


def media_from_node(node: dict[str, Any]) -> tuple[list[MediaAsset], list[MediaAsset]]:
    """Read media from a post object.

    Returns:
        (carousel_assets, single_assets). A carousel slide that carries a
        video contributes only the video, not its cover image.
    """
    carousel: list[MediaAsset] = []
    single: list[MediaAsset] = []

    slides = node.get("carousel_media")
    if isinstance(slides, list):
        logger.debug("Found carousel with %d items", len(slides))
        for slide in slides:
            if not isinstance(slide, dict):
                continue
            video_url = _first_video_url(slide)
            if video_url:
                carousel.append(MediaAsset(MediaType.VIDEO, video_url))
                continue
            image_url = _first_image_url(slide)
            if image_url:
                carousel.append(MediaAsset(MediaType.IMAGE, image_url))
        return carousel, single

    image_url = _first_image_url(node)
    if image_url:
        single.append(MediaAsset(MediaType.IMAGE, image_url))
    video_url = _first_video_url(node)
    if video_url:
        single.append(MediaAsset(MediaType.VIDEO, video_url))
    return carousel, single


def _assets_from_scripts(soup: BeautifulSoup, post_id: str) -> list[MediaAsset]:
    assets: list[MediaAsset] = []
    for script in soup.find_all("script"):
        content = script.get_text()
        if '"code"' not in content:
            continue
        try:
            data = json.loads(content.strip())
        except ValueError:
            continue

        matches = find_nodes(data, lambda n: n.get("code") == post_id)
        logger.debug("Found %d objects with code %s", len(matches), post_id)
        for node in matches:
            carousel, single = media_from_node(node)
            if carousel:
                return carousel
            if single:
                assets = single
        if assets:
            return assets
    return assets


def _assets_from_dom(soup: BeautifulSoup, found: list[MediaAsset]) -> list[MediaAsset]:
    assets = list(found)

    video = soup.find("video")
    src = video.get("src") if video else None
    if src and not src.startswith("blob:"):
        assets.append(MediaAsset(MediaType.VIDEO, src))

    if not assets:
        for prop in ("og:video:secure_url", "og:video"):
            meta = soup.find("meta", attrs={"property": prop})
            content = meta.get("content") if meta else None
            if content:
                assets.append(MediaAsset(MediaType.VIDEO, content))
                break
    return assets


def dedupe_assets(assets: list[MediaAsset]) -> list[MediaAsset]:
    """Drop blob: URLs and repeated URLs, keeping first occurrences."""
    seen: set[str] = set()
    unique: list[MediaAsset] = []
    for asset in assets:
        if asset.url.startswith("blob:") or asset.url in seen:
            continue
        seen.add(asset.url)
        unique.append(asset)
    return unique


def extract_media_assets(html: str, post_id: str) -> list[MediaAsset]:
    """Extract every media asset of an Instagram post page.

    Args:
        html: Rendered page markup.
        post_id: The post shortcode.

    Returns:
        Non-empty list of assets in extraction order.

    Raises:
        NotFoundError: The post is unavailable or has no media.
        UpstreamBlockedError: Instagram served a login wall, or only
            blob: URLs were found.
        InvalidInputError: post_id is empty.
    """
    soup = BeautifulSoup(html, "html.parser")

    if soup.select(NOT_AVAILABLE_SELECTOR):
        raise NotFoundError("This post is private or does not exist")

    if soup.select(LOGIN_FORM_SELECTOR):
        raise UpstreamBlockedError("Something went wrong, please try again")

    if not post_id:
        raise InvalidInputError("Post ID is required for media extraction")

    assets = _assets_from_scripts(soup, post_id)
    assets = _assets_from_dom(soup, assets)

    if not assets:
        raise NotFoundError("This post does not contain any media")

    unique = dedupe_assets(assets)
    if len(unique) != len(assets):
        logger.debug("Filtered %d blob URLs and duplicates", len(assets) - len(unique))

    if not unique:
        raise UpstreamBlockedError(
            "Unable to extract direct media URLs (blob URLs detected). "
            "This may be due to Instagram's anti-bot measures."
        )

    logger.info("Extracted %d media assets for %s", len(unique), post_id)
    return unique


class InstagramExtractor:
    """Content Extractor collaborator used by the pipeline."""

    def extract(self, html: str, post_id: str) -> list[MediaAsset]:
        return extract_media_assets(html, post_id)
