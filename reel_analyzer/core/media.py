"""Media data model for Reel Analyzer.

This module defines the core data structures passed between collaborators:
- MediaType: Kind of media asset
- MediaAsset: A remote media URL found in a post
- DownloadedMedia: A media asset written to local temp storage
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any


class MediaType(str, Enum):
    """Kind of media asset.

    Determines which analysis call handles the asset and which file
    extension the downloader uses.
    """

    VIDEO = "video"
    IMAGE = "image"

    @property
    def extension(self) -> str:
        return "mp4" if self is MediaType.VIDEO else "jpg"


@dataclass(frozen=True)
class MediaAsset:
    """A media item extracted from a post.

    Attributes:
        type: VIDEO or IMAGE.
        url: Direct URL to the media file. Never a blob: URL.
    """

    type: MediaType
    url: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type.value, "url": self.url}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MediaAsset":
        return cls(type=MediaType(data["type"]), url=data["url"])


@dataclass(frozen=True)
class DownloadedMedia:
    """A media asset stored on local disk.

    Attributes:
        type: VIDEO or IMAGE.
        path: Local file path.
        url: Source URL the file was fetched from.
    """

    type: MediaType
    path: Path
    url: str = ""


def primary_url(assets: list[MediaAsset]) -> str | None:
    """Pick the URL clients should show first: first video, else first asset."""
    if not assets:
        return None
    for asset in assets:
        if asset.type is MediaType.VIDEO:
            return asset.url
    return assets[0].url
