"""Gemini media analyzer.

Sends downloaded videos and images (or a YouTube URL) to Google Gemini
and returns the model's text. The text is expected to hold a JSON object,
optionally fenced as ```json; when it does not parse, the raw text is
carried forward instead. A parse failure is never an error.

The google-genai client is synchronous here and runs in the default
executor, bounded by asyncio.wait_for.
"""

import asyncio
import json
import logging
import mimetypes
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from google import genai
from google.genai import types

from reel_analyzer.core.exceptions import AnalysisFailedError
from reel_analyzer.core.media import DownloadedMedia, MediaType

logger = logging.getLogger(__name__)

JSON_FENCE_PATTERN = re.compile(r"```json\n([\s\S]*?)\n```")

# Upload polling: 60 checks x 5s = 5 minutes
UPLOAD_POLL_INTERVAL = 5.0
UPLOAD_POLL_ATTEMPTS = 60

ANALYSIS_PROMPT = """
You are an expert travel analyst. Your task is to identify all specific travel locations from the provided content.

A "location" can be a specific landmark, monument, building, restaurant, hotel, city, state, country, national park, beach, or mountain.

1. Analyze all sources of information: spoken audio, text overlays, and visual landmarks.
2. Extract all specific locations or place names mentioned in the content and categorize each one as:
   Food, Night life, Activities, Nature, Attraction, Shopping, Accommodation, or Not pinned
   (Not pinned when only a country or a general region is named).
3. Extract any additional useful details. Identify the city and country of each place.
4. Return everything in a single string.
"""


class AnalysisKind(str, Enum):
    """Which Gemini call produced a result."""

    VIDEO = "video"
    IMAGES = "images"
    MIXED = "mixed"
    YOUTUBE = "youtube"

    @property
    def title(self) -> str:
        return {
            AnalysisKind.VIDEO: "Video Analysis",
            AnalysisKind.IMAGES: "Image Analysis",
            AnalysisKind.MIXED: "Mixed Media Analysis",
            AnalysisKind.YOUTUBE: "YouTube Video Analysis",
        }[self]


@dataclass
class AnalysisResult:
    """Output of one analysis call.

    Attributes:
        raw_response: Model text as returned.
        result: Parsed JSON, or a fallback object holding the raw text.
        kind: Which call produced it.
        parsed: Whether result came from parsing the model output.
    """

    raw_response: str
    result: Any = field(default_factory=dict)
    kind: AnalysisKind = AnalysisKind.VIDEO
    parsed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "result": self.result,
            "raw_response": self.raw_response,
        }


def parse_analysis_text(text: str, kind: AnalysisKind) -> AnalysisResult:
    """Best-effort parse of model output.

    Args:
        text: Model output, possibly wrapped in a ```json fence.
        kind: Analysis kind, used to title the fallback object.

    Returns:
        AnalysisResult with parsed=True when JSON was found.
    """
    match = JSON_FENCE_PATTERN.search(text)
    candidate = match.group(1) if match else text
    try:
        result = json.loads(candidate)
        return AnalysisResult(raw_response=text, result=result, kind=kind, parsed=True)
    except ValueError:
        logger.warning("Could not parse JSON from %s response, keeping raw text", kind.value)
        fallback = {"title": kind.title, "locations": [], "raw_response": text}
        return AnalysisResult(raw_response=text, result=fallback, kind=kind, parsed=False)


def choose_kind(media: list[DownloadedMedia]) -> AnalysisKind:
    """Route by asset shape.

    A single video uses the video call, one or more images only use the
    image call, anything else uses the mixed call.
    """
    if not media:
        raise AnalysisFailedError("No media to analyze")
    types_present = {m.type for m in media}
    if len(media) == 1 and media[0].type is MediaType.VIDEO:
        return AnalysisKind.VIDEO
    if types_present == {MediaType.IMAGE}:
        return AnalysisKind.IMAGES
    return AnalysisKind.MIXED


def _image_mime_type(path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(str(path))
    if mime_type and mime_type.startswith("image/"):
        return mime_type
    return "image/jpeg"


class GeminiAnalyzer:
    """Analysis collaborator backed by Google Gemini.

    Attributes:
        model: Gemini model name.
        timeout: Seconds allowed for one analysis call, uploads included.
    """

    DEFAULT_MODEL = "gemini-2.0-flash-001"
    DEFAULT_TIMEOUT = 300.0

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        timeout: float | None = None,
        client: Any = None,
    ):
        self._api_key = api_key or ""
        self.model = model or self.DEFAULT_MODEL
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self._api_key)

    def _get_client(self) -> Any:
        if self._client is None:
            if not self._api_key:
                raise AnalysisFailedError(
                    "GOOGLE_GEMINI_API_KEY environment variable is required"
                )
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def _generation_config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            temperature=0.4,
            top_k=32,
            top_p=1,
            max_output_tokens=8192,
            media_resolution=types.MediaResolution.MEDIA_RESOLUTION_LOW,
        )

    # ── Public API ───────────────────────────────────────────────────

    async def analyze(self, media: list[DownloadedMedia]) -> AnalysisResult:
        """Analyze downloaded media, routing by asset shape."""
        kind = choose_kind(media)
        if kind is AnalysisKind.VIDEO:
            return await self.analyze_video(media[0].path)
        if kind is AnalysisKind.IMAGES:
            return await self.analyze_images([m.path for m in media])
        return await self.analyze_mixed(media)

    async def analyze_video(self, path: Path) -> AnalysisResult:
        return await self._run(AnalysisKind.VIDEO, self._video_sync, Path(path))

    async def analyze_images(self, paths: list[Path]) -> AnalysisResult:
        return await self._run(
            AnalysisKind.IMAGES, self._images_sync, [Path(p) for p in paths]
        )

    async def analyze_mixed(self, media: list[DownloadedMedia]) -> AnalysisResult:
        return await self._run(AnalysisKind.MIXED, self._mixed_sync, list(media))

    async def analyze_youtube(self, url: str) -> AnalysisResult:
        return await self._run(AnalysisKind.YOUTUBE, self._youtube_sync, url)

    # ── Execution ────────────────────────────────────────────────────

    async def _run(self, kind: AnalysisKind, func, arg) -> AnalysisResult:
        logger.info("Starting %s analysis with %s", kind.value, self.model)
        started = time.perf_counter()
        loop = asyncio.get_running_loop()
        try:
            text = await asyncio.wait_for(
                loop.run_in_executor(None, func, arg),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise AnalysisFailedError(
                f"{kind.title} timed out after {self.timeout:g}s"
            ) from e
        except AnalysisFailedError:
            raise
        except Exception as e:
            raise AnalysisFailedError(f"Failed to run {kind.title.lower()}: {e}") from e

        if not text:
            raise AnalysisFailedError(f"{kind.title} returned an empty response")

        logger.info(
            "%s completed in %.1fs", kind.title, time.perf_counter() - started
        )
        return parse_analysis_text(text, kind)

    # ── Synchronous Gemini calls (run in executor) ───────────────────

    def _generate(self, parts: list[types.Part]) -> str:
        client = self._get_client()
        response = client.models.generate_content(
            model=self.model,
            contents=types.Content(role="user", parts=parts),
            config=self._generation_config(),
        )
        return response.text or ""

    def _upload_video(self, path: Path) -> Any:
        if not path.exists():
            raise AnalysisFailedError(f"Video file not found: {path}")

        client = self._get_client()
        logger.info(
            "Uploading video to Gemini: %s (%.2f MB)",
            path.name,
            path.stat().st_size / (1024 * 1024),
        )
        uploaded = client.files.upload(
            file=path,
            config={"mime_type": "video/mp4", "display_name": path.name},
        )

        for _ in range(UPLOAD_POLL_ATTEMPTS):
            state = getattr(uploaded.state, "name", uploaded.state)
            if state == "ACTIVE":
                return uploaded
            if state == "FAILED":
                raise AnalysisFailedError("Gemini video processing failed")
            time.sleep(UPLOAD_POLL_INTERVAL)
            uploaded = client.files.get(name=uploaded.name)

        raise AnalysisFailedError("Gemini file processing timed out")

    def _delete_uploads(self, uploads: list[Any]) -> None:
        client = self._get_client()
        for uploaded in uploads:
            try:
                client.files.delete(name=uploaded.name)
            except Exception as e:
                logger.debug("Could not delete Gemini file %s: %s", uploaded.name, e)

    def _video_part(self, uploaded: Any) -> types.Part:
        return types.Part.from_uri(
            file_uri=uploaded.uri, mime_type=uploaded.mime_type or "video/mp4"
        )

    def _image_part(self, path: Path) -> types.Part:
        return types.Part.from_bytes(data=path.read_bytes(), mime_type=_image_mime_type(path))

    def _video_sync(self, path: Path) -> str:
        uploaded = self._upload_video(path)
        try:
            return self._generate(
                [self._video_part(uploaded), types.Part.from_text(text=ANALYSIS_PROMPT)]
            )
        finally:
            self._delete_uploads([uploaded])

    def _images_sync(self, paths: list[Path]) -> str:
        parts = []
        for path in paths:
            if not path.exists():
                logger.warning("Image file not found: %s", path)
                continue
            parts.append(self._image_part(path))
        if not parts:
            raise AnalysisFailedError("None of the images exist on disk")
        parts.append(types.Part.from_text(text=ANALYSIS_PROMPT))
        return self._generate(parts)

    def _mixed_sync(self, media: list[DownloadedMedia]) -> str:
        parts = []
        uploads = []
        try:
            for item in media:
                if not item.path.exists():
                    logger.warning("Media file not found: %s", item.path)
                    continue
                if item.type is MediaType.VIDEO:
                    uploaded = self._upload_video(item.path)
                    uploads.append(uploaded)
                    parts.append(self._video_part(uploaded))
                else:
                    parts.append(self._image_part(item.path))
            if not parts:
                raise AnalysisFailedError("None of the media files exist on disk")
            parts.append(types.Part.from_text(text=ANALYSIS_PROMPT))
            return self._generate(parts)
        finally:
            if uploads:
                self._delete_uploads(uploads)

    def _youtube_sync(self, url: str) -> str:
        return self._generate(
            [
                types.Part(file_data=types.FileData(file_uri=url, mime_type="video/*")),
                types.Part.from_text(text=ANALYSIS_PROMPT),
            ]
        )
