"""Access to uploaded source videos: presence checks and audio/frame extraction."""

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, TypeVar

import httpx
from pydantic import BaseModel, Field

from reelshop.config import Settings, get_settings
from reelshop.utils.errors import MediaError
from reelshop.utils.retry import with_retry

logger = logging.getLogger(__name__)
T = TypeVar("T")


class MediaObject(BaseModel):
    """Storage metadata for an uploaded video."""

    key: str
    size: Optional[int] = None
    content_type: str = "video/mp4"


class ExtractedMedia(BaseModel):
    """Audio track and sampled frames of a video."""

    audio: bytes = b""
    frames: List[bytes] = Field(default_factory=list)
    duration: float = 0.0


class MediaSource(ABC):
    """Where the worker reads source videos from."""

    @abstractmethod
    async def head(self, key: str) -> Optional[MediaObject]:
        """Return storage metadata, or None if the object does not exist."""

    @abstractmethod
    async def extract(self, key: str, max_frames: int, interval: float) -> ExtractedMedia:
        ...


def _is_client_error(e: Exception) -> bool:
    return (
        isinstance(e, httpx.HTTPStatusError)
        and 400 <= e.response.status_code < 500
    )


class FfmpegMediaSource(MediaSource):
    """
    Reads public objects over HTTP and decodes them with ffmpeg.

    HTTP calls are retried with backoff, except on 4xx responses.
    """

    def __init__(
        self,
        bucket: str,
        url_template: str,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        max_attempts: int = 3,
        base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.bucket = bucket
        self.url_template = url_template
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.transport = transport

    def public_url(self, key: str) -> str:
        return self.url_template.format(bucket=self.bucket, key=key)

    def _retrying(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        return with_retry(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            exceptions=(httpx.HTTPError,),
            give_up=_is_client_error,
        )(func)

    async def head(self, key: str) -> Optional[MediaObject]:
        return await self._retrying(self._head)(key)

    async def _head(self, key: str) -> Optional[MediaObject]:
        async with httpx.AsyncClient(transport=self.transport) as client:
            response = await client.head(self.public_url(key), timeout=15.0)

        if response.status_code == 404:
            return None
        response.raise_for_status()

        length = response.headers.get("content-length")
        return MediaObject(
            key=key,
            size=int(length) if length and length.isdigit() else None,
            content_type=response.headers.get("content-type") or "video/mp4",
        )

    async def _download(self, key: str, destination: str) -> None:
        async with httpx.AsyncClient(transport=self.transport) as client:
            async with client.stream("GET", self.public_url(key), timeout=120.0) as response:
                response.raise_for_status()
                with open(destination, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)

    async def _run(self, *args: str) -> bytes:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise MediaError(
                f"{os.path.basename(args[0])} exited with {process.returncode}: "
                f"{stderr.decode(errors='replace')[-500:]}"
            )
        return stdout

    async def _probe_duration(self, video_path: str) -> float:
        output = await self._run(
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            video_path,
        )
        try:
            return float(output.decode().strip())
        except ValueError:
            return 0.0

    async def extract(self, key: str, max_frames: int, interval: float) -> ExtractedMedia:
        """
        Download a video and pull out its audio and frames.

        Audio is 16 kHz MP3 for Whisper.
        Frames are JPEGs taken every ``interval`` seconds, at most ``max_frames``.
        """
        with tempfile.TemporaryDirectory(prefix="reelshop-") as workdir:
            video_path = os.path.join(workdir, "source")
            audio_path = os.path.join(workdir, "audio.mp3")

            try:
                await self._retrying(self._download)(key, video_path)
            except httpx.HTTPError as e:
                raise MediaError(f"Could not download {key}: {e}")

            duration = await self._probe_duration(video_path)
            logger.info(f"Downloaded {key} ({duration:.1f}s)")

            await self._run(
                self.ffmpeg_path, "-y", "-i", video_path,
                "-vf", f"fps=1/{interval}",
                "-q:v", "2",
                "-frames:v", str(max_frames),
                os.path.join(workdir, "frame-%03d.jpg"),
            )

            audio = b""
            try:
                await self._run(
                    self.ffmpeg_path, "-y", "-i", video_path,
                    "-vn", "-acodec", "libmp3lame", "-ab", "128k", "-ar", "16000",
                    audio_path,
                )
                with open(audio_path, "rb") as f:
                    audio = f.read()
            except MediaError as e:
                # Silent clips have no audio stream to extract
                logger.warning(f"No audio extracted from {key}: {e}")

            frames = []
            for name in sorted(os.listdir(workdir)):
                if name.startswith("frame-") and name.endswith(".jpg"):
                    with open(os.path.join(workdir, name), "rb") as f:
                        frames.append(f.read())

        logger.info(f"Extracted {len(frames)} frames and {len(audio)} bytes of audio from {key}")
        return ExtractedMedia(audio=audio, frames=frames, duration=duration)


def create_media_source(settings: Optional[Settings] = None) -> FfmpegMediaSource:
    """Create the media source for the configured bucket."""
    settings = settings or get_settings()
    return FfmpegMediaSource(
        bucket=settings.storage_bucket,
        url_template=settings.storage_url_template,
        ffmpeg_path=settings.ffmpeg_path,
        ffprobe_path=settings.ffprobe_path,
        max_attempts=settings.max_retry_attempts,
        base_delay=settings.base_delay_seconds,
    )
