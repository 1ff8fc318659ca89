"""
Composition Engine.

Ordered room clips → one final video + thumbnail:

  1. Download every clip into a per-run scratch directory
  2. Concatenate (single clip: re-encode; otherwise crossfade or hard cut)
  3. Logo overlay (optional)
  4. Burned-in subtitles (optional)
  5. Thumbnail from the first frame
  6. Upload video + thumbnail, return URLs, duration and size

The scratch directory is removed on exit, success or failure.
"""

import os
import time
import shutil
import asyncio
import logging
import tempfile
import subprocess
from io import BytesIO
from typing import Callable, Optional

from PIL import Image, UnidentifiedImageError

from walkthrough.config import PipelineSettings
from .errors import CompositionError
from .filters import (
    OUTPUT_LABEL,
    build_concat_filter,
    build_crossfade_filter,
    build_logo_filter,
    build_subtitles_filter,
)
from .models import ComposedVideo, CompositionSettings
from .storage import StorageBackend, final_video_key, thumbnail_key, with_storage_retry
from .subtitles import build_subtitle_cues, render_srt

logger = logging.getLogger(__name__)

FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "")

Runner = Callable[[list[str]], None]
Probe = Callable[[str], float]
Thumbnailer = Callable[[str, str], None]


# ── Default media backends ───────────────────────────────────────────────────

def _ffmpeg_exe() -> str:
    if FFMPEG_BINARY:
        return FFMPEG_BINARY
    import imageio_ffmpeg
    return imageio_ffmpeg.get_ffmpeg_exe()


def run_ffmpeg(args: list[str]) -> None:
    """Run ffmpeg synchronously; raises CompositionError on a non-zero exit."""
    cmd = [_ffmpeg_exe(), "-hide_banner", "-loglevel", "error", *args]
    logger.debug(f"ffmpeg: {' '.join(cmd)}")
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise CompositionError(f"Could not start ffmpeg: {e}", "FFMPEG_ERROR", e)
    if proc.returncode != 0:
        raise CompositionError(
            f"ffmpeg exited with {proc.returncode}: {proc.stderr[-500:].strip()}",
            "FFMPEG_ERROR",
            proc.stderr,
        )


def probe_duration(path: str) -> float:
    # Lazy import to avoid crashing if ffmpeg is not installed
    from moviepy import VideoFileClip

    with VideoFileClip(path, audio=False) as clip:
        return float(clip.duration)


def save_first_frame(video_path: str, image_path: str) -> None:
    from moviepy import VideoFileClip

    with VideoFileClip(video_path, audio=False) as clip:
        clip.save_frame(image_path, t=0)


# ── Engine ───────────────────────────────────────────────────────────────────

class VideoComposer:
    """
    Usage:
        composer = VideoComposer(storage)
        result = await composer.compose(composition_settings, user_id, project_id)
    """

    def __init__(
        self,
        storage: StorageBackend,
        settings: Optional[PipelineSettings] = None,
        runner: Runner = run_ffmpeg,
        probe: Probe = probe_duration,
        thumbnailer: Thumbnailer = save_first_frame,
    ):
        self.storage = storage
        self.settings = settings or PipelineSettings()
        self.runner = runner
        self.probe = probe
        self.thumbnailer = thumbnailer

    def _encode_args(self) -> list[str]:
        return [
            "-c:v", "libx264",
            "-preset", self.settings.encoder_preset,
            "-crf", str(self.settings.encoder_crf),
            "-pix_fmt", "yuv420p",
            "-an",
        ]

    async def _run(self, args: list[str]) -> None:
        await asyncio.to_thread(self.runner, args)

    async def _probe(self, path: str) -> float:
        try:
            return await asyncio.to_thread(self.probe, path)
        except Exception as e:
            raise CompositionError(
                f"Could not read {os.path.basename(path)}: {e}", "PROBE_FAILED", e
            )

    async def compose(
        self,
        composition: CompositionSettings,
        user_id: str,
        project_id: str,
    ) -> ComposedVideo:
        if not composition.clips:
            raise CompositionError("No clips to compose", "NO_CLIPS")

        try:
            scratch = tempfile.mkdtemp(prefix=f"video-composition-{project_id}-{int(time.time() * 1000)}-")
        except OSError as e:
            raise CompositionError(f"Could not create scratch directory: {e}", "IO_ERROR", e)
        logger.info(f"Project {project_id}: composing {len(composition.clips)} clip(s) in {scratch}")

        try:
            clip_paths = await self._download_clips(composition, scratch)
            current = await self._concatenate(clip_paths, composition, scratch)

            if composition.logo is not None:
                current = await self._overlay_logo(current, composition, scratch)

            subtitles = composition.subtitles
            if subtitles is not None and subtitles.enabled and subtitles.text.strip():
                current = await self._burn_subtitles(current, composition, scratch)

            thumb_path = os.path.join(scratch, "thumbnail.jpg")
            try:
                await asyncio.to_thread(self.thumbnailer, current, thumb_path)
            except Exception as e:
                raise CompositionError(f"Thumbnail extraction failed: {e}", "THUMBNAIL_FAILED", e)

            duration = await self._probe(current)
            video_bytes = await asyncio.to_thread(_read_file, current)
            thumb_bytes = await asyncio.to_thread(_read_file, thumb_path)

            video_url = await self._upload(final_video_key(user_id, project_id), video_bytes, "video/mp4")
            thumb_url = await self._upload(thumbnail_key(user_id, project_id), thumb_bytes, "image/jpeg")

            logger.info(
                f"Project {project_id}: final video {duration:.1f}s, "
                f"{len(video_bytes) / 1024 / 1024:.1f} MB → {video_url}"
            )
            return ComposedVideo(
                video_url=video_url,
                thumbnail_url=thumb_url,
                duration=duration,
                file_size=len(video_bytes),
            )
        except OSError as e:
            raise CompositionError(f"Composition file I/O failed: {e}", "IO_ERROR", e)
        finally:
            try:
                shutil.rmtree(scratch)
            except OSError as e:
                logger.warning(f"Failed to clean up scratch directory {scratch}: {e}")

    async def _download_clips(self, composition: CompositionSettings, scratch: str) -> list[str]:
        payloads = await asyncio.gather(
            *(self.storage.download(clip.url) for clip in composition.clips)
        )
        paths = []
        for index, data in enumerate(payloads):
            path = os.path.join(scratch, f"clip-{index}.mp4")
            await asyncio.to_thread(_write_file, path, data)
            paths.append(path)
        return paths

    async def _concatenate(
        self, clip_paths: list[str], composition: CompositionSettings, scratch: str
    ) -> str:
        output = os.path.join(scratch, "concat.mp4")

        if len(clip_paths) == 1:
            await self._run(["-y", "-i", clip_paths[0], *self._encode_args(), output])
            return output

        width, height = self.settings.resolution_for(composition.aspect_ratio)
        fps = self.settings.output_fps

        if composition.transitions:
            durations = [await self._probe(p) for p in clip_paths]
            graph = build_crossfade_filter(
                durations, width, height, fps, self.settings.crossfade_duration
            )
        else:
            graph = build_concat_filter(len(clip_paths), width, height, fps)

        inputs = [arg for path in clip_paths for arg in ("-i", path)]
        await self._run([
            "-y", *inputs,
            "-filter_complex", graph,
            "-map", f"[{OUTPUT_LABEL}]",
            *self._encode_args(),
            output,
        ])
        return output

    async def _overlay_logo(self, video: str, composition: CompositionSettings, scratch: str) -> str:
        logo_path = os.path.join(scratch, "logo.png")
        await asyncio.to_thread(_write_logo_png, composition.logo.data, logo_path)

        output = os.path.join(scratch, "logo.mp4")
        graph = build_logo_filter(
            composition.logo.position, self.settings.logo_max_size, self.settings.logo_padding
        )
        await self._run([
            "-y", "-i", video, "-i", logo_path,
            "-filter_complex", graph,
            "-map", f"[{OUTPUT_LABEL}]",
            *self._encode_args(),
            output,
        ])
        return output

    async def _burn_subtitles(self, video: str, composition: CompositionSettings, scratch: str) -> str:
        duration = await self._probe(video)
        cues = build_subtitle_cues(
            composition.subtitles.text,
            duration,
            self.settings.subtitle_chunk_seconds,
            self.settings.subtitle_max_chars,
        )
        srt_path = os.path.join(scratch, "subtitles.srt")
        await asyncio.to_thread(_write_file, srt_path, render_srt(cues).encode("utf-8"))

        output = os.path.join(scratch, "subtitled.mp4")
        await self._run([
            "-y", "-i", video,
            "-vf", build_subtitles_filter(
                srt_path, composition.subtitles.font, self.settings.subtitle_font_size
            ),
            *self._encode_args(),
            output,
        ])
        return output

    async def _upload(self, key: str, data: bytes, content_type: str) -> str:
        return await with_storage_retry(
            lambda: self.storage.upload(key, data, content_type),
            max_attempts=self.settings.storage_max_attempts,
            base_delay=self.settings.storage_base_delay,
            max_delay=self.settings.storage_max_delay,
            label=f"upload {key}",
        )


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _write_file(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


def _write_logo_png(data: bytes, path: str) -> None:
    """Re-encode the logo as RGBA PNG so ffmpeg sees one known format."""
    try:
        img = Image.open(BytesIO(data)).convert("RGBA")
    except (UnidentifiedImageError, OSError) as e:
        raise CompositionError(f"Logo is not a readable image: {e}", "INVALID_LOGO", e)
    img.save(path, "PNG")
