import os
import logging
from typing import Optional

import ffmpeg

from config import settings

logger = logging.getLogger(__name__)


class VideoSynthesisError(RuntimeError):
    """Raised when ffmpeg cannot produce the requested output."""


def _stderr(error: Exception) -> str:
    stderr = getattr(error, "stderr", None)
    return stderr.decode(errors="replace") if stderr else str(error)


def extract_first_frame(video_path: str, output_path: str) -> str:
    """Write the first decodable frame of `video_path` as a still image."""
    try:
        (
            ffmpeg
            .input(video_path)
            .output(output_path, vframes=1)
            .overwrite_output()
            .run(cmd=settings.FFMPEG_BINARY, quiet=True)
        )
    except (ffmpeg.Error, OSError) as e:
        logger.error("Error extracting first frame: %s", _stderr(e))
        raise VideoSynthesisError("Frame extraction failed") from e
    if not os.path.exists(output_path):
        raise VideoSynthesisError("Frame extraction produced no output")
    return output_path


def get_video_duration_seconds(video_path: str) -> int:
    """
    Probe video metadata and return duration in whole seconds.
    """
    try:
        probe = ffmpeg.probe(video_path, cmd=settings.FFPROBE_BINARY)
        fmt = probe.get("format", {})
        duration = float(fmt.get("duration", 0.0) or 0.0)
        if duration <= 0:
            for stream in probe.get("streams", []):
                if stream.get("codec_type") == "video":
                    duration = float(stream.get("duration", 0.0) or 0.0)
                    if duration > 0:
                        break
        return max(0, int(round(duration)))
    except ffmpeg.Error as e:
        logger.warning("Could not probe video duration for %s: %s", video_path, _stderr(e))
        return 0
    except OSError as e:
        logger.warning("Could not run ffprobe for %s: %s", video_path, e)
        return 0


def synthesize_video(
    background_path: str,
    output_path: str,
    foreground_path: Optional[str] = None,
    duration: Optional[int] = None,
    fps: Optional[int] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> str:
    """
    Render a vertical H.264 clip from a still background.

    The background is scaled to cover the frame and fades in; when a
    foreground cutout is given it is overlaid centered near the bottom.
    """
    duration = duration or settings.VIDEO_DURATION_SECONDS
    fps = fps or settings.VIDEO_FPS
    width = width or settings.VIDEO_WIDTH
    height = height or settings.VIDEO_HEIGHT

    video = (
        ffmpeg
        .input(background_path, loop=1, t=duration)
        .filter('scale', width, height, force_original_aspect_ratio='increase')
        .filter('crop', width, height)
        .filter('fade', type='in', start_time=0, duration=0.5)
    )

    if foreground_path:
        foreground = (
            ffmpeg
            .input(foreground_path, loop=1, t=duration)
            .filter('scale', int(width * 0.8), -2)
        )
        video = ffmpeg.overlay(video, foreground, x='(W-w)/2', y='H-h-H*0.08')

    try:
        (
            ffmpeg
            .output(video, output_path, vcodec='libx264', pix_fmt='yuv420p', r=fps, t=duration)
            .overwrite_output()
            .run(cmd=settings.FFMPEG_BINARY, quiet=True)
        )
    except (ffmpeg.Error, OSError) as e:
        logger.error("Error synthesizing video: %s", _stderr(e))
        raise VideoSynthesisError("Video synthesis failed") from e

    if not os.path.exists(output_path):
        raise VideoSynthesisError("Video synthesis produced no output")
    return output_path
