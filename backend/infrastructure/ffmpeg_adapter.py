import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import ffmpeg

from backend.domain.errors import NormalizationFailed, RenderFailed, ToolNotFound
from backend.domain.models import RenderOptions, VideoQuality
from backend.infrastructure.process import failure_reason, run_process

logger = logging.getLogger(__name__)

CRF_BY_QUALITY = {
    VideoQuality.STANDARD: 23,
    VideoQuality.HIGH: 18,
}


def to_ffmpeg_color(color: str) -> str:
    """'#1e293b' -> '0x1e293b'; named colors pass through."""
    color = color.strip()
    if color.startswith("#"):
        return "0x" + color[1:]
    return color


def build_normalize_command(
    input_audio: Path,
    output_audio: Path,
    *,
    sample_rate: int = 16000,
    ffmpeg_binary: str = "ffmpeg",
) -> List[str]:
    return (
        ffmpeg.input(str(input_audio))
        .output(
            str(output_audio),
            ac=1,  # mono
            ar=sample_rate,
            acodec="pcm_s16le",
            format="wav",
        )
        .overwrite_output()
        .compile(cmd=ffmpeg_binary)
    )


async def normalize_audio(
    input_audio: Path,
    output_audio: Path,
    *,
    sample_rate: int = 16000,
    ffmpeg_binary: str = "ffmpeg",
) -> Path:
    """
    Convert any input audio to 16 kHz mono 16-bit PCM WAV for the recognizer.
    Raises NormalizationFailed on any problem; callers fall back to the raw file.
    """
    cmd = build_normalize_command(
        input_audio, output_audio, sample_rate=sample_rate, ffmpeg_binary=ffmpeg_binary
    )
    try:
        handle = await run_process(cmd)
    except (FileNotFoundError, PermissionError) as exc:
        raise NormalizationFailed(f"ffmpeg unavailable: {exc}") from exc
    if handle.returncode != 0:
        raise NormalizationFailed(
            f"ffmpeg failed: {failure_reason(handle.stderr_text(), handle.returncode)}"
        )
    if not output_audio.is_file() or output_audio.stat().st_size == 0:
        raise NormalizationFailed("ffmpeg did not produce a WAV file")
    return output_audio


async def probe_duration(audio_path: Path, *, ffprobe_binary: str = "ffprobe") -> Optional[float]:
    """Duration of the audio in seconds, or None if ffprobe can't tell."""
    try:
        info = await asyncio.to_thread(ffmpeg.probe, str(audio_path), cmd=ffprobe_binary)
        return float(info["format"]["duration"])
    except (ffmpeg.Error, OSError, KeyError, ValueError) as exc:
        logger.warning("Could not probe duration of %s: %s", audio_path, exc)
        return None


def build_render_command(
    script_path: Path,
    audio_path: Path,
    output_path: Path,
    options: RenderOptions,
    *,
    duration: float,
    ffmpeg_binary: str = "ffmpeg",
) -> List[str]:
    """
    Solid background sized to the audio, the concat timeline centered on top,
    the original audio muxed in, everything cut to the shortest stream.
    """
    size = options.resolution
    background = ffmpeg.input(
        f"color=c={to_ffmpeg_color(options.background_color)}:s={size}x{size}:d={duration:.3f}",
        f="lavfi",
    )
    frames = ffmpeg.input(str(script_path), f="concat", safe=0)
    audio = ffmpeg.input(str(audio_path))
    video = ffmpeg.overlay(background, frames, x="(W-w)/2", y="(H-h)/2", shortest=1)
    return (
        ffmpeg.output(
            video,
            audio.audio,
            str(output_path),
            vcodec="libx264",
            preset="ultrafast",
            crf=CRF_BY_QUALITY[options.quality],
            pix_fmt="yuv420p",
            r=options.frame_rate,
            acodec="aac",
            audio_bitrate="192k",
            shortest=None,
        )
        .overwrite_output()
        .compile(cmd=ffmpeg_binary)
    )


async def render_video(
    script_path: Path,
    audio_path: Path,
    output_path: Path,
    options: RenderOptions,
    *,
    duration: float,
    ffmpeg_binary: str = "ffmpeg",
) -> Path:
    cmd = build_render_command(
        script_path,
        audio_path,
        output_path,
        options,
        duration=duration,
        ffmpeg_binary=ffmpeg_binary,
    )
    try:
        handle = await run_process(cmd)
    except (FileNotFoundError, PermissionError) as exc:
        raise ToolNotFound(
            f"Video encoder '{ffmpeg_binary}' could not be started ({exc}). "
            "Install ffmpeg or set LIPFORGE_FFMPEG to its path."
        ) from exc
    if handle.returncode != 0:
        reason = failure_reason(handle.stderr_text(), handle.returncode)
        raise RenderFailed(f"Render failed: {reason}")
    if not output_path.is_file() or output_path.stat().st_size == 0:
        raise RenderFailed("Render failed: ffmpeg exited cleanly but produced no video")
    return output_path
