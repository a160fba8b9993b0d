"""
Compile mouth cues plus one still image per shape into an ffmpeg concat-demuxer
script (``file '<path>'`` / ``duration <seconds>`` pairs).
"""
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from backend.domain.errors import InputInvalid, TimelineCompileError
from backend.domain.models import FALLBACK_SHAPE, Cue

MIN_SEGMENT_SECONDS = 0.01
# how long the last cue is held when the audio length is unknown
DEFAULT_HOLD_SECONDS = 0.5


def _quote(path: Path) -> str:
    # concat demuxer quoting: close the quote, escaped quote, reopen
    text = str(path).replace("\\", "/")
    return "'" + text.replace("'", "'\\''") + "'"


def _frame_for(shape: str, frames: Mapping[str, Path]) -> Path:
    frame = frames.get(shape) or frames.get(FALLBACK_SHAPE)
    if frame is None:
        raise TimelineCompileError(
            f"No image for mouth shape '{shape}' and no fallback '{FALLBACK_SHAPE}' image. "
            f"Upload frame_{shape} or frame_{FALLBACK_SHAPE}."
        )
    return frame


def segment_durations(
    cues: Sequence[Cue],
    *,
    audio_duration: Optional[float] = None,
    min_duration: float = MIN_SEGMENT_SECONDS,
    default_hold: float = DEFAULT_HOLD_SECONDS,
) -> List[float]:
    """Seconds each cue stays on screen; the last one runs to the end of the audio."""
    durations: List[float] = []
    for index, cue in enumerate(cues):
        if index + 1 < len(cues):
            end = cues[index + 1].start
        elif audio_duration is not None:
            end = audio_duration
        else:
            end = cue.start + default_hold
        durations.append(max(min_duration, end - cue.start))
    return durations


def compile_timeline(
    cues: Sequence[Cue],
    frames: Mapping[str, Path],
    script_path: Path,
    *,
    audio_duration: Optional[float] = None,
    min_duration: float = MIN_SEGMENT_SECONDS,
    default_hold: float = DEFAULT_HOLD_SECONDS,
) -> Path:
    """
    Write the concat script for ``cues`` to ``script_path`` and return it.

    One ``file``/``duration`` pair per cue, then the last frame once more
    without a duration so the demuxer honours the final duration.
    """
    if not cues:
        raise InputInvalid("No mouth cues to render. Run the analysis first.")

    ordered = sorted(cues, key=lambda c: c.start)
    durations = segment_durations(
        ordered,
        audio_duration=audio_duration,
        min_duration=min_duration,
        default_hold=default_hold,
    )

    lines: List[str] = []
    for cue, duration in zip(ordered, durations):
        lines.append(f"file {_quote(_frame_for(cue.value, frames))}")
        lines.append(f"duration {duration:.6f}")
    lines.append(f"file {_quote(_frame_for(ordered[-1].value, frames))}")

    script_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return script_path
