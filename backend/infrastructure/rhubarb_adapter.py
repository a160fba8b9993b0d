"""
Rhubarb Lip Sync adapter: run the recognition binary on an audio file, stream
its percentage progress and return the raw cue output (JSON or TSV).

Rhubarb resolves its acoustic models from a ``res`` directory next to the
executable, so it is always started with its own install directory as the
working directory.
"""
import codecs
import logging
import re
from pathlib import Path
from typing import Callable, List, Optional

from backend.domain.errors import RecognitionFailed, RecognitionHung, ToolNotFound
from backend.domain.models import ProgressSpan
from backend.infrastructure.process import failure_reason, run_process

logger = logging.getLogger(__name__)

_PERCENT = re.compile(r"(\d+)%")
# longest unterminated tail worth carrying into the next chunk ("100" plus slack)
_CARRY = 8


class ProgressTracker:
    """
    Turns raw stderr text into scaled progress values.

    Percentages are reported only when strictly greater than the last one seen;
    markers split across chunk boundaries are stitched back together.
    """

    def __init__(self, span: ProgressSpan) -> None:
        self.span = span
        self.last_percent = -1
        self._carry = ""

    def feed(self, text: str) -> List[float]:
        buffer = self._carry + text
        values: List[float] = []
        end = 0
        for match in _PERCENT.finditer(buffer):
            end = match.end()
            percent = min(int(match.group(1)), 100)
            if percent > self.last_percent:
                self.last_percent = percent
                values.append(self.span.scale(percent))
        self._carry = buffer[end:][-_CARRY:]
        return values


def build_args(
    audio_path: Path,
    *,
    recognizer: str,
    export_format: str,
    dialog_path: Optional[Path] = None,
) -> List[str]:
    args = [
        "-f", export_format,
        "--recognizer", recognizer,
        "--logLevel", "Info",
        str(audio_path),
    ]
    if dialog_path is not None:
        args += ["--dialog", str(dialog_path)]
    return args


async def recognize(
    audio_path: Path,
    *,
    binary: Path,
    recognizer: str = "pocketSphinx",
    export_format: str = "json",
    dialog_path: Optional[Path] = None,
    idle_timeout: Optional[float] = 120.0,
    span: ProgressSpan = ProgressSpan(0.0, 1.0),
    on_progress: Optional[Callable[[float], None]] = None,
) -> str:
    """
    Run Rhubarb and return its stdout.

    Raises ToolNotFound when the binary is absent, RecognitionHung when the
    watchdog fires and RecognitionFailed on a nonzero exit.
    """
    binary = Path(binary)
    if not binary.is_file():
        raise ToolNotFound(
            f"Recognition engine not found at {binary}. Reinstall the application "
            "or set LIPFORGE_RHUBARB_PATH to the rhubarb executable."
        )

    tracker = ProgressTracker(span)
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def on_stderr(chunk: bytes) -> None:
        for value in tracker.feed(decoder.decode(chunk)):
            if on_progress is not None:
                on_progress(value)

    argv = [str(binary)] + build_args(
        audio_path,
        recognizer=recognizer,
        export_format=export_format,
        dialog_path=dialog_path,
    )
    try:
        handle = await run_process(
            argv,
            cwd=binary.parent,
            idle_timeout=idle_timeout,
            on_stderr=on_stderr,
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise ToolNotFound(f"Could not start recognition engine {binary}: {exc}") from exc

    if handle.hung:
        raise RecognitionHung(
            f"Recognition engine stopped responding (no output for {idle_timeout:g}s) "
            "and was terminated. Retry, or try a shorter or cleaner recording."
        )
    if handle.returncode != 0:
        reason = failure_reason(handle.stderr_text(), handle.returncode)
        logger.warning("Rhubarb exited with %s on %s: %s", handle.returncode, audio_path, reason)
        raise RecognitionFailed(reason)
    return handle.stdout_text()
