from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

# Rhubarb's mouth shapes: A-F basic, G/H/X extended. X is the rest pose.
SHAPES = ("A", "B", "C", "D", "E", "F", "G", "H", "X")
FALLBACK_SHAPE = "X"


@dataclass
class Cue:
    start: float  # seconds
    value: str  # one of SHAPES


@dataclass(frozen=True)
class ProgressSpan:
    """Sub-range of a job's overall progress handed to one runner call."""
    low: float
    high: float

    def scale(self, percent: float) -> float:
        percent = min(max(percent, 0.0), 100.0)
        return self.low + (self.high - self.low) * percent / 100.0


class JobKind(str, Enum):
    ANALYSIS = "analysis"
    EXPORT = "export"


class JobState(str, Enum):
    IDLE = "idle"
    NORMALIZING = "normalizing"
    RECOGNIZING = "recognizing"
    RECOGNIZING_FALLBACK = "recognizing_fallback"
    COMPILING = "compiling"
    RENDERING = "rendering"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})

_ANY_ACTIVE_EXIT = {JobState.FAILED, JobState.CANCELLED}

_TRANSITIONS = {
    JobKind.ANALYSIS: {
        JobState.IDLE: {JobState.NORMALIZING} | _ANY_ACTIVE_EXIT,
        JobState.NORMALIZING: {JobState.RECOGNIZING} | _ANY_ACTIVE_EXIT,
        JobState.RECOGNIZING: {JobState.RECOGNIZING_FALLBACK, JobState.SUCCEEDED} | _ANY_ACTIVE_EXIT,
        JobState.RECOGNIZING_FALLBACK: {JobState.SUCCEEDED} | _ANY_ACTIVE_EXIT,
    },
    JobKind.EXPORT: {
        JobState.IDLE: {JobState.COMPILING} | _ANY_ACTIVE_EXIT,
        JobState.COMPILING: {JobState.RENDERING} | _ANY_ACTIVE_EXIT,
        JobState.RENDERING: {JobState.SUCCEEDED} | _ANY_ACTIVE_EXIT,
    },
}


class VideoQuality(str, Enum):
    STANDARD = "standard"
    HIGH = "high"


@dataclass
class AnalysisOptions:
    recognizer: str = "pocketSphinx"
    export_format: str = "json"


@dataclass
class RenderOptions:
    resolution: int = 512  # square output, pixels per side
    background_color: str = "#ffffff"
    quality: VideoQuality = VideoQuality.STANDARD
    frame_rate: int = 30


@dataclass
class WorkspaceEntry:
    job_id: str
    path: Path


@dataclass
class JobEvent:
    """One line of the analysis stream: progress, success or failure."""
    type: str
    value: Optional[float] = None
    result: Optional[str] = None
    reason: Optional[str] = None
    kind: Optional[str] = None

    @classmethod
    def progress(cls, value: float) -> "JobEvent":
        return cls(type="progress", value=value)

    @classmethod
    def success(cls, result: str) -> "JobEvent":
        return cls(type="success", result=result)

    @classmethod
    def failure(cls, reason: str, kind: str) -> "JobEvent":
        return cls(type="failure", reason=reason, kind=kind)

    @property
    def is_terminal(self) -> bool:
        return self.type in ("success", "failure")


@dataclass
class Job:
    id: str
    kind: JobKind
    workspace: WorkspaceEntry
    state: JobState = JobState.IDLE
    progress: Optional[float] = None  # last reported value
    result: Any = None
    error: Optional[Exception] = None
    history: list = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: JobState) -> None:
        allowed = _TRANSITIONS[self.kind].get(self.state, set())
        if state not in allowed:
            raise RuntimeError(
                f"Illegal {self.kind.value} job transition {self.state.value} -> {state.value}"
            )
        self.history.append(self.state)
        self.state = state

    def report_progress(self, value: float) -> bool:
        """Record a progress value; False if it doesn't advance or the job is done."""
        if self.finished or not 0.0 <= value <= 1.0:
            return False
        if self.progress is not None and value <= self.progress:
            return False
        self.progress = value
        return True

    def succeed(self, result: Any) -> None:
        self.advance(JobState.SUCCEEDED)
        self.result = result

    def fail(self, error: Exception) -> None:
        self.advance(JobState.FAILED)
        self.error = error

    def cancel(self) -> None:
        if not self.finished:
            self.advance(JobState.CANCELLED)
