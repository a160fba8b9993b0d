import asyncio
import contextlib
import logging
import uuid
from pathlib import Path
from typing import AsyncIterator, List, Mapping, Optional, Tuple

from backend.config import Settings
from backend.domain.errors import (
    AssetsMissing,
    JobError,
    NormalizationFailed,
    RecognitionFailed,
    RecognitionHung,
)
from backend.domain.models import (
    AnalysisOptions,
    Cue,
    Job,
    JobEvent,
    JobKind,
    JobState,
    ProgressSpan,
    RenderOptions,
)
from backend.domain.services.timeline_compiler import compile_timeline
from backend.infrastructure import ffmpeg_adapter, rhubarb_adapter
from backend.infrastructure.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

FULL_SPAN = ProgressSpan(0.0, 1.0)
# background length past the last cue when the audio can't be probed
TAIL_SECONDS = 1.5

Attempt = Tuple[JobState, Path, ProgressSpan]


class JobController:
    """
    Sequences one job at a time through its external tools.

    Analysis: normalize -> recognize (normalized audio) -> recognize again on
    the raw upload if that failed. Export: compile timeline -> render.
    Every job owns exactly one workspace, released on every exit path.
    """

    def __init__(self, settings: Settings, workspaces: WorkspaceManager) -> None:
        self.settings = settings
        self.workspaces = workspaces

    def create_job(self, kind: JobKind) -> Job:
        job_id = uuid.uuid4().hex
        entry = self.workspaces.allocate(job_id)
        return Job(id=job_id, kind=kind, workspace=entry)

    def close(self, job: Job) -> None:
        self.workspaces.release(job.workspace)

    # ------------------------------------------------------------------ analysis

    async def stream_analysis(
        self,
        job: Job,
        audio_path: Path,
        dialog_path: Optional[Path] = None,
        options: Optional[AnalysisOptions] = None,
    ) -> AsyncIterator[JobEvent]:
        """
        Yield progress events, then exactly one success or failure event.
        Closing the iterator early (client gone) kills the running tool.
        """
        options = options or AnalysisOptions()
        try:
            job.advance(JobState.NORMALIZING)
            normalized: Optional[Path] = None
            try:
                normalized = await ffmpeg_adapter.normalize_audio(
                    audio_path,
                    job.workspace.path / "normalized.wav",
                    ffmpeg_binary=self.settings.ffmpeg_binary,
                )
            except NormalizationFailed as exc:
                logger.warning("Job %s: normalization failed, using raw audio: %s", job.id, exc.reason)
            else:
                event = self._progress(job, 0.0)
                if event is not None:
                    yield event

            attempts = self._plan_attempts(audio_path, normalized)
            output: Optional[str] = None
            for index, (state, target, span) in enumerate(attempts):
                job.advance(state)
                is_last = index == len(attempts) - 1
                # ToolNotFound propagates without a raw retry
                try:
                    async with contextlib.aclosing(
                        self._recognize(job, target, dialog_path, options, span)
                    ) as events:
                        async for event in events:
                            yield event
                    output = job.result
                    break
                except (RecognitionFailed, RecognitionHung) as exc:
                    if is_last:
                        self._check_assets(exc)
                        raise
                    logger.warning(
                        "Job %s: recognition on %s failed (%s), retrying on raw audio",
                        job.id, target.name, exc.reason,
                    )

            job.succeed(output)
            yield JobEvent.success(output)
        except JobError as exc:
            job.fail(exc)
            logger.info("Job %s failed (%s): %s", job.id, exc.kind, exc.reason)
            yield JobEvent.failure(exc.reason, exc.kind)
        except (asyncio.CancelledError, GeneratorExit):
            job.cancel()
            logger.info("Job %s cancelled", job.id)
            raise
        except Exception as exc:  # noqa: BLE001 - top-level guard
            logger.exception("Job %s crashed", job.id)
            job.fail(exc)
            yield JobEvent.failure(f"Internal engine error: {exc}", "internal_error")
        finally:
            self.close(job)

    def _plan_attempts(self, raw: Path, normalized: Optional[Path]) -> List[Attempt]:
        if normalized is None:
            return [(JobState.RECOGNIZING, raw, FULL_SPAN)]
        return [
            (JobState.RECOGNIZING, normalized, self.settings.primary_span),
            (JobState.RECOGNIZING_FALLBACK, raw, self.settings.fallback_span),
        ]

    async def _recognize(
        self,
        job: Job,
        target: Path,
        dialog_path: Optional[Path],
        options: AnalysisOptions,
        span: ProgressSpan,
    ) -> AsyncIterator[JobEvent]:
        """Run one recognizer attempt, relaying its progress; stores stdout on job.result."""
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(
            rhubarb_adapter.recognize(
                target,
                binary=self.settings.rhubarb_path,
                recognizer=options.recognizer,
                export_format=options.export_format,
                dialog_path=dialog_path,
                idle_timeout=self.settings.watchdog_seconds,
                span=span,
                on_progress=queue.put_nowait,
            )
        )
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                value = await queue.get()
                if value is None:
                    break
                event = self._progress(job, value)
                if event is not None:
                    yield event
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        job.result = task.result()

    def _check_assets(self, exc: JobError) -> None:
        """Turn a generic recognizer failure into an actionable one when the models are gone."""
        if not self.settings.assets_dir.is_dir():
            raise AssetsMissing(
                f"MISSING ENGINE ASSETS: the model folder {self.settings.assets_dir} is missing. "
                "Rhubarb cannot run without its acoustic models; reinstall or re-extract the application."
            ) from exc

    @staticmethod
    def _progress(job: Job, value: float) -> Optional[JobEvent]:
        if job.report_progress(value):
            return JobEvent.progress(value)
        return None

    # ------------------------------------------------------------------ export

    async def run_export(
        self,
        job: Job,
        audio_path: Path,
        cues: List[Cue],
        frames: Mapping[str, Path],
        options: Optional[RenderOptions] = None,
    ) -> Path:
        """
        Compile and render; returns the video inside the job's workspace.

        On success the caller delivers the file and then calls ``close``; on
        any failure the workspace is already released when this raises.
        """
        options = options or RenderOptions()
        try:
            job.advance(JobState.COMPILING)
            duration = await ffmpeg_adapter.probe_duration(
                audio_path, ffprobe_binary=self.settings.ffprobe_binary
            )
            script = compile_timeline(
                cues,
                frames,
                job.workspace.path / "script.txt",
                audio_duration=duration,
            )
            if duration is None:
                duration = max(c.start for c in cues) + TAIL_SECONDS

            job.advance(JobState.RENDERING)
            video = await ffmpeg_adapter.render_video(
                script,
                audio_path,
                job.workspace.path / "output.mp4",
                options,
                duration=duration,
                ffmpeg_binary=self.settings.ffmpeg_binary,
            )
        except asyncio.CancelledError:
            job.cancel()
            logger.info("Export %s cancelled", job.id)
            self.close(job)
            raise
        except JobError as exc:
            job.fail(exc)
            logger.info("Export %s failed (%s): %s", job.id, exc.kind, exc.reason)
            self.close(job)
            raise
        except Exception as exc:
            logger.exception("Export %s crashed", job.id)
            job.fail(exc)
            self.close(job)
            raise
        job.succeed(video)
        return video
