import asyncio
import logging
import time
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import TypeAdapter, ValidationError
from starlette.background import BackgroundTask
from starlette.datastructures import UploadFile as StarletteUploadFile

from backend.app.schemas.jobs import (
    AnalysisConfig,
    CueList,
    FailureEventOut,
    ProgressEventOut,
    RenderConfig,
    SuccessEventOut,
)
from backend.config import Settings
from backend.domain.errors import Cancelled, InputMissing, JobError
from backend.domain.models import SHAPES, Job, JobEvent, JobKind
from backend.domain.services.job_service import JobController

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1 MB per read, keeps memory use low for large files
DISCONNECT_POLL_SECONDS = 0.5

router = APIRouter(tags=["jobs"])

_cue_list = TypeAdapter(CueList)


def get_controller(request: Request) -> JobController:
    return request.app.state.controller


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def save_upload(file: UploadFile, dest: Path, max_bytes: int = 0) -> Path:
    """
    Stream an upload into the job workspace. Raises HTTPException on empty or
    oversized files and on disk errors; a partial file is removed.
    """
    try:
        total = 0
        with dest.open("wb") as f:
            while True:
                chunk = await file.read(CHUNK_SIZE)
                if not chunk:
                    break
                total += len(chunk)
                if max_bytes and total > max_bytes:
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large. Maximum size is {max_bytes // (1024 * 1024)} MB.",
                    )
                f.write(chunk)

        if total == 0:
            raise HTTPException(status_code=400, detail=f"Uploaded file '{file.filename}' is empty")
    except HTTPException:
        dest.unlink(missing_ok=True)
        raise
    except OSError as e:
        dest.unlink(missing_ok=True)
        if e.errno == 28:  # ENOSPC
            raise HTTPException(
                status_code=507,
                detail="Out of disk space while saving the upload. Free some space and retry.",
            ) from e
        raise HTTPException(
            status_code=500,
            detail=f"Failed to save file: {e!s}. Check disk space and permissions.",
        ) from e
    return dest


def _upload_name(stem: str, file: UploadFile, default_suffix: str) -> str:
    suffix = Path(file.filename or "").suffix or default_suffix
    return f"{stem}{suffix}"


def _parse_config(raw: str, model):
    try:
        return model.model_validate_json(raw or "{}")
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid config: {e}") from e


def _encode(event: JobEvent) -> str:
    if event.type == "progress":
        out = ProgressEventOut(value=event.value)
    elif event.type == "success":
        out = SuccessEventOut(result=event.result)
    else:
        out = FailureEventOut(reason=event.reason, kind=event.kind)
    return out.model_dump_json() + "\n"


def _require_audio(audio: Optional[UploadFile]) -> UploadFile:
    if audio is None or not audio.filename:
        error = InputMissing("No audio provided.")
        raise HTTPException(status_code=error.status_code, detail=error.reason)
    return audio


@router.post("/process")
async def process_audio(
    audio: Optional[UploadFile] = File(None),
    dialog: Optional[UploadFile] = File(None),
    config: str = Form("{}"),
    controller: JobController = Depends(get_controller),
    settings: Settings = Depends(get_settings),
):
    """
    Analyse a speech recording into mouth cues.

    Streams newline-delimited JSON: progress events, then one success event
    carrying Rhubarb's raw output or one failure event.
    """
    audio = _require_audio(audio)
    options = _parse_config(config, AnalysisConfig).to_options()

    job = controller.create_job(JobKind.ANALYSIS)
    try:
        audio_path = await save_upload(
            audio, job.workspace.path / _upload_name("audio", audio, ".wav"), settings.max_upload_bytes
        )
        dialog_path = None
        if dialog is not None and dialog.filename:
            dialog_path = await save_upload(
                dialog, job.workspace.path / _upload_name("dialog", dialog, ".txt"), settings.max_upload_bytes
            )
    except BaseException:
        controller.close(job)
        raise

    logger.info("Analysis job %s: recognizer=%s audio=%s", job.id, options.recognizer, audio.filename)

    async def event_stream() -> AsyncIterator[str]:
        async for event in controller.stream_analysis(job, audio_path, dialog_path, options):
            yield _encode(event)

    return StreamingResponse(
        event_stream(),
        media_type="application/x-ndjson",
        # in case the stream is dropped before it ever starts
        background=BackgroundTask(controller.close, job),
    )


async def _run_until_disconnect(request: Request, job: Job, work) -> Path:
    """Await ``work``; cancel it (killing ffmpeg) if the client goes away first."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected, cancelling export %s", job.id)
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                raise Cancelled("Client disconnected")
    finally:
        if not task.done():
            task.cancel()


@router.post("/render")
async def render_video(
    request: Request,
    audio: Optional[UploadFile] = File(None),
    cues: str = Form("[]"),
    config: str = Form("{}"),
    controller: JobController = Depends(get_controller),
    settings: Settings = Depends(get_settings),
):
    """
    Render a lip-synced MP4 from the audio, the cue list and one image per
    mouth shape (form fields ``frame_A`` ... ``frame_X``).
    """
    audio = _require_audio(audio)
    try:
        cue_list = [c.to_cue() for c in _cue_list.validate_json(cues or "[]")]
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid cues: {e}") from e
    options = _parse_config(config, RenderConfig).to_options()

    form = await request.form()
    job = controller.create_job(JobKind.EXPORT)
    try:
        audio_path = await save_upload(
            audio, job.workspace.path / _upload_name("audio", audio, ".wav"), settings.max_upload_bytes
        )
        frames_dir = job.workspace.path / "frames"
        frames_dir.mkdir()
        frames: Dict[str, Path] = {}
        for shape in SHAPES:
            upload = form.get(f"frame_{shape}")
            if isinstance(upload, StarletteUploadFile) and upload.filename:
                frames[shape] = await save_upload(
                    upload, frames_dir / _upload_name(f"frame_{shape}", upload, ".png"), settings.max_upload_bytes
                )
    except BaseException:
        controller.close(job)
        raise

    logger.info(
        "Export job %s: %d cues, frames=%s, %dpx %s",
        job.id, len(cue_list), "".join(sorted(frames)), options.resolution, options.quality.value,
    )
    try:
        video_path = await _run_until_disconnect(
            request, job, controller.run_export(job, audio_path, cue_list, frames, options)
        )
    except JobError as e:
        raise HTTPException(status_code=e.status_code, detail=e.reason) from e

    return FileResponse(
        video_path,
        media_type="video/mp4",
        filename=f"LipForge2D_Output_{int(time.time() * 1000)}.mp4",
        background=BackgroundTask(controller.close, job),
    )
