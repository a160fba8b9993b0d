"""
Pytest fixtures for LipForge engine tests.

The real rhubarb/ffmpeg/ffprobe binaries are replaced by small Python scripts
behind /bin/sh launchers, so every test runs without the media toolchain.
"""

import dataclasses
from pathlib import Path

import pytest

from backend.config import Settings
from backend.domain.services.job_service import JobController
from backend.infrastructure.workspace import WorkspaceManager

from fake_tools import FFMPEG_OK, FFPROBE_OK, FakeTools


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def tools(tmp_path: Path) -> FakeTools:
    fake = FakeTools(tmp_path / "bin")
    fake.install("ffmpeg", FFMPEG_OK)
    fake.install("ffprobe", FFPROBE_OK)
    return fake


@pytest.fixture
def settings(tmp_path: Path, tools: FakeTools) -> Settings:
    return Settings(
        workspace_root=tmp_path / "scratch",
        rhubarb_path=tools.rhubarb,
        ffmpeg_binary=str(tools.root / "ffmpeg"),
        ffprobe_binary=str(tools.root / "ffprobe"),
        watchdog_seconds=10.0,
    )


@pytest.fixture
def workspaces(settings: Settings) -> WorkspaceManager:
    manager = WorkspaceManager(settings.workspace_root)
    manager.open()
    yield manager
    manager.close()


@pytest.fixture
def controller(settings: Settings, workspaces: WorkspaceManager) -> JobController:
    return JobController(settings, workspaces)


@pytest.fixture
def make_controller(workspaces: WorkspaceManager, settings: Settings):
    """Controller with some settings overridden (e.g. a short watchdog)."""

    def factory(**overrides) -> JobController:
        return JobController(dataclasses.replace(settings, **overrides), workspaces)

    return factory


@pytest.fixture
def speech_file(tmp_path: Path) -> Path:
    path = tmp_path / "speech.mp3"
    path.write_bytes(b"ID3\x03\x00fake-mp3-payload")
    return path


@pytest.fixture
def frame_files(tmp_path: Path) -> dict:
    frames_dir = tmp_path / "frames"
    frames_dir.mkdir()
    frames = {}
    for shape in "ABCDEFGHX":
        path = frames_dir / f"mouth_{shape}.png"
        path.write_bytes(b"\x89PNG fake " + shape.encode())
        frames[shape] = path
    return frames
