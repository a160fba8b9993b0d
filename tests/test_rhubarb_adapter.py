"""
Tests for the Rhubarb recognition runner: progress parsing, failure reasons,
working directory, watchdog and cancellation.
"""

import asyncio
import json
import os
import time
from pathlib import Path

import pytest

from backend.domain.errors import RecognitionFailed, RecognitionHung, ToolNotFound
from backend.domain.models import ProgressSpan
from backend.infrastructure.process import failure_reason
from backend.infrastructure.rhubarb_adapter import ProgressTracker, build_args, recognize

from fake_tools import RHUBARB_FAILS, RHUBARB_HANGS, RHUBARB_OK


async def _wait_for_file(path: Path, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not path.exists() or not path.read_text():
        if time.monotonic() > deadline:
            raise AssertionError(f"{path} never appeared")
        await asyncio.sleep(0.05)


def _process_gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


class TestProgressTracker:
    def test_duplicates_and_regressions_suppressed(self):
        tracker = ProgressTracker(ProgressSpan(0.0, 1.0))
        values = tracker.feed("10% 10% 5% 20%\n15%\n20%")
        assert values == [0.1, 0.2]

    def test_values_scaled_into_span(self):
        tracker = ProgressTracker(ProgressSpan(0.5, 1.0))
        assert tracker.feed("0% 50% 100%") == [0.5, 0.75, 1.0]

    def test_marker_split_across_chunks(self):
        tracker = ProgressTracker(ProgressSpan(0.0, 1.0))
        assert tracker.feed("Progress: 4") == []
        assert tracker.feed("2% done") == [0.42]

    def test_over_100_clamped(self):
        tracker = ProgressTracker(ProgressSpan(0.0, 0.5))
        assert tracker.feed("250%") == [0.5]

    @pytest.mark.parametrize(
        "chunks, span",
        [
            (["1%", "3", "0% 2", "9% 99%", "100%"], ProgressSpan(0.0, 0.5)),
            (["100% 0% 50%"], ProgressSpan(0.5, 1.0)),
            (["no markers here", "7%7%8%"], ProgressSpan(0.25, 0.75)),
        ],
    )
    def test_values_non_decreasing_and_in_span(self, chunks, span):
        tracker = ProgressTracker(span)
        values = [v for chunk in chunks for v in tracker.feed(chunk)]
        assert values == sorted(values)
        assert all(span.low <= v <= span.high for v in values)


class TestFailureReason:
    def test_prefers_last_error_line(self):
        stderr = "[Info] a\n[Error] first\n[Fatal] second\n[Info] trailing\n"
        assert failure_reason(stderr, 1) == "[Fatal] second"

    def test_falls_back_to_last_line(self):
        assert failure_reason("starting\nstill going\n\n", 2) == "still going"

    def test_falls_back_to_exit_code(self):
        assert failure_reason("", 139) == "Exit code 139"


class TestBuildArgs:
    def test_dialog_is_optional(self, tmp_path: Path):
        audio = tmp_path / "a.wav"
        assert build_args(audio, recognizer="phonetic", export_format="tsv") == [
            "-f", "tsv", "--recognizer", "phonetic", "--logLevel", "Info", str(audio),
        ]
        with_dialog = build_args(
            audio, recognizer="pocketSphinx", export_format="json", dialog_path=tmp_path / "d.txt"
        )
        assert with_dialog[-2:] == ["--dialog", str(tmp_path / "d.txt")]


class TestRecognize:
    @pytest.mark.asyncio
    async def test_success_returns_stdout_and_reports_progress(self, tools, speech_file):
        tools.install("rhubarb", RHUBARB_OK)
        seen = []

        output = await recognize(
            speech_file,
            binary=tools.rhubarb,
            recognizer="phonetic",
            span=ProgressSpan(0.0, 0.5),
            on_progress=seen.append,
        )

        data = json.loads(output)
        assert [c["value"] for c in data["mouthCues"]] == ["A", "X"]
        assert seen == [0.0, 0.05, 0.275, 0.5]
        # runs from its own install dir so it finds res/
        assert Path(data["metadata"]["cwd"]).resolve() == tools.root.resolve()
        assert "phonetic" in data["metadata"]["argv"]

    @pytest.mark.asyncio
    async def test_nonzero_exit_reports_error_line(self, tools, speech_file):
        tools.install("rhubarb", RHUBARB_FAILS)
        with pytest.raises(RecognitionFailed) as exc_info:
            await recognize(speech_file, binary=tools.rhubarb)
        assert exc_info.value.reason == "[Error] Error processing file speech.wav"

    @pytest.mark.asyncio
    async def test_missing_binary(self, tools, speech_file):
        with pytest.raises(ToolNotFound, match="not found"):
            await recognize(speech_file, binary=tools.root / "does-not-exist")

    @pytest.mark.asyncio
    async def test_watchdog_kills_silent_process(self, tools, speech_file):
        tools.install("rhubarb", RHUBARB_HANGS)
        threshold = 1.0
        started = time.monotonic()

        with pytest.raises(RecognitionHung):
            await recognize(speech_file, binary=tools.rhubarb, idle_timeout=threshold)

        # one threshold after the last output, plus interpreter start-up slack
        assert time.monotonic() - started < threshold + 5.0
        assert _process_gone(int(tools.pid_file.read_text()))

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self, tools, speech_file):
        tools.install("rhubarb", RHUBARB_HANGS)
        task = asyncio.create_task(recognize(speech_file, binary=tools.rhubarb, idle_timeout=None))
        await _wait_for_file(tools.pid_file)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert _process_gone(int(tools.pid_file.read_text()))
