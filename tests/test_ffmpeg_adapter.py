"""
Tests for the ffmpeg side: audio normalization, duration probing and the
render command / runner.
"""

from pathlib import Path

import pytest

from backend.domain.errors import NormalizationFailed, RenderFailed, ToolNotFound
from backend.domain.models import RenderOptions, VideoQuality
from backend.infrastructure.ffmpeg_adapter import (
    build_normalize_command,
    build_render_command,
    normalize_audio,
    probe_duration,
    render_video,
    to_ffmpeg_color,
)

from fake_tools import FFMPEG_FAILS


def _flag(cmd, name):
    return cmd[cmd.index(name) + 1]


class TestCommands:
    def test_normalize_command(self, tmp_path: Path):
        cmd = build_normalize_command(tmp_path / "in.mp3", tmp_path / "out.wav", ffmpeg_binary="/opt/ff")
        assert cmd[0] == "/opt/ff"
        assert _flag(cmd, "-i") == str(tmp_path / "in.mp3")
        assert _flag(cmd, "-ac") == "1"
        assert _flag(cmd, "-ar") == "16000"
        assert _flag(cmd, "-acodec") == "pcm_s16le"
        assert _flag(cmd, "-f") == "wav"
        assert "-y" in cmd
        assert str(tmp_path / "out.wav") in cmd

    @pytest.mark.parametrize("quality, crf", [(VideoQuality.STANDARD, "23"), (VideoQuality.HIGH, "18")])
    def test_render_command(self, tmp_path: Path, quality, crf):
        options = RenderOptions(resolution=720, background_color="#1e293b", quality=quality, frame_rate=25)
        cmd = build_render_command(
            tmp_path / "script.txt",
            tmp_path / "audio.wav",
            tmp_path / "output.mp4",
            options,
            duration=3.2,
        )

        joined = " ".join(cmd)
        assert "color=c=0x1e293b:s=720x720:d=3.200" in cmd
        assert "-f lavfi" in joined
        assert "-f concat -safe 0 -i " + str(tmp_path / "script.txt") in joined
        assert "overlay" in _flag(cmd, "-filter_complex")
        assert "x=(W-w)/2" in _flag(cmd, "-filter_complex")
        assert "shortest=1" in _flag(cmd, "-filter_complex")
        assert _flag(cmd, "-crf") == crf
        assert _flag(cmd, "-vcodec") == "libx264"
        assert _flag(cmd, "-pix_fmt") == "yuv420p"
        assert _flag(cmd, "-acodec") == "aac"
        assert _flag(cmd, "-b:a") == "192k"
        assert _flag(cmd, "-r") == "25"
        assert "-shortest" in cmd
        maps = [cmd[i + 1] for i, a in enumerate(cmd) if a == "-map"]
        assert len(maps) == 2 and any(m.endswith(":a") for m in maps)
        assert cmd[-2:] == [str(tmp_path / "output.mp4"), "-y"]

    @pytest.mark.parametrize(
        "given, expected",
        [("#ABCDEF", "0xABCDEF"), (" #000000 ", "0x000000"), ("white", "white"), ("0x112233", "0x112233")],
    )
    def test_color_conversion(self, given, expected):
        assert to_ffmpeg_color(given) == expected


class TestNormalizeAudio:
    @pytest.mark.asyncio
    async def test_produces_wav(self, settings, speech_file, tmp_path: Path):
        out = await normalize_audio(speech_file, tmp_path / "norm.wav", ffmpeg_binary=settings.ffmpeg_binary)
        assert out.read_bytes() == speech_file.read_bytes()

    @pytest.mark.asyncio
    async def test_tool_error_is_normalization_failure(self, tools, settings, speech_file, tmp_path: Path):
        tools.install("ffmpeg", FFMPEG_FAILS)
        with pytest.raises(NormalizationFailed, match="Error initializing filter"):
            await normalize_audio(speech_file, tmp_path / "norm.wav", ffmpeg_binary=settings.ffmpeg_binary)

    @pytest.mark.asyncio
    async def test_missing_tool_is_normalization_failure(self, speech_file, tmp_path: Path):
        with pytest.raises(NormalizationFailed, match="unavailable"):
            await normalize_audio(
                speech_file, tmp_path / "norm.wav", ffmpeg_binary=str(tmp_path / "no-ffmpeg")
            )


class TestProbeDuration:
    @pytest.mark.asyncio
    async def test_reads_format_duration(self, settings, speech_file):
        assert await probe_duration(speech_file, ffprobe_binary=settings.ffprobe_binary) == 1.25

    @pytest.mark.asyncio
    async def test_missing_probe_returns_none(self, speech_file, tmp_path: Path):
        assert await probe_duration(speech_file, ffprobe_binary=str(tmp_path / "nope")) is None


class TestRenderVideo:
    @pytest.mark.asyncio
    async def test_success(self, settings, tools, tmp_path: Path, speech_file):
        script = tmp_path / "script.txt"
        script.write_text("file 'a.png'\nduration 1\nfile 'a.png'\n")
        out = await render_video(
            script, speech_file, tmp_path / "out.mp4", RenderOptions(),
            duration=1.0, ffmpeg_binary=settings.ffmpeg_binary,
        )
        assert out.read_bytes() == b"fake-mp4"
        assert tools.ffmpeg_calls()[-1]["scripts"][str(script)].startswith("file 'a.png'")

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, settings, tools, tmp_path: Path, speech_file):
        tools.install("ffmpeg", FFMPEG_FAILS)
        with pytest.raises(RenderFailed, match="Error initializing filter 'color'"):
            await render_video(
                tmp_path / "script.txt", speech_file, tmp_path / "out.mp4", RenderOptions(),
                duration=1.0, ffmpeg_binary=settings.ffmpeg_binary,
            )

    @pytest.mark.asyncio
    async def test_missing_output(self, tools, settings, tmp_path: Path, speech_file):
        tools.install("ffmpeg", "import sys\nsys.exit(0)\n")
        with pytest.raises(RenderFailed, match="no video"):
            await render_video(
                tmp_path / "script.txt", speech_file, tmp_path / "out.mp4", RenderOptions(),
                duration=1.0, ffmpeg_binary=settings.ffmpeg_binary,
            )

    @pytest.mark.asyncio
    async def test_missing_ffmpeg(self, tmp_path: Path, speech_file):
        with pytest.raises(ToolNotFound, match="LIPFORGE_FFMPEG"):
            await render_video(
                tmp_path / "script.txt", speech_file, tmp_path / "out.mp4", RenderOptions(),
                duration=1.0, ffmpeg_binary=str(tmp_path / "no-ffmpeg"),
            )
