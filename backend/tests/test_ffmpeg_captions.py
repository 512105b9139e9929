"""Tests for caption subtitles, the vertical filtergraph and audio extraction."""
from pathlib import Path

import pytest

from clipforge.config import settings
from clipforge.models.transcript import Segment
from clipforge.utils import ffmpeg
from clipforge.utils.ffmpeg import build_caption_subtitles, build_vertical_filter, format_ass_time


def test_format_ass_time():
    assert format_ass_time(0) == "0:00:00.00"
    assert format_ass_time(61.25) == "0:01:01.25"
    assert format_ass_time(3723.5) == "1:02:03.50"
    assert format_ass_time(-3) == "0:00:00.00"


def test_caption_subtitles_skip_invalid_cues():
    document = build_caption_subtitles([
        Segment(0.0, 2.5, "Hello there"),
        Segment(-1.0, 1.0, "before the clip"),
        Segment(3.0, 3.0, "zero length"),
        Segment(4.0, 6.0, "   "),
        Segment(6.0, 8.0, "line one\nline two"),
    ])

    dialogue = [line for line in document.splitlines() if line.startswith("Dialogue:")]
    assert dialogue == [
        "Dialogue: 0,0:00:00.00,0:00:02.50,Default,,0,0,0,,Hello there",
        "Dialogue: 0,0:00:06.00,0:00:08.00,Default,,0,0,0,,line one\\Nline two",
    ]
    assert f"PlayResX: {settings.vertical_width}" in document


def test_vertical_filter_crops_and_scales():
    filtergraph = build_vertical_filter()

    assert filtergraph.startswith("crop='min(iw,ih*9/16)':ih")
    assert f"scale={settings.vertical_width}:{settings.vertical_height}" in filtergraph
    assert "ass=" not in filtergraph


def test_vertical_filter_burns_escaped_subtitles():
    filtergraph = build_vertical_filter(Path("C:/tmp/captions.ass"))

    assert filtergraph.endswith(",ass='C\\:/tmp/captions.ass'")


@pytest.mark.asyncio
async def test_extract_audio_drops_video_to_mono_mp3(tmp_path, monkeypatch):
    commands = []

    async def fake_run(cmd, error_prefix):
        commands.append(cmd)
        return b""

    monkeypatch.setattr(ffmpeg, "_run", fake_run)

    output = await ffmpeg.extract_audio("https://cdn.example/source.mp4", tmp_path / "a" / "audio.mp3")

    assert output == tmp_path / "a" / "audio.mp3"
    (cmd,) = commands
    assert cmd[cmd.index("-i") + 1] == "https://cdn.example/source.mp4"
    assert "-vn" in cmd
    assert cmd[cmd.index("-acodec") + 1] == "libmp3lame"
    assert cmd[cmd.index("-ar") + 1] == "16000"
    assert cmd[cmd.index("-ac") + 1] == "1"
    assert cmd[-1] == str(output)
