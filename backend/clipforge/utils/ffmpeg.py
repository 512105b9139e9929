"""FFmpeg and ffprobe utilities."""
import asyncio
import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from clipforge.config import settings
from clipforge.models.transcript import Segment


@dataclass
class VideoInfo:
    """Video metadata container."""
    duration: float
    width: int
    height: int
    video_codec: str
    audio_codec: Optional[str]


class FFmpegError(Exception):
    """FFmpeg related error."""
    pass


def check_ffmpeg_available() -> bool:
    """Check if ffmpeg is available."""
    return shutil.which(settings.ffmpeg_path) is not None


def check_ffprobe_available() -> bool:
    """Check if ffprobe is available."""
    return shutil.which(settings.ffprobe_path) is not None


async def _run(cmd: List[str], error_prefix: str) -> bytes:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise FFmpegError(f"{cmd[0]} not found") from e
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise
    if proc.returncode != 0:
        raise FFmpegError(f"{error_prefix}: {stderr.decode(errors='ignore')[-500:]}")
    return stdout


async def get_video_info(video_path: str | Path) -> VideoInfo:
    """
    Get video metadata using ffprobe.

    Raises:
        FFmpegError: If ffprobe fails or the file has no video stream
    """
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(video_path)
    ]
    stdout = await _run(cmd, "ffprobe failed")

    try:
        data = json.loads(stdout.decode())
    except json.JSONDecodeError as e:
        raise FFmpegError(f"Failed to parse ffprobe output: {e}")

    video_stream = None
    audio_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream

    if not video_stream:
        raise FFmpegError("No video stream found")

    duration = float(data.get("format", {}).get("duration", 0) or 0)
    if duration == 0:
        duration = float(video_stream.get("duration", 0) or 0)

    return VideoInfo(
        duration=duration,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        video_codec=video_stream.get("codec_name", "unknown"),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
    )


def format_ass_time(seconds: float) -> str:
    """Format seconds as an ASS timestamp (H:MM:SS.cc)."""
    seconds = max(0.0, seconds)
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    centis = int(round((seconds % 1) * 100))
    if centis == 100:
        centis = 99
    return f"{hours}:{minutes:02d}:{secs:02d}.{centis:02d}"


def build_caption_subtitles(
    captions: Sequence[Segment],
    width: int = None,
    height: int = None,
) -> str:
    """
    Build an ASS subtitle document for burned-in captions.

    Caption times are relative to the clip start; cues that begin before zero
    are dropped.
    """
    width = width or settings.vertical_width
    height = height or settings.vertical_height

    lines = [
        "[Script Info]",
        "Title: ClipForge Captions",
        "ScriptType: v4.00+",
        f"PlayResX: {width}",
        f"PlayResY: {height}",
        "",
        "[V4+ Styles]",
        "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, "
        "Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, "
        "Shadow, Alignment, MarginL, MarginR, MarginV, Encoding",
        f"Style: Default,{settings.caption_font},{settings.caption_font_size},&H00FFFFFF,&H000000FF,"
        "&H00000000,&H80000000,-1,0,0,0,100,100,0,0,1,3,0,2,50,50,100,1",
        "",
        "[Events]",
        "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text",
    ]

    for cue in captions:
        if cue.start < 0 or cue.end <= cue.start:
            continue
        text = cue.text.strip().replace("\n", "\\N")
        if not text:
            continue
        lines.append(
            f"Dialogue: 0,{format_ass_time(cue.start)},{format_ass_time(cue.end)},Default,,0,0,0,,{text}"
        )

    return "\n".join(lines) + "\n"


def build_vertical_filter(subtitles_path: Optional[Path] = None) -> str:
    """Center-crop to 9:16, scale to the vertical target and optionally burn captions."""
    width = settings.vertical_width
    height = settings.vertical_height
    filtergraph = f"crop='min(iw,ih*9/16)':ih,scale={width}:{height},setsar=1"
    if subtitles_path is not None:
        escaped = str(subtitles_path).replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")
        filtergraph += f",ass='{escaped}'"
    return filtergraph


async def render_vertical_clip(
    source: str,
    output_path: str | Path,
    start_time: float,
    end_time: float,
    subtitles_path: Optional[Path] = None,
) -> Path:
    """
    Trim ``source`` to [start_time, end_time] as a vertical captioned mp4.

    ``source`` may be a local path or an http(s) URL ffmpeg can read.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    duration = end_time - start_time
    if duration <= 0:
        raise FFmpegError("End time must be after start time")

    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-ss", str(start_time),
        "-i", str(source),
        "-t", str(duration),
        "-vf", build_vertical_filter(subtitles_path),
        "-c:v", settings.export_video_codec,
        "-preset", settings.export_video_preset,
        "-crf", str(settings.export_video_crf),
        "-c:a", settings.export_audio_codec,
        "-b:a", settings.export_audio_bitrate,
        "-movflags", "+faststart",
        str(output_path)
    ]
    await _run(cmd, "Render failed")
    return output_path


async def extract_audio(source: str, output_path: str | Path) -> Path:
    """
    Extract a 16 kHz mono mp3 from ``source`` for speech-to-text.

    ``source`` may be a local path or an http(s) URL ffmpeg can read.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-i", str(source),
        "-vn",
        "-acodec", "libmp3lame",
        "-ar", "16000",
        "-ac", "1",
        str(output_path)
    ]
    await _run(cmd, "Audio extraction failed")
    return output_path


async def generate_thumbnail(
    video_path: str | Path,
    output_path: str | Path,
    timestamp: float,
    width: int = None,
    height: int = None
) -> Path:
    """Grab one frame at ``timestamp`` scaled and padded to the thumbnail size."""
    output_path = Path(output_path)

    width = width or settings.thumbnail_width
    height = height or settings.thumbnail_height

    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        settings.ffmpeg_path,
        "-y",
        "-ss", str(max(0.0, timestamp)),
        "-i", str(video_path),
        "-vframes", "1",
        "-vf", f"scale={width}:{height}:force_original_aspect_ratio=decrease,pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
        "-q:v", "2",
        str(output_path)
    ]
    await _run(cmd, "Thumbnail generation failed")
    return output_path
