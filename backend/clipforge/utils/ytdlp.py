"""yt-dlp utilities for source video download."""
import asyncio
import json
import logging
import re
import shutil
from pathlib import Path
from typing import Optional

from clipforge.config import settings

logger = logging.getLogger(__name__)

SOURCE_URL_PATTERNS = [
    r"^(?:https?://)?(?:www\.|m\.)?youtube\.com/watch\?(?:.*&)?v=([\w-]{6,})",
    r"^(?:https?://)?(?:www\.|m\.)?youtube\.com/shorts/([\w-]{6,})",
    r"^(?:https?://)?youtu\.be/([\w-]{6,})",
    r"^(?:https?://)?(?:www\.)?youtube\.com/embed/([\w-]{6,})",
]


class YtdlpError(Exception):
    """yt-dlp related error."""
    pass


def check_ytdlp_available() -> bool:
    """Check if yt-dlp is available."""
    return shutil.which(settings.ytdlp_path) is not None


def extract_video_id(url: str) -> Optional[str]:
    """Return the video id of an accepted source URL, or None."""
    url = (url or "").strip()
    for pattern in SOURCE_URL_PATTERNS:
        match = re.match(pattern, url)
        if match:
            return match.group(1)
    return None


def is_supported_source_url(url: str) -> bool:
    """Check if a URL matches one of the accepted source patterns."""
    return extract_video_id(url) is not None


async def get_video_info_ytdlp(url: str) -> dict:
    """
    Get video information without downloading.

    Args:
        url: Source URL

    Returns:
        Dictionary with video metadata
    """
    cmd = [
        settings.ytdlp_path,
        "--dump-json",
        "--no-download",
        "--no-playlist",
        url
    ]

    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )

    stdout, stderr = await proc.communicate()

    if proc.returncode != 0:
        error_msg = stderr.decode(errors="ignore")
        raise YtdlpError(f"Failed to get video info: {error_msg[-500:]}")

    try:
        return json.loads(stdout.decode())
    except json.JSONDecodeError as e:
        raise YtdlpError(f"Failed to parse video info: {e}")


async def download_video(
    url: str,
    output_dir: Path,
    filename: str = "source",
) -> Path:
    """
    Download a video with best mp4-compatible quality.

    Args:
        url: Source URL
        output_dir: Directory to save the video
        filename: Base filename without extension

    Returns:
        Path to downloaded video file
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    # Clean up any partial downloads first
    for partial in list(output_dir.glob("*.part")) + list(output_dir.glob("*.ytdl")):
        partial.unlink(missing_ok=True)

    output_template = str(output_dir / f"{filename}.%(ext)s")

    # bv* requires a video stream, so an audio-only format is never selected
    cmd = [
        settings.ytdlp_path,
        "-f", "bv*[ext=mp4][height<=1080]+ba[ext=m4a]/bv*[ext=mp4]+ba/bv*+ba/bv*",
        "--merge-output-format", "mp4",
        "-o", output_template,
        "--no-playlist",
        "--newline",
        "--force-overwrites",
        url
    ]

    logger.info(f"Running yt-dlp for {url}")

    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT
    )

    merged_path: Optional[Path] = None
    downloaded_path: Optional[Path] = None
    output_lines = []

    while True:
        line = await proc.stdout.readline()
        if not line:
            break

        line_str = line.decode("utf-8", errors="ignore").strip()
        output_lines.append(line_str)

        # Track the merged output path (more reliable than Destination)
        if "Merging formats into" in line_str:
            merge_match = re.search(r'Merging formats into "(.+)"', line_str)
            if merge_match:
                merged_path = Path(merge_match.group(1))
        elif "Destination:" in line_str:
            dest_match = re.search(r"Destination:\s+(.+)", line_str)
            if dest_match:
                downloaded_path = Path(dest_match.group(1))
        elif "has already been downloaded" in line_str:
            path_match = re.search(r'\[download\]\s+(.+\.(?:mp4|mkv|webm|mov))\s+has already been downloaded', line_str)
            if path_match:
                merged_path = Path(path_match.group(1))

    await proc.wait()

    if proc.returncode != 0:
        logger.error("yt-dlp failed with output:\n" + "\n".join(output_lines[-20:]))
        raise YtdlpError("Download failed - check URL and try again")

    if merged_path and merged_path.exists():
        return merged_path
    if downloaded_path and downloaded_path.exists():
        return downloaded_path

    # Search for the file (prefer .mp4)
    for ext in ["mp4", "mkv", "webm", "mov"]:
        potential_path = output_dir / f"{filename}.{ext}"
        if potential_path.exists():
            return potential_path

    logger.error("Last yt-dlp output:\n" + "\n".join(output_lines[-20:]))
    raise YtdlpError("Download completed but video file not found")
