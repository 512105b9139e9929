"""Highlight selection: transcript -> scored, bounded clip candidates."""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from clipforge.errors import NoHighlightsFoundError
from clipforge.models.transcript import Segment
from clipforge.providers.llm import ScoringProvider

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[a-zA-Z]*")
_TIMESTAMP_RE = re.compile(r"^(?:(\d+):)?(\d+):(\d+(?:\.\d+)?)$")

PROMPT_TEMPLATE = """You are an expert at identifying viral short-form content from long videos.

Analyze this transcript and find {clip_count} clips that would perform well on TikTok, Instagram Reels, and YouTube Shorts.

TRANSCRIPT WITH TIMESTAMPS:
{transcript}

VIDEO DURATION: {duration}

For each clip, identify:
1. A catchy title (max 60 chars)
2. Start and end timestamps in seconds (clips must be {min_seconds}-{max_seconds} seconds long)
3. The exact transcript for that segment
4. A viral score (0-100) based on engagement potential
5. The hook - what makes viewers stop scrolling
6. Why this clip would go viral

Look for:
- Strong hooks in the first 3 seconds
- Emotional moments (surprise, humor, inspiration)
- Clear actionable advice or insights
- Story arcs with tension and resolution

Return JSON:
{{"clips": [{{
  "title": "string",
  "start_time": number,
  "end_time": number,
  "transcript": "string",
  "viral_score": number,
  "hook": "string",
  "reason": "string"
}}]}}

Only return the JSON, no other text."""


@dataclass
class Highlight:
    """A candidate time range worth clipping."""
    title: str
    start: float
    end: float
    score: float = 0.0
    hook: Optional[str] = None
    rationale: Optional[str] = None
    excerpt: str = ""

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self):
        return {
            "title": self.title,
            "start": self.start,
            "end": self.end,
            "duration": self.duration,
            "score": self.score,
            "hook": self.hook,
            "rationale": self.rationale,
            "excerpt": self.excerpt,
        }


def format_timestamp(seconds: float) -> str:
    """Format seconds as M:SS."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def parse_timestamp(value: Any) -> Optional[float]:
    """Seconds from a number, a numeric string or an [H:]M:SS string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None

    value = value.strip().rstrip("s")
    try:
        return float(value)
    except ValueError:
        pass

    match = _TIMESTAMP_RE.match(value)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours or 0) * 3600 + int(minutes) * 60 + float(seconds)


def build_prompt(
    segments: Sequence[Segment],
    duration: float,
    clip_count: int,
    min_seconds: float,
    max_seconds: float,
) -> str:
    lines = "\n".join(
        f"[{format_timestamp(s.start)} - {format_timestamp(s.end)}] {s.text}" for s in segments
    )
    count = f"{clip_count}" if clip_count <= 1 else f"up to {clip_count}"
    return PROMPT_TEMPLATE.format(
        clip_count=count,
        transcript=lines,
        duration=format_timestamp(duration),
        min_seconds=int(min_seconds),
        max_seconds=int(max_seconds),
    )


def _first(item: dict, *keys) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def _clip_items(value: Any) -> Optional[list]:
    """The clip list carried by a decoded JSON value, or None if it has another shape."""
    if isinstance(value, list):
        return value if any(isinstance(item, dict) for item in value) else None
    if isinstance(value, dict):
        items = _first(value, "clips", "highlights")
        if isinstance(items, list):
            return items
        if "start_time" in value or "startTime" in value:
            return [value]
    return None


def _extract_clip_items(text: str) -> Optional[list]:
    """First clip-shaped JSON value embedded in ``text``, fences and prose ignored."""
    text = _FENCE_RE.sub("", text or "")
    decoder = json.JSONDecoder()
    for idx, char in enumerate(text):
        if char not in "[{":
            continue
        try:
            value, _ = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            continue
        items = _clip_items(value)
        if items is not None:
            return items
    return None


def _text(value: Any) -> Optional[str]:
    """Scalar model output as text; lists and objects are dropped."""
    if value is None or isinstance(value, (list, dict)):
        return None
    return str(value).strip()


def _to_highlight(item: Any) -> Optional[Highlight]:
    if not isinstance(item, dict):
        return None

    start = parse_timestamp(_first(item, "start_time", "startTime", "start"))
    end = parse_timestamp(_first(item, "end_time", "endTime", "end"))
    if start is None or end is None or end <= start:
        return None

    score = _first(item, "viral_score", "viralScore", "score")
    try:
        score = float(score) if score is not None else 0.0
    except (TypeError, ValueError):
        score = 0.0

    title = _text(_first(item, "title")) or "Untitled clip"

    return Highlight(
        title=title[:255],
        start=start,
        end=end,
        score=score,
        hook=_text(_first(item, "hook")) or None,
        rationale=_text(_first(item, "reason", "rationale")) or None,
        excerpt=_text(_first(item, "transcript", "excerpt")) or "",
    )


def parse_highlights_response(text: str) -> List[Highlight]:
    """
    Parse free-form model output into highlights.

    Accepts a bare JSON array or an object wrapping one under ``clips`` or
    ``highlights``, optionally inside markdown fences or surrounding prose.
    Entries that are not objects or lack a usable start/end are discarded.
    Unparseable output yields an empty list.
    """
    items = _extract_clip_items(text)
    if items is None:
        logger.warning("Highlight response had no clip list")
        return []

    highlights = [h for h in (_to_highlight(item) for item in items) if h is not None]
    if len(highlights) < len(items):
        logger.info(f"Discarded {len(items) - len(highlights)} malformed highlight entries")
    return highlights


def filter_highlights(
    highlights: Sequence[Highlight],
    total_duration: Optional[float],
    min_seconds: float,
    max_seconds: float,
    max_count: Optional[int] = None,
) -> List[Highlight]:
    """
    Keep highlights whose duration is within [min_seconds, max_seconds] and
    that lie inside the video, best score first, at most ``max_count``.
    """
    accepted = []
    for h in highlights:
        if h.start < 0 or not (min_seconds <= h.duration <= max_seconds):
            continue
        if total_duration and h.end > total_duration:
            continue
        h.score = min(100.0, max(0.0, h.score))
        accepted.append(h)

    accepted.sort(key=lambda h: h.score, reverse=True)
    if max_count is not None:
        accepted = accepted[:max_count]
    return accepted


def excerpt_for(segments: Sequence[Segment], start: float, end: float) -> str:
    """Transcript text of the segments that lie entirely within [start, end]."""
    return " ".join(s.text for s in segments if s.start >= start and s.end <= end).strip()


class HighlightSelector:
    """Asks the scoring provider for highlights and validates what comes back."""

    def __init__(
        self,
        scorer: ScoringProvider,
        min_seconds: float = 10.0,
        max_seconds: float = 90.0,
        requested_count: int = 5,
        max_count: int = 5,
    ):
        self.scorer = scorer
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self.requested_count = requested_count
        self.max_count = max_count

    async def select_highlights(
        self,
        segments: Sequence[Segment],
        duration: float,
        limit: Optional[int] = None,
    ) -> List[Highlight]:
        """
        Raises:
            NoHighlightsFoundError: nothing usable survived filtering
        """
        max_count = self.max_count if limit is None else min(self.max_count, limit)
        prompt = build_prompt(
            segments,
            duration,
            min(self.requested_count, max_count),
            self.min_seconds,
            self.max_seconds,
        )

        response = await self.scorer.complete(prompt)
        candidates = parse_highlights_response(response)
        accepted = filter_highlights(
            candidates, duration, self.min_seconds, self.max_seconds, max_count
        )
        logger.info(f"Highlight selection: {len(candidates)} candidates, {len(accepted)} accepted")

        if not accepted:
            raise NoHighlightsFoundError()

        for h in accepted:
            h.excerpt = excerpt_for(segments, h.start, h.end) or h.excerpt
        return accepted
