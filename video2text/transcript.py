"""
Parsing of transcript log lines and progress estimation.

The transcription service emits log lines in one of two bracketed forms::

    [12.34s -> 13.56s] text
    [03:54 → 03:56] text      (also "->" or "-", and hh:mm:ss stamps)

Lines matching neither form are not transcript output and are dropped.
"""

import logging
import math
import re
from typing import Iterable, List, Optional, Set

from .models import TranscriptSegment

logger = logging.getLogger(__name__)

SECONDS_PATTERN = re.compile(
    r'^\s*\[\s*(\d+(?:\.\d+)?)s\s*->\s*(\d+(?:\.\d+)?)s\s*\]\s*(.*?)\s*$'
)
CLOCK_PATTERN = re.compile(
    r'^\s*\[\s*((?:\d+:)?\d+:\d{1,2}(?:[.,]\d+)?)\s*(?:→|->|-)\s*'
    r'((?:\d+:)?\d+:\d{1,2}(?:[.,]\d+)?)\s*\]\s*(.*?)\s*$'
)

# Raw duration hints above this are taken to be milliseconds already.
DURATION_MS_THRESHOLD = 10000


def format_timestamp(seconds: float) -> str:
    """
    Format a position in seconds as ``mm:ss``, or ``hh:mm:ss`` past the hour.

    Fractions of a second are truncated.
    """
    total = int(math.floor(max(0.0, seconds)))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def clock_to_seconds(stamp: str) -> float:
    """Convert ``mm:ss`` or ``hh:mm:ss`` (optionally fractional) to seconds."""
    parts = stamp.replace(',', '.').split(':')
    seconds = 0.0
    for part in parts:
        seconds = seconds * 60 + float(part)
    return seconds


def parse_line(line: str) -> Optional[TranscriptSegment]:
    """
    Parse one raw log line into a segment.

    Returns:
        The segment, or None if the line matches neither timestamp form
    """
    match = SECONDS_PATTERN.match(line)
    if match:
        start, end = float(match.group(1)), float(match.group(2))
    else:
        match = CLOCK_PATTERN.match(line)
        if not match:
            return None
        start, end = clock_to_seconds(match.group(1)), clock_to_seconds(match.group(2))

    return TranscriptSegment(
        start=format_timestamp(start),
        end=format_timestamp(end),
        text=match.group(3),
        start_ms=int(round(start * 1000)),
    )


def normalize_duration(raw: Optional[float]) -> Optional[int]:
    """
    Normalize a duration hint to milliseconds.

    Values above DURATION_MS_THRESHOLD are assumed to be milliseconds, anything
    else seconds. A video of 10 to 11 seconds is ambiguous under this rule.
    """
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if value <= 0 or math.isnan(value) or math.isinf(value):
        return None
    if value > DURATION_MS_THRESHOLD:
        return int(round(value))
    return int(round(value * 1000))


def estimate_percent(start_ms: int, duration_ms: Optional[int]) -> Optional[int]:
    if not duration_ms:
        return None
    # halves round up
    return min(100, int(math.floor(start_ms / duration_ms * 100 + 0.5)))


class LineParser:
    """
    Turns raw log lines into segments, dropping lines already seen.

    One parser belongs to one task; ``reset()`` clears it for the next.
    """

    def __init__(self):
        self._seen: Set[str] = set()

    def feed(self, lines: Iterable[str]) -> List[TranscriptSegment]:
        segments = []
        for line in lines:
            if not isinstance(line, str) or line in self._seen:
                continue
            self._seen.add(line)
            segment = parse_line(line)
            if segment is None:
                logger.debug(f"Dropping unrecognized log line: {line!r}")
                continue
            segments.append(segment)
        return segments

    def reset(self):
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
