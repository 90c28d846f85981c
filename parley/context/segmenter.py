"""Boundary segmentation -- splits long text at semantic breakpoints.

Split priority inside each window of max_size characters:
  1. Paragraph break (blank line)
  2. Sentence terminator (. ! ?) followed by whitespace
  3. Line break
  4. Hard cut at max_size

Fenced code blocks (```...```) are atomic: no split point may land inside
one, and a block that starts at the cursor is emitted whole even when it is
larger than max_size. Segments always concatenate back to the input.
"""

from __future__ import annotations

import logging
import re

from parley.context.schemas import SegmentationAnomaly, SegmentationResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 15000

_FENCE_RE = re.compile(r"```.*?```", re.DOTALL)

# (pattern, chars of the match kept on the left side of the split)
_BREAKPOINTS: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"\n\n"), 2),
    (re.compile(r"[.!?]\s"), 2),
    (re.compile(r"\n"), 1),
)

Region = tuple[int, int]


def needs_segmentation(text: str, max_size: int = DEFAULT_MAX_SIZE) -> bool:
    return len(text) > max_size


def find_atomic_regions(text: str) -> list[Region]:
    """Return (start, end) offsets of every closed code fence pair."""
    return [(m.start(), m.end()) for m in _FENCE_RE.finditer(text)]


def segment(
    text: str,
    max_size: int = DEFAULT_MAX_SIZE,
    preserve_atomic_regions: bool = True,
) -> list[str]:
    """Split text into ordered segments of at most max_size characters."""
    return segment_with_anomalies(text, max_size, preserve_atomic_regions).segments


def segment_with_anomalies(
    text: str,
    max_size: int = DEFAULT_MAX_SIZE,
    preserve_atomic_regions: bool = True,
) -> SegmentationResult:
    """Split text and report fenced regions that had to exceed max_size."""
    if max_size < 1:
        raise ValueError(f"max_size must be >= 1, got {max_size}")

    if not needs_segmentation(text, max_size):
        return SegmentationResult(segments=[text])

    regions = find_atomic_regions(text) if preserve_atomic_regions else []
    region_ends = dict(regions)

    segments: list[str] = []
    anomalies: list[SegmentationAnomaly] = []
    position = 0

    while position < len(text):
        if len(text) - position <= max_size:
            segments.append(text[position:])
            break

        region_end = region_ends.get(position)
        if region_end is not None:
            length = region_end - position
            if length > max_size:
                logger.warning(
                    "Code block at offset %d exceeds max segment size (%d > %d), keeping intact",
                    position, length, max_size,
                )
                anomalies.append(
                    SegmentationAnomaly(offset=position, length=length, max_size=max_size)
                )
            segments.append(text[position:region_end])
            position = region_end
            continue

        split = _find_split_point(text, position, max_size, regions)
        segments.append(text[position:split])
        position = split

    return SegmentationResult(segments=segments, anomalies=anomalies)


def _inside_region(offset: int, regions: list[Region]) -> Region | None:
    for start, end in regions:
        if start < offset < end:
            return start, end
    return None


def _find_split_point(text: str, start: int, max_size: int, regions: list[Region]) -> int:
    """Pick the split offset for the window text[start:start + max_size].

    Always returns an offset greater than start.
    """
    window_end = min(start + max_size, len(text))
    window = text[start:window_end]

    for pattern, keep in _BREAKPOINTS:
        for match in reversed(list(pattern.finditer(window))):
            split = start + match.start() + keep
            if not _inside_region(split, regions):
                return split

    split = window_end
    region = _inside_region(split, regions)
    if region is not None:
        region_start, region_end = region
        # Pulling back to a region that starts at the cursor would stall.
        split = region_start if region_start > start else region_end
    return split
