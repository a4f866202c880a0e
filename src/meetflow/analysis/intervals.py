"""Conclusion interval extraction.

Merges user-flagged conclusion intervals into maximal disjoint ranges and
selects the transcript segments that overlap each range. Overlapping or
touching flags are merged first so a segment is never counted twice.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import structlog

from src.meetflow.analysis.assembler import overlaps
from src.meetflow.analysis.schemas import (
    ConclusionBlock,
    ConclusionInterval,
    TranscriptSegment,
)

logger = structlog.get_logger(__name__)


def merge_intervals(intervals: Iterable[ConclusionInterval]) -> list[ConclusionInterval]:
    """Sort by start and merge intervals that overlap or touch.

    Returns:
        Sorted, pairwise disjoint intervals. Every input interval is
        contained in exactly one of them.
    """
    merged: list[ConclusionInterval] = []
    for interval in sorted(intervals, key=lambda i: (i.start, i.end)):
        if merged and interval.start <= merged[-1].end:
            current = merged[-1]
            if interval.end > current.end:
                merged[-1] = ConclusionInterval(start=current.start, end=interval.end)
        else:
            merged.append(interval)
    return merged


def extract_conclusions(
    segments: Sequence[TranscriptSegment],
    intervals: Iterable[ConclusionInterval],
) -> tuple[list[TranscriptSegment], list[ConclusionBlock]]:
    """Flag conclusion segments and build one text block per merged interval.

    The input segments are not modified; flagged copies are returned in
    the same order. Running this twice on the same input yields identical
    blocks.

    Args:
        segments: Time-ordered transcript segments.
        intervals: Conclusion intervals in any order, possibly overlapping.

    Returns:
        (segments with is_conclusion set, conclusion blocks in time order).
        Blocks list is empty when there are no intervals.
    """
    intervals = list(intervals)
    merged = merge_intervals(intervals)
    if not merged:
        return list(segments), []

    flagged_ids: set[str] = set()
    blocks: list[ConclusionBlock] = []
    for interval in merged:
        selected = [
            seg
            for seg in segments
            if overlaps(seg.start_time, seg.end_time, interval.start, interval.end)
        ]
        flagged_ids.update(seg.id for seg in selected)
        blocks.append(
            ConclusionBlock(
                interval=interval,
                segment_ids=tuple(seg.id for seg in selected),
                text="\n".join(_render_line(seg) for seg in selected if _has_text(seg)),
            )
        )

    updated = [
        seg.model_copy(update={"is_conclusion": True})
        if seg.id in flagged_ids and not seg.is_conclusion
        else seg
        for seg in segments
    ]

    logger.info(
        "conclusions_extracted",
        intervals=len(intervals),
        merged=len(merged),
        conclusion_segments=len(flagged_ids),
    )
    return updated, blocks


def _has_text(segment: TranscriptSegment) -> bool:
    return bool(segment.text.strip())


def _render_line(segment: TranscriptSegment) -> str:
    return f"{segment.speaker_id}: {segment.text.strip()}"
