"""Transcript assembly -- merge raw speaker segments into ordered segments.

Pure merge/validate step, no AI calls. Raw segments arrive unordered from
the preprocessing collaborator, optionally without text; missing text is
aligned from the plain transcript line by line.

Output is ordered by start time with ties broken by speaker id, so the
same input always produces the same segment ids.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

import structlog

from src.meetflow.analysis.errors import IntegrityError
from src.meetflow.analysis.schemas import RawSegment, TranscriptSegment

logger = structlog.get_logger(__name__)

# "Speaker 1: text" prefixes in the plain transcript are dropped on alignment
_SPEAKER_PREFIX_RE = re.compile(r"^[^:\n]{1,40}:\s+")


def overlaps(a_start: float, a_end: float, b_start: float, b_end: float) -> bool:
    """Half-open interval overlap test shared by assembly and extraction."""
    return a_start < b_end and b_start < a_end


def segment_id(meeting_id: str, index: int) -> str:
    return f"{meeting_id}-seg-{index:04d}"


def assemble_transcript(
    meeting_id: str,
    raw_segments: Iterable[RawSegment],
    transcript_text: str | None = None,
) -> list[TranscriptSegment]:
    """Validate and order raw segments into TranscriptSegments.

    Args:
        meeting_id: Owning meeting id, used for segment ids.
        raw_segments: Unordered (speaker, start, end, text?) records.
        transcript_text: Plain transcript, one utterance per line, used
            only when some segments carry no text.

    Returns:
        Segments ordered by (start_time, speaker_id).

    Raises:
        IntegrityError: A segment has start >= end, two segments of the
            same speaker overlap, or missing text cannot be aligned.
    """
    ordered = sorted(raw_segments, key=lambda s: (s.start_time, s.speaker_id))

    for raw in ordered:
        if raw.start_time >= raw.end_time:
            raise IntegrityError(
                f"Segment for speaker {raw.speaker_id!r} has start {raw.start_time} "
                f">= end {raw.end_time}"
            )
    _check_speaker_overlaps(ordered)

    texts = _align_texts(ordered, transcript_text)

    segments = [
        TranscriptSegment(
            id=segment_id(meeting_id, index),
            meeting_id=meeting_id,
            speaker_id=raw.speaker_id,
            start_time=raw.start_time,
            end_time=raw.end_time,
            text=text,
        )
        for index, (raw, text) in enumerate(zip(ordered, texts))
    ]

    logger.info(
        "transcript_assembled",
        meeting_id=meeting_id,
        segments=len(segments),
        speakers=len({s.speaker_id for s in segments}),
    )
    return segments


def _check_speaker_overlaps(ordered: Sequence[RawSegment]) -> None:
    """Reject same-speaker overlap. Cross-talk between speakers is fine."""
    last_by_speaker: dict[str, RawSegment] = {}
    for raw in ordered:
        previous = last_by_speaker.get(raw.speaker_id)
        # Input is sorted by start, so only the latest-ending prior segment matters
        if previous is not None and overlaps(
            previous.start_time, previous.end_time, raw.start_time, raw.end_time
        ):
            raise IntegrityError(
                f"Overlapping segments for speaker {raw.speaker_id!r}: "
                f"[{previous.start_time}, {previous.end_time}) and "
                f"[{raw.start_time}, {raw.end_time})"
            )
        if previous is None or raw.end_time > previous.end_time:
            last_by_speaker[raw.speaker_id] = raw


def _align_texts(ordered: Sequence[RawSegment], transcript_text: str | None) -> list[str]:
    """Fill missing segment text from the plain transcript.

    Lines are matched positionally: either one line per segment, or one
    line per segment that lacks text.
    """
    missing = [i for i, raw in enumerate(ordered) if raw.text is None]
    texts = [raw.text or "" for raw in ordered]
    if not missing or not transcript_text or not transcript_text.strip():
        return texts

    lines = [
        _SPEAKER_PREFIX_RE.sub("", line.strip(), count=1)
        for line in transcript_text.splitlines()
        if line.strip()
    ]

    if len(lines) == len(ordered):
        for i in missing:
            texts[i] = lines[i]
    elif len(lines) == len(missing):
        for i, line in zip(missing, lines):
            texts[i] = line
    else:
        raise IntegrityError(
            f"Cannot align transcript: {len(lines)} lines for {len(ordered)} segments "
            f"({len(missing)} without text)"
        )
    return texts
