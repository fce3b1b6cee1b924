"""Per-question context windows over a video transcript."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .timestamps import seconds_to_mmss
from .types import KeyConcept, TranscriptSegment, VideoTranscript

DEFAULT_SEGMENT_SECONDS = 5
NO_CONTEXT_MESSAGE = "No transcript context available for this timestamp."


@dataclass
class TranscriptContext:
    segments: List[TranscriptSegment] = field(default_factory=list)
    nearby_concepts: List[str] = field(default_factory=list)
    nearby_concept_timestamps: Dict[str, List[int]] = field(default_factory=dict)
    visual_context: Optional[str] = None
    is_salient_moment: bool = False
    event_type: Optional[str] = None
    formatted_context: str = ""


def _segment_end(segment: TranscriptSegment) -> int:
    if segment.end_timestamp:
        return segment.end_timestamp
    return segment.timestamp + DEFAULT_SEGMENT_SECONDS


def _window(target: float, window_seconds: float) -> tuple[float, float]:
    return max(0.0, target - window_seconds), target + window_seconds


def _overlaps(segment: TranscriptSegment, start: float, end: float) -> bool:
    seg_start = segment.timestamp
    seg_end = _segment_end(segment)
    return (
        start <= seg_start <= end
        or start <= seg_end <= end
        or (seg_start <= start and seg_end >= end)
    )


def _concept_nearby(concept: KeyConcept, start: float, end: float) -> bool:
    if start <= concept.first_mentioned <= end:
        return True
    return any(start <= ts <= end for ts in concept.explanation_timestamps)


def find_segment_at_timestamp(
    transcript: VideoTranscript, timestamp: float
) -> Optional[TranscriptSegment]:
    """Return the segment whose [start, end) span contains ``timestamp``.

    A segment without an end runs until the next segment starts, or for five
    seconds when it is the last one.
    """
    segments = transcript.full_transcript
    for index, segment in enumerate(segments):
        if segment.end_timestamp:
            end = segment.end_timestamp
        elif index + 1 < len(segments):
            end = segments[index + 1].timestamp
        else:
            end = segment.timestamp + DEFAULT_SEGMENT_SECONDS
        if segment.timestamp <= timestamp < end:
            return segment
    return None


def extract_transcript_context(
    transcript: Optional[VideoTranscript],
    target_timestamp: float,
    window_seconds: float = 30,
) -> TranscriptContext:
    if transcript is None or not transcript.full_transcript:
        return TranscriptContext(formatted_context=NO_CONTEXT_MESSAGE)

    start, end = _window(target_timestamp, window_seconds)
    segments = [s for s in transcript.full_transcript if _overlaps(s, start, end)]

    nearby: List[str] = []
    nearby_timestamps: Dict[str, List[int]] = {}
    for concept in transcript.key_concepts_timeline:
        if _concept_nearby(concept, start, end):
            nearby.append(concept.concept)
            nearby_timestamps[concept.concept] = list(concept.explanation_timestamps)

    context = TranscriptContext(
        segments=segments,
        nearby_concepts=nearby,
        nearby_concept_timestamps=nearby_timestamps,
    )
    exact = find_segment_at_timestamp(transcript, target_timestamp)
    if exact is not None:
        context.visual_context = exact.visual_description or None
        context.is_salient_moment = exact.is_salient_event
        context.event_type = exact.event_type
    context.formatted_context = format_transcript_context(context)
    return context


def format_transcript_context(context: TranscriptContext) -> str:
    if not context.segments:
        return NO_CONTEXT_MESSAGE

    blocks = []
    for segment in context.segments:
        end = _segment_end(segment)
        lines = [
            f"[{seconds_to_mmss(segment.timestamp)} - {seconds_to_mmss(end)}] "
            f"({segment.timestamp}s - {end}s):",
            f"Text: {segment.text}",
        ]
        if segment.visual_description:
            lines.append(f"Visual: {segment.visual_description}")
        if segment.is_salient_event:
            lines.append(f"[SALIENT EVENT: {segment.event_type or 'other'}]")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def find_optimal_question_timestamp(
    context: TranscriptContext,
    original_timestamp: int,
    min_delay_seconds: int = 5,
    max_shift_seconds: int = 30,
) -> int:
    """Latest explanation end in the window plus a short delay, capped at ``max_shift_seconds``."""
    latest = original_timestamp
    segments = context.segments
    for index, segment in enumerate(segments):
        if segment.end_timestamp:
            seg_end = segment.end_timestamp
        else:
            following = [s.timestamp for s in segments[index + 1 :] if s.timestamp > segment.timestamp]
            seg_end = following[0] if following else segment.timestamp + DEFAULT_SEGMENT_SECONDS
        latest = max(latest, seg_end)
    for timestamps in context.nearby_concept_timestamps.values():
        for ts in timestamps:
            latest = max(latest, ts)
    return min(latest + min_delay_seconds, original_timestamp + max_shift_seconds)


def find_next_natural_pause(
    transcript: VideoTranscript, after_timestamp: float, min_pause_gap: float = 2
) -> Optional[float]:
    ordered = sorted(transcript.full_transcript, key=lambda s: s.timestamp)
    for current, following in zip(ordered, ordered[1:]):
        seg_end = _segment_end(current)
        if seg_end <= after_timestamp:
            continue
        gap = following.timestamp - seg_end
        if gap >= min_pause_gap:
            return seg_end + gap / 2
        if following.is_salient_event:
            # land just before the topic change
            return max(seg_end + 1, following.timestamp - 2)
    return None


def is_interrupting_sentence(transcript: VideoTranscript, timestamp: float) -> bool:
    segment = find_segment_at_timestamp(transcript, timestamp)
    if segment is None:
        return False
    duration = _segment_end(segment) - segment.timestamp
    if duration <= 0:
        return False
    ratio = (timestamp - segment.timestamp) / duration
    return 0.2 < ratio < 0.8
