import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import make_transcript
from video_quiz_pipeline.core.timestamps import (
    format_seconds_for_display,
    mmss_to_seconds,
    parse_timestamp,
    seconds_to_mmss,
)
from video_quiz_pipeline.core.transcript import (
    NO_CONTEXT_MESSAGE,
    extract_transcript_context,
    find_next_natural_pause,
    find_optimal_question_timestamp,
    is_interrupting_sentence,
)
from video_quiz_pipeline.core.types import TranscriptSegment, VideoTranscript


def test_mmss_conversions():
    assert mmss_to_seconds("0:45") == 45
    assert mmss_to_seconds("12:30") == 750
    assert mmss_to_seconds("61:01") == 3661
    assert seconds_to_mmss(605) == "10:05"
    assert format_seconds_for_display(3661) == "1:01:01"
    assert format_seconds_for_display(45) == "0:45"


@pytest.mark.parametrize("value", ["1:75", "abc", "1:2:3:4", None, True, -3, ["0:45"], {"at": 45}, float("inf")])
def test_parse_timestamp_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_timestamp(value)


def test_parse_timestamp_accepts_numbers_and_hours():
    assert parse_timestamp("1:02:03") == 3723
    assert parse_timestamp(12.6) == 13
    assert parse_timestamp("42") == 42


def test_context_window_collects_overlapping_segments_and_concepts():
    context = extract_transcript_context(make_transcript(), 45, window_seconds=30)

    assert [segment.timestamp for segment in context.segments] == [0, 20, 50]
    assert context.nearby_concepts == ["chlorophyll"]
    assert context.visual_context == "Leaf cell diagram"
    assert context.is_salient_moment is True
    assert context.event_type == "diagram_explanation"
    assert "[0:20 - 0:50] (20s - 50s):" in context.formatted_context
    assert "[SALIENT EVENT: diagram_explanation]" in context.formatted_context


def test_context_without_transcript():
    context = extract_transcript_context(None, 10)
    assert context.segments == []
    assert context.formatted_context == NO_CONTEXT_MESSAGE


def test_optimal_timestamp_is_capped_by_max_shift():
    context = extract_transcript_context(make_transcript(), 45, window_seconds=30)
    assert find_optimal_question_timestamp(context, 45) == 75
    assert find_optimal_question_timestamp(context, 45, max_shift_seconds=60) == 95


def test_next_natural_pause():
    gap = VideoTranscript(
        full_transcript=[
            TranscriptSegment(timestamp=0, end_timestamp=10, text="a"),
            TranscriptSegment(timestamp=14, end_timestamp=20, text="b"),
        ]
    )
    assert find_next_natural_pause(gap, 0) == 12.0

    salient = VideoTranscript(
        full_transcript=[
            TranscriptSegment(timestamp=0, end_timestamp=10, text="a"),
            TranscriptSegment(timestamp=10, end_timestamp=20, text="b", is_salient_event=True),
        ]
    )
    assert find_next_natural_pause(salient, 0) == 11


def test_interrupting_sentence():
    transcript = make_transcript()
    assert is_interrupting_sentence(transcript, 35) is True
    assert is_interrupting_sentence(transcript, 21) is False
    assert is_interrupting_sentence(transcript, 500) is False
