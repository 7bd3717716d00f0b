"""Tests for transcript post-processing."""

from session_processor.ai.interface import TranscriptSegment
from session_processor.ai.postprocess import (
    TimestampEntry,
    format_timestamp,
    merge_segments,
    render_transcript,
    to_absolute,
)


class TestFormatTimestamp:
    """Tests for format_timestamp()."""

    def test_minutes_and_seconds(self) -> None:
        assert format_timestamp(0) == "00:00"
        assert format_timestamp(75) == "01:15"
        assert format_timestamp(3599) == "59:59"

    def test_hours(self) -> None:
        assert format_timestamp(3600) == "1:00:00"
        assert format_timestamp(5025) == "1:23:45"

    def test_fractions_and_negatives(self) -> None:
        assert format_timestamp(61.9) == "01:01"
        assert format_timestamp(-3) == "00:00"


class TestToAbsolute:
    """Tests for to_absolute() offset detection."""

    def test_relative_times_are_offset(self) -> None:
        segments = [TranscriptSegment(time_seconds=30, text="hi")]
        result = to_absolute(segments, 1800)
        assert result[0].time_seconds == 1830

    def test_absolute_times_are_kept(self) -> None:
        segments = [TranscriptSegment(time_seconds=1830, text="hi")]
        assert to_absolute(segments, 1800)[0].time_seconds == 1830

    def test_times_within_tolerance_are_kept(self) -> None:
        """Slightly early absolute times are not mistaken for relative ones."""
        segments = [TranscriptSegment(time_seconds=1797, text="hi")]
        assert to_absolute(segments, 1800)[0].time_seconds == 1797

    def test_first_chunk_is_unchanged(self) -> None:
        segments = [TranscriptSegment(time_seconds=4, text="hi", speaker="GM")]
        result = to_absolute(segments, 0)
        assert result == segments


class TestMergeSegments:
    """Tests for merge_segments()."""

    def test_sorted_across_chunks(self) -> None:
        chunks = [
            [
                TranscriptSegment(time_seconds=10, text="b", speaker="Alice"),
                TranscriptSegment(time_seconds=2, text="a"),
            ],
            [TranscriptSegment(time_seconds=1805.6, text="c", speaker="Bob")],
        ]
        entries = merge_segments(chunks)
        assert entries == [
            TimestampEntry(time=2, text="a"),
            TimestampEntry(time=10, text="Alice: b"),
            TimestampEntry(time=1806, text="Bob: c"),
        ]

    def test_empty(self) -> None:
        assert merge_segments([[], []]) == []


class TestRenderTranscript:
    """Tests for render_transcript()."""

    def test_one_line_per_entry(self) -> None:
        text = render_transcript(
            [TimestampEntry(time=5, text="GM: Welcome"), TimestampEntry(time=3700, text="Roll")]
        )
        assert text == "[00:05] GM: Welcome\n[1:01:40] Roll"
