"""Transcript post-processing: absolute timestamps, merging and formatting.

Converts per-chunk segments into a single transcript with one
``[MM:SS] Speaker: text`` line per segment (``[H:MM:SS]`` past one hour).
"""

from __future__ import annotations

from dataclasses import dataclass

from session_processor.ai.interface import TranscriptSegment

# Segments this far before a chunk's start are taken as chunk-relative.
RELATIVE_TIME_TOLERANCE_SECONDS = 5


@dataclass
class TimestampEntry:
    """One rendered transcript line."""

    time: int
    text: str


def format_timestamp(seconds: float) -> str:
    """Format seconds as MM:SS, or H:MM:SS from one hour on."""
    total_seconds = max(0, int(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def to_absolute(
    segments: list[TranscriptSegment], chunk_start_seconds: float
) -> list[TranscriptSegment]:
    """Shift chunk-relative segment times onto the full recording timeline.

    A segment whose time lies more than the tolerance before the chunk
    start was reported relative to the chunk and is offset by the start.
    """
    threshold = chunk_start_seconds - RELATIVE_TIME_TOLERANCE_SECONDS
    return [
        TranscriptSegment(
            time_seconds=(
                seg.time_seconds + chunk_start_seconds
                if seg.time_seconds < threshold
                else seg.time_seconds
            ),
            text=seg.text,
            speaker=seg.speaker,
        )
        for seg in segments
    ]


def merge_segments(chunks: list[list[TranscriptSegment]]) -> list[TimestampEntry]:
    """Merge absolute segments from all chunks into sorted timestamp entries."""
    merged = sorted(
        (seg for segments in chunks for seg in segments),
        key=lambda seg: seg.time_seconds,
    )
    return [
        TimestampEntry(
            time=max(0, round(seg.time_seconds)),
            text=f"{seg.speaker}: {seg.text}" if seg.speaker else seg.text,
        )
        for seg in merged
    ]


def render_transcript(entries: list[TimestampEntry]) -> str:
    """Render entries as newline-separated ``[time] text`` lines."""
    return "\n".join(f"[{format_timestamp(e.time)}] {e.text}" for e in entries)
