"""Concatenate audio segments into one mono track with an ffmpeg filter graph."""

from __future__ import annotations

import os

from session_processor.audio.transcode import check_ffmpeg_available, run_tool
from session_processor.utils.errors import TranscodeError

CONCAT_BITRATE = "128k"
CONCAT_TIMEOUT_SECONDS = 600


def build_concat_filter(count: int) -> str:
    """Return the filter graph joining ``count`` inputs in order."""
    inputs = "".join(f"[{i}:a]" for i in range(count))
    return f"{inputs}concat=n={count}:v=0:a=1[out]"


def concat_segments(segment_paths: list[str], output_path: str) -> str:
    """Join segments in order into a single mono MP3 at 128 kbps.

    Args:
        segment_paths: At least two input files, in playback order.
        output_path: Destination file.

    Returns:
        The output path.

    Raises:
        ValueError: If fewer than two segments are given.
        TranscodeError: If ffmpeg fails.
    """
    if len(segment_paths) < 2:
        raise ValueError("concat_segments needs at least two segments")

    cmd = [check_ffmpeg_available(), "-y", "-v", "error"]
    for path in segment_paths:
        cmd.extend(["-i", path])
    cmd.extend(
        [
            "-filter_complex", build_concat_filter(len(segment_paths)),
            "-map", "[out]",
            "-ac", "1",
            "-b:a", CONCAT_BITRATE,
            output_path,
        ]
    )
    run_tool(cmd, segment_paths[0], CONCAT_TIMEOUT_SECONDS, "ffmpeg concat")
    if not os.path.exists(output_path):
        raise TranscodeError(
            f"ffmpeg produced no output file: {output_path}",
            input_path=segment_paths[0],
        )
    return output_path
