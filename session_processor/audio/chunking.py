"""Fixed-duration chunking of long recordings for transcription.

Chunk ``i`` covers ``[i * 1800, min(total, (i + 1) * 1800))`` seconds, so
the chunks partition the recording exactly and only the last one may be
shorter. Each chunk is extracted independently with ffmpeg.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass
from typing import Any

from session_processor.audio.transcode import extract_segment
from session_processor.utils.errors import PreconditionError

logger = logging.getLogger(__name__)

CHUNK_DURATION_SECONDS = 1800


@dataclass
class AudioChunk:
    """One bounded-duration slice of a recording."""

    index: int
    start_time_seconds: float
    end_time_seconds: float
    duration_seconds: float
    audio_path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AudioChunk:
        return cls(
            index=int(data["index"]),
            start_time_seconds=data["start_time_seconds"],
            end_time_seconds=data["end_time_seconds"],
            duration_seconds=data["duration_seconds"],
            audio_path=data.get("audio_path", ""),
        )


def plan_chunks(
    total_duration_seconds: float,
    chunk_duration: float = CHUNK_DURATION_SECONDS,
) -> list[AudioChunk]:
    """Compute chunk boundaries without touching any file.

    Raises:
        PreconditionError: If the duration is not positive.
    """
    if not total_duration_seconds or total_duration_seconds <= 0:
        raise PreconditionError(
            f"Cannot chunk audio with duration {total_duration_seconds}"
        )
    chunks: list[AudioChunk] = []
    index = 0
    while index * chunk_duration < total_duration_seconds:
        start = index * chunk_duration
        end = min(total_duration_seconds, start + chunk_duration)
        chunks.append(
            AudioChunk(
                index=index,
                start_time_seconds=start,
                end_time_seconds=end,
                duration_seconds=end - start,
            )
        )
        index += 1
    return chunks


def chunk_file_name(index: int) -> str:
    return f"chunk-{index:03d}.wav"


def split_into_chunks(
    input_path: str,
    total_duration_seconds: float,
    output_dir: str,
    indices: Iterable[int] | None = None,
    extractor: Callable[[str, str, float, float], str] = extract_segment,
) -> list[AudioChunk]:
    """Extract chunk files in index order.

    Args:
        input_path: The full recording.
        total_duration_seconds: Duration from container metadata.
        output_dir: Directory receiving the chunk WAV files.
        indices: Only extract these chunk indices (all when None).
        extractor: Callable(input, output, start, duration) writing one chunk.

    Returns:
        The extracted chunks with ``audio_path`` set.

    Raises:
        PreconditionError: If the duration is not positive.
        TranscodeError: If an extraction fails. Chunk files already
            written by this call are removed first.
    """
    wanted = set(indices) if indices is not None else None
    os.makedirs(output_dir, exist_ok=True)
    produced: list[AudioChunk] = []
    try:
        for chunk in plan_chunks(total_duration_seconds):
            if wanted is not None and chunk.index not in wanted:
                continue
            output_path = os.path.join(output_dir, chunk_file_name(chunk.index))
            extractor(
                input_path,
                output_path,
                chunk.start_time_seconds,
                chunk.duration_seconds,
            )
            chunk.audio_path = output_path
            produced.append(chunk)
            logger.info(
                "Extracted chunk %d (%.0fs-%.0fs)",
                chunk.index,
                chunk.start_time_seconds,
                chunk.end_time_seconds,
            )
    except Exception:
        cleanup_chunks(produced)
        raise
    return produced


def cleanup_chunk(chunk: AudioChunk) -> None:
    """Delete a chunk's temporary file if it still exists."""
    if not chunk.audio_path:
        return
    try:
        os.remove(chunk.audio_path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove chunk file %s: %s", chunk.audio_path, exc)


def cleanup_chunks(chunks: Iterable[AudioChunk]) -> None:
    for chunk in chunks:
        cleanup_chunk(chunk)
