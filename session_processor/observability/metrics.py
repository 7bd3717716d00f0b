"""Per-run metrics collection and reporting.

Provides RecordingMetrics for structured observability data, StageTimer
for measuring pipeline stage durations, and log_recording_metrics() for
emitting metrics as a single structured JSON line to stdout.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime


@dataclass
class RecordingMetrics:
    """All metrics collected for a single orchestrator run."""

    recording_id: str
    status: str
    transcription_mode: str
    audio_duration_seconds: float = 0.0
    audio_size_bytes: int = 0
    chunk_count: int = 0
    chunks_transcribed: int = 0
    chunks_skipped: int = 0
    transcript_characters: int = 0
    story_characters: int = 0
    processing_wall_time_seconds: float = 0.0
    stage_durations: dict[str, float] = field(default_factory=dict)
    retry_count: int = 0
    error_stage: str | None = None
    error_message: str | None = None


class StageTimer:
    """Context manager that records wall-clock duration of a pipeline stage.

    When ``timings`` is given, the duration is stored under the stage name,
    or under ``_<stage>_failed`` if the block raised.

    Usage:
        timer = StageTimer("chunking")
        with timer:
            do_work()
        print(timer.duration_seconds)
    """

    def __init__(
        self, stage_name: str, timings: dict[str, float] | None = None
    ) -> None:
        self.stage_name = stage_name
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration_seconds: float = 0.0
        self._timings = timings
        self._mono_start: float = 0.0

    def __enter__(self) -> StageTimer:
        self.start_time = datetime.now(UTC)
        self._mono_start = time.monotonic()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        elapsed = time.monotonic() - self._mono_start
        self.end_time = datetime.now(UTC)
        self.duration_seconds = elapsed
        if self._timings is not None:
            if exc_type is not None:
                self._timings[f"_{self.stage_name}_failed"] = elapsed
            else:
                self._timings[self.stage_name] = elapsed


def log_recording_metrics(metrics: RecordingMetrics) -> None:
    """Emit run metrics as a single structured JSON line to stdout.

    Args:
        metrics: Populated RecordingMetrics dataclass.
    """
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO",
        "metric_type": "recording_run",
        **asdict(metrics),
    }
    print(json.dumps(entry))
