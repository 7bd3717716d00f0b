"""Tests for session_processor.observability.metrics module."""

from __future__ import annotations

import json
import time
from dataclasses import asdict

import pytest

from session_processor.observability.metrics import (
    RecordingMetrics,
    StageTimer,
    log_recording_metrics,
)


def _make_recording_metrics(**overrides) -> RecordingMetrics:
    """Create a RecordingMetrics with sensible defaults, applying any overrides."""
    defaults = {
        "recording_id": "rec-001",
        "status": "completed",
        "transcription_mode": "fast",
        "audio_duration_seconds": 4000.0,
        "audio_size_bytes": 16_000_000,
        "chunk_count": 3,
        "chunks_transcribed": 2,
        "chunks_skipped": 1,
        "transcript_characters": 52_000,
        "story_characters": 3_100,
        "processing_wall_time_seconds": 182.5,
        "stage_durations": {"downloading": 1.2, "transcribing": 170.0},
        "retry_count": 1,
        "error_stage": None,
        "error_message": None,
    }
    defaults.update(overrides)
    return RecordingMetrics(**defaults)


class TestRecordingMetrics:
    """Tests for RecordingMetrics dataclass."""

    def test_serializes_all_fields_to_dict(self):
        """RecordingMetrics serializes all fields via dataclasses.asdict()."""
        d = asdict(_make_recording_metrics())

        assert d["recording_id"] == "rec-001"
        assert d["transcription_mode"] == "fast"
        assert d["chunk_count"] == 3
        assert d["chunks_skipped"] == 1
        assert d["stage_durations"] == {"downloading": 1.2, "transcribing": 170.0}
        assert d["error_stage"] is None

    def test_defaults(self):
        metrics = RecordingMetrics(
            recording_id="r1", status="running", transcription_mode="batch"
        )
        assert metrics.stage_durations == {}
        assert metrics.retry_count == 0

    def test_error_case_serializes_with_error_fields(self):
        """Failed run metrics carry the failing stage and message."""
        d = asdict(
            _make_recording_metrics(
                status="failed",
                error_stage="transcribing",
                error_message="Chunk 2 of 3 failed 3 times",
            )
        )
        assert d["status"] == "failed"
        assert d["error_stage"] == "transcribing"
        assert d["error_message"] == "Chunk 2 of 3 failed 3 times"


class TestLogRecordingMetrics:
    """Tests for log_recording_metrics() function."""

    def test_output_is_valid_json_with_envelope_fields(self, capsys):
        """Output is valid JSON with expected envelope fields."""
        log_recording_metrics(_make_recording_metrics())

        parsed = json.loads(capsys.readouterr().out.strip())

        assert "timestamp" in parsed
        assert parsed["severity"] == "INFO"
        assert parsed["metric_type"] == "recording_run"

    def test_output_contains_all_fields(self, capsys):
        """Output contains every RecordingMetrics field."""
        metrics = _make_recording_metrics()
        log_recording_metrics(metrics)

        parsed = json.loads(capsys.readouterr().out.strip())

        for key in asdict(metrics):
            assert key in parsed, f"Missing key: {key}"


class TestStageTimer:
    """Tests for StageTimer context manager."""

    def test_captures_positive_duration(self):
        """StageTimer captures a positive duration when wrapping a timed block."""
        timer = StageTimer("chunking")
        with timer:
            time.sleep(0.01)

        assert timer.duration_seconds > 0.0
        assert timer.stage_name == "chunking"

    def test_captures_start_and_end_times(self):
        """StageTimer captures start_time and end_time as UTC datetimes."""
        timer = StageTimer("transcribing")
        with timer:
            time.sleep(0.01)

        assert timer.start_time is not None
        assert timer.end_time is not None
        assert timer.end_time >= timer.start_time

    def test_records_into_timings(self):
        """Durations are stored under the stage name."""
        timings: dict[str, float] = {}
        with StageTimer("downloading", timings):
            pass
        assert set(timings) == {"downloading"}

    def test_duration_on_exception(self):
        """StageTimer still records duration even if the block raises."""
        timings: dict[str, float] = {}
        timer = StageTimer("generating-story", timings)
        with pytest.raises(ValueError, match="boom"):
            with timer:
                time.sleep(0.01)
                raise ValueError("boom")

        assert timer.duration_seconds > 0.0
        assert timer.end_time is not None
        assert "_generating-story_failed" in timings
        assert "generating-story" not in timings
