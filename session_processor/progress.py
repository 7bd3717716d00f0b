"""Unified progress record for a recording and its state machine.

Every reader observes a recording through a single ``progress`` field on
the recording document. Stages follow a fixed order and each owns a band
of the overall percentage, so the displayed value never goes backwards
while a stage advances and never drops below the floor of the current
stage.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from session_processor.storage.documents import DocumentStore, recording_path
from session_processor.utils.errors import InvalidTransitionError

logger = logging.getLogger(__name__)

Stage = Literal[
    "compressing",
    "uploading",
    "submitted",
    "downloading",
    "chunking",
    "transcribing",
    "generating-story",
    "completed",
    "failed",
]

STAGE_ORDER: tuple[str, ...] = (
    "compressing",
    "uploading",
    "submitted",
    "downloading",
    "chunking",
    "transcribing",
    "generating-story",
    "completed",
)

# (floor, ceiling) of the overall percentage for each stage
STAGE_BANDS: dict[str, tuple[int, int]] = {
    "compressing": (0, 60),
    "uploading": (60, 70),
    "submitted": (70, 72),
    "downloading": (72, 75),
    "chunking": (75, 80),
    "transcribing": (80, 95),
    "generating-story": (95, 100),
    "completed": (100, 100),
    "failed": (0, 0),
}

TERMINAL_STAGES = frozenset({"completed", "failed"})


def _now() -> str:
    return datetime.now(UTC).isoformat()


def overall_progress(stage: str, stage_progress: float) -> int:
    """Map a within-stage percentage onto the stage's overall band."""
    floor, ceiling = STAGE_BANDS[stage]
    clamped = min(100.0, max(0.0, float(stage_progress)))
    return round(floor + (ceiling - floor) * clamped / 100)


@dataclass
class ProgressFailure:
    """Why and where a run failed."""

    stage: str
    error: str
    timestamp: str
    details: dict[str, Any] | None = None


@dataclass
class UnifiedProgress:
    """The single progress record of a recording."""

    stage: str
    progress: int
    stage_progress: int
    current_step: str
    updated_at: str
    failure: ProgressFailure | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UnifiedProgress:
        failure = data.get("failure")
        return cls(
            stage=data["stage"],
            progress=int(data.get("progress", 0)),
            stage_progress=int(data.get("stage_progress", 0)),
            current_step=data.get("current_step", ""),
            updated_at=data.get("updated_at", ""),
            failure=ProgressFailure(**failure) if failure else None,
        )

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


class ProgressTracker:
    """Writes UnifiedProgress records and enforces stage ordering.

    Transitions move forward through STAGE_ORDER. Moving backwards is only
    allowed out of ``failed`` (a manual retry), or through ``begin()``
    which starts a fresh run.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get(self, recording_id: str) -> UnifiedProgress | None:
        document = await self._store.get(recording_path(recording_id))
        data = (document or {}).get("progress")
        return UnifiedProgress.from_dict(data) if data else None

    async def begin(
        self, recording_id: str, stage: str, current_step: str = ""
    ) -> UnifiedProgress:
        """Start a fresh run at ``stage``.

        Stage and percentages restart from zero. A failure captured by an
        earlier run is kept.
        """
        current = await self.get(recording_id)
        record = UnifiedProgress(
            stage=stage,
            progress=overall_progress(stage, 0),
            stage_progress=0,
            current_step=current_step,
            updated_at=_now(),
            failure=current.failure if current else None,
        )
        await self._write(recording_id, record)
        return record

    async def update(
        self,
        recording_id: str,
        stage: str,
        stage_progress: float,
        current_step: str = "",
    ) -> UnifiedProgress:
        """Record progress within a stage.

        Args:
            recording_id: Recording whose record is written.
            stage: Stage being reported.
            stage_progress: Percentage (0-100) within the stage.
            current_step: Human-readable description.

        Returns:
            The record as written.

        Raises:
            InvalidTransitionError: If ``stage`` precedes the current stage
                and the current stage is not ``failed``.
        """
        if stage not in STAGE_ORDER:
            raise InvalidTransitionError(
                f"Unknown stage '{stage}'", recording_id=recording_id
            )
        current = await self.get(recording_id)
        stage_value = round(min(100.0, max(0.0, float(stage_progress))))
        progress = overall_progress(stage, stage_value)
        failure = current.failure if current else None

        if current is not None and current.stage == stage:
            stage_value = max(stage_value, current.stage_progress)
            progress = max(progress, current.progress)
        elif current is not None and current.stage != "failed":
            if STAGE_ORDER.index(stage) < STAGE_ORDER.index(current.stage):
                raise InvalidTransitionError(
                    f"Cannot move from '{current.stage}' back to '{stage}'",
                    recording_id=recording_id,
                )

        record = UnifiedProgress(
            stage=stage,
            progress=progress,
            stage_progress=stage_value,
            current_step=current_step,
            updated_at=_now(),
            failure=failure,
        )
        await self._write(recording_id, record)
        return record

    async def mark_completed(
        self, recording_id: str, current_step: str = "Processing complete"
    ) -> UnifiedProgress:
        return await self.update(recording_id, "completed", 100, current_step)

    async def mark_failed(
        self,
        recording_id: str,
        stage: str,
        error: BaseException | str,
        details: dict[str, Any] | None = None,
    ) -> UnifiedProgress:
        """Move the record to ``failed``, capturing the failing stage.

        Args:
            recording_id: Recording whose record is written.
            stage: The stage that failed.
            error: The exception or message to record.
            details: Optional diagnostic fields (HTTP status, response text).
        """
        message = str(error)
        record = UnifiedProgress(
            stage="failed",
            progress=0,
            stage_progress=0,
            current_step=f"Failed during {stage}: {message}",
            updated_at=_now(),
            failure=ProgressFailure(
                stage=stage, error=message, timestamp=_now(), details=details
            ),
        )
        await self._write(recording_id, record)
        logger.warning(
            "Recording failed at stage %s: %s",
            stage,
            message,
            extra={"recording_id": recording_id, "stage": stage, "error": message},
        )
        return record

    async def _write(self, recording_id: str, record: UnifiedProgress) -> None:
        await self._store.patch(
            recording_path(recording_id), {"progress": record.to_dict()}
        )
        logger.debug(
            "Progress %s %d%%: %s",
            record.stage,
            record.progress,
            record.current_step,
            extra={
                "recording_id": recording_id,
                "stage": record.stage,
                "progress": record.progress,
            },
        )


class ThrottledProgress:
    """Forwards stage progress to a tracker at most once per interval.

    The final 100% report is always written.
    """

    def __init__(
        self,
        tracker: ProgressTracker,
        recording_id: str,
        stage: str,
        current_step: str,
        min_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tracker = tracker
        self._recording_id = recording_id
        self._stage = stage
        self._current_step = current_step
        self._min_interval = min_interval
        self._clock = clock
        self._last_write: float | None = None

    async def __call__(self, stage_progress: float) -> None:
        now = self._clock()
        if (
            stage_progress < 100
            and self._last_write is not None
            and now - self._last_write < self._min_interval
        ):
            return
        self._last_write = now
        await self._tracker.update(
            self._recording_id, self._stage, stage_progress, self._current_step
        )


async def report(callback: Callable[[int], Any] | None, value: int) -> None:
    """Invoke a sync or async progress callback."""
    if callback is None:
        return
    result = callback(value)
    if inspect.isawaitable(result):
        await result


class ProgressWatcher:
    """Client-side observer of a recording's progress record.

    An absent record is reported as ``uploading`` at 0%. ``cancel()`` only
    stops delivery; the remote job keeps running and keeps writing.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._unsubscribe: Callable[[], None] | None = None

    def watch(
        self, recording_id: str, callback: Callable[[UnifiedProgress], None]
    ) -> ProgressWatcher:
        self.cancel()

        def on_snapshot(document: dict[str, Any] | None) -> None:
            data = (document or {}).get("progress")
            if data:
                callback(UnifiedProgress.from_dict(data))
            else:
                callback(
                    UnifiedProgress(
                        stage="uploading",
                        progress=0,
                        stage_progress=0,
                        current_step="",
                        updated_at=_now(),
                    )
                )

        self._unsubscribe = self._store.subscribe(
            recording_path(recording_id), on_snapshot
        )
        return self

    def cancel(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
