"""Fire-and-forget scheduling of pipeline runs, one per recording.

A recording may only start processing when its progress record is
absent, terminal, or handed off by a finished upload. Runs execute as
background tasks; callers learn the outcome from the progress record.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any

from session_processor.pipeline import FAST_STAGES, RecordingPipeline, resume_stage
from session_processor.progress import ProgressTracker, UnifiedProgress
from session_processor.storage.documents import DocumentStore, recording_path
from session_processor.transcription.batch import ACTIVE_BATCH_STATUSES, BATCH_FIELD
from session_processor.utils.errors import PipelineBusyError, PreconditionError

logger = logging.getLogger(__name__)

DEFAULT_STALE_RUN_SECONDS = 3600.0

# Fields a process request may set on the recording document.
REQUEST_FIELDS = (
    "storage_path",
    "audio_file_name",
    "content_type",
    "file_size",
    "transcription_mode",
    "corrections",
    "campaign_context",
    "session_context",
)


def _age_seconds(timestamp: str) -> float:
    try:
        updated = datetime.fromisoformat(timestamp)
    except ValueError:
        return float("inf")
    if updated.tzinfo is None:
        updated = updated.replace(tzinfo=UTC)
    return (datetime.now(UTC) - updated).total_seconds()


class PipelineRunner:
    """Starts pipeline runs as background tasks and keeps them exclusive.

    Args:
        pipeline: The pipeline executing runs.
        tracker: Progress reader used for the exclusivity check.
        store: Document store receiving request fields.
        stale_after: Seconds after which a non-terminal record with no
            local task is considered abandoned and may be resumed.
            Defaults to the PIPELINE_STALE_RUN_SECONDS env var or 3600.
    """

    def __init__(
        self,
        pipeline: RecordingPipeline,
        tracker: ProgressTracker,
        store: DocumentStore,
        stale_after: float | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._tracker = tracker
        self._store = store
        if stale_after is None:
            stale_after = float(
                os.environ.get("PIPELINE_STALE_RUN_SECONDS", DEFAULT_STALE_RUN_SECONDS)
            )
        self._stale_after = stale_after
        self._tasks: dict[str, asyncio.Task] = {}

    def is_running(self, recording_id: str) -> bool:
        return recording_id in self._tasks

    async def submit(
        self, recording_id: str, request: dict[str, Any] | None = None
    ) -> asyncio.Task:
        """Start processing an uploaded recording.

        Args:
            recording_id: Recording to process.
            request: Optional fields to store on the recording first
                (storage path, file name, mode, corrections, context).

        Returns:
            The background task running the pipeline.

        Raises:
            PipelineBusyError: If a run for the recording is in progress.
        """
        self._ensure_no_task(recording_id)
        current = await self._tracker.get(recording_id)
        start_stage, fresh = "submitted", False
        if current is None or (
            current.stage == "uploading" and current.stage_progress >= 100
        ):
            pass
        elif current.is_terminal:
            fresh = True
        elif await self._is_abandoned(recording_id, current):
            start_stage = current.stage if current.stage in FAST_STAGES else "submitted"
            logger.warning(
                "Resuming abandoned run at stage %s",
                start_stage,
                extra={"recording_id": recording_id, "stage": start_stage},
            )
        else:
            raise PipelineBusyError(
                f"Recording is already being processed (stage '{current.stage}')",
                recording_id=recording_id,
            )

        if request:
            delta = {k: request[k] for k in REQUEST_FIELDS if request.get(k) is not None}
            if delta:
                await self._store.patch(recording_path(recording_id), delta)
        return self._spawn(
            recording_id, self._pipeline.run(recording_id, start_stage, fresh)
        )

    async def retry(self, recording_id: str) -> asyncio.Task:
        """Resume a failed recording from its failing stage.

        Raises:
            PipelineBusyError: If a run for the recording is in progress.
            PreconditionError: If the recording has no retryable failure.
        """
        self._ensure_no_task(recording_id)
        resume_stage(await self._tracker.get(recording_id))
        return self._spawn(recording_id, self._pipeline.retry(recording_id))

    async def regenerate_story(
        self, recording_id: str, corrections: str | None = None
    ) -> asyncio.Task:
        """Generate a finished recording's story again from its transcript.

        Raises:
            PipelineBusyError: If the recording is being processed.
            PreconditionError: If the recording has no transcript.
        """
        self._ensure_no_task(recording_id)
        current = await self._tracker.get(recording_id)
        if current is not None and not current.is_terminal:
            raise PipelineBusyError(
                f"Recording is already being processed (stage '{current.stage}')",
                recording_id=recording_id,
            )
        document = await self._store.get(recording_path(recording_id))
        if not document or not document.get("transcription_text"):
            raise PreconditionError(
                "No transcript available for story generation",
                recording_id=recording_id,
            )
        return self._spawn(
            recording_id, self._pipeline.regenerate_story(recording_id, corrections)
        )

    async def complete_batch(
        self, recording_id: str, response_text: str
    ) -> asyncio.Task:
        """Continue a batch-mode recording once its transcript arrived."""
        self._ensure_no_task(recording_id)
        return self._spawn(
            recording_id, self._pipeline.complete_batch(recording_id, response_text)
        )

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self, timeout: float) -> None:
        """Wait for running tasks up to ``timeout`` seconds, then cancel them."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d unfinished pipeline run(s)", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    def _ensure_no_task(self, recording_id: str) -> None:
        if recording_id in self._tasks:
            raise PipelineBusyError(
                "A pipeline run for this recording is already active",
                recording_id=recording_id,
            )

    async def _is_abandoned(self, recording_id: str, current: UnifiedProgress) -> bool:
        if _age_seconds(current.updated_at) < self._stale_after:
            return False
        document = await self._store.get(recording_path(recording_id)) or {}
        batch = document.get(BATCH_FIELD) or {}
        return batch.get("status") not in ACTIVE_BATCH_STATUSES

    def _spawn(self, recording_id: str, coro: Coroutine[Any, Any, bool]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            coro, name=f"pipeline-{recording_id}"
        )
        self._tasks[recording_id] = task

        def done(t: asyncio.Task) -> None:
            self._tasks.pop(recording_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "Pipeline task crashed",
                    exc_info=t.exception(),
                    extra={"recording_id": recording_id},
                )

        task.add_done_callback(done)
        return task
