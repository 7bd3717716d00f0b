"""Asynchronous (batch) transcription jobs and their poller.

A recording processed in batch mode carries a ``transcription_batch``
field describing the remote job. BatchPoller periodically reads every
recording whose job is still ``submitted`` or ``running``, asks the
upstream service for the job state and moves the recording on: a
finished job hands its response text back to the pipeline runner, a
failed, cancelled or expired job fails the recording at
``transcribing``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from session_processor.ai.interface import BatchTranscriptionService
from session_processor.progress import ProgressTracker
from session_processor.storage.documents import (
    RECORDINGS_COLLECTION,
    DocumentStore,
    recording_path,
)

if TYPE_CHECKING:
    from session_processor.runner import PipelineRunner

logger = logging.getLogger(__name__)

BATCH_FIELD = "transcription_batch"
ACTIVE_BATCH_STATUSES = ("submitted", "running")
DEFAULT_POLL_INTERVAL_SECONDS = 300.0

_KNOWN_STATES = ("PENDING", "RUNNING", "SUCCEEDED", "FAILED", "CANCELLED", "EXPIRED")
_TERMINAL_FAILURE_STATES = (
    "JOB_STATE_FAILED",
    "JOB_STATE_CANCELLED",
    "JOB_STATE_EXPIRED",
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class TranscriptionBatchMetadata:
    """State of a recording's remote batch job."""

    batch_job_name: str
    status: str = "submitted"
    error: str | None = None
    submitted_at: str = ""
    last_checked_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TranscriptionBatchMetadata:
        return cls(
            batch_job_name=data.get("batch_job_name", ""),
            status=data.get("status", "submitted"),
            error=data.get("error"),
            submitted_at=data.get("submitted_at", ""),
            last_checked_at=data.get("last_checked_at"),
        )


def normalize_batch_state(raw: Any) -> str:
    """Normalise the job state reported upstream to ``JOB_STATE_*``.

    Accepts prefixed names (``JOB_STATE_RUNNING``, ``BATCH_STATE_RUNNING``),
    bare names (``RUNNING``) and objects carrying the state under ``name``.
    Anything else is ``UNKNOWN``.
    """
    if isinstance(raw, dict):
        return normalize_batch_state(raw.get("name"))
    if not isinstance(raw, str) or not raw:
        return "UNKNOWN"
    state = raw.strip().upper()
    if state.startswith("JOB_STATE_"):
        return state
    if state.startswith("BATCH_STATE_"):
        state = state[len("BATCH_STATE_") :]
    if state in _KNOWN_STATES:
        return f"JOB_STATE_{state}"
    return "UNKNOWN"


def job_state(job: dict[str, Any]) -> str:
    metadata = job.get("metadata") or {}
    return normalize_batch_state(metadata.get("state") or job.get("state"))


def _inline_responses(job: dict[str, Any]) -> list[Any]:
    metadata = job.get("metadata") or {}
    for container in (job.get("dest"), job.get("response"), metadata.get("output")):
        if not isinstance(container, dict):
            continue
        inlined = container.get("inlinedResponses")
        if isinstance(inlined, dict):
            inlined = inlined.get("inlinedResponses")
        if isinstance(inlined, list) and inlined:
            return inlined
    return []


def extract_batch_text(job: dict[str, Any]) -> str:
    """Return the response text of the job's first inline response.

    Returns an empty string when the job carries no usable response.
    """
    for entry in _inline_responses(job):
        if not isinstance(entry, dict):
            continue
        response = entry.get("response") or {}
        candidates = response.get("candidates") or []
        if not candidates:
            continue
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(
            part["text"] for part in parts if isinstance(part.get("text"), str)
        )
        if text.strip():
            return text
    return ""


class BatchPoller:
    """Periodically advances recordings waiting on batch jobs.

    Args:
        store: Document store holding the recordings.
        service: Upstream batch service.
        tracker: Progress writer.
        runner: Receives finished transcripts for story generation.
        interval: Seconds between polls; defaults to the
            BATCH_POLL_INTERVAL_SECONDS env var or 300.
    """

    def __init__(
        self,
        store: DocumentStore,
        service: BatchTranscriptionService,
        tracker: ProgressTracker,
        runner: PipelineRunner,
        interval: float | None = None,
    ) -> None:
        self._store = store
        self._service = service
        self._tracker = tracker
        self._runner = runner
        if interval is None:
            interval = float(
                os.environ.get(
                    "BATCH_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS
                )
            )
        self.interval = interval
        self._stopped = asyncio.Event()

    async def poll_once(self) -> int:
        """Check every active batch job once.

        Errors for a single recording are logged and do not stop the poll.

        Returns:
            Number of recordings checked.
        """
        rows = await self._store.query(
            RECORDINGS_COLLECTION,
            f"{BATCH_FIELD}.status",
            list(ACTIVE_BATCH_STATUSES),
        )
        for doc_id, document in rows:
            recording_id = doc_id.removeprefix(f"{RECORDINGS_COLLECTION}/")
            batch = TranscriptionBatchMetadata.from_dict(
                document.get(BATCH_FIELD) or {}
            )
            try:
                await self._check(recording_id, batch)
            except Exception:
                logger.error(
                    "Failed to poll batch job %s",
                    batch.batch_job_name,
                    exc_info=True,
                    extra={"recording_id": recording_id},
                )
        return len(rows)

    async def run(self) -> None:
        """Poll until stop() is called."""
        logger.info("Batch poller started (interval %.0fs)", self.interval)
        while not self._stopped.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.error("Batch poll failed", exc_info=True)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except TimeoutError:
                continue
        logger.info("Batch poller stopped")

    def stop(self) -> None:
        self._stopped.set()

    async def _check(
        self, recording_id: str, batch: TranscriptionBatchMetadata
    ) -> None:
        if not batch.batch_job_name:
            await self._fail(recording_id, "Batch job name is missing")
            return

        job = await self._service.get_batch(batch.batch_job_name)
        state = job_state(job)
        logger.info(
            "Batch job %s is %s",
            batch.batch_job_name,
            state,
            extra={"recording_id": recording_id},
        )

        if state == "JOB_STATE_RUNNING":
            await self._patch(recording_id, status="running")
            await self._tracker.update(
                recording_id, "transcribing", 50, "Batch transcription running"
            )
        elif state == "JOB_STATE_SUCCEEDED":
            text = extract_batch_text(job)
            if not text:
                await self._fail(
                    recording_id, "Batch job completed without a response"
                )
                return
            await self._patch(recording_id, status="completed")
            await self._runner.complete_batch(recording_id, text)
        elif state in _TERMINAL_FAILURE_STATES:
            reason = state.removeprefix("JOB_STATE_").lower()
            await self._fail(recording_id, f"Batch job {reason}")
        else:
            await self._patch(recording_id)

    async def _patch(self, recording_id: str, **fields: Any) -> None:
        delta = {f"{BATCH_FIELD}.last_checked_at": _now()}
        delta.update({f"{BATCH_FIELD}.{key}": value for key, value in fields.items()})
        await self._store.patch(recording_path(recording_id), delta)

    async def _fail(self, recording_id: str, message: str) -> None:
        await self._patch(recording_id, status="failed", error=message)
        await self._tracker.mark_failed(recording_id, "transcribing", message)
