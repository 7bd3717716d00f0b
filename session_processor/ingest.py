"""Client-side ingestion: validate, compress and upload a recording.

Validation failures and duplicate starts are raised before anything is
written. After that
every failure is recorded on the recording's progress record and the call
returns None; callers observe the outcome through the progress record.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path

from session_processor.audio.compress import AudioCompressor
from session_processor.progress import ProgressTracker, ThrottledProgress
from session_processor.storage.documents import DocumentStore, recording_path
from session_processor.transfer.interface import UploadDestination, UploadOutcome
from session_processor.transfer.uploader import Uploader
from session_processor.utils.errors import (
    AudioValidationError,
    PipelineError,
    TransferInProgressError,
)

logger = logging.getLogger(__name__)

SUPPORTED_CONTENT_TYPES = frozenset(
    {
        "audio/mpeg",
        "audio/wav",
        "audio/x-wav",
        "audio/mp4",
        "audio/x-m4a",
        "audio/ogg",
    }
)
MAX_FILE_SIZE_BYTES = 500 * 1024 * 1024
COMPRESSION_WRITE_INTERVAL_SECONDS = 2.0


def validate_audio_file(path: str, content_type: str) -> int:
    """Reject unsupported or oversized input before any stage starts.

    Returns:
        The file size in bytes.

    Raises:
        AudioValidationError: If the type is unsupported, the file is
            missing or empty, or it exceeds the size limit.
    """
    base_type = (content_type or "").split(";")[0].strip().lower()
    if base_type not in SUPPORTED_CONTENT_TYPES:
        raise AudioValidationError(
            f"Unsupported audio type '{content_type}'", content_type=content_type
        )
    if not os.path.isfile(path):
        raise AudioValidationError(
            f"Audio file not found: {path}", content_type=content_type
        )
    size = os.path.getsize(path)
    if size == 0:
        raise AudioValidationError("Audio file is empty", content_type=content_type)
    if size > MAX_FILE_SIZE_BYTES:
        raise AudioValidationError(
            f"Audio file is {size} bytes, the limit is {MAX_FILE_SIZE_BYTES} bytes",
            content_type=content_type,
        )
    return size


class IngestService:
    """Runs the compressing and uploading stages for a new recording.

    A compressed file whose foreground upload failed is kept, so ingesting
    the same source again resumes that upload instead of compressing anew.
    """

    def __init__(
        self,
        compressor: AudioCompressor,
        uploader: Uploader,
        tracker: ProgressTracker,
        store: DocumentStore,
    ) -> None:
        self._compressor = compressor
        self._uploader = uploader
        self._tracker = tracker
        self._store = store
        self._ingesting: set[str] = set()
        self._pending: dict[str, _PendingUpload] = {}

    async def ingest(
        self, file_path: str, destination: UploadDestination
    ) -> UploadOutcome | None:
        """Compress and upload a recording.

        Returns:
            The UploadOutcome, or None if a stage failed (the failure is
            on the progress record).

        Raises:
            AudioValidationError: If the input is rejected.
            TransferInProgressError: If the recording is already being
                ingested, transferred or processed.
        """
        original_size = validate_audio_file(file_path, destination.content_type)
        recording_id = destination.recording_id
        if recording_id in self._ingesting:
            raise TransferInProgressError(
                "Recording is already being ingested", recording_id=recording_id
            )

        self._ingesting.add(recording_id)
        try:
            await self._ensure_idle(recording_id)
            pending = self._resumable_upload(recording_id, file_path)
            if pending is not None:
                return await self._resume(pending, destination)
            return await self._ingest(file_path, destination, original_size)
        finally:
            self._ingesting.discard(recording_id)

    async def _ensure_idle(self, recording_id: str) -> None:
        if await self._uploader.is_busy(recording_id):
            raise TransferInProgressError(
                "A transfer is already active for this recording",
                recording_id=recording_id,
            )
        current = await self._tracker.get(recording_id)
        if current is None or current.is_terminal:
            return
        # Client stages with nothing running locally belong to an abandoned run.
        if current.stage == "compressing" or (
            current.stage == "uploading" and current.stage_progress < 100
        ):
            return
        raise TransferInProgressError(
            f"Recording is already in progress at stage '{current.stage}'",
            recording_id=recording_id,
        )

    def _resumable_upload(
        self, recording_id: str, file_path: str
    ) -> _PendingUpload | None:
        pending = self._pending.pop(recording_id, None)
        if pending is None:
            return None
        if (
            pending.source_path == file_path
            and os.path.exists(pending.upload_path)
            and self._uploader.resumable_path(recording_id) == pending.upload_path
        ):
            return pending
        _remove(pending.upload_path)
        return None

    async def _resume(
        self, pending: _PendingUpload, destination: UploadDestination
    ) -> UploadOutcome | None:
        recording_id = destination.recording_id
        destination = replace(
            pending.destination,
            transcription_mode=destination.transcription_mode,
            corrections=destination.corrections,
        )
        logger.info(
            "Resuming interrupted upload of %s",
            pending.upload_path,
            extra={"recording_id": recording_id, "stage": "uploading"},
        )
        await self._tracker.begin(recording_id, "uploading", "Resuming upload")
        return await self._upload(
            recording_id,
            file_path=pending.source_path,
            upload_path=pending.upload_path,
            destination=destination,
        )

    async def _ingest(
        self, file_path: str, destination: UploadDestination, original_size: int
    ) -> UploadOutcome | None:
        recording_id = destination.recording_id
        stage = "compressing"
        compressed_path: str | None = None

        await self._tracker.begin(recording_id, stage, "Compressing audio")
        try:
            result = await self._compressor.compress(
                file_path,
                on_progress=ThrottledProgress(
                    self._tracker,
                    recording_id,
                    stage,
                    "Compressing audio",
                    min_interval=COMPRESSION_WRITE_INTERVAL_SECONDS,
                ),
            )
            if not result.skipped:
                fd, compressed_path = tempfile.mkstemp(suffix=".mp3")
                with os.fdopen(fd, "wb") as out:
                    out.write(result.data)
                destination = UploadDestination(
                    recording_id=recording_id,
                    file_name=f"{Path(destination.file_name).stem}.mp3",
                    content_type=result.mime_type,
                    transcription_mode=destination.transcription_mode,
                    corrections=destination.corrections,
                )

            await self._store.patch(
                recording_path(recording_id),
                {
                    "audio_file_name": destination.file_name,
                    "file_size": result.compressed_size,
                    "transcription_mode": destination.transcription_mode,
                    "compression": {
                        "original_size": original_size,
                        "compressed_size": result.compressed_size,
                        "compression_ratio": result.compression_ratio,
                        "duration_seconds": result.duration_seconds,
                        "skipped": result.skipped,
                    },
                },
            )
            await self._tracker.update(recording_id, "uploading", 0, "Uploading audio")
        except Exception as exc:
            if compressed_path is not None:
                _remove(compressed_path)
            await self._handle_failure(recording_id, stage, exc)
            return None

        return await self._upload(
            recording_id,
            file_path=file_path,
            upload_path=compressed_path or file_path,
            destination=destination,
        )

    async def _upload(
        self,
        recording_id: str,
        file_path: str,
        upload_path: str,
        destination: UploadDestination,
    ) -> UploadOutcome | None:
        compressed = upload_path != file_path
        keep_file = False
        try:
            outcome = await self._uploader.upload(
                upload_path, destination, remove_file=compressed
            )
            # A background transfer owns the compressed file from here on.
            keep_file = outcome.is_background
            return outcome
        except Exception as exc:
            if compressed and self._uploader.resumable_path(recording_id) == upload_path:
                self._pending[recording_id] = _PendingUpload(
                    file_path, upload_path, destination
                )
                keep_file = True
            await self._handle_failure(recording_id, "uploading", exc)
            return None
        finally:
            if compressed and not keep_file:
                _remove(upload_path)

    async def close(self) -> None:
        """Drop uploads kept for resumption and abort their multipart uploads."""
        while self._pending:
            recording_id, pending = self._pending.popitem()
            _remove(pending.upload_path)
            await self._uploader.discard_resumable(recording_id)

    async def _handle_failure(
        self, recording_id: str, stage: str, exc: Exception
    ) -> None:
        if not isinstance(exc, PipelineError):
            logger.error(
                "Unexpected ingest failure",
                exc_info=exc,
                extra={"recording_id": recording_id, "stage": stage},
            )
        await self._record_failure(recording_id, stage, exc)

    async def _record_failure(
        self, recording_id: str, stage: str, exc: BaseException
    ) -> None:
        details = {
            key: getattr(exc, key)
            for key in ("status", "response_text")
            if getattr(exc, key, None) is not None
        }
        try:
            await self._tracker.mark_failed(recording_id, stage, exc, details or None)
        except Exception:
            logger.error(
                "Failed to record ingest failure",
                exc_info=True,
                extra={"recording_id": recording_id},
            )


@dataclass
class _PendingUpload:
    """A compressed file whose foreground upload can be resumed."""

    source_path: str
    upload_path: str
    destination: UploadDestination


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
