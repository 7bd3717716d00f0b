"""Upload entry point choosing between background and foreground transfer.

State machine: idle -> background attempt -> background-registered, or
background-unavailable -> foreground-resumable -> completed | failed.
Callers only learn which path ran; progress for both paths lands on the
recording's progress record.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from session_processor.progress import ProgressTracker, report
from session_processor.storage.object_storage import ObjectStorage
from session_processor.transfer.background import BackgroundTransfer
from session_processor.transfer.backend_client import BackendClient
from session_processor.transfer.foreground import ResumableUpload
from session_processor.transfer.interface import UploadDestination, UploadOutcome
from session_processor.transfer.metadata_store import TransferMetadataStore
from session_processor.utils.errors import (
    BackgroundTransferUnavailableError,
    TransferInProgressError,
)

logger = logging.getLogger(__name__)

ForegroundFactory = Callable[..., ResumableUpload]


class Uploader:
    """Moves a recording file to storage, preferring the background path.

    Args:
        storage: Object storage used by the foreground path.
        backend: Backend client for finalisation.
        tracker: Progress writer for the ``uploading`` stage.
        store: Transfer metadata store (capability cache, in-flight check).
        background: Background starter, or None to always go foreground.
        foreground_factory: Builds a ResumableUpload (tests).
    """

    def __init__(
        self,
        storage: ObjectStorage,
        backend: BackendClient,
        tracker: ProgressTracker,
        store: TransferMetadataStore,
        background: BackgroundTransfer | None = None,
        foreground_factory: ForegroundFactory = ResumableUpload,
    ) -> None:
        self._storage = storage
        self._backend = backend
        self._tracker = tracker
        self._store = store
        self._background = background
        self._foreground_factory = foreground_factory
        self._active: set[str] = set()
        self._resumable: dict[str, ResumableUpload] = {}

    async def is_busy(self, recording_id: str) -> bool:
        """Whether a transfer for the recording is running or registered."""
        if recording_id in self._active:
            return True
        return await asyncio.to_thread(self._store.has_transfer_for, recording_id)

    def resumable_path(self, recording_id: str) -> str | None:
        """File of an interrupted foreground upload that ``upload`` would resume."""
        upload = self._resumable.get(recording_id)
        return upload.file_path if upload is not None else None

    async def discard_resumable(self, recording_id: str) -> None:
        """Abort an interrupted foreground upload that will not be resumed."""
        upload = self._resumable.pop(recording_id, None)
        if upload is not None:
            await upload.abort()

    async def upload(
        self,
        file_path: str,
        destination: UploadDestination,
        on_progress: Callable[[int], Any] | None = None,
        remove_file: bool = False,
    ) -> UploadOutcome:
        """Upload a file for a recording.

        Args:
            file_path: Local file to send.
            destination: Recording and follow-up information.
            on_progress: Optional callback receiving foreground progress
                (0-90 while sending, 100 after confirmation).
            remove_file: Let the background facility delete the file when
                it is done with it. The foreground path never deletes.

        Returns:
            UploadOutcome telling which path carried the file.

        Raises:
            TransferInProgressError: If a transfer for the recording is
                already active.
            TransferError: If the foreground upload or finalisation fails.
        """
        recording_id = destination.recording_id
        if await self.is_busy(recording_id):
            raise TransferInProgressError(
                "A transfer is already active for this recording",
                recording_id=recording_id,
            )

        self._active.add(recording_id)
        try:
            transfer_id = await self._try_background(
                file_path, destination, remove_file
            )
            if transfer_id is not None:
                await self.discard_resumable(recording_id)
                return UploadOutcome(is_background=True, transfer_id=transfer_id)
            storage_path = await self._foreground(file_path, destination, on_progress)
            return UploadOutcome(is_background=False, storage_path=storage_path)
        finally:
            self._active.discard(recording_id)

    async def _try_background(
        self, file_path: str, destination: UploadDestination, remove_file: bool
    ) -> str | None:
        if self._background is None:
            return None
        if await asyncio.to_thread(self._store.background_unsupported):
            logger.info(
                "Background transfer cached as unsupported, using foreground",
                extra={"recording_id": destination.recording_id},
            )
            return None
        try:
            return await self._background.start(file_path, destination, remove_file)
        except BackgroundTransferUnavailableError as exc:
            if exc.permanent:
                await asyncio.to_thread(self._store.mark_background_unsupported)
            logger.warning(
                "Background transfer unavailable, falling back to foreground: %s",
                exc,
                extra={"recording_id": destination.recording_id},
            )
            return None

    async def _foreground(
        self,
        file_path: str,
        destination: UploadDestination,
        on_progress: Callable[[int], Any] | None,
    ) -> str:
        recording_id = destination.recording_id
        key = destination.storage_key

        async def progress(percent: int) -> None:
            await self._tracker.update(
                recording_id, "uploading", percent, "Uploading audio"
            )
            await report(on_progress, percent)

        upload = self._resumable.get(recording_id)
        if upload is not None and upload.file_path != file_path:
            await self.discard_resumable(recording_id)
            upload = None
        if upload is None:
            upload = self._foreground_factory(
                self._storage, file_path, key, destination.content_type
            )
        self._resumable[recording_id] = upload
        size = await upload.run(progress)
        self._resumable.pop(recording_id, None)
        await progress(100)

        await self._backend.finalize_upload(
            recording_id,
            key,
            destination.file_name,
            size,
            destination.transcription_mode,
            destination.corrections,
        )
        return key
