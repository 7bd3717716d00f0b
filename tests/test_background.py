"""Tests for background transfer registration and notification handling."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from session_processor.progress import ProgressTracker
from session_processor.storage.documents import InMemoryDocumentStore
from session_processor.transfer.background import (
    BackgroundTransfer,
    TransferNotificationHandler,
)
from session_processor.transfer.interface import (
    SignedTransfer,
    TransferMetadata,
    TransferNotification,
    UploadDestination,
)
from session_processor.transfer.metadata_store import TransferMetadataStore
from session_processor.utils.errors import (
    BackgroundTransferUnavailableError,
    TransferError,
)


@pytest.fixture
def store(tmp_path):
    s = TransferMetadataStore(str(tmp_path / "transfers.db"))
    yield s
    s.close()


def _destination() -> UploadDestination:
    return UploadDestination(
        recording_id="r1",
        file_name="a.mp3",
        content_type="audio/mpeg",
        transcription_mode="batch",
        corrections="Brom",
    )


def _backend() -> AsyncMock:
    backend = AsyncMock()
    backend.negotiate_signed_transfer.return_value = SignedTransfer(
        signed_url="https://signed/put",
        storage_path="recordings/r1/a.mp3",
        final_destination="https://storage/recordings/r1/a.mp3",
    )
    return backend


class TestBackgroundTransferStart:
    """Tests for BackgroundTransfer.start()."""

    async def test_registers_request_and_persists_metadata(self, store, tmp_path):
        audio = tmp_path / "a.mp3"
        audio.write_bytes(b"12345")
        facility = MagicMock()
        facility.is_supported.return_value = True
        facility.register = AsyncMock()

        transfer_id = await BackgroundTransfer(_backend(), facility, store).start(
            str(audio), _destination(), remove_file=True
        )

        request = facility.register.call_args.args[0]
        assert request.transfer_id == transfer_id
        assert request.url == "https://signed/put"
        assert request.total_bytes == 5
        assert request.remove_file is True
        metadata = store.get(transfer_id)
        assert metadata.storage_path == "recordings/r1/a.mp3"
        assert metadata.transcription_mode == "batch"

    async def test_unsupported_facility_is_permanent(self, store, tmp_path):
        facility = MagicMock()
        facility.is_supported.return_value = False
        with pytest.raises(BackgroundTransferUnavailableError) as exc_info:
            await BackgroundTransfer(_backend(), facility, store).start(
                str(tmp_path / "a.mp3"), _destination()
            )
        assert exc_info.value.permanent

    async def test_negotiation_failure_is_transient(self, store, tmp_path):
        audio = tmp_path / "a.mp3"
        audio.write_bytes(b"1")
        backend = _backend()
        backend.negotiate_signed_transfer.side_effect = TransferError("HTTP 500")
        facility = MagicMock()
        facility.is_supported.return_value = True

        with pytest.raises(BackgroundTransferUnavailableError) as exc_info:
            await BackgroundTransfer(backend, facility, store).start(str(audio), _destination())
        assert not exc_info.value.permanent

    async def test_registration_failure_discards_metadata(self, store, tmp_path):
        audio = tmp_path / "a.mp3"
        audio.write_bytes(b"1")
        facility = MagicMock()
        facility.is_supported.return_value = True
        facility.register = AsyncMock(side_effect=RuntimeError("disk full"))

        with pytest.raises(BackgroundTransferUnavailableError, match="disk full"):
            await BackgroundTransfer(_backend(), facility, store).start(str(audio), _destination())
        assert not store.has_transfer_for("r1")


class TestTransferNotificationHandler:
    """Tests for TransferNotificationHandler.handle()."""

    def _setup(self, store):
        store.put(
            TransferMetadata(
                transfer_id="upload-r1-1",
                recording_id="r1",
                storage_path="recordings/r1/a.mp3",
                final_destination="https://storage/recordings/r1/a.mp3",
                file_name="a.mp3",
                file_size=5,
                transcription_mode="batch",
            )
        )
        documents = InMemoryDocumentStore()
        tracker = ProgressTracker(documents)
        backend = AsyncMock()
        return TransferNotificationHandler(store, backend, tracker), backend, tracker

    async def test_complete_finalises_once(self, store):
        handler, backend, tracker = self._setup(store)
        notification = TransferNotification("upload-r1-1", "complete", status=200)

        assert await handler.handle(notification)
        assert not await handler.handle(notification)

        backend.finalize_upload.assert_awaited_once_with(
            "r1", "recordings/r1/a.mp3", "a.mp3", 5, "batch", None
        )
        progress = await tracker.get("r1")
        assert progress.stage == "uploading"
        assert progress.stage_progress == 100

    async def test_failed_outcome_marks_recording_failed(self, store):
        handler, backend, tracker = self._setup(store)
        await handler.handle(
            TransferNotification(
                "upload-r1-1", "failed", status=403, status_text="Forbidden",
                response_text="expired signature",
            )
        )

        progress = await tracker.get("r1")
        assert progress.stage == "failed"
        assert progress.failure.stage == "uploading"
        assert "HTTP 403 Forbidden" in progress.failure.error
        assert progress.failure.details["response_text"] == "expired signature"
        backend.finalize_upload.assert_not_awaited()

    async def test_finalisation_failure_marks_recording_failed(self, store):
        handler, backend, tracker = self._setup(store)
        backend.finalize_upload.side_effect = TransferError(
            "Upload finalisation failed: HTTP 500", status=500, response_text="boom"
        )

        await handler.handle(TransferNotification("upload-r1-1", "complete", status=200))

        progress = await tracker.get("r1")
        assert progress.stage == "failed"
        assert progress.failure.details["status"] == 500

    async def test_unknown_transfer_is_ignored(self, store):
        handler, backend, _ = self._setup(store)
        assert not await handler.handle(TransferNotification("other", "complete"))
        backend.finalize_upload.assert_not_awaited()
