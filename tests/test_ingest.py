"""Tests for client-side ingestion."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

from session_processor.audio.compress import CompressionResult
from session_processor.ingest import (
    MAX_FILE_SIZE_BYTES,
    IngestService,
    validate_audio_file,
)
from session_processor.progress import ProgressTracker
from session_processor.storage.documents import InMemoryDocumentStore
from session_processor.transfer.interface import UploadDestination, UploadOutcome
from session_processor.transfer.metadata_store import TransferMetadataStore
from session_processor.transfer.uploader import Uploader
from session_processor.utils.errors import (
    AudioValidationError,
    StorageError,
    TransferError,
    TransferInProgressError,
)


def _destination(content_type: str = "audio/wav") -> UploadDestination:
    return UploadDestination(
        recording_id="r1",
        file_name="session.wav",
        content_type=content_type,
        transcription_mode="batch",
    )


def _compressor(skipped: bool = False) -> AsyncMock:
    compressor = AsyncMock()
    compressor.compress.return_value = CompressionResult(
        data=b"mp3-bytes",
        original_size=100,
        compressed_size=9,
        compression_ratio=100 / 9,
        duration_seconds=12.5,
        mime_type="audio/mpeg",
        skipped=skipped,
    )
    return compressor


def _uploader() -> AsyncMock:
    uploader = AsyncMock()
    uploader.is_busy.return_value = False
    uploader.resumable_path = MagicMock(return_value=None)
    return uploader


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "session.wav"
    path.write_bytes(b"x" * 100)
    return str(path)


class TestValidateAudioFile:
    """Tests for validate_audio_file()."""

    def test_accepts_supported_type(self, audio_file) -> None:
        assert validate_audio_file(audio_file, "audio/wav; codecs=1") == 100

    def test_rejects_unsupported_type(self, audio_file) -> None:
        with pytest.raises(AudioValidationError, match="Unsupported audio type") as exc_info:
            validate_audio_file(audio_file, "video/mp4")
        assert exc_info.value.content_type == "video/mp4"

    def test_rejects_empty_and_missing(self, tmp_path) -> None:
        empty = tmp_path / "empty.mp3"
        empty.write_bytes(b"")
        with pytest.raises(AudioValidationError, match="empty"):
            validate_audio_file(str(empty), "audio/mpeg")
        with pytest.raises(AudioValidationError, match="not found"):
            validate_audio_file(str(tmp_path / "missing.mp3"), "audio/mpeg")

    def test_rejects_oversized(self, audio_file, monkeypatch) -> None:
        monkeypatch.setattr(
            "session_processor.ingest.os.path.getsize", lambda p: MAX_FILE_SIZE_BYTES + 1
        )
        with pytest.raises(AudioValidationError, match="limit"):
            validate_audio_file(audio_file, "audio/mpeg")


class TestIngestService:
    """Tests for IngestService.ingest()."""

    async def test_compressed_upload(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        tracker = ProgressTracker(store)
        uploader = _uploader()
        uploaded: list[bytes] = []

        async def upload(path, destination, remove_file=False):
            with open(path, "rb") as f:
                uploaded.append(f.read())
            return UploadOutcome(is_background=False, storage_path="recordings/r1/session.mp3")

        uploader.upload.side_effect = upload
        service = IngestService(_compressor(), uploader, tracker, store)

        outcome = await service.ingest(audio_file, _destination())

        assert outcome.storage_path == "recordings/r1/session.mp3"
        assert uploaded == [b"mp3-bytes"]
        path, destination = uploader.upload.call_args.args
        assert destination.file_name == "session.mp3"
        assert destination.content_type == "audio/mpeg"
        assert destination.transcription_mode == "batch"
        assert uploader.upload.call_args.kwargs == {"remove_file": True}
        assert not os.path.exists(path)

        doc = await store.get("recordings/r1")
        assert doc["compression"]["compressed_size"] == 9
        assert doc["compression"]["original_size"] == 100
        assert doc["audio_file_name"] == "session.mp3"
        assert doc["progress"]["stage"] == "uploading"

    async def test_background_transfer_keeps_compressed_file(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        uploader = _uploader()
        uploader.upload.return_value = UploadOutcome(is_background=True, transfer_id="t1")
        service = IngestService(_compressor(), uploader, ProgressTracker(store), store)

        await service.ingest(audio_file, _destination())

        path = uploader.upload.call_args.args[0]
        assert os.path.exists(path)
        os.remove(path)

    async def test_skipped_compression_uploads_original(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        uploader = _uploader()
        uploader.upload.return_value = UploadOutcome(is_background=False, storage_path="p")
        service = IngestService(
            _compressor(skipped=True), uploader, ProgressTracker(store), store
        )

        await service.ingest(audio_file, _destination())

        path, destination = uploader.upload.call_args.args
        assert path == audio_file
        assert destination.file_name == "session.wav"
        assert uploader.upload.call_args.kwargs == {"remove_file": False}

    async def test_validation_error_writes_nothing(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        service = IngestService(_compressor(), _uploader(), ProgressTracker(store), store)
        with pytest.raises(AudioValidationError):
            await service.ingest(audio_file, _destination("text/plain"))
        assert await store.get("recordings/r1") is None

    async def test_upload_failure_is_recorded(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        tracker = ProgressTracker(store)
        uploader = _uploader()
        uploader.upload.side_effect = TransferError(
            "Upload failed", status=500, response_text="internal"
        )
        service = IngestService(_compressor(), uploader, tracker, store)

        assert await service.ingest(audio_file, _destination()) is None

        progress = await tracker.get("r1")
        assert progress.stage == "failed"
        assert progress.failure.stage == "uploading"
        assert progress.failure.details == {"status": 500, "response_text": "internal"}

    async def test_compression_failure_is_recorded(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        tracker = ProgressTracker(store)
        compressor = AsyncMock()
        compressor.compress.side_effect = RuntimeError("decoder crashed")
        service = IngestService(compressor, _uploader(), tracker, store)

        assert await service.ingest(audio_file, _destination()) is None

        progress = await tracker.get("r1")
        assert progress.failure.stage == "compressing"
        assert progress.failure.error == "decoder crashed"


class TestIngestExclusivity:
    """Tests for rejecting a second ingest of a recording in flight."""

    async def test_active_transfer_is_rejected_without_writes(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        tracker = ProgressTracker(store)
        await tracker.update("r1", "uploading", 50, "Uploading audio")
        compressor = _compressor()
        uploader = _uploader()
        uploader.is_busy.return_value = True
        service = IngestService(compressor, uploader, tracker, store)

        with pytest.raises(TransferInProgressError):
            await service.ingest(audio_file, _destination())

        progress = await tracker.get("r1")
        assert progress.stage == "uploading"
        assert progress.stage_progress == 50
        compressor.compress.assert_not_awaited()
        uploader.upload.assert_not_awaited()

    async def test_server_side_stage_is_rejected(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        tracker = ProgressTracker(store)
        await tracker.update("r1", "transcribing", 30)
        service = IngestService(_compressor(), _uploader(), tracker, store)

        with pytest.raises(TransferInProgressError, match="transcribing"):
            await service.ingest(audio_file, _destination())
        assert (await tracker.get("r1")).stage == "transcribing"

    async def test_concurrent_ingest_is_rejected(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        uploader = _uploader()
        service = IngestService(_compressor(), uploader, ProgressTracker(store), store)

        async def upload(path, destination, remove_file=False):
            with pytest.raises(TransferInProgressError):
                await service.ingest(audio_file, _destination())
            return UploadOutcome(is_background=False, storage_path="p")

        uploader.upload.side_effect = upload

        outcome = await service.ingest(audio_file, _destination())
        assert outcome.storage_path == "p"
        assert uploader.upload.await_count == 1

    async def test_abandoned_compression_may_restart(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        tracker = ProgressTracker(store)
        await tracker.update("r1", "compressing", 40)
        uploader = _uploader()
        uploader.upload.return_value = UploadOutcome(is_background=False, storage_path="p")
        service = IngestService(_compressor(), uploader, tracker, store)

        assert await service.ingest(audio_file, _destination()) is not None

    async def test_completed_recording_may_be_ingested_again(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        tracker = ProgressTracker(store)
        await tracker.mark_completed("r1")
        uploader = _uploader()
        uploader.upload.return_value = UploadOutcome(is_background=False, storage_path="p")
        service = IngestService(_compressor(), uploader, tracker, store)

        assert await service.ingest(audio_file, _destination()) is not None


class TestIngestResume:
    """Tests for resuming a failed foreground upload on the next ingest."""

    async def test_retry_resumes_multipart_upload(self, audio_file, tmp_path) -> None:
        store = InMemoryDocumentStore()
        tracker = ProgressTracker(store)
        storage = MagicMock()
        storage.create_multipart_upload.return_value = "upload-1"
        storage.upload_part.side_effect = [StorageError("connection reset"), "etag-1"]
        storage.list_parts.return_value = []
        storage.head_object.return_value = len(b"mp3-bytes")
        backend = AsyncMock()
        transfers = TransferMetadataStore(str(tmp_path / "transfers.db"))
        compressor = _compressor()
        uploader = Uploader(storage, backend, tracker, transfers)
        service = IngestService(compressor, uploader, tracker, store)

        try:
            assert await service.ingest(audio_file, _destination()) is None
            failed = await tracker.get("r1")
            assert failed.failure.stage == "uploading"

            outcome = await service.ingest(audio_file, _destination())
        finally:
            transfers.close()

        assert outcome.storage_path == "recordings/r1/session.mp3"
        compressor.compress.assert_awaited_once()
        storage.create_multipart_upload.assert_called_once()
        storage.list_parts.assert_called_once_with("recordings/r1/session.mp3", "upload-1")
        storage.abort_multipart_upload.assert_not_called()
        backend.finalize_upload.assert_awaited_once()
        first_call = storage.upload_part.call_args_list[0]
        assert first_call.args[:3] == ("recordings/r1/session.mp3", "upload-1", 1)
        progress = await tracker.get("r1")
        assert progress.stage == "uploading"
        assert progress.stage_progress == 100
        assert progress.failure.stage == "uploading"

    async def test_kept_file_is_removed_after_resume(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        compressor = _compressor()
        uploader = _uploader()
        paths: list[str] = []

        async def upload(path, destination, remove_file=False):
            paths.append(path)
            if len(paths) == 1:
                uploader.resumable_path.return_value = path
                raise TransferError("connection reset")
            uploader.resumable_path.return_value = None
            return UploadOutcome(is_background=False, storage_path=destination.storage_key)

        uploader.upload.side_effect = upload
        service = IngestService(compressor, uploader, ProgressTracker(store), store)

        await service.ingest(audio_file, _destination())
        assert os.path.exists(paths[0])
        await service.ingest(audio_file, _destination())

        assert paths[1] == paths[0]
        assert not os.path.exists(paths[0])

    async def test_other_source_discards_kept_file(self, audio_file, tmp_path) -> None:
        store = InMemoryDocumentStore()
        compressor = _compressor()
        uploader = _uploader()
        paths: list[str] = []

        async def upload(path, destination, remove_file=False):
            paths.append(path)
            if len(paths) == 1:
                uploader.resumable_path.return_value = path
                raise TransferError("connection reset")
            return UploadOutcome(is_background=False, storage_path="p")

        uploader.upload.side_effect = upload
        service = IngestService(compressor, uploader, ProgressTracker(store), store)
        other = tmp_path / "other.wav"
        other.write_bytes(b"y" * 100)

        await service.ingest(audio_file, _destination())
        await service.ingest(str(other), _destination())

        assert compressor.compress.await_count == 2
        assert paths[1] != paths[0]
        assert not os.path.exists(paths[0])

    async def test_close_discards_kept_upload(self, audio_file) -> None:
        store = InMemoryDocumentStore()
        uploader = _uploader()

        async def upload(path, destination, remove_file=False):
            uploader.resumable_path.return_value = path
            raise TransferError("connection reset")

        uploader.upload.side_effect = upload
        service = IngestService(_compressor(), uploader, ProgressTracker(store), store)
        await service.ingest(audio_file, _destination())
        kept = uploader.upload.call_args.args[0]

        await service.close()

        assert not os.path.exists(kept)
        uploader.discard_resumable.assert_awaited_once_with("r1")
