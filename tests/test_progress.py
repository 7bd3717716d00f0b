"""Tests for session_processor.progress."""

import pytest

from session_processor.progress import (
    STAGE_BANDS,
    ProgressTracker,
    ProgressWatcher,
    ThrottledProgress,
    overall_progress,
    report,
)
from session_processor.storage.documents import InMemoryDocumentStore
from session_processor.utils.errors import InvalidTransitionError


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def tracker(store: InMemoryDocumentStore) -> ProgressTracker:
    return ProgressTracker(store)


class TestOverallProgress:
    """Tests for overall_progress() band mapping."""

    def test_stage_floors(self) -> None:
        assert overall_progress("compressing", 0) == 0
        assert overall_progress("uploading", 0) == 60
        assert overall_progress("transcribing", 0) == 80
        assert overall_progress("completed", 0) == 100

    def test_stage_ceilings(self) -> None:
        assert overall_progress("compressing", 100) == 60
        assert overall_progress("generating-story", 100) == 100

    def test_midpoint(self) -> None:
        assert overall_progress("compressing", 50) == 30
        assert overall_progress("transcribing", 50) == 88

    def test_out_of_range_is_clamped(self) -> None:
        assert overall_progress("uploading", 150) == 70
        assert overall_progress("uploading", -5) == 60

    def test_bands_are_contiguous(self) -> None:
        order = [
            "compressing",
            "uploading",
            "submitted",
            "downloading",
            "chunking",
            "transcribing",
            "generating-story",
        ]
        for before, after in zip(order, order[1:]):
            assert STAGE_BANDS[before][1] == STAGE_BANDS[after][0]


class TestProgressTracker:
    """Tests for ProgressTracker transitions."""

    async def test_get_missing_returns_none(self, tracker: ProgressTracker) -> None:
        assert await tracker.get("r1") is None

    async def test_update_writes_record(
        self, tracker: ProgressTracker, store: InMemoryDocumentStore
    ) -> None:
        await tracker.update("r1", "compressing", 50, "Compressing audio")
        doc = await store.get("recordings/r1")
        assert doc["progress"]["stage"] == "compressing"
        assert doc["progress"]["progress"] == 30
        assert doc["progress"]["stage_progress"] == 50
        assert doc["progress"]["current_step"] == "Compressing audio"

    async def test_progress_never_decreases_within_stage(
        self, tracker: ProgressTracker
    ) -> None:
        await tracker.update("r1", "transcribing", 60)
        record = await tracker.update("r1", "transcribing", 20)
        assert record.stage_progress == 60
        assert record.progress == overall_progress("transcribing", 60)

    async def test_forward_transition(self, tracker: ProgressTracker) -> None:
        await tracker.update("r1", "uploading", 100)
        record = await tracker.update("r1", "submitted", 0)
        assert record.stage == "submitted"
        assert record.progress == 70

    async def test_backward_transition_raises(self, tracker: ProgressTracker) -> None:
        await tracker.update("r1", "transcribing", 10)
        with pytest.raises(InvalidTransitionError, match="back to 'chunking'"):
            await tracker.update("r1", "chunking", 0)

    async def test_unknown_stage_raises(self, tracker: ProgressTracker) -> None:
        with pytest.raises(InvalidTransitionError, match="Unknown stage"):
            await tracker.update("r1", "exploding", 0)

    async def test_mark_failed_records_stage_and_error(
        self, tracker: ProgressTracker
    ) -> None:
        await tracker.update("r1", "transcribing", 40)
        record = await tracker.mark_failed(
            "r1", "transcribing", RuntimeError("model offline"), {"status": 500}
        )
        assert record.stage == "failed"
        assert record.failure.stage == "transcribing"
        assert record.failure.error == "model offline"
        assert record.failure.details == {"status": 500}

        stored = await tracker.get("r1")
        assert stored.failure.stage == "transcribing"
        assert stored.is_terminal

    async def test_retry_from_failed_may_move_backwards(
        self, tracker: ProgressTracker
    ) -> None:
        await tracker.mark_failed("r1", "transcribing", "boom")
        record = await tracker.update("r1", "transcribing", 0)
        assert record.stage == "transcribing"

    async def test_begin_restarts_stage(self, tracker: ProgressTracker) -> None:
        await tracker.mark_completed("r1")
        record = await tracker.begin("r1", "submitted", "Reprocessing")
        assert record.stage == "submitted"
        assert record.progress == 70
        assert record.failure is None
        assert (await tracker.get("r1")).current_step == "Reprocessing"

    async def test_begin_keeps_earlier_failure(self, tracker: ProgressTracker) -> None:
        await tracker.mark_failed("r1", "transcribing", "boom", {"status": 500})

        record = await tracker.begin("r1", "submitted", "Reprocessing")

        assert record.stage == "submitted"
        assert record.failure.stage == "transcribing"
        assert record.failure.error == "boom"
        stored = await tracker.get("r1")
        assert stored.failure.details == {"status": 500}
        assert not stored.is_terminal

    async def test_mark_completed(self, tracker: ProgressTracker) -> None:
        await tracker.update("r1", "generating-story", 50)
        record = await tracker.mark_completed("r1")
        assert record.stage == "completed"
        assert record.progress == 100


class TestThrottledProgress:
    """Tests for ThrottledProgress."""

    async def test_intermediate_reports_are_throttled(
        self, tracker: ProgressTracker
    ) -> None:
        now = [0.0]
        throttled = ThrottledProgress(
            tracker, "r1", "compressing", "Compressing", min_interval=2.0,
            clock=lambda: now[0],
        )
        await throttled(10)
        now[0] = 1.0
        await throttled(20)
        assert (await tracker.get("r1")).stage_progress == 10

        now[0] = 3.0
        await throttled(30)
        assert (await tracker.get("r1")).stage_progress == 30

    async def test_final_report_is_always_written(
        self, tracker: ProgressTracker
    ) -> None:
        throttled = ThrottledProgress(
            tracker, "r1", "compressing", "Compressing", clock=lambda: 0.0
        )
        await throttled(10)
        await throttled(100)
        assert (await tracker.get("r1")).stage_progress == 100


class TestReport:
    """Tests for report()."""

    async def test_sync_and_async_callbacks(self) -> None:
        seen = []

        async def async_callback(value: int) -> None:
            seen.append(("async", value))

        await report(lambda v: seen.append(("sync", v)), 5)
        await report(async_callback, 6)
        await report(None, 7)
        assert seen == [("sync", 5), ("async", 6)]


class TestProgressWatcher:
    """Tests for ProgressWatcher."""

    async def test_absent_record_reads_as_uploading(
        self, store: InMemoryDocumentStore
    ) -> None:
        seen = []
        ProgressWatcher(store).watch("r1", seen.append)
        assert seen[0].stage == "uploading"
        assert seen[0].progress == 0

    async def test_delivers_updates_until_cancelled(
        self, store: InMemoryDocumentStore, tracker: ProgressTracker
    ) -> None:
        seen = []
        watcher = ProgressWatcher(store).watch("r1", seen.append)
        await tracker.update("r1", "compressing", 50)
        assert seen[-1].stage == "compressing"

        watcher.cancel()
        await tracker.update("r1", "uploading", 0)
        assert seen[-1].stage == "compressing"
