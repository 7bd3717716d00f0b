"""Server-side processing of an uploaded recording.

Orchestrates: submitted -> downloading -> chunking -> transcribing ->
generating-story -> completed. In batch mode the transcribing stage
submits an upstream batch job and the run ends; BatchPoller hands the
finished transcript back through complete_batch().
regenerate_story() reruns only the last stage on the stored transcript.

Chunk state is persisted on the recording document under ``chunks.<i>``
after every chunk, so a later run (retry or redelivery) skips chunks that
already hold segments. Every failure is captured on the progress record
with the stage it happened in; nothing propagates out of a run.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import shutil
import tempfile
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from session_processor.ai.gemini import parse_transcription
from session_processor.ai.interface import (
    BatchTranscriptionService,
    StoryGenerator,
    TranscriptionEngine,
    TranscriptSegment,
)
from session_processor.ai.postprocess import (
    TimestampEntry,
    merge_segments,
    render_transcript,
    to_absolute,
)
from session_processor.ai.prompts import build_chunk_prompt, build_transcription_prompt
from session_processor.audio.chunking import (
    AudioChunk,
    cleanup_chunk,
    cleanup_chunks,
    plan_chunks,
    split_into_chunks,
)
from session_processor.audio.transcode import get_audio_duration
from session_processor.observability.metrics import (
    RecordingMetrics,
    StageTimer,
    log_recording_metrics,
)
from session_processor.progress import ProgressTracker, UnifiedProgress
from session_processor.settings import (
    STORY_GENERATION,
    TRANSCRIPTION,
    AIFeatureConfig,
    AISettings,
    load_ai_settings,
)
from session_processor.storage.documents import (
    DELETE_FIELD,
    DocumentStore,
    recording_path,
)
from session_processor.storage.object_storage import ObjectStorage
from session_processor.transcription.batch import (
    BATCH_FIELD,
    TranscriptionBatchMetadata,
)
from session_processor.utils.errors import (
    PipelineError,
    PreconditionError,
    UpstreamError,
)
from session_processor.utils.retry import retry_with_backoff, should_retry

logger = logging.getLogger(__name__)

MAX_CHUNK_ATTEMPTS = 3

FAST_STAGES = ("submitted", "downloading", "chunking", "transcribing", "generating-story")
BATCH_STAGES = ("submitted", "transcribing", "generating-story")
RETRYABLE_STAGES = frozenset(FAST_STAGES)

_STAGE_STEPS = {
    "submitted": "Transcription job accepted",
    "downloading": "Downloading audio",
    "chunking": "Splitting audio into chunks",
    "transcribing": "Transcribing audio",
    "generating-story": "Generating story",
}


def _now() -> str:
    return datetime.now(UTC).isoformat()


def resume_stage(progress: UnifiedProgress | None) -> str:
    """Return the stage a manual retry resumes from.

    Raises:
        PreconditionError: If the record is not failed, or failed in a
            stage that runs on the uploading client.
    """
    if progress is None or progress.stage != "failed" or progress.failure is None:
        raise PreconditionError("Recording has no failed run to retry")
    stage = progress.failure.stage
    if stage not in RETRYABLE_STAGES:
        raise PreconditionError(
            f"A failure during '{stage}' must be retried by uploading again"
        )
    return stage


@dataclass
class _Run:
    """Mutable state of one pipeline run."""

    recording_id: str
    work_dir: str
    metrics: RecordingMetrics
    stage: str
    document: dict[str, Any] = field(default_factory=dict)
    settings: AISettings | None = None
    local_path: str | None = None
    waiting: bool = False
    regenerating: bool = False
    corrections: str | None = None


class RecordingPipeline:
    """Runs the server-side stages for one recording at a time.

    Args:
        store: Document store holding recordings and settings.
        tracker: Progress writer.
        storage: Object storage holding the uploaded audio.
        ai: Client providing transcription, story generation and batch jobs.
        settings_loader: Async callable returning AISettings; defaults to
            reading them from ``store``.
        work_root: Parent directory for per-run scratch directories.
        duration_probe: Returns a file's duration in seconds (tests).
        splitter: Extracts chunk files (tests).
    """

    def __init__(
        self,
        store: DocumentStore,
        tracker: ProgressTracker,
        storage: ObjectStorage,
        ai: Any,
        settings_loader: Callable[[], Awaitable[AISettings]] | None = None,
        work_root: str | None = None,
        duration_probe: Callable[[str], float] = get_audio_duration,
        splitter: Callable[..., list[AudioChunk]] = split_into_chunks,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._storage = storage
        self._ai = ai
        self._settings_loader = settings_loader or (lambda: load_ai_settings(store))
        self._work_root = work_root
        self._duration_probe = duration_probe
        self._splitter = splitter
        self._handlers: dict[str, Callable[[_Run], Awaitable[None]]] = {
            "submitted": self._submitted,
            "downloading": self._downloading,
            "chunking": self._chunking,
            "transcribing": self._transcribing,
            "generating-story": self._generating_story,
        }

    async def run(
        self,
        recording_id: str,
        start_stage: str = "submitted",
        fresh: bool = False,
    ) -> bool:
        """Process a recording from ``start_stage`` to completion.

        Args:
            recording_id: Recording to process.
            start_stage: First stage to run.
            fresh: Discard chunk and batch state and restart the progress
                record (reprocessing a finished recording).

        Returns:
            True unless the run failed. A run that submitted a batch job
            also returns True while the job is pending.
        """

        async def prepare(run: _Run) -> None:
            if not fresh:
                return
            await self._store.patch(
                recording_path(recording_id),
                {"chunks": DELETE_FIELD, BATCH_FIELD: DELETE_FIELD},
            )
            await self._tracker.begin(
                recording_id, start_stage, _STAGE_STEPS.get(start_stage, "")
            )
            run.document = await self._load(recording_id)

        return await self._execute(recording_id, start_stage, prepare)

    async def retry(self, recording_id: str) -> bool:
        """Resume a failed recording from the stage that failed.

        Failed chunks get their attempt counters reset; completed chunks
        are kept.

        Raises:
            PreconditionError: If the recording cannot be retried.
        """
        stage = resume_stage(await self._tracker.get(recording_id))

        async def prepare(run: _Run) -> None:
            chunks = run.document.get("chunks") or {}
            delta: dict[str, Any] = {}
            for key, entry in chunks.items():
                if entry.get("status") == "failed":
                    delta[f"chunks.{key}.status"] = "pending"
                    delta[f"chunks.{key}.retry_count"] = 0
            if stage == "transcribing" and run.document.get(BATCH_FIELD):
                delta[BATCH_FIELD] = DELETE_FIELD
            if delta:
                await self._store.patch(recording_path(recording_id), delta)
                run.document = await self._load(recording_id)
            logger.info(
                "Retrying recording from %s (%d chunks reset)",
                stage,
                sum(1 for k in delta if k.endswith(".status")),
                extra={"recording_id": recording_id, "stage": stage},
            )

        return await self._execute(recording_id, stage, prepare)

    async def regenerate_story(
        self, recording_id: str, corrections: str | None = None
    ) -> bool:
        """Generate the story again from the stored transcript.

        Chunks, batch state and the transcript are left untouched.

        Args:
            recording_id: Recording whose story is replaced.
            corrections: Corrections for this generation only; defaults to
                the ones stored on the recording.
        """

        async def prepare(run: _Run) -> None:
            run.regenerating = True
            run.corrections = corrections
            await self._tracker.begin(
                recording_id, "generating-story", "Regenerating story"
            )

        return await self._execute(recording_id, "generating-story", prepare)

    async def complete_batch(self, recording_id: str, response_text: str) -> bool:
        """Store a finished batch transcript and generate the story."""

        async def prepare(run: _Run) -> None:
            segments = parse_transcription(response_text)
            await self._store_transcript(run, merge_segments([segments]))

        return await self._execute(
            recording_id, "generating-story", prepare, failure_stage="transcribing"
        )

    async def _execute(
        self,
        recording_id: str,
        start_stage: str,
        prepare: Callable[[_Run], Awaitable[None]],
        failure_stage: str | None = None,
    ) -> bool:
        wall_start = time.monotonic()
        if self._work_root:
            os.makedirs(self._work_root, exist_ok=True)
        run = _Run(
            recording_id=recording_id,
            work_dir=tempfile.mkdtemp(prefix=f"recording-{recording_id}-", dir=self._work_root),
            metrics=RecordingMetrics(
                recording_id=recording_id, status="running", transcription_mode="fast"
            ),
            stage=failure_stage or start_stage,
        )
        try:
            run.document = await self._load(recording_id)
            run.metrics.transcription_mode = run.document.get(
                "transcription_mode", "fast"
            )
            await prepare(run)
            await self._run_stages(run, start_stage)
            if run.waiting:
                run.metrics.status = "waiting"
            else:
                await self._tracker.mark_completed(recording_id)
                run.metrics.status = "completed"
            return True
        except Exception as exc:
            await self._fail(run, exc)
            return False
        finally:
            shutil.rmtree(run.work_dir, ignore_errors=True)
            run.metrics.processing_wall_time_seconds = time.monotonic() - wall_start
            log_recording_metrics(run.metrics)

    async def _run_stages(self, run: _Run, start_stage: str) -> None:
        mode = run.document.get("transcription_mode", "fast")
        stages = BATCH_STAGES if mode == "batch" else FAST_STAGES
        if start_stage not in stages:
            raise PreconditionError(
                f"Stage '{start_stage}' does not apply to {mode} transcription",
                recording_id=run.recording_id,
            )
        for stage in stages[stages.index(start_stage) :]:
            run.stage = stage
            logger.info(
                "Stage %s started",
                stage,
                extra={"recording_id": run.recording_id, "stage": stage},
            )
            with StageTimer(stage, run.metrics.stage_durations):
                await self._tracker.update(
                    run.recording_id, stage, 0, _STAGE_STEPS[stage]
                )
                await self._handlers[stage](run)
            if run.waiting:
                return

    async def _fail(self, run: _Run, exc: BaseException) -> None:
        retry_count = getattr(exc, "_retry_count", 0)
        run.metrics.status = "failed"
        run.metrics.retry_count += retry_count
        run.metrics.error_stage = run.stage
        run.metrics.error_message = str(exc)

        if isinstance(exc, PipelineError):
            logger.error(
                "Pipeline failed at stage '%s': %s",
                run.stage,
                exc,
                extra={"recording_id": run.recording_id, "stage": run.stage},
            )
        else:
            logger.error(
                "Unexpected pipeline failure at stage '%s'",
                run.stage,
                exc_info=True,
                extra={"recording_id": run.recording_id, "stage": run.stage},
            )

        details: dict[str, Any] = {
            key: getattr(exc, key)
            for key in ("status", "code")
            if getattr(exc, key, None) is not None
        }
        if retry_count:
            details["retry_count"] = retry_count
        try:
            await self._tracker.mark_failed(
                run.recording_id, run.stage, exc, details or None
            )
        except Exception:
            logger.error(
                "Failed to record pipeline failure",
                exc_info=True,
                extra={"recording_id": run.recording_id},
            )

    async def _load(self, recording_id: str) -> dict[str, Any]:
        document = await self._store.get(recording_path(recording_id))
        if document is None:
            raise PreconditionError(
                "Recording not found", recording_id=recording_id
            )
        return document

    async def _settings(self, run: _Run) -> AISettings:
        if run.settings is None:
            run.settings = await self._settings_loader()
        return run.settings

    # Stages

    async def _submitted(self, run: _Run) -> None:
        if not run.document.get("storage_path"):
            raise PreconditionError(
                "Recording has no uploaded audio", recording_id=run.recording_id
            )
        await self._tracker.update(
            run.recording_id, "submitted", 100, _STAGE_STEPS["submitted"]
        )

    async def _downloading(self, run: _Run) -> None:
        await self._ensure_audio(run)
        await self._tracker.update(
            run.recording_id, "downloading", 100, "Audio downloaded"
        )

    async def _chunking(self, run: _Run) -> None:
        path = await self._ensure_audio(run)
        duration = await asyncio.to_thread(self._duration_probe, path)
        run.metrics.audio_duration_seconds = duration
        planned = plan_chunks(duration)
        existing = run.document.get("chunks") or {}

        delta: dict[str, Any] = {"total_duration_seconds": duration}
        for chunk in planned:
            entry = existing.get(str(chunk.index)) or {}
            if (
                entry.get("status") == "completed"
                and entry.get("start_time_seconds") == chunk.start_time_seconds
            ):
                continue
            record = chunk.to_dict()
            record.pop("audio_path")
            record.update(
                status="pending",
                retry_count=int(entry.get("retry_count", 0)),
                segments=[],
            )
            delta[f"chunks.{chunk.index}"] = record
        await self._store.patch(recording_path(run.recording_id), delta)
        run.document = await self._load(run.recording_id)
        run.metrics.chunk_count = len(planned)
        await self._tracker.update(
            run.recording_id,
            "chunking",
            100,
            f"Split audio into {len(planned)} chunk(s)",
        )

    async def _transcribing(self, run: _Run) -> None:
        if run.document.get("transcription_mode") == "batch":
            await self._submit_batch(run)
            return

        chunks = {
            int(key): entry for key, entry in (run.document.get("chunks") or {}).items()
        }
        if not chunks:
            raise PreconditionError(
                "Recording has no chunk plan", recording_id=run.recording_id
            )
        total = len(chunks)
        run.metrics.chunk_count = total
        pending = sorted(i for i, e in chunks.items() if e.get("status") != "completed")
        done = total - len(pending)
        run.metrics.chunks_skipped = done
        if done:
            logger.info(
                "Skipping %d already transcribed chunk(s)",
                done,
                extra={"recording_id": run.recording_id, "stage": "transcribing"},
            )

        for index in pending:
            attempts = int(chunks[index].get("retry_count", 0))
            if attempts >= MAX_CHUNK_ATTEMPTS:
                raise PipelineError(
                    f"Chunk {index + 1} of {total} failed {attempts} times",
                    recording_id=run.recording_id,
                )

        files: list[AudioChunk] = []
        if pending:
            path = await self._ensure_audio(run)
            duration = run.document.get("total_duration_seconds")
            if not duration:
                duration = await asyncio.to_thread(self._duration_probe, path)
            files = await asyncio.to_thread(
                self._splitter,
                path,
                duration,
                os.path.join(run.work_dir, "chunks"),
                pending,
            )

        settings = await self._settings(run)
        config = settings.feature(TRANSCRIPTION)
        try:
            for chunk in files:
                await self._transcribe_chunk(
                    run, chunk, chunks[chunk.index], total, config
                )
                cleanup_chunk(chunk)
                done += 1
                run.metrics.chunks_transcribed += 1
                await self._tracker.update(
                    run.recording_id,
                    "transcribing",
                    done / total * 100,
                    f"Transcribed chunk {done} of {total}",
                )
        finally:
            cleanup_chunks(files)

        run.document = await self._load(run.recording_id)
        stored = run.document.get("chunks") or {}
        per_chunk = [
            [TranscriptSegment.from_dict(s) for s in stored[key].get("segments", [])]
            for key in sorted(stored, key=int)
        ]
        await self._store_transcript(run, merge_segments(per_chunk))

    async def _transcribe_chunk(
        self,
        run: _Run,
        chunk: AudioChunk,
        entry: dict[str, Any],
        total: int,
        config: AIFeatureConfig,
    ) -> None:
        key = f"chunks.{chunk.index}"
        attempts = int(entry.get("retry_count", 0))
        prompt = build_chunk_prompt(
            chunk.index,
            total,
            chunk.start_time_seconds,
            chunk.end_time_seconds,
            run.document.get("campaign_context"),
            run.document.get("corrections"),
        )
        while True:
            try:
                segments = await _transcribe_with_retry(
                    self._ai, chunk.audio_path, prompt, config
                )
                break
            except Exception as exc:
                attempts += 1
                run.metrics.retry_count += getattr(exc, "_retry_count", 0)
                await self._store.patch(
                    recording_path(run.recording_id),
                    {
                        f"{key}.status": "failed",
                        f"{key}.retry_count": attempts,
                        f"{key}.error": str(exc),
                    },
                )
                # Bad model output is re-attempted; overload was already retried.
                if (
                    isinstance(exc, UpstreamError)
                    and not should_retry(exc)
                    and attempts < MAX_CHUNK_ATTEMPTS
                ):
                    logger.warning(
                        "Chunk %d attempt %d failed, trying again: %s",
                        chunk.index,
                        attempts,
                        exc,
                        extra={"recording_id": run.recording_id, "stage": "transcribing"},
                    )
                    continue
                raise

        absolute = to_absolute(segments, chunk.start_time_seconds)
        await self._store.patch(
            recording_path(run.recording_id),
            {
                f"{key}.status": "completed",
                f"{key}.segments": [s.to_dict() for s in absolute],
                f"{key}.completed_at": _now(),
                f"{key}.error": DELETE_FIELD,
            },
        )
        logger.info(
            "Transcribed chunk %d of %d (%d segments)",
            chunk.index + 1,
            total,
            len(absolute),
            extra={"recording_id": run.recording_id, "stage": "transcribing"},
        )

    async def _submit_batch(self, run: _Run) -> None:
        document = run.document
        key = document.get("storage_path")
        if not key:
            raise PreconditionError(
                "Recording has no uploaded audio", recording_id=run.recording_id
            )
        mime_type = (
            document.get("content_type")
            or mimetypes.guess_type(document.get("audio_file_name") or key)[0]
            or "audio/mpeg"
        )
        settings = await self._settings(run)
        name = await _submit_batch_with_retry(
            self._ai,
            run.recording_id,
            self._storage.storage_url(key),
            mime_type,
            build_transcription_prompt(
                document.get("campaign_context"), document.get("corrections")
            ),
            settings.feature(TRANSCRIPTION),
        )
        batch = TranscriptionBatchMetadata(batch_job_name=name, submitted_at=_now())
        await self._store.patch(
            recording_path(run.recording_id), {BATCH_FIELD: batch.to_dict()}
        )
        await self._tracker.update(
            run.recording_id, "transcribing", 10, "Batch transcription submitted"
        )
        run.waiting = True

    async def _store_transcript(
        self, run: _Run, entries: list[TimestampEntry]
    ) -> None:
        text = render_transcript(entries)
        if not text:
            raise PipelineError(
                "Transcription produced no text", recording_id=run.recording_id
            )
        await self._store.patch(
            recording_path(run.recording_id),
            {
                "transcription_text": text,
                "timestamps": [asdict(e) for e in entries],
                "transcription_completed_at": _now(),
                "chunks": DELETE_FIELD,
            },
        )
        run.document = await self._load(run.recording_id)
        run.metrics.transcript_characters = len(text)
        await self._tracker.update(
            run.recording_id, "transcribing", 100, "Transcription complete"
        )

    async def _generating_story(self, run: _Run) -> None:
        transcript = run.document.get("transcription_text")
        if not transcript:
            raise PreconditionError(
                "No transcript available for story generation",
                recording_id=run.recording_id,
            )
        settings = await self._settings(run)
        story = await _generate_story_with_retry(
            self._ai,
            transcript,
            settings.feature(STORY_GENERATION),
            run.document.get("session_context"),
            run.corrections or run.document.get("corrections"),
        )
        if not story or not story.strip():
            raise UpstreamError(
                "Story generation returned no text", recording_id=run.recording_id
            )
        delta: dict[str, Any] = {"story_text": story, "story_generated_at": _now()}
        if run.regenerating:
            delta["story_regenerated_at"] = delta["story_generated_at"]
            delta["story_regeneration_count"] = (
                int(run.document.get("story_regeneration_count", 0)) + 1
            )
        await self._store.patch(recording_path(run.recording_id), delta)
        run.metrics.story_characters = len(story)
        await self._tracker.update(
            run.recording_id, "generating-story", 100, "Story generated"
        )

    async def _ensure_audio(self, run: _Run) -> str:
        if run.local_path and os.path.exists(run.local_path):
            return run.local_path
        key = run.document.get("storage_path")
        if not key:
            raise PreconditionError(
                "Recording has no uploaded audio", recording_id=run.recording_id
            )
        name = os.path.basename(key) or "recording"
        path = os.path.join(run.work_dir, name)
        await asyncio.to_thread(self._storage.download_file, key, path)
        run.local_path = path
        run.metrics.audio_size_bytes = os.path.getsize(path)
        logger.info(
            "Downloaded %s (%d bytes)",
            key,
            run.metrics.audio_size_bytes,
            extra={"recording_id": run.recording_id},
        )
        return path


@retry_with_backoff()
async def _transcribe_with_retry(
    engine: TranscriptionEngine, audio_path: str, prompt: str, config: AIFeatureConfig
) -> list[TranscriptSegment]:
    """Transcribe one chunk, retrying on upstream overload."""
    return await engine.transcribe_chunk(audio_path, prompt, config)


@retry_with_backoff()
async def _generate_story_with_retry(
    generator: StoryGenerator,
    transcript_text: str,
    config: AIFeatureConfig,
    context: str | None,
    corrections: str | None,
) -> str:
    """Generate the story, retrying on upstream overload."""
    return await generator.generate_story(transcript_text, config, context, corrections)


@retry_with_backoff()
async def _submit_batch_with_retry(
    service: BatchTranscriptionService,
    recording_id: str,
    storage_url: str,
    mime_type: str,
    prompt: str,
    config: AIFeatureConfig,
) -> str:
    """Submit a batch transcription job, retrying on upstream overload."""
    return await service.submit_batch(
        recording_id, storage_url, mime_type, prompt, config
    )
