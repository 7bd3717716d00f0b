"""Fire-and-forget podcast generation for one recording version.

Drives a PodcastVersion through loading-context -> generating-script ->
script-complete -> generating-audio -> uploading-audio -> completed.
Failures are recorded on the version only; the recording's progress
record is not touched.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from session_processor.ai.interface import ScriptGenerator
from session_processor.podcast.assembler import PodcastAssembler
from session_processor.podcast.script import PodcastScript, parse_script, validate_script
from session_processor.podcast.versions import PodcastVersion, PodcastVersionStore
from session_processor.settings import (
    PODCAST_SCRIPT,
    SPEECH_SYNTHESIS,
    AIFeatureConfig,
    AISettings,
    load_ai_settings,
)
from session_processor.storage.documents import DocumentStore, recording_path
from session_processor.utils.errors import (
    PipelineBusyError,
    PipelineError,
    PreconditionError,
)
from session_processor.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

# Version progress at the start of each status.
_AUDIO_START = 35
_AUDIO_END = 85
_UPLOAD_PROGRESS = 90


class PodcastGenerator:
    """Generates podcast versions in background tasks.

    Args:
        store: Document store holding the recording (story text).
        versions: PodcastVersion persistence.
        script_generator: Model call turning a story into a script.
        assembler: Synthesizes and uploads the audio.
        settings_loader: Async callable returning AISettings.
    """

    def __init__(
        self,
        store: DocumentStore,
        versions: PodcastVersionStore,
        script_generator: ScriptGenerator,
        assembler: PodcastAssembler,
        settings_loader: Callable[[], Awaitable[AISettings]] | None = None,
    ) -> None:
        self._store = store
        self._versions = versions
        self._script_generator = script_generator
        self._assembler = assembler
        self._settings_loader = settings_loader or (lambda: load_ai_settings(store))
        self._tasks: dict[tuple[str, int], asyncio.Task] = {}

    async def start(
        self,
        recording_id: str,
        version: int,
        story: str | None = None,
        script: PodcastScript | dict[str, Any] | None = None,
    ) -> asyncio.Task:
        """Register a pending version and generate it in the background.

        Raises:
            PreconditionError: If the version number is invalid or the
                version already finished.
            PipelineBusyError: If the version is already being generated.
        """
        if not isinstance(version, int) or version < 1:
            raise PreconditionError(
                f"Invalid podcast version {version!r}", recording_id=recording_id
            )
        key = (recording_id, version)
        if key in self._tasks:
            raise PipelineBusyError(
                f"Podcast version {version} is already being generated",
                recording_id=recording_id,
            )
        existing = await self._versions.get(recording_id, version)
        if existing is not None and existing.is_terminal:
            raise PreconditionError(
                f"Podcast version {version} already {existing.status}",
                recording_id=recording_id,
            )
        await self._versions.upsert(
            recording_id,
            version,
            status="pending",
            progress=0,
            progress_message="Starting podcast generation",
        )
        if isinstance(script, dict):
            script = PodcastScript.from_dict(script)

        task = asyncio.get_running_loop().create_task(
            self.generate(recording_id, version, story, script),
            name=f"podcast-{recording_id}-v{version}",
        )
        self._tasks[key] = task
        task.add_done_callback(lambda _t: self._tasks.pop(key, None))
        return task

    async def generate(
        self,
        recording_id: str,
        version: int,
        story: str | None = None,
        script: PodcastScript | None = None,
    ) -> PodcastVersion | None:
        """Run every step for a version, recording failures on it.

        Returns:
            The final version entry.
        """
        try:
            await self._set(recording_id, version, "loading-context", 5, "Loading session")
            settings = await self._settings_loader()
            if script is None:
                story = story or await self._load_story(recording_id)
                await self._set(
                    recording_id, version, "generating-script", 10, "Generating podcast script"
                )
                raw = await _generate_script_with_retry(
                    self._script_generator, story, settings.feature(PODCAST_SCRIPT)
                )
                script = parse_script(raw)
            validate_script(script)
            await self._set(
                recording_id,
                version,
                "script-complete",
                30,
                f"Script ready ({len(script.segments)} segments)",
                script=script.to_dict(),
                duration=script.estimated_duration,
            )

            await self._set(
                recording_id, version, "generating-audio", _AUDIO_START, "Generating podcast audio"
            )

            async def on_progress(percent: int) -> None:
                if percent >= 100:
                    await self._set(
                        recording_id, version, "uploading-audio", _UPLOAD_PROGRESS, "Uploading podcast"
                    )
                    return
                scaled = _AUDIO_START + (_AUDIO_END - _AUDIO_START) * percent // 100
                await self._set(
                    recording_id, version, "generating-audio", scaled, "Generating podcast audio"
                )

            audio = await self._assembler.generate(
                recording_id,
                version,
                script,
                settings.podcast_voices,
                settings.feature(SPEECH_SYNTHESIS),
                on_progress=on_progress,
            )
            return await self._versions.upsert(
                recording_id,
                version,
                status="completed",
                progress=100,
                progress_message="Podcast ready",
                audio_url=audio.audio_url,
                file_size=audio.file_size,
                duration=audio.duration,
                error=None,
            )
        except Exception as exc:
            if isinstance(exc, PipelineError):
                logger.error(
                    "Podcast v%d failed: %s", version, exc, extra={"recording_id": recording_id}
                )
            else:
                logger.error(
                    "Unexpected podcast failure for v%d",
                    version,
                    exc_info=True,
                    extra={"recording_id": recording_id},
                )
            try:
                return await self._versions.upsert(
                    recording_id,
                    version,
                    status="failed",
                    progress_message="Podcast generation failed",
                    error=str(exc) or type(exc).__name__,
                )
            except Exception:
                logger.error(
                    "Failed to record podcast failure",
                    exc_info=True,
                    extra={"recording_id": recording_id},
                )
                return None

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _load_story(self, recording_id: str) -> str:
        document = await self._store.get(recording_path(recording_id))
        if document is None:
            raise PreconditionError("Recording not found", recording_id=recording_id)
        story = document.get("story_text")
        if not story:
            raise PreconditionError(
                "No story available for podcast generation", recording_id=recording_id
            )
        return story

    async def _set(
        self,
        recording_id: str,
        version: int,
        status: str,
        progress: int,
        message: str,
        **fields: Any,
    ) -> None:
        await self._versions.upsert(
            recording_id,
            version,
            status=status,
            progress=progress,
            progress_message=message,
            **fields,
        )


@retry_with_backoff()
async def _generate_script_with_retry(
    generator: ScriptGenerator, story: str, config: AIFeatureConfig
) -> str:
    """Generate the podcast script, retrying on upstream overload."""
    return await generator.generate_script(story, config)
