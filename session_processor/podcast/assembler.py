"""Podcast audio assembly: one synthesis call per line, then concat.

Each dialogue segment is synthesized separately and written to its own
temporary file. A single segment is uploaded as is; several segments are
joined in order with the ffmpeg concat filter into a 128 kbps mono MP3.
The scratch directory is removed on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from session_processor.ai.interface import SynthesizedAudio, VoiceSynthesizer
from session_processor.audio.concat import concat_segments
from session_processor.audio.wav_utils import write_pcm16_wav
from session_processor.podcast.script import PodcastScript
from session_processor.progress import report
from session_processor.settings import DEFAULT_FEATURES, SPEECH_SYNTHESIS, AIFeatureConfig
from session_processor.storage.object_storage import ObjectStorage
from session_processor.utils.errors import PipelineError, SynthesisError

logger = logging.getLogger(__name__)

DEFAULT_SPEAKER = "host1"


@dataclass
class PodcastAudio:
    """Uploaded podcast track."""

    audio_url: str
    file_size: int
    duration: int
    storage_key: str


def voice_for(speaker: str, voice_map: dict[str, str]) -> str:
    """Voice of a speaker, falling back to the first host's voice.

    A map without the first host falls back to its first entry.
    """
    voice = voice_map.get(speaker) or voice_map.get(DEFAULT_SPEAKER)
    if voice:
        return voice
    if not voice_map:
        raise ValueError("No podcast voices configured")
    return next(iter(voice_map.values()))


def _extension(audio: SynthesizedAudio) -> str:
    if audio.is_raw_pcm:
        return ".wav"
    base_type = audio.mime_type.split(";")[0].strip()
    return mimetypes.guess_extension(base_type) or ".bin"


def write_segment(audio: SynthesizedAudio, path_without_ext: str) -> str:
    """Write synthesized audio to disk, wrapping raw PCM in WAV."""
    path = path_without_ext + _extension(audio)
    if audio.is_raw_pcm:
        write_pcm16_wav(path, audio.data, sample_rate=audio.sample_rate)
    else:
        with open(path, "wb") as f:
            f.write(audio.data)
    return path


class PodcastAssembler:
    """Turns a PodcastScript into an uploaded audio track.

    Args:
        synthesizer: Voice synthesis collaborator (called once per segment,
            without retry).
        storage: Object storage receiving the track.
        work_root: Parent directory for scratch files.
        concat: Joins segment files (tests).
    """

    def __init__(
        self,
        synthesizer: VoiceSynthesizer,
        storage: ObjectStorage,
        work_root: str | None = None,
        concat: Callable[[list[str], str], str] = concat_segments,
    ) -> None:
        self._synthesizer = synthesizer
        self._storage = storage
        self._work_root = work_root
        self._concat = concat

    async def generate(
        self,
        recording_id: str,
        version: int,
        script: PodcastScript,
        voice_map: dict[str, str],
        config: AIFeatureConfig | None = None,
        on_progress: Callable[[int], Any] | None = None,
    ) -> PodcastAudio:
        """Synthesize, join and upload a podcast track.

        Args:
            recording_id: Recording the podcast belongs to.
            version: Podcast version number (part of the object key).
            script: Dialogue to synthesize.
            voice_map: Speaker to voice id, must contain ``host1``.
            config: Speech synthesis model config.
            on_progress: Sync or async callback receiving 0-100 over the
                synthesized segments.

        Raises:
            SynthesisError: If any segment fails; nothing is uploaded.
            TranscodeError: If concatenation fails.
        """
        if not script.segments:
            raise PipelineError("Podcast script has no segments", recording_id=recording_id)
        config = config or DEFAULT_FEATURES[SPEECH_SYNTHESIS]
        total = len(script.segments)
        work_dir = tempfile.mkdtemp(prefix=f"podcast-{recording_id}-", dir=self._work_root)
        try:
            paths: list[str] = []
            for index, segment in enumerate(script.segments):
                voice = voice_for(segment.speaker, voice_map)
                try:
                    audio = await self._synthesizer.synthesize(segment.text, voice, config)
                except Exception as exc:
                    raise SynthesisError(
                        f"Synthesis of segment {index + 1} of {total} failed: {exc}",
                        recording_id=recording_id,
                        segment_index=index,
                    ) from exc
                if not audio.data:
                    raise SynthesisError(
                        f"Synthesis of segment {index + 1} of {total} returned no audio",
                        recording_id=recording_id,
                        segment_index=index,
                    )
                paths.append(
                    write_segment(audio, os.path.join(work_dir, f"segment-{index:04d}"))
                )
                await report(on_progress, round((index + 1) / total * 100))

            if len(paths) == 1:
                output = paths[0]
            else:
                output = await asyncio.to_thread(
                    self._concat, paths, os.path.join(work_dir, "podcast.mp3")
                )

            ext = os.path.splitext(output)[1]
            key = f"podcasts/{recording_id}/v{version}{ext}"
            content_type = mimetypes.guess_type(output)[0] or "application/octet-stream"
            file_size = os.path.getsize(output)
            await asyncio.to_thread(self._storage.upload_file, output, key, content_type)
            url = await asyncio.to_thread(self._storage.presigned_get_url, key)
            logger.info(
                "Uploaded podcast v%d (%d segments, %d bytes) to %s",
                version,
                total,
                file_size,
                key,
                extra={"recording_id": recording_id},
            )
            return PodcastAudio(
                audio_url=url,
                file_size=file_size,
                duration=script.estimated_duration,
                storage_key=key,
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
