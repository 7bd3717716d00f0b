"""Abstract interfaces to the remote AI collaborators.

Transcription, story generation, script generation and voice synthesis
are opaque remote operations. The pipeline only depends on these ABCs;
GeminiClient implements all of them over the Generative Language REST API.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from session_processor.settings import AIFeatureConfig


@dataclass
class TranscriptSegment:
    """One utterance returned by the transcription model."""

    time_seconds: float
    text: str
    speaker: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"time_seconds": self.time_seconds, "text": self.text}
        if self.speaker:
            data["speaker"] = self.speaker
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TranscriptSegment:
        return cls(
            time_seconds=float(data.get("time_seconds", data.get("timeSeconds", 0))),
            text=str(data.get("text", "")),
            speaker=data.get("speaker") or None,
        )


@dataclass
class SynthesizedAudio:
    """Audio returned by the voice-synthesis call."""

    data: bytes
    mime_type: str

    @property
    def is_raw_pcm(self) -> bool:
        mime = self.mime_type.lower()
        return mime.startswith("audio/l16") or "codec=pcm" in mime

    @property
    def sample_rate(self) -> int:
        for param in self.mime_type.split(";"):
            key, _, value = param.strip().partition("=")
            if key == "rate" and value.isdigit():
                return int(value)
        return 24000


class TranscriptionEngine(ABC):
    """Transcribes one bounded-duration audio chunk."""

    @abstractmethod
    async def transcribe_chunk(
        self, audio_path: str, prompt: str, config: AIFeatureConfig
    ) -> list[TranscriptSegment]:
        """Transcribe a chunk file.

        Args:
            audio_path: 16kHz mono PCM WAV chunk.
            prompt: Full prompt including chunk position and context.
            config: Model and sampling parameters.

        Returns:
            Segments with times relative to the full recording when the
            model honours the prompt, otherwise relative to the chunk.
        """


class StoryGenerator(ABC):
    """Turns a transcript into a narrative recap."""

    @abstractmethod
    async def generate_story(
        self,
        transcript_text: str,
        config: AIFeatureConfig,
        context: str | None = None,
        corrections: str | None = None,
    ) -> str:
        """Return the story text."""


class ScriptGenerator(ABC):
    """Turns a story into a two-host dialogue script."""

    @abstractmethod
    async def generate_script(self, story: str, config: AIFeatureConfig) -> str:
        """Return the raw model output containing HOST1:/HOST2: lines."""


class VoiceSynthesizer(ABC):
    """Synthesizes speech for one line of dialogue."""

    @abstractmethod
    async def synthesize(
        self, text: str, voice: str, config: AIFeatureConfig
    ) -> SynthesizedAudio:
        """Return synthesized audio for ``text`` spoken by ``voice``."""


class BatchTranscriptionService(ABC):
    """Submits and inspects long-running batch transcription jobs."""

    @abstractmethod
    async def submit_batch(
        self,
        recording_id: str,
        storage_url: str,
        mime_type: str,
        prompt: str,
        config: AIFeatureConfig,
    ) -> str:
        """Submit a job and return its name."""

    @abstractmethod
    async def get_batch(self, name: str) -> dict[str, Any]:
        """Return the raw job resource."""
