"""AI model settings read from the ``settings/ai`` document.

Each feature's config is the built-in default overlaid field by field with
whatever the document provides, so a partially filled document is valid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any

from session_processor.storage.documents import AI_SETTINGS_DOCUMENT, DocumentStore

logger = logging.getLogger(__name__)

TRANSCRIPTION = "transcription"
STORY_GENERATION = "story_generation"
PODCAST_SCRIPT = "podcast_script"
SPEECH_SYNTHESIS = "speech_synthesis"


@dataclass(frozen=True)
class AIFeatureConfig:
    """Model and sampling parameters for one AI feature."""

    model: str
    temperature: float = 0.3
    top_p: float = 0.95
    top_k: int = 40
    max_output_tokens: int = 8192

    def generation_config(self) -> dict[str, Any]:
        """Render as a generateContent ``generationConfig`` payload."""
        return {
            "temperature": self.temperature,
            "topP": self.top_p,
            "topK": self.top_k,
            "maxOutputTokens": self.max_output_tokens,
        }


DEFAULT_FEATURES: dict[str, AIFeatureConfig] = {
    TRANSCRIPTION: AIFeatureConfig(
        model="gemini-2.5-flash",
        temperature=0.3,
        top_p=0.95,
        top_k=40,
        max_output_tokens=128000,
    ),
    STORY_GENERATION: AIFeatureConfig(
        model="gemini-2.5-flash",
        temperature=0.8,
        top_p=0.95,
        top_k=40,
        max_output_tokens=32000,
    ),
    PODCAST_SCRIPT: AIFeatureConfig(
        model="gemini-2.5-flash",
        temperature=0.9,
        top_p=0.95,
        top_k=40,
        max_output_tokens=4096,
    ),
    SPEECH_SYNTHESIS: AIFeatureConfig(model="gemini-2.5-flash-preview-tts"),
}

DEFAULT_PODCAST_VOICES: dict[str, str] = {"host1": "Charon", "host2": "Kore"}

_FIELD_NAMES = {f.name for f in fields(AIFeatureConfig)}


@dataclass
class AISettings:
    """Per-feature model configuration and podcast voices."""

    default_model: str | None = None
    features: dict[str, AIFeatureConfig] = field(default_factory=dict)
    podcast_voices: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_PODCAST_VOICES)
    )

    def feature(self, name: str) -> AIFeatureConfig:
        """Return the effective config of a feature.

        Raises:
            KeyError: If the feature has no default and no stored config.
        """
        if name in self.features:
            return self.features[name]
        default = DEFAULT_FEATURES[name]
        if self.default_model and name != SPEECH_SYNTHESIS:
            return replace(default, model=self.default_model)
        return default

    @classmethod
    def from_document(cls, document: dict[str, Any] | None) -> AISettings:
        document = document or {}
        default_model = document.get("default_model")
        raw_features = document.get("features") or {}
        features: dict[str, AIFeatureConfig] = {}
        for name, default in DEFAULT_FEATURES.items():
            stored = raw_features.get(name)
            if not isinstance(stored, dict):
                continue
            overrides = {k: v for k, v in stored.items() if k in _FIELD_NAMES}
            base = (
                replace(default, model=default_model)
                if default_model and name != SPEECH_SYNTHESIS
                else default
            )
            features[name] = replace(base, **overrides)

        voices = dict(DEFAULT_PODCAST_VOICES)
        stored_voices = raw_features.get("podcast_voices") or {}
        voices.update({k: v for k, v in stored_voices.items() if v})
        return cls(
            default_model=default_model, features=features, podcast_voices=voices
        )


async def load_ai_settings(store: DocumentStore) -> AISettings:
    """Read AISettings from the document store, falling back to defaults."""
    document = await store.get(AI_SETTINGS_DOCUMENT)
    if document is None:
        logger.info("No AI settings document found, using defaults")
    return AISettings.from_document(document)
