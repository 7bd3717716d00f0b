"""Generative Language (Gemini) REST client.

Implements transcription, story and script generation, voice synthesis and
batch transcription on top of ``generateContent`` and
``batchGenerateContent``. Upstream error bodies
(``{"error": {"code", "message", "status"}}``) are raised as UpstreamError
carrying the HTTP status and textual status, which the retry policy uses
to recognise overload.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from typing import Any

import httpx

from session_processor.ai.interface import (
    BatchTranscriptionService,
    ScriptGenerator,
    StoryGenerator,
    SynthesizedAudio,
    TranscriptionEngine,
    TranscriptSegment,
    VoiceSynthesizer,
)
from session_processor.ai.prompts import build_script_prompt, build_story_prompt
from session_processor.settings import AIFeatureConfig
from session_processor.utils.errors import PreconditionError, UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
REQUEST_TIMEOUT_SECONDS = 600.0

TRANSCRIPTION_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "error": {"type": "STRING"},
        "message": {"type": "STRING"},
        "segments": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "timeSeconds": {"type": "NUMBER"},
                    "text": {"type": "STRING"},
                    "speaker": {"type": "STRING"},
                },
                "required": ["timeSeconds", "text"],
            },
        },
    },
}


def _upstream_error(operation: str, response: httpx.Response) -> UpstreamError:
    code: str | None = None
    message = response.text[:500]
    try:
        error = response.json().get("error", {})
    except (ValueError, AttributeError):
        error = {}
    if isinstance(error, dict):
        code = error.get("status")
        message = error.get("message") or message
    return UpstreamError(
        f"{operation} failed with HTTP {response.status_code}: {message}",
        status=response.status_code,
        code=code,
    )


def response_text(body: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""
    candidates = body.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if "text" in part)


def parse_transcription(text: str) -> list[TranscriptSegment]:
    """Parse the JSON transcription payload returned by the model.

    Raises:
        UpstreamError: If the payload is empty, malformed, reports an
            error, or holds no segments.
    """
    if not text:
        raise UpstreamError("No response from transcription model")
    try:
        result = json.loads(text)
    except json.JSONDecodeError as exc:
        raise UpstreamError(f"Transcription response is not JSON: {exc}") from exc
    if result.get("error"):
        raise UpstreamError(result.get("message") or "Audio processing failed")
    segments = result.get("segments")
    if not isinstance(segments, list) or not segments:
        raise UpstreamError("No valid transcription segments returned")
    return [TranscriptSegment.from_dict(seg) for seg in segments]


class GeminiClient(
    TranscriptionEngine,
    StoryGenerator,
    ScriptGenerator,
    VoiceSynthesizer,
    BatchTranscriptionService,
):
    """REST client for the Gemini API.

    Reads configuration from environment variables:
        GOOGLE_AI_API_KEY
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.api_key = api_key or os.environ.get("GOOGLE_AI_API_KEY", "")
        if not self.api_key:
            raise PreconditionError("GOOGLE_AI_API_KEY is required")
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    async def close(self) -> None:
        """Close the shared HTTP client and release connection pool."""
        await self._client.aclose()

    async def _call(
        self, method: str, path: str, operation: str, payload: dict | None = None
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{path}"
        try:
            response = await self._client.request(
                method, url, headers=self._headers(), json=payload
            )
        except httpx.RequestError as exc:
            raise UpstreamError(f"{operation} request failed: {exc}") from exc
        if response.status_code >= 400:
            raise _upstream_error(operation, response)
        return response.json()

    async def generate_content(
        self,
        model: str,
        parts: list[dict[str, Any]],
        generation_config: dict[str, Any],
        operation: str = "generateContent",
    ) -> dict[str, Any]:
        """Call ``models/{model}:generateContent`` with one user turn."""
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        return await self._call(
            "POST", f"models/{model}:generateContent", operation, payload
        )

    async def transcribe_chunk(
        self, audio_path: str, prompt: str, config: AIFeatureConfig
    ) -> list[TranscriptSegment]:
        with open(audio_path, "rb") as audio_file:
            audio = base64.b64encode(audio_file.read()).decode("ascii")
        generation_config = {
            **config.generation_config(),
            "responseMimeType": "application/json",
            "responseSchema": TRANSCRIPTION_SCHEMA,
        }
        body = await self.generate_content(
            config.model,
            [
                {"inlineData": {"mimeType": "audio/wav", "data": audio}},
                {"text": prompt},
            ],
            generation_config,
            operation="Transcription",
        )
        return parse_transcription(response_text(body))

    async def generate_story(
        self,
        transcript_text: str,
        config: AIFeatureConfig,
        context: str | None = None,
        corrections: str | None = None,
    ) -> str:
        body = await self.generate_content(
            config.model,
            [{"text": build_story_prompt(transcript_text, context, corrections)}],
            config.generation_config(),
            operation="Story generation",
        )
        story = response_text(body).strip()
        if not story:
            raise UpstreamError("Story generation returned no text")
        return story

    async def generate_script(self, story: str, config: AIFeatureConfig) -> str:
        body = await self.generate_content(
            config.model,
            [{"text": build_script_prompt(story)}],
            config.generation_config(),
            operation="Script generation",
        )
        return response_text(body)

    async def synthesize(
        self, text: str, voice: str, config: AIFeatureConfig
    ) -> SynthesizedAudio:
        generation_config = {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}}
            },
        }
        body = await self.generate_content(
            config.model,
            [{"text": text}],
            generation_config,
            operation="Speech synthesis",
        )
        for candidate in body.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData")
                if inline and inline.get("data"):
                    return SynthesizedAudio(
                        data=base64.b64decode(inline["data"]),
                        mime_type=inline.get("mimeType", "audio/L16;rate=24000"),
                    )
        raise UpstreamError("Speech synthesis returned no audio")

    async def submit_batch(
        self,
        recording_id: str,
        storage_url: str,
        mime_type: str,
        prompt: str,
        config: AIFeatureConfig,
    ) -> str:
        request = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"fileData": {"mimeType": mime_type, "fileUri": storage_url}},
                        {"text": prompt},
                    ],
                }
            ],
            "generationConfig": {
                **config.generation_config(),
                "responseMimeType": "application/json",
                "responseSchema": TRANSCRIPTION_SCHEMA,
            },
        }
        payload = {
            "batch": {
                "display_name": f"transcription-{recording_id}",
                "input_config": {
                    "requests": {
                        "requests": [
                            {"request": request, "metadata": {"key": recording_id}}
                        ]
                    }
                },
            }
        }
        body = await self._call(
            "POST",
            f"models/{config.model}:batchGenerateContent",
            "Batch submission",
            payload,
        )
        name = body.get("name")
        if not name:
            raise UpstreamError("Batch submission returned no job name")
        logger.info(
            "Submitted batch transcription %s",
            name,
            extra={"recording_id": recording_id},
        )
        return name

    async def get_batch(self, name: str) -> dict[str, Any]:
        return await self._call("GET", name, "Batch status")
