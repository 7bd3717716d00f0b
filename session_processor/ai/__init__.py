"""Remote AI collaborators: transcription, story, script and speech."""

from session_processor.ai.registry import get_ai_client

__all__ = ["get_ai_client"]
