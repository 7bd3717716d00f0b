"""Prompt templates for transcription, story and podcast script generation."""

from __future__ import annotations

from typing import Any

from session_processor.ai.postprocess import format_timestamp

TRANSCRIPTION_PROMPT = """You are transcribing the audio of a tabletop role-playing session.

Transcribe everything that is said, in the language it is spoken.
Return JSON with a "segments" array. Each segment has:
- "timeSeconds": when the utterance starts, in seconds
- "text": what was said
- "speaker": a short speaker label when it can be distinguished

Start a new segment at every change of speaker and at least every 30 seconds.
Do not summarise, translate or invent dialogue. If the audio contains no
speech, return {"error": "NO_SPEECH", "message": "<reason>"}."""

STORY_PROMPT = """You are the chronicler of a tabletop role-playing campaign.

Write a vivid narrative recap of the session from the transcript below.
Follow the order of events, keep the names used by the players, and leave
out table talk that is not part of the game (rules lookups, snacks, breaks).
Use Markdown headings for the major scenes."""

PODCAST_SCRIPT_PROMPT = """You write scripts for a two-host podcast that recaps role-playing sessions.

HOST1 is analytical and focuses on tactics and decisions.
HOST2 focuses on story, characters and emotional highlights.

Write a natural back-and-forth conversation about the session recap below.
Keep turns short (one to three sentences) and the whole script under 5500
characters. Refer to "the adventure" or "the party" rather than naming the
game system.

Output only script lines in exactly this format:
HOST1: <dialogue>
HOST2: <dialogue>"""

_CONTEXT_SECTIONS = (
    ("characters", "Characters"),
    ("locations", "Locations"),
    ("quests", "Quests"),
    ("organisations", "Organisations"),
)


def _entity_name(entity: Any) -> str:
    if isinstance(entity, dict):
        return str(entity.get("name") or "")
    return str(entity or "")


def build_context_prompt(context: dict[str, Any] | None) -> str:
    """Render campaign reference names for spelling accuracy.

    Returns an empty string when the context holds no names.
    """
    if not context:
        return ""
    sections: list[str] = []
    for key, label in _CONTEXT_SECTIONS:
        names = [n for n in (_entity_name(e) for e in context.get(key) or []) if n]
        if names:
            sections.append(f"{label}: {', '.join(names)}")
    if not sections:
        return ""
    body = "\n".join(sections)
    return (
        "CAMPAIGN REFERENCE (for name/place accuracy only):\n"
        f"{body}\n\n"
        "Use this context ONLY to spell names and places correctly when you "
        "hear them. Do not add information that wasn't spoken."
    )


def build_corrections_prompt(corrections: str | None) -> str:
    if not corrections or not corrections.strip():
        return ""
    return f"USER CORRECTIONS (apply these when they are relevant):\n{corrections.strip()}"


def _join(*parts: str) -> str:
    return "\n\n".join(p for p in parts if p)


def build_transcription_prompt(
    context: dict[str, Any] | None = None, corrections: str | None = None
) -> str:
    """Prompt for transcribing a whole recording in one call."""
    return _join(
        TRANSCRIPTION_PROMPT,
        build_context_prompt(context),
        build_corrections_prompt(corrections),
    )


def build_chunk_prompt(
    index: int,
    total_chunks: int,
    start_seconds: float,
    end_seconds: float,
    context: dict[str, Any] | None = None,
    corrections: str | None = None,
) -> str:
    """Prompt for one chunk, stating its position in the full recording."""
    example = format_timestamp(round(start_seconds + 30))
    chunk_context = (
        "CHUNK CONTEXT:\n"
        f"- This is chunk {index + 1} of {total_chunks} in a longer recording.\n"
        f"- This chunk covers {format_timestamp(start_seconds)} to "
        f"{format_timestamp(end_seconds)} from the full session start.\n"
        "- All timestamps must be relative to the FULL session start, not "
        "this chunk's start.\n"
        "- If someone speaks 30 seconds into this chunk, the timestamp "
        f"should be {example}."
    )
    return _join(build_transcription_prompt(context, corrections), chunk_context)


def build_story_prompt(
    transcript_text: str,
    context: str | None = None,
    corrections: str | None = None,
) -> str:
    return _join(
        STORY_PROMPT,
        f"SESSION CONTEXT:\n{context}" if context else "",
        build_corrections_prompt(corrections),
        f"TRANSCRIPT:\n{transcript_text}",
    )


def build_script_prompt(story: str) -> str:
    return _join(PODCAST_SCRIPT_PROMPT, f"SESSION RECAP:\n{story}")
