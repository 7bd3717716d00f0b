"""Two-host podcast scripts parsed from model output."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any

from session_processor.utils.errors import PipelineError

MAX_SCRIPT_CHARACTERS = 6000
WORDS_PER_MINUTE = 150

_SPEAKER_LINE = re.compile(r"^\W*(HOST[12])\W*:\s*(.*)$", re.IGNORECASE)


@dataclass
class PodcastSegment:
    """One line of dialogue."""

    speaker: str
    text: str


@dataclass
class PodcastScript:
    segments: list[PodcastSegment] = field(default_factory=list)
    estimated_duration: int = 0

    @property
    def total_characters(self) -> int:
        return sum(len(seg.text) for seg in self.segments)

    def to_dict(self) -> dict[str, Any]:
        return {
            "segments": [{"speaker": s.speaker, "text": s.text} for s in self.segments],
            "estimated_duration": self.estimated_duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PodcastScript:
        segments = [
            PodcastSegment(speaker=s.get("speaker", "host1"), text=s.get("text", ""))
            for s in data.get("segments") or []
        ]
        duration = data.get("estimated_duration", data.get("estimatedDuration"))
        if duration is None:
            duration = estimate_duration(segments)
        return cls(segments=segments, estimated_duration=int(duration))


def estimate_duration(segments: list[PodcastSegment]) -> int:
    """Estimated spoken duration in seconds at 150 words per minute."""
    words = sum(len(seg.text.split()) for seg in segments)
    return math.ceil(words / WORDS_PER_MINUTE * 60)


def parse_script(text: str) -> PodcastScript:
    """Parse ``HOST1:``/``HOST2:`` lines; other lines are ignored.

    Markdown decoration around the speaker tag (``**HOST1:**``) is
    tolerated.
    """
    segments: list[PodcastSegment] = []
    for line in (text or "").splitlines():
        match = _SPEAKER_LINE.match(line.strip())
        if not match:
            continue
        spoken = match.group(2).strip().strip("*").strip()
        if spoken:
            segments.append(PodcastSegment(match.group(1).lower(), spoken))
    return PodcastScript(segments=segments, estimated_duration=estimate_duration(segments))


def validate_script(script: PodcastScript) -> None:
    """Reject scripts that cannot be turned into audio.

    Raises:
        PipelineError: If the script has no segments or more than
            MAX_SCRIPT_CHARACTERS characters of dialogue.
    """
    if not script.segments:
        raise PipelineError("Failed to parse script segments")
    if script.total_characters > MAX_SCRIPT_CHARACTERS:
        raise PipelineError(
            f"Script too long ({script.total_characters} chars). "
            f"Maximum is {MAX_SCRIPT_CHARACTERS}. Try a shorter story."
        )
