"""Tests for prompt construction."""

from session_processor.ai.prompts import (
    PODCAST_SCRIPT_PROMPT,
    STORY_PROMPT,
    TRANSCRIPTION_PROMPT,
    build_chunk_prompt,
    build_context_prompt,
    build_corrections_prompt,
    build_script_prompt,
    build_story_prompt,
    build_transcription_prompt,
)


class TestContextPrompt:
    """Tests for build_context_prompt()."""

    def test_empty_context(self) -> None:
        assert build_context_prompt(None) == ""
        assert build_context_prompt({}) == ""
        assert build_context_prompt({"characters": [{"name": ""}]}) == ""

    def test_lists_names_by_section(self) -> None:
        prompt = build_context_prompt(
            {
                "characters": [{"name": "Thalia"}, {"name": "Brom"}],
                "locations": ["Waterdeep"],
                "quests": [],
            }
        )
        assert "Characters: Thalia, Brom" in prompt
        assert "Locations: Waterdeep" in prompt
        assert "Quests" not in prompt
        assert prompt.startswith("CAMPAIGN REFERENCE")


class TestCorrectionsPrompt:
    """Tests for build_corrections_prompt()."""

    def test_blank_corrections(self) -> None:
        assert build_corrections_prompt(None) == ""
        assert build_corrections_prompt("   ") == ""

    def test_corrections_are_included(self) -> None:
        prompt = build_corrections_prompt("  Thalya -> Thalia \n")
        assert prompt.endswith("Thalya -> Thalia")


class TestTranscriptionPrompts:
    """Tests for transcription prompts."""

    def test_plain_prompt(self) -> None:
        assert build_transcription_prompt() == TRANSCRIPTION_PROMPT

    def test_chunk_prompt_states_position(self) -> None:
        prompt = build_chunk_prompt(1, 3, 1800, 3600, corrections="Brom not Brum")
        assert prompt.startswith(TRANSCRIPTION_PROMPT)
        assert "chunk 2 of 3" in prompt
        assert "30:00 to 1:00:00" in prompt
        assert "should be 30:30" in prompt
        assert "Brom not Brum" in prompt


class TestStoryAndScriptPrompts:
    """Tests for story and podcast script prompts."""

    def test_story_prompt_sections(self) -> None:
        prompt = build_story_prompt("[00:01] GM: Hello", context="Session 4")
        assert prompt.startswith(STORY_PROMPT)
        assert "SESSION CONTEXT:\nSession 4" in prompt
        assert prompt.endswith("TRANSCRIPT:\n[00:01] GM: Hello")

    def test_story_prompt_without_context(self) -> None:
        assert "SESSION CONTEXT" not in build_story_prompt("text")

    def test_script_prompt(self) -> None:
        prompt = build_script_prompt("The party met a dragon.")
        assert prompt.startswith(PODCAST_SCRIPT_PROMPT)
        assert prompt.endswith("SESSION RECAP:\nThe party met a dragon.")
