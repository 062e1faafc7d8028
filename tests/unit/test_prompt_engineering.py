"""Unit tests for prompt composition."""

import pytest

from dreambook.models import CharacterDescription, GlobalRules, StyleRecord
from dreambook.prompt_engineering import (
    CHARACTER_ONLY_INSTRUCTION,
    build_character_fragment,
    compose_character_prompt,
    compose_prompt,
    optimize_prompt_length,
    render_global_rules,
)


@pytest.fixture
def style():
    return StyleRecord(
        key="storybook",
        display_name="Storybook",
        base_instructions="Fairy tale picture book illustration.",
        character_instructions="Draw the character as a friendly hero.",
    )


@pytest.fixture
def description():
    return CharacterDescription(text="Short black hair, round glasses, yellow raincoat.")


@pytest.fixture
def rules():
    return GlobalRules(ratio="1:1", quality="high quality", extras={"mood": "calm", "lighting": "soft"})


class TestRenderGlobalRules:
    """Test the rules block."""

    def test_known_keys_then_sorted_extras(self, rules):
        block = render_global_rules(rules)

        assert block == (
            "Global Rules:\n"
            "Image ratio: 1:1\n"
            "Quality requirements: high quality\n"
            "lighting: soft\n"
            "mood: calm"
        )

    def test_empty_rules_render_nothing(self):
        assert render_global_rules(None) == ""
        assert render_global_rules(GlobalRules()) == ""


class TestCharacterFragment:
    def test_fragment_names_subject_and_style_instructions(self, style):
        fragment = build_character_fragment(style, " Mina ")

        assert fragment.startswith("The main character is Mina,")
        assert "Draw the character as a friendly hero." in fragment
        assert fragment.endswith("Keep the same face, hair, body and clothing in every image.")

    def test_fragment_without_subject(self, style):
        assert build_character_fragment(style, "").startswith("The main character is drawn")


class TestComposePrompt:
    """Test scene prompt composition."""

    def test_sections_in_fixed_order(self, style, description, rules):
        prompt = compose_prompt(style, description, "FRAGMENT", "a child flying over clouds", rules)

        positions = [
            prompt.index("Global Rules:"),
            prompt.index("Style Instructions:"),
            prompt.index("Character Reference:"),
            prompt.index("Scene Description:"),
        ]
        assert positions == sorted(positions)
        assert "Character details: Short black hair" in prompt
        assert prompt.endswith("Scene Description:\na child flying over clouds")

    def test_deterministic(self, style, description, rules):
        first = compose_prompt(style, description, "FRAGMENT", "a lighthouse", rules)
        second = compose_prompt(style, description, "FRAGMENT", "a lighthouse", rules)

        assert first == second

    def test_empty_description_is_omitted(self, style, rules):
        prompt = compose_prompt(style, CharacterDescription.empty(), "FRAGMENT", "a lighthouse", rules)
        assert "Character details" not in prompt

    def test_no_rules_block_without_rules(self, style, description):
        prompt = compose_prompt(style, description, "FRAGMENT", "a lighthouse", None)
        assert prompt.startswith("Style Instructions:")

    def test_sections_separated_by_blank_lines(self, style):
        prompt = compose_prompt(style, None, "FRAGMENT", "a lighthouse", None)
        assert prompt == (
            "Style Instructions:\nFairy tale picture book illustration.\n\n"
            "Character Reference:\nFRAGMENT\n\n"
            "Scene Description:\na lighthouse"
        )

    def test_max_length_keeps_rules_and_scene(self, style, rules):
        description = CharacterDescription(text="x" * 3900)

        prompt = compose_prompt(style, description, "FRAGMENT", "a child flying over clouds", rules, max_length=4000)

        assert len(prompt) <= 4000
        assert prompt.startswith("Global Rules:")
        assert prompt.endswith("Scene Description:\na child flying over clouds")
        assert "Character details: x" in prompt

    def test_max_length_trims_details_before_style(self, style, description, rules):
        full = compose_prompt(style, description, "FRAGMENT", "a lighthouse", rules)

        prompt = compose_prompt(style, description, "FRAGMENT", "a lighthouse", rules, max_length=len(full) - 10)

        assert len(prompt) <= len(full) - 10
        assert "Style Instructions:\nFairy tale picture book illustration." in prompt
        assert "Character details: Short black hair, round glasses," in prompt
        assert prompt.endswith("Scene Description:\na lighthouse")

    def test_max_length_drops_character_sections_for_long_scene(self, style, description, rules):
        scene = "a lighthouse " * 20

        prompt = compose_prompt(style, description, "FRAGMENT", scene, rules, max_length=len(scene) + 120)

        assert "Character details" not in prompt
        assert scene.strip() in prompt
        assert prompt.startswith("Global Rules:")

    def test_max_length_never_cuts_scene(self, style, description, rules):
        scene = "x " * 500

        prompt = compose_prompt(style, description, "FRAGMENT", scene, rules, max_length=120)

        assert prompt.startswith("Global Rules:")
        assert prompt.endswith(scene.strip())

    def test_character_prompt_has_composition_and_no_scene(self, style, description, rules):
        prompt = compose_character_prompt(style, description, "FRAGMENT", rules)

        assert "Scene Description" not in prompt
        assert prompt.endswith(f"Composition:\n{CHARACTER_ONLY_INSTRUCTION}")


class TestOptimizePromptLength:
    def test_short_prompt_unchanged(self):
        assert optimize_prompt_length("short", 100) == "short"

    def test_keeps_whole_leading_lines(self):
        prompt = "line one\nline two\nline three"
        assert optimize_prompt_length(prompt, 18) == "line one\nline two"

    def test_cuts_single_long_line(self):
        assert optimize_prompt_length("a" * 50, 10) == "a" * 10

    def test_cuts_at_word_boundary(self):
        assert optimize_prompt_length("short black hair and glasses", 17) == "short black hair"
