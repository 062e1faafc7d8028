"""Prompt composition for character and scene image generation.

Every function here is pure: the same inputs always give byte-identical
output. Global rules are passed in explicitly; nothing in this module reads
process-wide configuration.
"""

import logging
from typing import List

from dreambook.models import CharacterDescription, GlobalRules, StyleRecord


logger = logging.getLogger(__name__)

CHARACTER_ONLY_INSTRUCTION = "single full-body character, simple background"
DEFAULT_MAX_PROMPT_LENGTH = 2000

# Sections shortened, in this order, when a prompt is over its length limit.
TRIM_ORDER = ("details", "style_text", "fragment")

# Rendered label for each known rule key, in rendering order.
RULE_LABELS = (
    ("ratio", "Image ratio"),
    ("subject", "Main subject"),
    ("quality", "Quality requirements"),
    ("style", "Style guidelines"),
    ("technical", "Technical specs"),
)


def render_global_rules(rules: GlobalRules | None) -> str:
    """Render the rule set as a ``Global Rules:`` block, or "" when empty."""
    if rules is None or rules.is_empty:
        return ""

    lines: List[str] = []
    for key, label in RULE_LABELS:
        value = getattr(rules, key)
        if value:
            lines.append(f"{label}: {value}")
    for key in sorted(rules.extras):
        lines.append(f"{key}: {rules.extras[key]}")

    return "Global Rules:\n" + "\n".join(lines)


def build_character_fragment(style: StyleRecord, subject_label: str) -> str:
    """Character reference fragment reused across every prompt of a sequence."""
    parts = []
    subject = subject_label.strip()
    if subject:
        parts.append(
            f"The main character is {subject}, drawn exactly like the person in the reference photo."
        )
    else:
        parts.append("The main character is drawn exactly like the person in the reference photo.")
    if style.character_instructions:
        parts.append(style.character_instructions.strip())
    parts.append("Keep the same face, hair, body and clothing in every image.")
    return " ".join(parts)


def _assemble(
    rules_block: str,
    style_text: str,
    fragment: str,
    details: str,
    scene: str,
    composition: str,
) -> str:
    sections: List[str] = []
    if rules_block:
        sections.append(rules_block)
    if style_text:
        sections.append(f"Style Instructions:\n{style_text}")

    character_lines = [line for line in (fragment,) if line]
    if details:
        character_lines.append(f"Character details: {details}")
    if character_lines:
        sections.append("Character Reference:\n" + "\n".join(character_lines))

    if scene:
        sections.append(f"Scene Description:\n{scene}")
    if composition:
        sections.append(f"Composition:\n{composition}")
    return "\n\n".join(sections)


def compose_prompt(
    style: StyleRecord,
    description: CharacterDescription | None,
    character_fragment: str,
    scene_text: str,
    rules: GlobalRules | None,
    *,
    composition: str | None = None,
    max_length: int | None = None,
) -> str:
    """Assemble the final generation prompt.

    Sections appear in a fixed order: global rules, style instructions,
    character reference (fragment plus description when present), scene
    description, then an optional composition instruction. Empty sections are
    left out.

    Over ``max_length`` the character details are shortened first, then the
    style instructions, then the character fragment. Rules, scene and
    composition are never shortened.
    """
    parts = {
        "rules_block": render_global_rules(rules),
        "style_text": style.base_instructions.strip(),
        "fragment": character_fragment.strip(),
        "details": description.text.strip() if description is not None and not description.is_empty else "",
        "scene": scene_text.strip(),
        "composition": composition.strip() if composition else "",
    }
    prompt = _assemble(**parts)

    if max_length is None or len(prompt) <= max_length:
        return prompt

    logger.warning("Composed prompt is %d characters; trimming to %d", len(prompt), max_length)
    for name in TRIM_ORDER:
        overflow = len(prompt) - max_length
        if overflow <= 0:
            break
        text = parts[name]
        parts[name] = optimize_prompt_length(text, len(text) - overflow) if len(text) > overflow else ""
        prompt = _assemble(**parts)

    if len(prompt) > max_length:
        logger.warning("Rules and scene alone are %d characters, over the %d limit", len(prompt), max_length)
    return prompt


def compose_character_prompt(
    style: StyleRecord,
    description: CharacterDescription | None,
    character_fragment: str,
    rules: GlobalRules | None,
    *,
    max_length: int | None = None,
) -> str:
    """Prompt for the character image: no scene, fixed full-body instruction."""
    return compose_prompt(
        style,
        description,
        character_fragment,
        "",
        rules,
        composition=CHARACTER_ONLY_INSTRUCTION,
        max_length=max_length,
    )


def optimize_prompt_length(prompt: str, max_length: int = DEFAULT_MAX_PROMPT_LENGTH) -> str:
    """Keep the whole leading words of ``prompt`` that fit within ``max_length``.

    A first word that is itself too long is cut at the limit.
    """
    if len(prompt) <= max_length:
        return prompt
    if max_length <= 0:
        return ""

    window = prompt[: max_length + 1]
    boundary = max(window.rfind(" "), window.rfind("\n"))
    if boundary <= 0:
        return prompt[:max_length].rstrip()

    return prompt[:boundary].rstrip()
