"""Document collection names and helpers for MongoDB persistence."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from dreambook.models import SceneResult, SequenceResult, StyleRecord

STYLES_COLLECTION = "dreambook_styles"
GLOBAL_PROMPT_RULES_COLLECTION = "global_prompt_rules"
SEQUENCES_COLLECTION = "dream_sequences"
SCENES_COLLECTION = "dream_sequence_scenes"


def now_utc() -> datetime:
    """Return a UTC timestamp helper."""

    return datetime.now(timezone.utc)


def normalise_id(document: Dict[str, Any]) -> str:
    """Return the string identifier for a Mongo document."""

    return str(document.get("_id") or document.get("id"))


def style_from_document(document: Dict[str, Any]) -> StyleRecord:
    """Build a StyleRecord from a style document.

    Documents written by the admin tooling use ``systemPrompt`` /
    ``characterPrompt`` / ``name``; both spellings are accepted.
    """
    return StyleRecord(
        key=str(document.get("key") or document.get("style_id") or normalise_id(document)),
        display_name=document.get("display_name") or document.get("name") or str(document.get("key", "")),
        base_instructions=document.get("base_instructions") or document.get("systemPrompt") or "",
        character_instructions=(
            document.get("character_instructions") or document.get("characterPrompt") or None
        ),
        description=document.get("description") or "",
        order=int(document.get("order", 0) or 0),
        is_active=bool(document.get("is_active", True)),
    )


def sequence_to_document(result: SequenceResult) -> Dict[str, Any]:
    """Sequence header document; scenes are stored in their own collection."""
    data = result.model_dump(mode="json", exclude={"id", "scenes"})
    data["scene_count"] = len(result.scenes)
    data["updated_at"] = now_utc()
    return data


def scene_to_document(sequence_id: str, scene: SceneResult) -> Dict[str, Any]:
    data = scene.model_dump(mode="json")
    data["sequence_id"] = sequence_id
    return data


def sequence_from_documents(document: Dict[str, Any], scenes: list[Dict[str, Any]]) -> SequenceResult:
    header = {
        key: value
        for key, value in document.items()
        if key in SequenceResult.model_fields and key not in {"id", "scenes"}
    }
    ordered = sorted(scenes, key=lambda doc: doc.get("sequence_number", 0))
    return SequenceResult(
        id=normalise_id(document),
        scenes=[
            SceneResult.model_validate(
                {key: value for key, value in doc.items() if key in SceneResult.model_fields}
            )
            for doc in ordered
        ],
        **header,
    )
