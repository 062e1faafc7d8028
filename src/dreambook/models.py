"""Data models for illustrated dream sequence generation."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


DEFAULT_ERROR_PLACEHOLDER_URL = "/static/dreambook/error.png"


class SceneStatus(str, Enum):
    """Outcome of a single scene generation."""
    SUCCEEDED = "succeeded"
    FAILED_PLACEHOLDER = "failed_placeholder"


class ProgressKind(str, Enum):
    """Severity of a progress event shown to the caller."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class JobState(str, Enum):
    """States of the sequence orchestrator."""
    VALIDATING = "validating"
    ANALYZING_CHARACTER = "analyzing_character"
    GENERATING_CHARACTER_IMAGE = "generating_character_image"
    GENERATING_SCENES = "generating_scenes"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class GenerationMode(str, Enum):
    """How an image provider is driven."""
    REFERENCE = "reference"
    TEXT_ONLY = "text_only"


class StyleRecord(BaseModel):
    """A visual style the user can pick for a sequence."""
    model_config = ConfigDict(frozen=True)

    key: str = Field(min_length=1, description="Stable style identifier")
    display_name: str = Field(description="Name shown to users")
    base_instructions: str = Field(description="Style instructions prepended to every prompt")
    character_instructions: str | None = Field(
        default=None, description="Extra instructions used when drawing the character"
    )
    description: str = Field(default="", description="Short human description")
    order: int = Field(default=0, description="Display order")
    is_active: bool = Field(default=True, description="Whether the style can be selected")


class CharacterDescription(BaseModel):
    """Free-text description of the subject's durable visual traits."""
    model_config = ConfigDict(frozen=True)

    text: str = Field(default="", description="Description reusable verbatim inside prompts")

    @classmethod
    def empty(cls) -> "CharacterDescription":
        return cls(text="")

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class GlobalRules(BaseModel):
    """Process-wide prompt rules placed ahead of every composed prompt."""
    model_config = ConfigDict(frozen=True)

    ratio: str | None = Field(default=None, description="Image aspect ratio")
    subject: str | None = Field(default=None, description="Default subject framing")
    quality: str | None = Field(default=None, description="Quality directives")
    style: str | None = Field(default=None, description="Style guidelines")
    technical: str | None = Field(default=None, description="Technical directives")
    extras: Dict[str, str] = Field(default_factory=dict, description="Custom rule keys")
    source: str = Field(default="default", description="Where the rule set was loaded from")

    KNOWN_KEYS: ClassVar[Tuple[str, ...]] = ("ratio", "subject", "quality", "style", "technical")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], source: str = "default") -> "GlobalRules":
        """Build a rule set from a loosely shaped mapping (DB document or env JSON)."""
        known: Dict[str, Any] = {}
        extras: Dict[str, str] = {}
        for key, value in data.items():
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            if key in cls.KNOWN_KEYS:
                known[key] = str(value)
            else:
                extras[str(key)] = str(value)
        return cls(**known, extras=extras, source=source)

    @property
    def is_empty(self) -> bool:
        return not self.extras and all(getattr(self, key) is None for key in self.KNOWN_KEYS)


class SceneInput(BaseModel):
    """One user-supplied scene description."""
    text: str = Field(default="", description="Free-text scene description")


class ImageRef(BaseModel):
    """Stable, re-fetchable handle to a stored image."""
    model_config = ConfigDict(frozen=True)

    url: str = Field(description="Public URL or path of the stored image")
    is_placeholder: bool = Field(default=False, description="True for the well-known error image")
    provider: str | None = Field(default=None, description="Provider that produced the image")

    @classmethod
    def placeholder(cls, url: str = DEFAULT_ERROR_PLACEHOLDER_URL) -> "ImageRef":
        return cls(url=url, is_placeholder=True)


class GenerationRequest(BaseModel):
    """A full sequence submission after transport-level normalisation."""
    subject_label: str = Field(default="", description="Name of the sequence subject")
    dreamer: str | None = Field(default=None, description="Opaque context label")
    style_key: str = Field(default="", description="Selected style key")
    reference_image: bytes = Field(default=b"", repr=False, description="Uploaded reference photo")
    reference_content_type: str | None = Field(default=None, description="Declared upload content type")
    scenes: List[SceneInput] = Field(default_factory=list, description="Scenes in input order")
    character_prompt: str | None = Field(
        default=None, description="Character fragment returned by an earlier preview"
    )

    @field_validator("scenes", mode="before")
    @classmethod
    def _coerce_scene_strings(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [{"text": item} if isinstance(item, str) else item for item in value]
        return value


class SceneResult(BaseModel):
    """Outcome of one scene, created once and never mutated."""
    model_config = ConfigDict(frozen=True)

    sequence_number: int = Field(ge=1, description="1-based position in the input order")
    prompt: str = Field(default="", description="The exact composed prompt used")
    image: ImageRef = Field(description="Generated image or the error placeholder")
    status: SceneStatus = Field(description="Whether the scene succeeded")
    error: str | None = Field(default=None, description="User-safe failure description")


class SequenceResult(BaseModel):
    """Aggregate result of one sequence job."""
    id: str | None = Field(default=None, description="Identifier assigned by the store")
    subject_label: str
    dreamer: str | None = None
    style_key: str
    character_image: ImageRef
    character_prompt: str = ""
    character_description: str = ""
    scenes: List[SceneResult] = Field(default_factory=list)
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @computed_field
    @property
    def failed_scene_count(self) -> int:
        return sum(1 for scene in self.scenes if scene.status == SceneStatus.FAILED_PLACEHOLDER)


class CharacterPreview(BaseModel):
    """Result of the character-image-only sub-operation."""
    character_image: ImageRef
    character_prompt: str
    character_description: str = ""


class ProgressEvent(BaseModel):
    """A single frame on the progress channel."""
    message: str
    percent: int = Field(ge=0, le=100)
    kind: ProgressKind = ProgressKind.INFO
    terminal: bool = False
    state: JobState | None = None
    sequence_number: int | None = None
    payload: Dict[str, Any] | None = None
