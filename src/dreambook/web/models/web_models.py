"""Web-specific Pydantic models for the FastAPI application."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dreambook.models import CharacterPreview, StyleRecord


class StyleResponse(BaseModel):
    """Response model for a selectable style."""
    key: str
    display_name: str
    description: str = ""
    order: int = 0

    @classmethod
    def from_record(cls, style: StyleRecord) -> "StyleResponse":
        return cls(
            key=style.key,
            display_name=style.display_name,
            description=style.description,
            order=style.order,
        )


class CharacterPreviewResponse(BaseModel):
    """Response model for the character-only sub-operation."""
    model_config = ConfigDict(populate_by_name=True)

    character_image_url: str = Field(alias="characterImageUrl")
    character_prompt: str = Field(alias="characterPrompt")
    character_description: str = Field(default="", alias="characterDescription")
    is_placeholder: bool = Field(default=False, alias="isPlaceholder")

    @classmethod
    def from_preview(cls, preview: CharacterPreview) -> "CharacterPreviewResponse":
        return cls(
            character_image_url=preview.character_image.url,
            character_prompt=preview.character_prompt,
            character_description=preview.character_description,
            is_placeholder=preview.character_image.is_placeholder,
        )


class JobStatusResponse(BaseModel):
    """Model for job status lookups."""
    job_id: str
    state: str
    percent: int = 0
    message: str = ""
    done: bool = False
    cancel_requested: bool = False
    sequence_id: Optional[str] = None
    started_at: Optional[str] = None


class ValidationDetailResponse(BaseModel):
    field: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    details: List[ValidationDetailResponse] = Field(default_factory=list)


class SuccessResponse(BaseModel):
    """Standard success response model."""
    success: bool = True
    message: str
    data: Optional[Dict[str, Any]] = None
