"""Runtime context for the dream sequence pipeline."""

import os

from pydantic import BaseModel, Field

from dreambook.models import DEFAULT_ERROR_PLACEHOLDER_URL


DEFAULT_SCENE_TEXT = "A dreamy, peaceful fairy tale scene with soft light and gentle colors"


class PipelineContext(BaseModel):
    """Runtime configuration shared by every job in the process."""

    # Provider credentials
    openai_api_key: str | None = Field(default=None, description="OpenAI API key for vision and image models")
    replicate_api_token: str | None = Field(default=None, description="Replicate token for the text-only fallback")

    # Models
    vision_model: str = Field(default="openai:gpt-4o", description="Chat model used for character analysis")
    edit_model: str = Field(default="gpt-image-1", description="Reference-conditioned image model")
    text_image_model: str = Field(default="dall-e-3", description="Text-to-image model")
    replicate_model: str = Field(
        default="black-forest-labs/flux-schnell", description="Replicate text-to-image model"
    )
    image_size: str = Field(default="1024x1024", description="Requested output size")

    # Timeouts (seconds)
    analysis_timeout: float = Field(default=60.0, description="Character analysis call timeout")
    provider_timeout: float = Field(default=180.0, description="Single image provider call timeout")
    download_timeout: float = Field(default=60.0, description="Remote image download timeout")
    persistence_timeout: float = Field(default=30.0, description="Persistence collaborator call timeout")

    # Limits
    max_scenes: int = Field(default=10, ge=1, description="Maximum scenes used from one request")
    max_reference_bytes: int = Field(default=10 * 1024 * 1024, description="Maximum reference image size")
    max_prompt_length: int | None = Field(default=4000, description="Composed prompt length limit")
    max_scene_length: int = Field(default=1000, ge=1, description="Maximum characters in one scene text")
    allowed_image_types: list[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/webp"],
        description="Accepted reference image content types",
    )

    # Pipeline behaviour
    default_scene_text: str = Field(default=DEFAULT_SCENE_TEXT, description="Scene used when none is usable")
    error_placeholder_url: str = Field(
        default=DEFAULT_ERROR_PLACEHOLDER_URL, description="Well-known error image handle"
    )
    storage_dir: str = Field(default="dreambook_output/images", description="Directory for stored images")
    public_base_url: str = Field(default="/generated", description="URL prefix the stored images are served under")
    rules_refresh_interval: float = Field(default=60.0, description="Seconds between global rule reloads")
    progress_queue_size: int = Field(default=64, ge=1, description="Bounded progress queue size")

    model_config = {"extra": "allow"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_default_context() -> PipelineContext:
    """Get default context with environment variables."""
    defaults = PipelineContext()

    return PipelineContext(
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        replicate_api_token=os.getenv("REPLICATE_API_TOKEN"),
        vision_model=os.getenv("DREAMBOOK_VISION_MODEL", defaults.vision_model),
        edit_model=os.getenv("DREAMBOOK_EDIT_MODEL", defaults.edit_model),
        text_image_model=os.getenv("DREAMBOOK_TEXT_IMAGE_MODEL", defaults.text_image_model),
        replicate_model=os.getenv("DREAMBOOK_REPLICATE_MODEL", defaults.replicate_model),
        analysis_timeout=_env_float("DREAMBOOK_ANALYSIS_TIMEOUT", defaults.analysis_timeout),
        provider_timeout=_env_float("DREAMBOOK_PROVIDER_TIMEOUT", defaults.provider_timeout),
        download_timeout=_env_float("DREAMBOOK_DOWNLOAD_TIMEOUT", defaults.download_timeout),
        persistence_timeout=_env_float("DREAMBOOK_PERSISTENCE_TIMEOUT", defaults.persistence_timeout),
        max_scenes=_env_int("DREAMBOOK_MAX_SCENES", defaults.max_scenes),
        max_reference_bytes=_env_int("DREAMBOOK_MAX_REFERENCE_BYTES", defaults.max_reference_bytes),
        max_scene_length=_env_int("DREAMBOOK_MAX_SCENE_LENGTH", defaults.max_scene_length),
        default_scene_text=os.getenv("DREAMBOOK_DEFAULT_SCENE_TEXT", defaults.default_scene_text),
        storage_dir=os.getenv("DREAMBOOK_STORAGE_DIR", defaults.storage_dir),
        public_base_url=os.getenv("DREAMBOOK_PUBLIC_BASE_URL", defaults.public_base_url),
        rules_refresh_interval=_env_float("DREAMBOOK_RULES_REFRESH_INTERVAL", defaults.rules_refresh_interval),
    )
