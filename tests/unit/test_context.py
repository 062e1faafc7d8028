"""Unit tests for the pipeline context."""

from dreambook.context import DEFAULT_SCENE_TEXT, PipelineContext, get_default_context
from dreambook.models import DEFAULT_ERROR_PLACEHOLDER_URL


class TestPipelineContext:
    """Test PipelineContext defaults and environment loading."""

    def test_defaults(self):
        context = PipelineContext()

        assert context.max_scenes == 10
        assert context.default_scene_text == DEFAULT_SCENE_TEXT
        assert context.error_placeholder_url == DEFAULT_ERROR_PLACEHOLDER_URL
        assert "image/jpeg" in context.allowed_image_types
        assert context.openai_api_key is None

    def test_extra_fields_allowed(self):
        context = PipelineContext(custom_flag=True)
        assert context.custom_flag is True

    def test_default_context_reads_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("DREAMBOOK_MAX_SCENES", "4")
        monkeypatch.setenv("DREAMBOOK_PROVIDER_TIMEOUT", "12.5")
        monkeypatch.setenv("DREAMBOOK_STORAGE_DIR", "/tmp/dreams")

        context = get_default_context()

        assert context.openai_api_key == "sk-test"
        assert context.max_scenes == 4
        assert context.provider_timeout == 12.5
        assert context.storage_dir == "/tmp/dreams"

    def test_malformed_numbers_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv("DREAMBOOK_MAX_SCENES", "many")
        monkeypatch.setenv("DREAMBOOK_ANALYSIS_TIMEOUT", "soon")

        context = get_default_context()

        assert context.max_scenes == 10
        assert context.analysis_timeout == 60.0
