"""Test configuration and shared fakes.

Ensures the `src` directory is on sys.path so the `dreambook` package
can be imported without installing the project in editable mode.
"""

import asyncio
import base64
import io
import os
import sys
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import AsyncMock, Mock

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

os.environ.setdefault("MONGO_USE_MOCK", "true")

from PIL import Image  # noqa: E402

from dreambook.character_analysis import CharacterAnalyzer  # noqa: E402
from dreambook.context import PipelineContext  # noqa: E402
from dreambook.image_store import InMemoryImageStore  # noqa: E402
from dreambook.models import GenerationMode, GenerationRequest, GlobalRules  # noqa: E402
from dreambook.orchestrator import SequenceOrchestrator  # noqa: E402
from dreambook.providers import ImageGenerationProvider  # noqa: E402
from dreambook.services.sequence_store import InMemorySequenceStore  # noqa: E402
from dreambook.styles import InMemoryStyleResolver  # noqa: E402
from dreambook.synthesis import ImageSynthesisClient  # noqa: E402


CHARACTER_TEXT = "A young woman with short black hair, round glasses and a yellow raincoat."


def make_image_bytes(color=(200, 120, 80), size=(8, 8), image_format="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=image_format)
    return buffer.getvalue()


def success_result(data: bytes | None = None) -> Dict[str, Any]:
    return {
        'success': True,
        'image_data': base64.b64encode(data or make_image_bytes()).decode("ascii"),
        'format': 'base64',
        'metadata': {},
    }


def failure_result(error: str = "Provider is down", status_code: int = 500) -> Dict[str, Any]:
    return {'success': False, 'error': error, 'status_code': status_code, 'metadata': {}}


class ScriptedProvider(ImageGenerationProvider):
    """Provider that replays queued results and records every call.

    Queued items may be result dicts or exceptions to raise. Once the queue is
    empty ``default`` is returned.
    """

    def __init__(
        self,
        name: str = "scripted",
        results: List[Any] | None = None,
        mode: GenerationMode = GenerationMode.TEXT_ONLY,
        default: Dict[str, Any] | None = None,
        delay: float = 0.0,
    ):
        self.name = name
        self.mode = mode
        self.results = list(results or [])
        self.default = default if default is not None else success_result()
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def generate_image(self, prompt: str, reference_image: bytes | None = None, **kwargs) -> Dict[str, Any]:
        self.calls.append({'prompt': prompt, 'reference_image': reference_image})
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, Exception):
            raise result
        return result


class RecordingSequenceStore(InMemorySequenceStore):
    """In-memory store that counts saves and can be told to fail."""

    def __init__(self, fail: bool = False):
        super().__init__()
        self.fail = fail
        self.saved = []

    def save_sequence(self, result):
        if self.fail:
            raise ConnectionError("database unreachable")
        sequence_id = super().save_sequence(result)
        self.saved.append(sequence_id)
        return sequence_id


def make_analyzer(text: str | None = CHARACTER_TEXT) -> CharacterAnalyzer:
    """Analyzer over a mocked chat model; ``None`` disables analysis."""
    if text is None:
        return CharacterAnalyzer(None)
    llm = AsyncMock()
    llm.ainvoke.return_value = Mock(content=text)
    return CharacterAnalyzer(llm, timeout=1.0)


@pytest.fixture
def png_bytes():
    return make_image_bytes()


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes(color=(10, 80, 200), image_format="JPEG")


@pytest.fixture
def pipeline_context(tmp_path):
    return PipelineContext(
        storage_dir=str(tmp_path / "images"),
        analysis_timeout=1.0,
        provider_timeout=1.0,
        download_timeout=1.0,
        persistence_timeout=2.0,
    )


@pytest.fixture
def test_rules():
    return GlobalRules(ratio="1:1", quality="high quality", source="test")


@pytest.fixture
def image_store():
    return InMemoryImageStore()


@pytest.fixture
def sequence_store():
    return RecordingSequenceStore()


@pytest.fixture
def make_orchestrator(pipeline_context, image_store, sequence_store, test_rules):
    """Factory for orchestrators wired to in-process fakes."""

    def _make(providers=None, *, store=None, analyzer=None, rules=test_rules, context=None):
        context = context or pipeline_context
        if providers is None:
            providers = [ScriptedProvider("primary")]
        synthesis = ImageSynthesisClient(
            providers,
            image_store,
            timeout=context.provider_timeout,
            download_timeout=context.download_timeout,
            placeholder_url=context.error_placeholder_url,
        )
        return SequenceOrchestrator(
            context,
            InMemoryStyleResolver(),
            analyzer or make_analyzer(),
            synthesis,
            store if store is not None else sequence_store,
            rules,
        )

    return _make


@pytest.fixture
def make_request(png_bytes):
    def _make(**overrides):
        fields = {
            'subject_label': "Mina",
            'style_key': "storybook",
            'reference_image': png_bytes,
            'reference_content_type': "image/png",
            'scenes': ["a child flying over clouds"],
        }
        fields.update(overrides)
        return GenerationRequest(**fields)

    return _make
