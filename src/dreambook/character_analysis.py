"""Character analysis of the uploaded reference photo with a vision chat model."""

import asyncio
import json
import logging
from typing import Any, List

from langchain.chat_models import init_chat_model
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from dreambook.context import PipelineContext
from dreambook.error_handling import EnrichmentFailure, ErrorAnalyzer
from dreambook.models import CharacterDescription
from dreambook.utils import to_data_uri


logger = logging.getLogger(__name__)

_DEFAULT_ANALYSIS_TIMEOUT = 60.0

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert image analyst who provides detailed descriptions of people in images, "
    "focusing on the traits that stay the same from picture to picture."
)

ANALYSIS_USER_PROMPT = """Please analyze the person in this photo and describe:
1. Their facial features precisely (eyes, nose, mouth, face shape)
2. Their hair colour, style and length
3. Their skin tone, apparent age and body proportions
4. Their clothing and accessories
5. Their overall impression and typical expression

Leave out the background, the pose and the lighting of this particular photo.
Write the answer as one detailed, coherent paragraph that could be pasted into an image prompt to recreate this exact person in another image."""


def _message_text(response: Any) -> str:
    """Extract plain text from a chat model response."""
    content = getattr(response, "content", response)

    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="ignore")

    if isinstance(content, list):
        # Multi-part responses: keep the text parts in order
        parts: List[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        content = "\n".join(parts)

    if content is None:
        return ""

    if not isinstance(content, str):
        try:
            content = json.dumps(content)
        except (TypeError, ValueError):
            content = str(content)

    return content.strip()


class CharacterAnalyzer:
    """Describes the durable visual traits of the subject of a reference photo.

    ``analyze`` never raises: a failed or empty analysis yields an empty
    CharacterDescription so the sequence carries on without the enrichment.
    """

    def __init__(self, llm: BaseChatModel | None, timeout: float = _DEFAULT_ANALYSIS_TIMEOUT):
        self.llm = llm
        self.timeout = timeout

    @classmethod
    def from_context(cls, context: PipelineContext) -> "CharacterAnalyzer":
        if not context.openai_api_key:
            logger.warning("No OpenAI API key configured; character analysis is disabled")
            return cls(None, context.analysis_timeout)
        llm = init_chat_model(context.vision_model, api_key=context.openai_api_key, temperature=0.2)
        return cls(llm, context.analysis_timeout)

    def build_messages(self, image: bytes, content_type: str | None = None) -> List[Any]:
        return [
            SystemMessage(content=ANALYSIS_SYSTEM_PROMPT),
            HumanMessage(
                content=[
                    {"type": "text", "text": ANALYSIS_USER_PROMPT},
                    {"type": "image_url", "image_url": {"url": to_data_uri(image, content_type)}},
                ]
            ),
        ]

    async def describe(self, image: bytes, content_type: str | None = None) -> CharacterDescription:
        """Run the analysis, raising EnrichmentFailure on any failure or empty answer."""
        if self.llm is None:
            raise EnrichmentFailure("No vision model is configured")
        if not image:
            raise EnrichmentFailure("No reference image to analyse")

        try:
            response = await asyncio.wait_for(
                self.llm.ainvoke(self.build_messages(image, content_type)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise EnrichmentFailure(f"Character analysis timed out after {self.timeout:.1f}s") from e
        except Exception as e:
            category = ErrorAnalyzer.categorize_error(e)
            raise EnrichmentFailure(f"Character analysis failed ({category.value}): {e}") from e

        text = _message_text(response)
        if not text:
            raise EnrichmentFailure("Character analysis returned no content")
        return CharacterDescription(text=text)

    async def analyze(self, image: bytes, content_type: str | None = None) -> CharacterDescription:
        """Describe the reference photo, or return an empty description on failure."""
        try:
            description = await self.describe(image, content_type)
        except EnrichmentFailure as e:
            logger.warning("%s; proceeding without a character description", e)
            return CharacterDescription.empty()

        logger.info("Character analysis produced %d characters of description", len(description.text))
        return description
