"""Image generation providers: OpenAI image edit, DALL-E and Replicate-hosted models."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Sequence

import aiohttp

from dreambook.context import PipelineContext
from dreambook.models import GenerationMode
from dreambook.utils import image_extension, sniff_image_type


logger = logging.getLogger(__name__)

OPENAI_IMAGE_EDIT_URL = "https://api.openai.com/v1/images/edits"
OPENAI_IMAGE_GENERATION_URL = "https://api.openai.com/v1/images/generations"


def _failure(error: str, status_code: int | None = None, **metadata: Any) -> Dict[str, Any]:
    return {
        'success': False,
        'error': error,
        'status_code': status_code,
        'metadata': metadata,
    }


async def _read_error_message(response: aiohttp.ClientResponse, default: str) -> str:
    """Pull the error message out of an OpenAI-style error body."""
    try:
        error_data = await response.json(content_type=None)
    except (aiohttp.ContentTypeError, json.JSONDecodeError, ValueError):
        text = await response.text()
        return text[:200] or default
    if isinstance(error_data, dict):
        error = error_data.get('error')
        if isinstance(error, dict):
            return error.get('message') or default
        if isinstance(error, str):
            return error
    return default


def _image_payload(data: Dict[str, Any], provider: str, **metadata: Any) -> Dict[str, Any]:
    """Turn an OpenAI images response body into a provider result."""
    items = data.get('data') or []
    if not items:
        return _failure(f"{provider} returned no image data", 502, provider=provider)

    item = items[0]
    result: Dict[str, Any] = {
        'success': True,
        'metadata': {
            'provider': provider,
            'revised_prompt': item.get('revised_prompt'),
            **metadata,
        },
    }
    if item.get('b64_json'):
        result['image_data'] = item['b64_json']
        result['format'] = 'base64'
    elif item.get('url'):
        result['image_url'] = item['url']
        result['format'] = 'url'
    else:
        return _failure(f"{provider} response contained neither base64 data nor a URL", 502, provider=provider)
    return result


class ImageGenerationProvider(ABC):
    """Abstract base class for image generation providers.

    ``generate_image`` reports failure through the returned dict
    (``success`` false, ``error``, ``status_code``) rather than raising. On
    success the dict carries either ``image_data`` (base64) or ``image_url``.
    """

    name: str = "provider"
    mode: GenerationMode = GenerationMode.TEXT_ONLY

    @property
    def requires_reference(self) -> bool:
        return self.mode == GenerationMode.REFERENCE

    @abstractmethod
    async def generate_image(
        self,
        prompt: str,
        reference_image: bytes | None = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Generate one image for ``prompt``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class OpenAIImageEditProvider(ImageGenerationProvider):
    """Reference-conditioned generation through the OpenAI image edit endpoint."""

    name = "openai-edit"
    mode = GenerationMode.REFERENCE

    def __init__(self, api_key: str, model: str = "gpt-image-1", size: str = "1024x1024") -> None:
        self.api_key = api_key
        self.model = model
        self.size = size
        self.base_url = OPENAI_IMAGE_EDIT_URL

    def _build_form(self, prompt: str, reference_image: bytes) -> aiohttp.FormData:
        content_type = sniff_image_type(reference_image) or "image/png"
        form = aiohttp.FormData()
        form.add_field("model", self.model)
        form.add_field("prompt", prompt)
        form.add_field("size", self.size)
        form.add_field("n", "1")
        form.add_field(
            "image",
            reference_image,
            filename=f"reference.{image_extension(content_type)}",
            content_type=content_type,
        )
        return form

    async def generate_image(
        self,
        prompt: str,
        reference_image: bytes | None = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Generate an image conditioned on ``reference_image``."""
        if not reference_image:
            return _failure("Reference-conditioned generation needs a reference image", 400, provider=self.name)

        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.base_url,
                headers=headers,
                data=self._build_form(prompt, reference_image),
            ) as response:
                if response.status == 200:
                    data = await response.json()
                    return _image_payload(data, self.name, model=self.model)

                error_msg = await _read_error_message(response, "Image edit failed")
                return _failure(error_msg, response.status, provider=self.name)


class DalleProvider(ImageGenerationProvider):
    """OpenAI DALL-E text-to-image provider."""

    name = "dalle"
    mode = GenerationMode.TEXT_ONLY

    def __init__(
        self,
        api_key: str,
        model: str = "dall-e-3",
        size: str = "1024x1024",
        quality: str = "standard",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.size = size
        self.quality = quality
        self.base_url = OPENAI_IMAGE_GENERATION_URL

    async def generate_image(
        self,
        prompt: str,
        reference_image: bytes | None = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Generate an image from the prompt alone; any reference is ignored."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        payload = {
            "model": self.model,
            "prompt": prompt,
            "n": 1,
            "size": self.size,
            "quality": self.quality,
            "response_format": "b64_json"
        }

        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.base_url,
                headers=headers,
                json=payload
            ) as response:
                if response.status == 200:
                    data = await response.json()
                    return _image_payload(data, self.name, model=self.model)
                elif response.status == 429:
                    error_msg = await _read_error_message(response, "Rate limit exceeded")
                    return _failure(error_msg, 429, provider=self.name)
                elif response.status in [401, 403]:
                    error_msg = await _read_error_message(response, "Authentication error")
                    return _failure(error_msg, response.status, provider=self.name)
                else:
                    error_msg = await _read_error_message(response, "Unknown error")
                    return _failure(error_msg, response.status, provider=self.name)


class ReplicateImageProvider(ImageGenerationProvider):
    """Text-to-image provider for models hosted on Replicate."""

    name = "replicate"
    mode = GenerationMode.TEXT_ONLY

    def __init__(self, api_token: str, model_identifier: str, model_version: str | None = None) -> None:
        from replicate import Client

        self._replicate_client = Client(api_token=api_token)
        self._replicate_model = model_identifier
        self._replicate_model_version = model_version

    def _resolve_model_reference(self) -> str:
        if self._replicate_model_version:
            return f"{self._replicate_model}:{self._replicate_model_version}"
        return self._replicate_model

    def _prepare_input(self, prompt: str, **kwargs) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "prompt": prompt,
            "aspect_ratio": kwargs.get("aspect_ratio", "1:1"),
            "output_format": "png",
        }
        overrides = kwargs.get("replicate_input_overrides")
        if isinstance(overrides, dict):
            payload.update({key: value for key, value in overrides.items() if value is not None})
        return payload

    def _extract_image_urls(self, output: Any) -> List[str]:
        """Normalise Replicate outputs into a list of downloadable URLs."""
        urls: List[str] = []

        def _append(candidate: str | None) -> None:
            if isinstance(candidate, str) and candidate and candidate not in urls:
                urls.append(candidate)

        if output is None:
            return urls

        if isinstance(output, str):
            if output.startswith(("http://", "https://", "data:")):
                _append(output)
            return urls

        potential_url = getattr(output, "url", None)
        if callable(potential_url):
            potential_url = potential_url()
        _append(potential_url if isinstance(potential_url, str) else None)

        if isinstance(output, Mapping):
            for value in output.values():
                for candidate in self._extract_image_urls(value):
                    _append(candidate)
            return urls

        if isinstance(output, Sequence) and not isinstance(output, (bytes, bytearray)):
            for item in output:
                for candidate in self._extract_image_urls(item):
                    _append(candidate)
            return urls

        return urls

    async def generate_image(
        self,
        prompt: str,
        reference_image: bytes | None = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Generate an image by invoking a Replicate-hosted model."""
        payload = self._prepare_input(prompt, **kwargs)
        model_reference = self._resolve_model_reference()

        loop = asyncio.get_running_loop()

        def _call_model() -> Any:
            return self._replicate_client.run(model_reference, input=payload)

        try:
            output = await loop.run_in_executor(None, _call_model)
        except Exception as exc:
            logger.error("Replicate generation failed: %s", exc)
            return _failure(f"Replicate generation failed: {exc}", 502, provider=self.name)

        image_urls = self._extract_image_urls(output)
        if not image_urls:
            return _failure("Replicate returned no image URLs", 502, provider=self.name)

        return {
            'success': True,
            'image_url': image_urls[0],
            'format': 'url',
            'metadata': {
                'provider': self.name,
                'replicate_model': model_reference,
            },
        }


class ProviderFactory:
    """Factory for the ordered provider chain used by the synthesis client."""

    @staticmethod
    def create_chain(context: PipelineContext) -> List[ImageGenerationProvider]:
        """Providers in fallback order: reference-conditioned first, then text-only."""
        chain: List[ImageGenerationProvider] = []

        if context.openai_api_key:
            chain.append(
                OpenAIImageEditProvider(context.openai_api_key, context.edit_model, context.image_size)
            )
            chain.append(
                DalleProvider(context.openai_api_key, context.text_image_model, context.image_size)
            )

        if context.replicate_api_token:
            chain.append(ReplicateImageProvider(context.replicate_api_token, context.replicate_model))

        if not chain:
            logger.warning("No image provider credentials configured; every image will be a placeholder")

        return chain
