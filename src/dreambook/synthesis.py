"""Image synthesis over an ordered list of providers with placeholder fallback."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Sequence

from dreambook.error_handling import ErrorAnalyzer, ErrorCategory, ErrorSeverity, ProviderError
from dreambook.image_store import ImageStore, ImageStoreError, decode_base64_image, download_image
from dreambook.models import DEFAULT_ERROR_PLACEHOLDER_URL, ImageRef
from dreambook.providers import ImageGenerationProvider


logger = logging.getLogger(__name__)

# Provider failures at these severities need operator attention
_LOUD_SEVERITIES = (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL)


@dataclass
class AttemptResult:
    """Outcome of one provider attempt."""
    provider: str
    image: ImageRef | None = None
    data: bytes | None = None
    error: str | None = None
    category: ErrorCategory | None = None
    severity: ErrorSeverity | None = None

    @property
    def succeeded(self) -> bool:
        return self.image is not None


@dataclass
class SynthesisResult:
    """Stored image (or the error placeholder) plus every attempt made."""
    image: ImageRef
    data: bytes | None = None
    attempts: List[AttemptResult] = field(default_factory=list)

    @property
    def is_placeholder(self) -> bool:
        return self.image.is_placeholder

    @property
    def used_fallback(self) -> bool:
        return len(self.attempts) > 1 and self.attempts[-1].succeeded


class ImageSynthesisClient:
    """Tries providers in order until one yields a stored image.

    Adding a fallback provider means adding it to ``providers``. When every
    provider fails the well-known placeholder ImageRef is returned instead of
    raising.
    """

    def __init__(
        self,
        providers: Sequence[ImageGenerationProvider],
        store: ImageStore,
        *,
        timeout: float = 180.0,
        download_timeout: float = 60.0,
        placeholder_url: str = DEFAULT_ERROR_PLACEHOLDER_URL,
    ):
        self.providers = list(providers)
        self.store = store
        self.timeout = timeout
        self.download_timeout = download_timeout
        self.placeholder_url = placeholder_url

    def candidates(self, reference: bytes | None) -> List[ImageGenerationProvider]:
        """Providers usable for this call; reference-only ones need a reference."""
        return [
            provider for provider in self.providers
            if reference or not provider.requires_reference
        ]

    async def _store_output(self, provider: ImageGenerationProvider, output: dict, prefix: str) -> tuple[ImageRef, bytes]:
        if output.get('image_data'):
            data = decode_base64_image(output['image_data'])
        elif output.get('image_url'):
            data = await download_image(output['image_url'], self.download_timeout)
        else:
            raise ProviderError("Provider returned no usable image", provider=provider.name)

        image = await self.store.save(data, provider=provider.name, prefix=prefix)
        return image, data

    async def attempt(
        self,
        provider: ImageGenerationProvider,
        prompt: str,
        reference: bytes | None = None,
        *,
        prefix: str = "image",
        attempt_number: int = 1,
    ) -> AttemptResult:
        """Run one provider and store its output; never raises for provider failures."""
        try:
            output = await asyncio.wait_for(
                provider.generate_image(prompt, reference_image=reference),
                timeout=self.timeout,
            )
            if not output or not output.get('success'):
                output = output or {}
                raise ProviderError(
                    str(output.get('error') or "Provider reported failure"),
                    provider=provider.name,
                    status_code=output.get('status_code'),
                )
            image, data = await asyncio.wait_for(
                self._store_output(provider, output, prefix),
                timeout=self.download_timeout,
            )
        except Exception as e:
            error_context = ErrorAnalyzer.build_context(
                e, "generate_image", attempt_number, provider=provider.name
            )
            if isinstance(e, asyncio.TimeoutError):
                message = f"{provider.name} timed out after {self.timeout:.0f}s"
            elif isinstance(e, ImageStoreError):
                message = f"{provider.name} output could not be stored: {e}"
            else:
                message = str(e) or type(e).__name__
            level = logging.ERROR if error_context.severity in _LOUD_SEVERITIES else logging.WARNING
            logger.log(
                level,
                "Image provider %s failed (%s, %s severity): %s",
                provider.name,
                error_context.error_category.value,
                error_context.severity.value,
                message,
            )
            return AttemptResult(
                provider=provider.name,
                error=message,
                category=error_context.error_category,
                severity=error_context.severity,
            )

        return AttemptResult(provider=provider.name, image=image, data=data)

    async def synthesize(
        self,
        prompt: str,
        reference: bytes | None = None,
        *,
        prefix: str = "image",
    ) -> SynthesisResult:
        """Generate and store one image, falling back through the provider list."""
        attempts: List[AttemptResult] = []

        for provider in self.candidates(reference):
            result = await self.attempt(
                provider, prompt, reference, prefix=prefix, attempt_number=len(attempts) + 1
            )
            attempts.append(result)
            if result.succeeded:
                if len(attempts) > 1:
                    logger.info(
                        "Image generated by fallback provider %s after %d failed attempt(s)",
                        provider.name,
                        len(attempts) - 1,
                    )
                return SynthesisResult(image=result.image, data=result.data, attempts=attempts)

        if attempts:
            logger.warning(
                "All %d image providers failed; using the error placeholder", len(attempts)
            )
        else:
            logger.warning("No image provider is available; using the error placeholder")

        return SynthesisResult(image=ImageRef.placeholder(self.placeholder_url), attempts=attempts)
