"""Durable storage for generated images and re-hosting of provider URLs."""

import asyncio
import base64
import binascii
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict

import aiohttp

from dreambook.models import ImageRef
from dreambook.utils import image_extension, sniff_image_type


logger = logging.getLogger(__name__)


class ImageStoreError(Exception):
    """Raised when image bytes cannot be fetched, validated or stored."""


def decode_base64_image(image_data: str) -> bytes:
    """Decode base64 image data, accepting a ``data:`` URI prefix."""
    if image_data.startswith("data:"):
        _, _, image_data = image_data.partition(",")
    try:
        return base64.b64decode(image_data, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ImageStoreError(f"Invalid base64 image data: {e}") from e


async def download_image(url: str, timeout: float = 60.0) -> bytes:
    """Download an image so it can be stored under a stable handle."""
    if url.startswith("data:"):
        return decode_base64_image(url)

    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.get(url) as response:
            if response.status != 200:
                raise ImageStoreError(f"Failed to download image: HTTP {response.status}")
            return await response.read()


class ImageStore(ABC):
    """Stores image bytes and hands back a stable, re-fetchable ImageRef."""

    @abstractmethod
    async def save(self, data: bytes, *, provider: str | None = None, prefix: str = "image") -> ImageRef:
        """Persist ``data`` and return its handle; raise ImageStoreError on failure."""


class LocalImageStore(ImageStore):
    """Writes images into a directory served under ``public_base_url``."""

    def __init__(self, storage_dir: str | Path, public_base_url: str = "/generated"):
        self.storage_dir = Path(storage_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def save(self, data: bytes, *, provider: str | None = None, prefix: str = "image") -> ImageRef:
        content_type = sniff_image_type(data)
        if content_type is None:
            raise ImageStoreError("Provider output is not a valid image")

        filename = f"{prefix}-{uuid.uuid4().hex}.{image_extension(content_type)}"
        path = self.storage_dir / filename

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write, path, data)
        except OSError as e:
            raise ImageStoreError(f"Could not write image {path}: {e}") from e

        logger.info("Stored image %s (%d bytes)", path, len(data))
        return ImageRef(url=f"{self.public_base_url}/{filename}", provider=provider)


class InMemoryImageStore(ImageStore):
    """Keeps images in memory; used by the CLI dry runs and tests."""

    def __init__(self, public_base_url: str = "memory://images"):
        self.public_base_url = public_base_url.rstrip("/")
        self.images: Dict[str, bytes] = {}

    async def save(self, data: bytes, *, provider: str | None = None, prefix: str = "image") -> ImageRef:
        if sniff_image_type(data) is None:
            raise ImageStoreError("Provider output is not a valid image")
        url = f"{self.public_base_url}/{prefix}-{len(self.images) + 1}"
        self.images[url] = data
        return ImageRef(url=url, provider=provider)
