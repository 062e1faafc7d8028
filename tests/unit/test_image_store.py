"""Unit tests for image storage."""

import base64
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dreambook.image_store import (
    ImageStoreError,
    InMemoryImageStore,
    LocalImageStore,
    decode_base64_image,
    download_image,
)


class TestDecodeBase64Image:
    def test_plain_base64(self, png_bytes):
        assert decode_base64_image(base64.b64encode(png_bytes).decode()) == png_bytes

    def test_data_uri(self, png_bytes):
        uri = "data:image/png;base64," + base64.b64encode(png_bytes).decode()
        assert decode_base64_image(uri) == png_bytes


class TestDownloadImage:
    @pytest.mark.asyncio
    async def test_data_uri_is_decoded_locally(self, png_bytes):
        uri = "data:image/png;base64," + base64.b64encode(png_bytes).decode()

        with patch('aiohttp.ClientSession') as mock_session:
            assert await download_image(uri) == png_bytes

        mock_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        mock_response = MagicMock()
        mock_response.status = 404

        with patch('aiohttp.ClientSession') as mock_session:
            mock_session.return_value.__aenter__ = AsyncMock(return_value=mock_session.return_value)
            mock_session.return_value.__aexit__ = AsyncMock(return_value=None)
            mock_session.return_value.get.return_value.__aenter__ = AsyncMock(return_value=mock_response)
            mock_session.return_value.get.return_value.__aexit__ = AsyncMock(return_value=None)

            with pytest.raises(ImageStoreError, match="404"):
                await download_image("https://cdn.example.com/expired.png")


class TestLocalImageStore:
    """Test the filesystem store."""

    @pytest.mark.asyncio
    async def test_save_writes_file(self, tmp_path, png_bytes):
        store = LocalImageStore(tmp_path, "/generated/")

        image = await store.save(png_bytes, provider="dalle", prefix="scene-1")

        assert image.url.startswith("/generated/scene-1-")
        assert image.url.endswith(".png")
        assert image.provider == "dalle"
        assert not image.is_placeholder
        filename = image.url.rsplit("/", 1)[1]
        assert (tmp_path / filename).read_bytes() == png_bytes

    @pytest.mark.asyncio
    async def test_jpeg_extension(self, tmp_path, jpeg_bytes):
        image = await LocalImageStore(tmp_path).save(jpeg_bytes)
        assert image.url.endswith(".jpg")

    @pytest.mark.asyncio
    async def test_rejects_non_image(self, tmp_path):
        with pytest.raises(ImageStoreError):
            await LocalImageStore(tmp_path).save(b"<html>error</html>")


class TestInMemoryImageStore:
    @pytest.mark.asyncio
    async def test_urls_are_unique(self, png_bytes):
        store = InMemoryImageStore()

        first = await store.save(png_bytes, prefix="scene-1")
        second = await store.save(png_bytes, prefix="scene-1")

        assert first.url != second.url
        assert store.images[first.url] == png_bytes
