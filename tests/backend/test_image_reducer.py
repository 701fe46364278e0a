"""Tests for the Pillow-based image size reducer."""

import base64
import io
import os

from PIL import Image
import pytest

from backend.upstream.image_reducer import (
    INITIAL_QUALITY,
    MIN_SHORT_SIDE,
    compress_data_uri,
    compress_data_uri_async,
    data_uri_size,
    decode_data_uri,
    reduce_image_bytes,
)


def noise_png(width: int, height: int, mode: str = "RGB") -> bytes:
    """Random pixels compress poorly, so the PNG is large."""
    channels = len(mode)
    image = Image.frombytes(mode, (width, height), os.urandom(width * height * channels))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture(scope="module")
def large_png() -> bytes:
    return noise_png(1200, 1200)


class TestReduceImageBytes:
    def test_small_input_is_untouched(self, png_base64):
        raw = base64.b64decode(png_base64)
        result = reduce_image_bytes(raw, target_bytes=1024 * 1024)

        assert result.reduced is False
        assert result.data is raw
        assert result.mime_type == "image/png"

    def test_meets_budget_or_bottoms_out_and_never_grows(self, large_png):
        target = 300 * 1024
        result = reduce_image_bytes(large_png, target_bytes=target)

        assert result.reduced is True
        assert len(result.data) < len(large_png)
        assert len(result.data) <= target or result.attempts >= 4
        assert 1 <= result.attempts <= 5
        assert 20 < result.quality <= INITIAL_QUALITY
        assert result.mime_type == "image/jpeg"

    def test_short_side_floor_and_aspect_ratio(self):
        raw = noise_png(1600, 800)
        result = reduce_image_bytes(raw, target_bytes=50 * 1024)

        assert result.reduced is True
        assert result.height >= MIN_SHORT_SIDE
        assert result.width / result.height == pytest.approx(2.0, rel=0.01)
        with Image.open(io.BytesIO(result.data)) as decoded:
            assert decoded.size == (result.width, result.height)

    def test_never_upscales_small_originals(self):
        raw = noise_png(400, 300)
        result = reduce_image_bytes(raw, target_bytes=len(raw) // 2)

        if result.reduced:
            assert result.width <= 400
            assert result.height <= 300

    def test_alpha_is_flattened(self):
        raw = noise_png(900, 900, mode="RGBA")
        result = reduce_image_bytes(raw, target_bytes=200 * 1024)

        assert result.reduced is True
        with Image.open(io.BytesIO(result.data)) as decoded:
            assert decoded.mode == "RGB"

    def test_undecodable_input_is_returned_unchanged(self):
        raw = b"not an image" * 1000
        result = reduce_image_bytes(raw, target_bytes=100)

        assert result.reduced is False
        assert result.data is raw


class TestCompressDataUri:
    def test_reduces_large_data_uri(self, large_png):
        uri = "data:image/png;base64," + base64.b64encode(large_png).decode()
        compressed = compress_data_uri(uri, target_bytes=300 * 1024)

        assert compressed.startswith("data:image/jpeg;base64,")
        assert data_uri_size(compressed) < data_uri_size(uri)
        mime, raw = decode_data_uri(compressed)
        assert mime == "image/jpeg"
        assert raw[:2] == b"\xff\xd8"

    def test_urls_pass_through(self):
        assert compress_data_uri("https://cdn.example.com/a.png", 10) == "https://cdn.example.com/a.png"

    def test_small_data_uri_passes_through(self, png_data_uri):
        assert compress_data_uri(png_data_uri, 1024 * 1024) == png_data_uri

    def test_malformed_data_uri_passes_through(self):
        assert compress_data_uri("data:image/png,rawtext", 10) == "data:image/png,rawtext"

    @pytest.mark.asyncio
    async def test_async_wrapper(self, large_png):
        uri = "data:image/png;base64," + base64.b64encode(large_png).decode()
        compressed = await compress_data_uri_async(uri, target_bytes=300 * 1024)
        assert compressed.startswith("data:image/jpeg;base64,")


class TestDataUriSize:
    def test_data_uri_counts_decoded_bytes(self):
        raw = os.urandom(300)
        uri = "data:image/png;base64," + base64.b64encode(raw).decode()
        assert data_uri_size(uri) == 300

    def test_plain_url_counts_its_length(self):
        assert data_uri_size("https://cdn.example.com/a.png") == len("https://cdn.example.com/a.png")
